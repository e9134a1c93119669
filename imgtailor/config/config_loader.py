# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/config/config_loader.py
"""
YAML configuration.

Run config files are deep-merged in command-line order and applied as
argparse defaults, so an explicit flag always wins over YAML. Keys mirror
argparse dest names (dashes are accepted and normalized).

Settings catalogs are either a list of records

    - {hive: zSOFTWARE, path: Policies\\Microsoft\\Windows\\DataCollection,
       name: AllowTelemetry, type: REG_DWORD, value: 0}

or a mapping of hive alias to record lists.
"""
from __future__ import annotations

import argparse
import glob
import logging
import os
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence

import yaml

from ..core.exceptions import ConfigError
from ..registry.settings import SettingRecord

DEFAULT_SETTINGS_HIVE = "zSOFTWARE"


def _norm_key(k: Any) -> str:
    return str(k).strip().replace("-", "_")


def deep_merge(base: Dict[str, Any], over: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in over.items():
        if isinstance(v, Mapping) and isinstance(out.get(k), Mapping):
            out[k] = deep_merge(dict(out[k]), v)
        else:
            out[k] = v
    return out


class Config:
    @staticmethod
    def expand_configs(logger: logging.Logger, paths: Sequence[str]) -> List[Path]:
        """Expand globs and ~; a pattern that matches nothing is an error."""
        out: List[Path] = []
        for raw in paths:
            pat = os.path.expanduser(str(raw))
            hits = sorted(glob.glob(pat)) if glob.has_magic(pat) else [pat]
            if not hits or not all(os.path.isfile(h) for h in hits):
                raise ConfigError(code=2, msg=f"config file not found: {raw}")
            for h in hits:
                p = Path(h)
                if p not in out:
                    out.append(p)
        logger.debug("Config files: %s", [str(p) for p in out])
        return out

    @staticmethod
    def load_one(logger: logging.Logger, path: Path) -> Any:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(code=2, msg=f"cannot read {path}: {e}", cause=e)
        except yaml.YAMLError as e:
            raise ConfigError(code=2, msg=f"invalid YAML in {path}: {e}", cause=e)
        logger.debug("Loaded %s", path)
        return data

    @staticmethod
    def load_many(logger: logging.Logger, paths: Iterable[Path]) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for p in paths:
            data = Config.load_one(logger, p)
            if data is None:
                continue
            if not isinstance(data, Mapping):
                raise ConfigError(code=2, msg=f"{p}: top-level YAML must be a mapping (got {type(data).__name__})")
            merged = deep_merge(merged, {_norm_key(k): v for k, v in data.items()})
        return merged

    @staticmethod
    def apply_as_defaults(logger: logging.Logger, parser: argparse.ArgumentParser, conf: Mapping[str, Any]) -> None:
        dests = {a.dest for a in parser._actions}
        defaults: Dict[str, Any] = {}
        for k, v in conf.items():
            key = _norm_key(k)
            if key in dests:
                defaults[key] = v
            else:
                logger.debug("Config key %r is not a CLI option; left to the caller", k)
        if defaults:
            parser.set_defaults(**defaults)


def _records(items: Any, *, source: str, alias: str) -> List[SettingRecord]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ConfigError(code=2, msg=f"{source}: settings for {alias} must be a list")
    out = []
    for i, d in enumerate(items):
        try:
            out.append(SettingRecord.from_dict(d))
        except ValueError as e:
            raise ConfigError(code=2, msg=f"{source}: setting #{i + 1} for {alias}: {e}", cause=e)
    return out


def parse_settings(data: Any, *, source: str = "<inline>", default_hive: str = DEFAULT_SETTINGS_HIVE) -> "OrderedDict[str, List[SettingRecord]]":
    """Catalog data -> {alias: [records]} preserving first-seen alias order."""
    out: "OrderedDict[str, List[SettingRecord]]" = OrderedDict()
    if data is None:
        return out
    if isinstance(data, Mapping):
        for alias, items in data.items():
            out.setdefault(str(alias), []).extend(_records(items, source=source, alias=str(alias)))
        return out
    if isinstance(data, list):
        for i, d in enumerate(data):
            if not isinstance(d, Mapping):
                raise ConfigError(code=2, msg=f"{source}: setting #{i + 1} must be a mapping")
            alias = str(d.get("hive") or default_hive)
            out.setdefault(alias, []).extend(_records([d], source=source, alias=alias))
        return out
    raise ConfigError(code=2, msg=f"{source}: settings catalog must be a list or a mapping")


def load_settings(
    logger: logging.Logger,
    paths: Sequence[str],
    *,
    default_hive: str = DEFAULT_SETTINGS_HIVE,
) -> "OrderedDict[str, List[SettingRecord]]":
    merged: "OrderedDict[str, List[SettingRecord]]" = OrderedDict()
    for p in Config.expand_configs(logger, paths):
        part = parse_settings(Config.load_one(logger, p), source=str(p), default_hive=default_hive)
        for alias, recs in part.items():
            merged.setdefault(alias, []).extend(recs)
        logger.info("Settings catalog %s: %d record(s)", p, sum(len(r) for r in part.values()))
    return merged
