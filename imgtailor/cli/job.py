# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/cli/job.py
"""
Turns parsed args + merged YAML into a RunContext and an ImageJob.
"""
from __future__ import annotations

import argparse
import logging
import shlex
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..config.config_loader import load_settings, parse_settings
from ..core.context import RunContext
from ..core.exceptions import ConfigError
from ..mount.hive import ConfigStoreMountManager, RegTool
from ..mount.image import DismImageTool, ResourceMountManager
from ..orchestrator.hooks import CommandHook, ExportHook, MutationHook, PackageRemovalHook, SettingsHook
from ..orchestrator.orchestrator import DEFAULT_HIVES, HiveSpec, ImageJob, Orchestrator
from ..process.cancel import CancelToken, KeyPressCancelToken, NeverCancel
from ..registry.settings import SettingRecord, normalize_key_path


def parse_hive_specs(raw: Any) -> List[HiveSpec]:
    """
    Accepts ["zSOFTWARE=Windows/System32/config/SOFTWARE", ...] or a mapping
    alias -> relative path. An alias ending in '?' marks the hive optional.
    """
    if not raw:
        return list(DEFAULT_HIVES)
    items: List[tuple] = []
    if isinstance(raw, Mapping):
        items = [(str(k), str(v)) for k, v in raw.items()]
    else:
        for entry in raw:
            alias, sep, rel = str(entry).partition("=")
            if not sep or not alias.strip() or not rel.strip():
                raise ConfigError(code=2, msg=f"bad hive spec {entry!r} (expected ALIAS=RELPATH)")
            items.append((alias.strip(), rel.strip()))

    out: List[HiveSpec] = []
    seen = set()
    for alias, rel in items:
        optional = alias.endswith("?")
        alias = alias.rstrip("?")
        if alias.lower() in seen:
            raise ConfigError(code=2, msg=f"hive alias {alias} given twice")
        seen.add(alias.lower())
        out.append(HiveSpec(alias, rel, optional=optional))
    return out


def resolve_alias(name: str, specs: Sequence[HiveSpec]) -> str:
    """Catalogs may say SOFTWARE or zsoftware; map onto the configured alias."""
    n = name.strip().lower()
    for s in specs:
        if s.alias.lower() == n:
            return s.alias
    for s in specs:
        if s.alias.lower().lstrip("z") == n.lstrip("z"):
            return s.alias
    raise ConfigError(code=2, msg=f"settings target hive {name!r} is not among the loaded hives")


def alternate_path_mapper(mapping: Optional[Mapping[str, str]]) -> Optional[Callable[[SettingRecord], Optional[str]]]:
    """Longest-prefix rewrite of a record path, used after an access-denied write."""
    if not mapping:
        return None
    rules = sorted(
        ((normalize_key_path(k), normalize_key_path(v)) for k, v in mapping.items()),
        key=lambda kv: len(kv[0]),
        reverse=True,
    )

    def alt(rec: SettingRecord) -> Optional[str]:
        low = rec.path.lower()
        for src, dst in rules:
            s = src.lower()
            if low == s or low.startswith(s + "\\"):
                return dst + rec.path[len(src):]
        return None

    return alt


def collect_settings(
    logger: logging.Logger, args: argparse.Namespace, conf: Dict[str, Any], specs: Sequence[HiveSpec]
) -> "OrderedDict[str, List[SettingRecord]]":
    merged: "OrderedDict[str, List[SettingRecord]]" = OrderedDict()
    parts = []
    if args.settings_files:
        parts.append(load_settings(logger, args.settings_files))
    if conf.get("registry") is not None:
        parts.append(parse_settings(conf["registry"], source="config:registry"))
    for part in parts:
        for name, recs in part.items():
            merged.setdefault(resolve_alias(name, specs), []).extend(recs)
    return merged


def _command_hooks(args: argparse.Namespace) -> List[CommandHook]:
    hooks = []
    for i, line in enumerate(args.commands or []):
        if isinstance(line, Mapping):
            argv = line.get("argv")
            if isinstance(argv, str):
                argv = shlex.split(argv)
            if not argv:
                raise ConfigError(code=2, msg=f"command #{i + 1} has no argv")
            hooks.append(
                CommandHook(
                    str(line.get("name") or f"run#{i + 1}"),
                    [str(a) for a in argv],
                    required=bool(line.get("required", True)),
                    timeout_s=line.get("timeout"),
                )
            )
        else:
            argv = shlex.split(str(line))
            if not argv:
                raise ConfigError(code=2, msg=f"command #{i + 1} is empty")
            hooks.append(CommandHook(f"run#{i + 1}", argv))
    return hooks


def build_job(logger: logging.Logger, args: argparse.Namespace, conf: Dict[str, Any]) -> ImageJob:
    specs = parse_hive_specs(args.hives)
    alt = alternate_path_mapper(conf.get("alternate_paths"))

    hooks: List[MutationHook] = []
    for alias, records in collect_settings(logger, args, conf, specs).items():
        if records:
            hooks.append(SettingsHook(alias, records, alternate_path=alt))
    if args.remove_packages:
        hooks.append(PackageRemovalHook(args.remove_packages, tool=DismImageTool(args.dism_exe)))
    hooks.extend(_command_hooks(args))

    export = None
    if args.export:
        export = ExportHook(
            Path(args.export),
            compress=args.export_compress,
            index=args.export_index,
            tool=DismImageTool(args.dism_exe),
        )

    return ImageJob(
        image_path=Path(args.image),
        index=int(args.index),
        mount_dir=Path(args.mount_dir),
        hives=specs,
        hooks=hooks,
        export=export,
        commit=not args.no_commit,
    )


def make_cancel_token(args: argparse.Namespace) -> CancelToken:
    if args.no_cancel_key:
        return NeverCancel()
    return KeyPressCancelToken(args.cancel_key)


def build_context(logger: logging.Logger, args: argparse.Namespace, token: CancelToken) -> RunContext:
    return RunContext.create(
        logger,
        Path(args.workdir),
        cancel_token=token,
        command_timeout_s=args.command_timeout,
        long_timeout_s=args.long_timeout,
        poll_interval_s=args.poll_interval,
        heartbeat_s=args.heartbeat,
        grace_s=args.grace,
    )


def build_orchestrator(ctx: RunContext, args: argparse.Namespace) -> Orchestrator:
    mounts = ResourceMountManager(
        ctx,
        tool=DismImageTool(args.dism_exe),
        sentinel=args.sentinel,
        settle_s=args.settle_seconds,
    )
    hives = ConfigStoreMountManager(ctx, tool=RegTool(args.reg_exe))
    return Orchestrator(ctx, mounts=mounts, hives=hives)
