# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/cli/parser.py
from __future__ import annotations

import argparse
import sys
from typing import Any, Dict, Optional, Sequence, Tuple

from ..config.config_loader import Config
from ..core.context import DEFAULT_COMMAND_TIMEOUT_S
from ..core.exceptions import ConfigError
from ..core.logger import Log, c
from ..core.utils import U

YAML_EXAMPLE = """\
image: D:\\iso\\sources\\install.wim
index: 6
mount_dir: C:\\mnt\\wim
settings_files: [debloat.yaml]
remove_packages: [Microsoft.BingNews, Microsoft.GamingApp]
export: D:\\out\\install.wim
registry:
  zSOFTWARE:
    - {path: Policies\\Microsoft\\Windows\\DataCollection, name: AllowTelemetry, type: REG_DWORD, value: 0}
"""

EXPORT_COMPRESSION = ("none", "fast", "max", "recovery")


class HelpFormatter(argparse.RawDescriptionHelpFormatter, argparse.ArgumentDefaultsHelpFormatter):
    """Raw epilog plus default values in option help."""


def _add_global_config_logging(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Global config/logging (two-phase parse relies on these)
    # ------------------------------------------------------------------
    from .. import __version__

    p.add_argument(
        "--config",
        action="append",
        default=[],
        help="YAML config file (repeatable, globs allowed; later files override earlier).",
    )
    p.add_argument("--dump-config", action="store_true", help="Print merged config and exit.")
    p.add_argument("--dump-args", action="store_true", help="Print final parsed args and exit.")
    p.add_argument("--version", action="version", version=__version__)
    p.add_argument("-v", "--verbose", action="count", default=0, help="Verbosity: -vv debug, -vvv trace.")
    p.add_argument("-q", "--quiet", action="count", default=0, help="-q warnings only, -qq errors only.")
    p.add_argument("--log-file", dest="log_file", default=None, help="Also write logs to this file.")
    p.add_argument("--json-logs", dest="json_logs", action="store_true", help="Emit NDJSON log lines.")
    p.add_argument("--no-color", dest="no_color", action="store_true", help="Disable colored console logs.")
    p.add_argument("--report", dest="report", default=None, help="Write the JSON run report to this path.")


def _add_image_target(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Image + mount target
    # ------------------------------------------------------------------
    p.add_argument("--image", dest="image", default=None, help="Path to the WIM image.")
    p.add_argument("--index", dest="index", type=int, default=1, help="Image index inside the WIM (1-based).")
    p.add_argument("--mount-dir", dest="mount_dir", default=None, help="Directory to mount the image at.")
    p.add_argument("--workdir", dest="workdir", default="./imgtailor-work", help="Scratch directory for the run.")
    p.add_argument("--sentinel", dest="sentinel", default="Windows", help="Path that must exist in a good mount.")
    p.add_argument("--settle-seconds", dest="settle_seconds", type=float, default=2.0, help="Pause after mount before verifying.")
    p.add_argument(
        "--no-commit",
        dest="no_commit",
        action="store_true",
        help="Discard all changes at detach, even after a clean run.",
    )
    p.add_argument("--dism", dest="dism_exe", default="dism", help="dism executable.")
    p.add_argument("--reg", dest="reg_exe", default="reg", help="reg executable.")


def _add_customization(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Hives + hooks
    # ------------------------------------------------------------------
    p.add_argument(
        "--hive",
        dest="hives",
        action="append",
        default=None,
        metavar="ALIAS=RELPATH",
        help="Hive to load (repeatable; replaces the default set). Suffix the alias with '?' to make it optional.",
    )
    p.add_argument(
        "--settings",
        dest="settings_files",
        action="append",
        default=[],
        metavar="FILE",
        help="YAML settings catalog (repeatable).",
    )
    p.add_argument(
        "--remove-package",
        dest="remove_packages",
        action="append",
        default=[],
        metavar="PREFIX",
        help="Remove provisioned appx packages whose name starts with PREFIX (repeatable).",
    )
    p.add_argument(
        "--run",
        dest="commands",
        action="append",
        default=[],
        metavar="CMDLINE",
        help="Command to run against the mounted image; {mount_dir}, {image}, {index}, {workdir} are expanded.",
    )
    p.add_argument("--export", dest="export", default=None, help="Export the committed image to this WIM.")
    p.add_argument("--export-compress", dest="export_compress", default="recovery", choices=EXPORT_COMPRESSION)
    p.add_argument("--export-index", dest="export_index", type=int, default=None, help="Index to export (default: --index).")


def _add_supervision(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Process supervision
    # ------------------------------------------------------------------
    p.add_argument(
        "--command-timeout",
        dest="command_timeout",
        type=float,
        default=DEFAULT_COMMAND_TIMEOUT_S,
        help="Timeout in seconds for mount/hive/registry commands.",
    )
    p.add_argument(
        "--long-timeout",
        dest="long_timeout",
        type=float,
        default=None,
        help="Timeout in seconds for package removal, hooks and export (default: none).",
    )
    p.add_argument("--poll-interval", dest="poll_interval", type=float, default=0.5)
    p.add_argument("--heartbeat", dest="heartbeat", type=float, default=30.0, help="Seconds between progress log lines.")
    p.add_argument("--grace", dest="grace", type=float, default=5.0, help="Seconds between terminate and kill on cancel.")
    p.add_argument("--cancel-key", dest="cancel_key", default="s", help="Key that skips the running long operation.")
    p.add_argument("--no-cancel-key", dest="no_cancel_key", action="store_true", help="Disable key-press cancellation.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="imgtailor",
        description=c("imgtailor: offline Windows image customization", "green", ["bold"]),
        formatter_class=HelpFormatter,
        epilog=c("YAML example:\n", "cyan", ["bold"]) + c(YAML_EXAMPLE, "cyan"),
    )
    _add_global_config_logging(p)
    _add_image_target(p)
    _add_customization(p)
    _add_supervision(p)
    return p


def _build_preparser() -> argparse.ArgumentParser:
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", action="append", default=[])
    pre.add_argument("-v", "--verbose", action="count", default=0)
    pre.add_argument("-q", "--quiet", action="count", default=0)
    pre.add_argument("--log-file", dest="log_file", default=None)
    pre.add_argument("--json-logs", dest="json_logs", action="store_true")
    pre.add_argument("--no-color", dest="no_color", action="store_true")
    pre.add_argument("--dump-config", action="store_true")
    pre.add_argument("--dump-args", action="store_true")
    return pre


def _load_merged_config(logger: Any, cfgs: Sequence[str]) -> Dict[str, Any]:
    if not cfgs:
        return {}
    expanded = Config.expand_configs(logger, list(cfgs))
    return Config.load_many(logger, expanded)


def validate_args(args: argparse.Namespace, conf: Dict[str, Any]) -> None:
    if not args.image:
        raise ConfigError(code=2, msg="missing image: pass --image or set `image:` in YAML")
    if not args.mount_dir:
        raise ConfigError(code=2, msg="missing mount dir: pass --mount-dir or set `mount_dir:` in YAML")
    if int(args.index) < 1:
        raise ConfigError(code=2, msg=f"--index must be >= 1 (got {args.index})")
    if args.export_index is not None and int(args.export_index) < 1:
        raise ConfigError(code=2, msg=f"--export-index must be >= 1 (got {args.export_index})")
    if args.export_compress not in EXPORT_COMPRESSION:
        raise ConfigError(code=2, msg=f"unknown export compression: {args.export_compress!r}")
    if len(str(args.cancel_key)) != 1:
        raise ConfigError(code=2, msg=f"--cancel-key must be one character (got {args.cancel_key!r})")
    for name in ("command_timeout", "long_timeout"):
        v = getattr(args, name)
        if v is not None and float(v) <= 0:
            raise ConfigError(code=2, msg=f"--{name.replace('_', '-')} must be > 0")
    if float(args.poll_interval) <= 0:
        raise ConfigError(code=2, msg="--poll-interval must be > 0")


def parse_args_with_config(
    argv: Optional[Sequence[str]] = None,
    logger: Any = None,
) -> Tuple[argparse.Namespace, Dict[str, Any], Any]:
    """
    Flow:
      Phase 0: parse only the flags needed to locate config and set up logging
      Phase 1: load+merge config files
      Phase 2: apply config as defaults onto the parser
      Phase 3: full parse
      Phase 4: validate
    """
    if argv is None:
        argv = sys.argv[1:]
    argv = list(argv)

    parser = build_parser()

    pre = _build_preparser()
    args0, _rest = pre.parse_known_args(argv)

    if logger is None:
        logger = Log.setup(
            args0.verbose,
            args0.log_file,
            quiet=args0.quiet,
            color=not args0.no_color,
            json_logs=args0.json_logs,
        )

    conf = _load_merged_config(logger, args0.config or [])

    if args0.dump_config:
        print(U.json_dump(conf))
        raise SystemExit(0)

    # Config as defaults so the CLI can override.
    Config.apply_as_defaults(logger, parser, conf)

    args = parser.parse_args(argv)

    if args0.dump_args:
        print(U.json_dump(vars(args)))
        raise SystemExit(0)

    validate_args(args, conf)
    return args, conf, logger
