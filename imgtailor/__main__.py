# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/__main__.py
from __future__ import annotations

import sys
import traceback
from pathlib import Path
from typing import Optional, Sequence

from .cli.job import build_context, build_job, build_orchestrator, make_cancel_token
from .cli.parser import parse_args_with_config
from .core.exceptions import ImgTailorError, format_exception_for_cli
from .core.utils import U


def _print_stderr(msg: str) -> None:
    print(msg, file=sys.stderr)


def _safe_log(logger, level: str, msg: str) -> None:
    """Best-effort logging without assuming a logger exists yet."""
    if logger is None:
        _print_stderr(msg)
        return
    getattr(logger, level)(msg)


def main(argv: Optional[Sequence[str]] = None) -> int:
    logger = None
    verbose = 0

    # Phase 1: parse (config errors can happen here)
    try:
        args, conf, logger = parse_args_with_config(argv)
        verbose = args.verbose
    except ImgTailorError as e:
        _safe_log(logger, "error", f"💥 ERROR    {format_exception_for_cli(e)}")
        return e.code
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        return 130

    # Phase 2: run pipeline
    token = make_cancel_token(args)
    try:
        ctx = build_context(logger, args, token)
        job = build_job(logger, args, conf)
        report = build_orchestrator(ctx, args).run(job)
        if args.report:
            out = Path(args.report)
            U.ensure_dir(out.parent)
            out.write_text(U.json_dump(report.to_dict()) + "\n", encoding="utf-8")
            logger.info("Report written to %s", out)
        rc = report.exit_code()
    except ImgTailorError as e:
        _safe_log(logger, "error", format_exception_for_cli(e, verbose=verbose))
        rc = e.code
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        rc = 130
    except Exception as e:
        # Unexpected: keep the console short, full traceback at debug level.
        _safe_log(logger, "error", f"💥 UNHANDLED {type(e).__name__}: {e}")
        _safe_log(logger, "debug", traceback.format_exc())
        rc = 1
    finally:
        token.close()

    return rc


if __name__ == "__main__":
    raise SystemExit(main())
