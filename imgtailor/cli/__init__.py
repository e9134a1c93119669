# SPDX-License-Identifier: LGPL-3.0-or-later
# imgtailor/cli/__init__.py
from .job import build_context, build_job, build_orchestrator, make_cancel_token
from .parser import build_parser, parse_args_with_config, validate_args

__all__ = [
    "build_context",
    "build_job",
    "build_orchestrator",
    "make_cancel_token",
    "build_parser",
    "parse_args_with_config",
    "validate_args",
]
