# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/core/context.py
"""
Per-run state handed to every component (no module-level globals).
"""
from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from ..process.cancel import CancelToken, NeverCancel
from ..process.supervisor import ProcessSupervisor, SupervisorPolicy
from .utils import U

if TYPE_CHECKING:  # pragma: no cover
    from ..mount.hive import HiveHandle

# dism /Mount-Image on a large install.wim routinely takes several minutes.
DEFAULT_COMMAND_TIMEOUT_S = 30 * 60.0


@dataclass
class RunContext:
    logger: logging.Logger
    workdir: Path
    supervisor: ProcessSupervisor
    run_id: str = field(default_factory=U.now_ts)
    cancel_token: CancelToken = field(default_factory=NeverCancel)
    # Internal mount/hive/registry commands: bounded, not operator-cancellable.
    command_policy: SupervisorPolicy = field(
        default_factory=lambda: SupervisorPolicy(timeout_s=DEFAULT_COMMAND_TIMEOUT_S)
    )
    # Long user-visible operations (package removal, export): cancellable.
    long_policy: Optional[SupervisorPolicy] = None
    sleep: Callable[[float], None] = time.sleep
    # alias -> handle, in load order. Every entry gets an unload attempt at end of run.
    open_hives: "OrderedDict[str, HiveHandle]" = field(default_factory=OrderedDict)

    def __post_init__(self) -> None:
        self.workdir = Path(self.workdir)
        if self.long_policy is None:
            self.long_policy = SupervisorPolicy(timeout_s=None, cancel_token=self.cancel_token)

    @property
    def scratch_dir(self) -> Path:
        return self.workdir / "scratch"

    def ensure_dirs(self) -> None:
        U.ensure_dir(self.workdir)
        U.ensure_dir(self.scratch_dir)

    @classmethod
    def create(
        cls,
        logger: logging.Logger,
        workdir: Path,
        *,
        cancel_token: Optional[CancelToken] = None,
        command_timeout_s: Optional[float] = DEFAULT_COMMAND_TIMEOUT_S,
        long_timeout_s: Optional[float] = None,
        poll_interval_s: float = 0.5,
        heartbeat_s: float = 30.0,
        grace_s: float = 5.0,
        show_progress: Optional[bool] = None,
    ) -> "RunContext":
        token = cancel_token or NeverCancel()
        base = SupervisorPolicy(poll_interval_s=poll_interval_s, heartbeat_s=heartbeat_s, grace_s=grace_s)
        return cls(
            logger=logger,
            workdir=Path(workdir),
            supervisor=ProcessSupervisor(logger, default_policy=base, show_progress=show_progress),
            cancel_token=token,
            command_policy=base.with_overrides(timeout_s=command_timeout_s),
            long_policy=base.with_overrides(timeout_s=long_timeout_s, cancel_token=token),
        )
