# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/mount/remediation.py
"""
Ownership/ACL fixes and forced emptying of directories.

Windows leaves mount directories and hive files owned by TrustedInstaller or
with broken ACLs after a crashed servicing session; a plain delete then fails.
DirectoryClearer escalates:
  1) recursive delete
  2) take ownership + reset ACLs, then delete
  3) mirror an empty staging directory over the target
"""
from __future__ import annotations

import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from ..core.context import RunContext
from ..core.exceptions import ImgTailorError, ResourceBusy, RetriesExhausted
from ..core.retry import BACKOFF_LINEAR, RetryPolicy
from ..core.utils import U
from ..process.command import Command

# Builtin Administrators group; the SID avoids localized group names.
ADMINISTRATORS_SID = "*S-1-5-32-544"


class HostShell(ABC):
    """Builds the remediation commands for the host OS."""

    @staticmethod
    def for_host() -> "HostShell":
        return WindowsShell() if U.is_windows() else PosixShell()

    @abstractmethod
    def take_ownership(self, path: Path, *, recursive: bool) -> List[Command]:
        raise NotImplementedError

    @abstractmethod
    def mirror_empty(self, empty_dir: Path, target: Path) -> Command:
        raise NotImplementedError


class WindowsShell(HostShell):
    def take_ownership(self, path: Path, *, recursive: bool) -> List[Command]:
        takeown = Command.of("takeown", "/f", path, "/a")
        reset = Command.of("icacls", path, "/reset", "/c", "/q")
        grant = Command.of("icacls", path, "/grant", f"{ADMINISTRATORS_SID}:F", "/c", "/q")
        if recursive:
            takeown = takeown.extend("/r", "/d", "y")
            reset = reset.extend("/t")
            grant = grant.extend("/t")
        return [takeown, reset, grant]

    def mirror_empty(self, empty_dir: Path, target: Path) -> Command:
        # robocopy: 0-7 are success variants, 8+ are failures.
        return Command.of(
            "robocopy",
            empty_dir,
            target,
            "/MIR",
            "/R:1",
            "/W:1",
            "/NFL",
            "/NDL",
            "/NJH",
            "/NJS",
            ok_codes=range(0, 8),
        )


class PosixShell(HostShell):
    def take_ownership(self, path: Path, *, recursive: bool) -> List[Command]:
        if recursive:
            return [Command.of("chmod", "-R", "u+rwX", path)]
        return [Command.of("chmod", "u+rw", path)]

    def mirror_empty(self, empty_dir: Path, target: Path) -> Command:
        return Command.of("rsync", "-a", "--delete", f"{empty_dir}/", f"{target}/")


def run_ownership_fix(ctx: RunContext, shell: HostShell, path: Path, *, recursive: bool) -> bool:
    """Best effort; returns True when every command succeeded."""
    ok = True
    for cmd in shell.take_ownership(path, recursive=recursive):
        try:
            res = ctx.supervisor.run(cmd, ctx.command_policy, check=False)
        except ImgTailorError as e:
            ctx.logger.warning("Ownership fix step failed to launch: %s", e)
            ok = False
            continue
        if not res.ok:
            ctx.logger.warning("Ownership fix step failed: %s (%s)", cmd.name, res.outcome)
            ok = False
    return ok


def _delete_children(target: Path) -> None:
    for child in list(target.iterdir()):
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


class DirectoryClearer:
    def __init__(
        self,
        ctx: RunContext,
        shell: Optional[HostShell] = None,
        *,
        max_attempts: int = 5,
        backoff_s: float = 1.0,
    ):
        self.ctx = ctx
        self.shell = shell or HostShell.for_host()
        self.policy = RetryPolicy(
            max_attempts=max_attempts,
            base_backoff_s=backoff_s,
            backoff=BACKOFF_LINEAR,
            is_retryable=lambda e: isinstance(e, (OSError, ImgTailorError)),
            sleep=ctx.sleep,
        )
        self.used: List[str] = []

    def clear(self, target: Path) -> None:
        """Leave `target` existing and empty, or raise ResourceBusy."""
        target = Path(target)
        if U.dir_is_empty(target):
            U.ensure_dir(target)
            return

        self.ctx.logger.warning("Mount dir %s is not empty; clearing it", target)
        self.used = []

        steps = (
            ("delete", self._delete),
            ("ownership+delete", self._ownership_delete),
            ("mirror-empty", self._mirror_empty),
        )

        def attempt(n: int) -> None:
            strategy, fn = steps[min(n, len(steps)) - 1]
            self.used.append(strategy)
            self.ctx.logger.info("Clearing %s (attempt %d, strategy=%s)", target, n, strategy)
            fn(target)
            if not U.dir_is_empty(target):
                raise ResourceBusy(msg=f"{target} still not empty after {strategy}")

        try:
            self.policy.call(attempt, operation_name=f"clear {target}", logger=self.ctx.logger)
        except RetriesExhausted as e:
            raise ResourceBusy(
                code=3,
                msg=f"could not empty mount dir {target}",
                cause=e.last_error,
                context={"strategies": list(self.used)},
            )
        U.ensure_dir(target)

    def _delete(self, target: Path) -> None:
        _delete_children(target)

    def _ownership_delete(self, target: Path) -> None:
        run_ownership_fix(self.ctx, self.shell, target, recursive=True)
        _delete_children(target)

    def _mirror_empty(self, target: Path) -> None:
        staging = self.ctx.scratch_dir / "empty"
        if staging.exists():
            shutil.rmtree(staging)
        U.ensure_dir(staging)
        try:
            self.ctx.supervisor.run(self.shell.mirror_empty(staging, target), self.ctx.command_policy)
        finally:
            shutil.rmtree(staging, ignore_errors=True)
