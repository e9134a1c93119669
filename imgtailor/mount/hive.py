# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/mount/hive.py
"""
Offline registry hives bound to HKLM aliases (reg load / reg unload).

Windows refuses to unload a hive while any handle to one of its keys is still
open, including handles held by our own process, so unload is retried once
after a garbage-collection pass.
"""
from __future__ import annotations

import gc
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from ..core.context import RunContext
from ..core.exceptions import (
    CommandFailed,
    ImgTailorError,
    PermissionDenied,
    ResourceBusy,
    RetriesExhausted,
    SpawnError,
    StoreCorrupt,
)
from ..core.logger import Log
from ..core.retry import BACKOFF_CONSTANT, BACKOFF_EXPONENTIAL, RetryPolicy
from ..process.command import Command
from .remediation import HostShell, run_ownership_fix

PathLike = Union[str, Path]

ROOT_KEY = "HKLM"

_ACCESS_DENIED_HINTS = ("access is denied", "access denied", "privilege")
_BUSY_HINTS = ("being used by another process", "already", "in use")
_CORRUPT_HINTS = ("corrupt", "not a valid", "invalid registry file", "unreadable")


def _is_probably_regf(path: Path) -> bool:
    """
    Windows registry hives start with ASCII 'regf' signature.
    Cheap corruption/truncation guardrail.
    """
    try:
        with open(path, "rb") as f:
            return f.read(4) == b"regf"
    except OSError:
        return False


class HiveState(str, Enum):
    UNLOADED = "unloaded"
    LOADED = "loaded"
    STALE_LOADED = "stale_loaded"


@dataclass
class HiveHandle:
    hive_file: Path
    alias: str
    state: HiveState = HiveState.UNLOADED

    @property
    def key(self) -> str:
        return f"{ROOT_KEY}\\{self.alias}"

    @property
    def loaded(self) -> bool:
        return self.state is HiveState.LOADED


@dataclass(frozen=True)
class UnloadResult:
    alias: str
    ok: bool
    attempts: int = 0
    noop: bool = False
    error: Optional[str] = None


class RegTool:
    """Command builders for reg.exe."""

    def __init__(self, exe: str = "reg"):
        self.exe = exe

    @staticmethod
    def key(alias: str, subpath: str = "") -> str:
        sub = subpath.strip("\\")
        return f"{ROOT_KEY}\\{alias}\\{sub}" if sub else f"{ROOT_KEY}\\{alias}"

    def load(self, alias: str, hive_file: Path) -> Command:
        return Command.of(self.exe, "load", self.key(alias), hive_file)

    def unload(self, alias: str) -> Command:
        return Command.of(self.exe, "unload", self.key(alias))

    def query(self, key: str, name: Optional[str] = None) -> Command:
        cmd = Command.of(self.exe, "query", key)
        if name is None:
            return cmd
        return cmd.extend("/ve") if name == "" else cmd.extend("/v", name)

    def add_key(self, key: str) -> Command:
        return Command.of(self.exe, "add", key, "/f")

    def add_value(self, key: str, name: str, value_type: str, data: Optional[str]) -> Command:
        cmd = Command.of(self.exe, "add", key)
        cmd = cmd.extend("/ve") if name == "" else cmd.extend("/v", name)
        cmd = cmd.extend("/t", value_type)
        if data is not None:
            cmd = cmd.extend("/d", data)
        return cmd.extend("/f")


def classify_reg_failure(e: CommandFailed) -> ImgTailorError:
    """Map a failed reg.exe call onto the error taxonomy."""
    text = e.output.lower()
    if e.exit_code == 5 or any(h in text for h in _ACCESS_DENIED_HINTS):
        return PermissionDenied(code=e.code, msg=e.msg, cause=e, context=e.context)
    if any(h in text for h in _CORRUPT_HINTS):
        return StoreCorrupt(code=e.code, msg=e.msg, cause=e, context=e.context)
    if any(h in text for h in _BUSY_HINTS):
        return ResourceBusy(code=e.code, msg=e.msg, cause=e, context=e.context)
    return e


def _load_retryable(e: BaseException) -> bool:
    if isinstance(e, (StoreCorrupt, SpawnError)):
        return False
    return isinstance(e, ImgTailorError)


class ConfigStoreMountManager:
    def __init__(
        self,
        ctx: RunContext,
        *,
        tool: Optional[RegTool] = None,
        shell: Optional[HostShell] = None,
        load_attempts: int = 3,
        load_backoff_s: float = 1.0,
        unload_attempts: int = 2,
        unload_pause_s: float = 1.0,
    ):
        self.ctx = ctx
        self.logger = ctx.logger
        self.tool = tool or RegTool()
        self.shell = shell or HostShell.for_host()
        self.load_policy = RetryPolicy(
            max_attempts=load_attempts,
            base_backoff_s=load_backoff_s,
            backoff=BACKOFF_EXPONENTIAL,
            is_retryable=_load_retryable,
            sleep=ctx.sleep,
        )
        self.unload_policy = RetryPolicy(
            max_attempts=unload_attempts,
            base_backoff_s=unload_pause_s,
            backoff=BACKOFF_CONSTANT,
            is_retryable=lambda e: isinstance(e, ImgTailorError) and not isinstance(e, SpawnError),
            sleep=ctx.sleep,
        )

    def is_loaded(self, alias: str) -> bool:
        res = self.ctx.supervisor.run(self.tool.query(self.tool.key(alias)), self.ctx.command_policy, check=False)
        return res.ok

    def load(self, hive_file: PathLike, alias: str) -> HiveHandle:
        hive_file = Path(hive_file)
        if not alias or "\\" in alias or "/" in alias:
            raise ValueError(f"invalid hive alias: {alias!r}")
        if not hive_file.is_file():
            raise StoreCorrupt(code=4, msg=f"hive file missing: {hive_file}", context={"alias": alias})
        if not _is_probably_regf(hive_file):
            raise StoreCorrupt(code=4, msg=f"not a registry hive (no regf signature): {hive_file}", context={"alias": alias})

        self._release_stale(alias)

        handle = HiveHandle(hive_file=hive_file, alias=alias)

        def attempt(_n: int) -> None:
            try:
                self.ctx.supervisor.run(self.tool.load(alias, hive_file), self.ctx.command_policy)
            except CommandFailed as e:
                raise classify_reg_failure(e)

        def on_retry(_n: int, e: BaseException) -> None:
            if isinstance(e, PermissionDenied):
                self.logger.info("Access denied loading %s; resetting ownership/ACLs on %s", alias, hive_file)
                run_ownership_fix(self.ctx, self.shell, hive_file, recursive=False)

        self.load_policy.call(
            attempt,
            operation_name=f"reg load {handle.key}",
            logger=self.logger,
            on_retry=on_retry,
        )
        handle.state = HiveState.LOADED
        self.ctx.open_hives[alias] = handle
        Log.ok(self.logger, f"Loaded hive {hive_file.name} as {handle.key}")
        return handle

    def _release_stale(self, alias: str) -> None:
        tracked = self.ctx.open_hives.get(alias)
        if tracked is not None and tracked.loaded:
            raise ResourceBusy(code=3, msg=f"alias {alias} is already loaded in this run ({tracked.hive_file})")
        if not self.is_loaded(alias):
            return
        Log.warn(self.logger, f"Alias {ROOT_KEY}\\{alias} is already bound; unloading stale hive")
        stale = HiveHandle(hive_file=Path(), alias=alias, state=HiveState.STALE_LOADED)
        res = self.unload(stale)
        if not res.ok:
            raise ResourceBusy(code=3, msg=f"stale hive at {stale.key} could not be unloaded", context={"error": res.error})

    def unload(self, handle: HiveHandle) -> UnloadResult:
        """Never raises for unload failures; exhaustion returns ok=False."""
        if handle.state is HiveState.UNLOADED:
            return UnloadResult(handle.alias, ok=True, noop=True)

        attempts = 0

        def attempt(n: int) -> None:
            nonlocal attempts
            attempts = n
            res = self.ctx.supervisor.run(self.tool.unload(handle.alias), self.ctx.command_policy, check=False)
            if res.ok:
                return
            if not self.is_loaded(handle.alias):
                self.logger.info("reg unload %s reported failure but the alias is gone", handle.key)
                return
            raise classify_reg_failure(self.ctx.supervisor.failure(res))

        def on_retry(_n: int, _e: BaseException) -> None:
            # Drop lingering references that may still hold key handles open.
            gc.collect()

        try:
            self.unload_policy.call(
                attempt,
                operation_name=f"reg unload {handle.key}",
                logger=self.logger,
                on_retry=on_retry,
            )
        except RetriesExhausted as e:
            handle.state = HiveState.STALE_LOADED
            Log.warn(self.logger, f"Hive {handle.key} is still loaded after {attempts} attempts")
            return UnloadResult(handle.alias, ok=False, attempts=attempts, error=str(e.last_error))
        except SpawnError as e:
            handle.state = HiveState.STALE_LOADED
            self.logger.warning("reg unload %s could not run: %s", handle.key, e)
            return UnloadResult(handle.alias, ok=False, attempts=attempts, error=str(e))

        handle.state = HiveState.UNLOADED
        if self.ctx.open_hives.get(handle.alias) is handle:
            del self.ctx.open_hives[handle.alias]
        Log.ok(self.logger, f"Unloaded {handle.key}")
        return UnloadResult(handle.alias, ok=True, attempts=attempts)

    def unload_all(self) -> List[UnloadResult]:
        """Unload every hive opened in this run, most recent first."""
        results = []
        for alias in reversed(list(self.ctx.open_hives.keys())):
            handle = self.ctx.open_hives[alias]
            results.append(self.unload(handle))
        return results
