# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/orchestrator/hooks.py
"""
Mutation hooks run against a mounted image with its hives loaded.

A hook returns a HookResult. Timed-out or cancelled commands mark the hook
(or the affected package) skipped and the pipeline continues; raising from
run() aborts configuration and the run is discarded.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..core.context import RunContext
from ..core.exceptions import Fatal, wrap_fatal
from ..core.logger import Log
from ..mount.hive import HiveHandle
from ..mount.image import DismImageTool, MountHandle
from ..process.command import Command
from ..process.supervisor import Outcome, OutcomeKind
from ..registry.settings import AlternatePath, BatchResult, SettingApplier, SettingRecord


class HookStatus(str, Enum):
    OK = "ok"
    # Completed, but some settings in the batch failed.
    PARTIAL = "partial"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class HookResult:
    name: str
    status: HookStatus
    detail: str = ""
    batch: Optional[BatchResult] = None
    outcome: Optional[Outcome] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"name": self.name, "status": self.status.value, "detail": self.detail}
        if self.batch is not None:
            d["settings"] = {
                "success": self.batch.success_count,
                "failed": self.batch.failure_count,
                "failures": [s.to_dict() for s in self.batch.failures],
            }
        if self.outcome is not None:
            d["outcome"] = str(self.outcome)
        return d


@dataclass
class MountedImage:
    handle: MountHandle
    hives: Dict[str, HiveHandle] = field(default_factory=dict)

    @property
    def mount_dir(self) -> Path:
        return self.handle.mount_dir

    def placeholders(self, ctx: RunContext) -> Dict[str, str]:
        return {
            "mount_dir": str(self.handle.mount_dir),
            "image": str(self.handle.image_path),
            "index": str(self.handle.index),
            "workdir": str(ctx.workdir),
        }


def expand_argv(argv: Sequence[str], values: Mapping[str, str]) -> List[str]:
    try:
        return [str(a).format(**values) for a in argv]
    except (KeyError, IndexError, ValueError) as e:
        raise Fatal(code=2, msg=f"bad placeholder in command {list(argv)!r}: {e}")


def outcome_status(outcome: Outcome) -> Optional[HookStatus]:
    if outcome.kind is OutcomeKind.TIMED_OUT or outcome.kind is OutcomeKind.CANCELLED:
        return HookStatus.SKIPPED
    return None


class MutationHook(ABC):
    name: str = "hook"

    @abstractmethod
    def run(self, ctx: RunContext, image: MountedImage) -> HookResult:
        raise NotImplementedError


class SettingsHook(MutationHook):
    def __init__(
        self,
        alias: str,
        records: Sequence[SettingRecord],
        *,
        name: Optional[str] = None,
        alternate_path: Optional[AlternatePath] = None,
        max_attempts: int = 5,
    ):
        self.alias = alias
        self.records = list(records)
        self.name = name or f"settings:{alias}"
        self.alternate_path = alternate_path
        self.max_attempts = max_attempts

    def run(self, ctx: RunContext, image: MountedImage) -> HookResult:
        hive = image.hives.get(self.alias)
        if hive is None:
            raise Fatal(code=2, msg=f"{self.name}: hive {self.alias} is not loaded")
        applier = SettingApplier(ctx, max_attempts=self.max_attempts, alternate_path=self.alternate_path)
        batch = applier.apply(hive, self.records)
        status = HookStatus.OK if batch.failure_count == 0 else HookStatus.PARTIAL
        return HookResult(self.name, status, f"{batch.success_count}/{batch.total} applied", batch=batch)


class CommandHook(MutationHook):
    """
    Arbitrary command against the mounted image. Placeholders {mount_dir},
    {image}, {index} and {workdir} are expanded in every argument.
    A required hook raises on failure; an optional one reports FAILED.
    """

    def __init__(
        self,
        name: str,
        argv: Sequence[str],
        *,
        required: bool = True,
        ok_codes: Sequence[int] = (0,),
        timeout_s: Optional[float] = None,
    ):
        if not argv:
            raise ValueError(f"{name}: command is empty")
        self.name = name
        self.argv = list(argv)
        self.required = required
        self.ok_codes = tuple(ok_codes)
        self.timeout_s = timeout_s

    def run(self, ctx: RunContext, image: MountedImage) -> HookResult:
        argv = expand_argv(self.argv, image.placeholders(ctx))
        cmd = Command.of(argv[0], *argv[1:], ok_codes=self.ok_codes, description=self.name)
        policy = ctx.long_policy
        if self.timeout_s is not None:
            policy = policy.with_overrides(timeout_s=self.timeout_s)
        ctx.cancel_token.reset()
        res = ctx.supervisor.run(cmd, policy, check=False)

        skipped = outcome_status(res.outcome)
        if skipped is not None:
            Log.warn(ctx.logger, f"{self.name} skipped: {res.outcome}")
            return HookResult(self.name, skipped, str(res.outcome), outcome=res.outcome)
        if not res.ok:
            if self.required:
                raise ctx.supervisor.failure(res)
            Log.fail(ctx.logger, f"{self.name} failed (rc={res.exit_code}); continuing")
            return HookResult(self.name, HookStatus.FAILED, f"rc={res.exit_code}", outcome=res.outcome)
        return HookResult(self.name, HookStatus.OK, str(res.outcome), outcome=res.outcome)


class PackageRemovalHook(MutationHook):
    """
    Removes provisioned appx packages whose names start with any of the
    configured prefixes (case-insensitive). One supervised command per package.
    """

    def __init__(self, prefixes: Sequence[str], *, name: str = "remove-packages", tool: Optional[DismImageTool] = None):
        self.prefixes = [p.lower() for p in prefixes if p]
        self.name = name
        self.tool = tool or DismImageTool()

    def matches(self, package: str) -> bool:
        p = package.lower()
        return any(p.startswith(x) for x in self.prefixes)

    def run(self, ctx: RunContext, image: MountedImage) -> HookResult:
        listing = ctx.supervisor.run(self.tool.list_provisioned_packages(image.mount_dir), ctx.command_policy)
        targets = [p for p in self.tool.parse_provisioned(listing.stdout) if self.matches(p)]
        if not targets:
            ctx.logger.info("%s: no provisioned packages match %s", self.name, self.prefixes)
            return HookResult(self.name, HookStatus.OK, "no matching packages")

        log = Log.bind(ctx.logger, hook=self.name)
        removed: List[str] = []
        skipped: List[str] = []
        failed: List[str] = []
        for i, pkg in enumerate(targets):
            ctx.cancel_token.reset()
            res = ctx.supervisor.run(self.tool.remove_provisioned_package(image.mount_dir, pkg), ctx.long_policy, check=False)
            if res.outcome.kind is OutcomeKind.CANCELLED:
                Log.warn(ctx.logger, f"Package removal cancelled; skipping {len(targets) - i} remaining package(s)")
                skipped.extend(targets[i:])
                break
            if res.outcome.kind is OutcomeKind.TIMED_OUT:
                skipped.append(pkg)
            elif res.ok:
                removed.append(pkg)
            else:
                log.warning("Removing %s failed: rc=%s %s", pkg, res.exit_code, res.stderr)
                failed.append(pkg)

        detail = f"removed={len(removed)} skipped={len(skipped)} failed={len(failed)}"
        if failed:
            status = HookStatus.FAILED
        elif skipped and not removed:
            status = HookStatus.SKIPPED
        else:
            status = HookStatus.OK
        Log.ok(ctx.logger, f"{self.name}: {detail}")
        return HookResult(self.name, status, detail)


class ExportHook:
    """
    Post-commit export of the image (dism /Export-Image by default, or a
    custom argv with {image}, {index} and {destination} placeholders).
    Runs with the long-operation policy: no timeout, operator cancellable.
    """

    name = "export"

    def __init__(
        self,
        destination: Path,
        *,
        compress: str = "recovery",
        index: Optional[int] = None,
        argv: Optional[Sequence[str]] = None,
        tool: Optional[DismImageTool] = None,
    ):
        self.destination = Path(destination)
        self.compress = compress
        self.index = index
        self.argv = list(argv) if argv else None
        self.tool = tool or DismImageTool()

    def command(self, image: Path, index: int) -> Command:
        idx = self.index or index
        if self.argv:
            argv = expand_argv(
                self.argv, {"image": str(image), "index": str(idx), "destination": str(self.destination)}
            )
            return Command.of(argv[0], *argv[1:], description=f"Exporting {image.name}")
        return self.tool.export(image, idx, self.destination, compress=self.compress)

    def run(self, ctx: RunContext, image: Path, index: int) -> HookResult:
        if Path(image).resolve() == self.destination.resolve():
            raise Fatal(code=2, msg=f"export destination is the source image: {self.destination}")
        try:
            self.destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise wrap_fatal("cannot create export directory", e, code=2, destination=str(self.destination))
        ctx.cancel_token.reset()
        res = ctx.supervisor.run(self.command(Path(image), index), ctx.long_policy, check=False)
        skipped = outcome_status(res.outcome)
        if skipped is not None:
            return HookResult(self.name, skipped, str(res.outcome), outcome=res.outcome)
        if not res.ok:
            Log.fail(ctx.logger, f"Export failed: rc={res.exit_code}")
            return HookResult(self.name, HookStatus.FAILED, res.stderr or f"rc={res.exit_code}", outcome=res.outcome)
        Log.ok(ctx.logger, f"Exported to {self.destination}")
        return HookResult(self.name, HookStatus.OK, str(self.destination), outcome=res.outcome)
