# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/orchestrator/orchestrator.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..core.context import RunContext
from ..core.exceptions import ImgTailorError
from ..core.logger import Log
from ..core.logging_utils import log_step
from ..core.utils import U
from ..mount.hive import ConfigStoreMountManager, HiveHandle, UnloadResult
from ..mount.image import DetachResult, MountState, ResourceMountManager
from .hooks import ExportHook, HookResult, HookStatus, MountedImage, MutationHook

EXIT_OK = 0
EXIT_PROCESSING_FAILED = 1
EXIT_COMPLETED_WITH_ERRORS = 2
EXIT_CLEANUP_FAILED = 3
EXIT_EXPORT_FAILED = 4


class RunPhase(str, Enum):
    IDLE = "idle"
    ATTACHING = "attaching"
    MOUNTED = "mounted"
    LOADING = "loading"
    CONFIGURING = "configuring"
    UNLOADING = "unloading"
    DETACHING = "detaching"
    EXPORTING = "exporting"
    COMMITTED = "committed"
    DISCARDED = "discarded"
    FAILED = "failed"


@dataclass(frozen=True)
class HiveSpec:
    alias: str
    relative_path: str
    # Optional hives whose file is absent are skipped instead of failing the run.
    optional: bool = False

    def path_in(self, mount_dir: Path) -> Path:
        return Path(mount_dir).joinpath(*self.relative_path.replace("\\", "/").split("/"))


DEFAULT_HIVES = (
    HiveSpec("zSOFTWARE", "Windows/System32/config/SOFTWARE"),
    HiveSpec("zSYSTEM", "Windows/System32/config/SYSTEM"),
    HiveSpec("zDEFAULT", "Windows/System32/config/default"),
    HiveSpec("zNTUSER", "Users/Default/ntuser.dat"),
    HiveSpec("zCOMPONENTS", "Windows/System32/config/COMPONENTS", optional=True),
)


@dataclass
class ImageJob:
    image_path: Path
    index: int
    mount_dir: Path
    hives: Sequence[HiveSpec] = DEFAULT_HIVES
    hooks: Sequence[MutationHook] = ()
    export: Optional[ExportHook] = None
    # False: always discard, even after a clean run (dry run against a real image).
    commit: bool = True


@dataclass
class RunReport:
    image: str
    index: int
    mount_dir: str
    phase: RunPhase = RunPhase.IDLE
    phases: List[RunPhase] = field(default_factory=list)
    failed_phase: Optional[RunPhase] = None
    error: Optional[ImgTailorError] = None
    error_text: Optional[str] = None
    hooks: List[HookResult] = field(default_factory=list)
    unloads: List[UnloadResult] = field(default_factory=list)
    detach: Optional[DetachResult] = None
    export: Optional[HookResult] = None
    settings_ok: int = 0
    settings_failed: int = 0
    cleanup_ok: bool = True

    @property
    def committed(self) -> bool:
        return self.phase is RunPhase.COMMITTED

    @property
    def processing_ok(self) -> bool:
        return self.failed_phase is None

    def fail(self, phase: RunPhase, e: BaseException) -> None:
        # The first failure is the one reported; cleanup failures come after it.
        if self.failed_phase is None:
            self.failed_phase = phase
            self.error = e if isinstance(e, ImgTailorError) else None
            self.error_text = str(e) or type(e).__name__

    def exit_code(self) -> int:
        if not self.cleanup_ok:
            return EXIT_CLEANUP_FAILED
        if self.failed_phase is not None:
            return EXIT_PROCESSING_FAILED
        if self.export is not None and self.export.status is not HookStatus.OK:
            return EXIT_EXPORT_FAILED
        if self.settings_failed or any(h.status is HookStatus.FAILED for h in self.hooks):
            return EXIT_COMPLETED_WITH_ERRORS
        return EXIT_OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image": self.image,
            "index": self.index,
            "mount_dir": self.mount_dir,
            "phase": self.phase.value,
            "phases": [p.value for p in self.phases],
            "failed_phase": self.failed_phase.value if self.failed_phase else None,
            "error": self.error.to_dict() if self.error is not None else self.error_text,
            "hooks": [h.to_dict() for h in self.hooks],
            "unloads": [{"alias": u.alias, "ok": u.ok, "attempts": u.attempts, "error": u.error} for u in self.unloads],
            "detach": (
                {"ok": self.detach.ok, "committed": self.detach.committed, "error": self.detach.error}
                if self.detach
                else None
            ),
            "export": self.export.to_dict() if self.export else None,
            "settings": {"success": self.settings_ok, "failed": self.settings_failed},
            "cleanup_ok": self.cleanup_ok,
            "exit_code": self.exit_code(),
        }

    def summary(self) -> str:
        bits = [f"phase={self.phase.value}", f"settings={self.settings_ok} ok/{self.settings_failed} failed"]
        if self.failed_phase is not None:
            bits.append(f"failed_in={self.failed_phase.value}: {self.error_text}")
        bits.append(f"cleanup={'ok' if self.cleanup_ok else 'FAILED'}")
        if self.export is not None:
            bits.append(f"export={self.export.status.value}")
        return ", ".join(bits)


class Orchestrator:
    """
    attach -> load hives -> hooks -> unload all -> detach(commit iff clean) -> export.

    Unload and detach always run once the image is attached, whatever failed
    in between; the export only runs after a committed detach.
    """

    def __init__(
        self,
        ctx: RunContext,
        *,
        mounts: Optional[ResourceMountManager] = None,
        hives: Optional[ConfigStoreMountManager] = None,
    ):
        self.ctx = ctx
        self.logger = ctx.logger
        self.mounts = mounts or ResourceMountManager(ctx)
        self.hives = hives or ConfigStoreMountManager(ctx)

    def _enter(self, report: RunReport, phase: RunPhase) -> None:
        report.phase = phase
        report.phases.append(phase)
        Log.trace(self.logger, "phase -> %s", phase.value)

    def run(self, job: ImageJob) -> RunReport:
        report = RunReport(image=str(job.image_path), index=int(job.index), mount_dir=str(job.mount_dir))
        self.ctx.ensure_dirs()
        U.banner(self.logger, f"Customizing {Path(job.image_path).name} index {job.index}")

        self._enter(report, RunPhase.ATTACHING)
        try:
            handle = self.mounts.attach(job.image_path, job.index, job.mount_dir)
        except Exception as e:
            report.fail(RunPhase.ATTACHING, e)
            report.cleanup_ok = not self.mounts.live_handles()
            self._enter(report, RunPhase.FAILED)
            Log.fail(self.logger, f"Attach failed: {e}")
            return report

        self._enter(report, RunPhase.MOUNTED)
        image = MountedImage(handle)
        interrupted: Optional[BaseException] = None
        try:
            try:
                self._enter(report, RunPhase.LOADING)
                with log_step(self.logger, f"Loading {len(job.hives)} hive(s)"):
                    for spec in job.hives:
                        hive = self._load(spec, handle.mount_dir)
                        if hive is not None:
                            image.hives[spec.alias] = hive

                self._enter(report, RunPhase.CONFIGURING)
                for hook in job.hooks:
                    self._run_hook(report, hook, image)
            except BaseException as e:
                # Interrupts fail the run as well; the image is then discarded.
                report.fail(report.phase, e)
                Log.fail(self.logger, f"{report.phase.value} failed: {report.error_text}")
                if not isinstance(e, Exception):
                    interrupted = e
            finally:
                self._enter(report, RunPhase.UNLOADING)
                try:
                    report.unloads = self.hives.unload_all()
                except BaseException as e:
                    report.fail(RunPhase.UNLOADING, e)
                    raise
        finally:
            self._detach(report, job, handle)

        if interrupted is not None:
            raise interrupted

        if report.committed and job.export is not None:
            self._enter(report, RunPhase.EXPORTING)
            try:
                report.export = job.export.run(self.ctx, Path(job.image_path), int(job.index))
            except ImgTailorError as e:
                report.export = HookResult(job.export.name, HookStatus.FAILED, str(e))
                Log.fail(self.logger, f"Export failed: {e}")
            self._enter(report, RunPhase.COMMITTED)

        self._log_summary(report)
        return report

    def _load(self, spec: HiveSpec, mount_dir: Path) -> Optional[HiveHandle]:
        path = spec.path_in(mount_dir)
        if spec.optional and not path.exists():
            self.logger.info("Optional hive %s not present in image; skipping", spec.relative_path)
            return None
        return self.hives.load(path, spec.alias)

    def _run_hook(self, report: RunReport, hook: MutationHook, image: MountedImage) -> None:
        Log.step(self.logger, f"Hook {hook.name}")
        result = hook.run(self.ctx, image)
        report.hooks.append(result)
        if result.batch is not None:
            report.settings_ok += result.batch.success_count
            report.settings_failed += result.batch.failure_count
        self.logger.info("Hook %s: %s %s", hook.name, result.status.value, result.detail)

    def _detach(self, report: RunReport, job: ImageJob, handle) -> None:
        self._enter(report, RunPhase.DETACHING)
        unloads_ok = all(u.ok for u in report.unloads)
        commit = report.processing_ok and unloads_ok and job.commit
        if report.processing_ok and not unloads_ok:
            Log.warn(self.logger, "Some hives are still loaded; discarding instead of committing")
        if not job.commit:
            self.logger.info("Commit disabled; changes will be discarded")

        report.detach = self.mounts.detach(handle, commit=commit)
        report.cleanup_ok = unloads_ok and handle.state is MountState.UNMOUNTED

        if commit and not report.detach.committed:
            report.fail(RunPhase.DETACHING, ImgTailorError(code=1, msg=report.detach.error or "commit failed"))

        if report.detach.committed:
            self._enter(report, RunPhase.COMMITTED)
        elif report.failed_phase is not None:
            self._enter(report, RunPhase.FAILED)
        else:
            self._enter(report, RunPhase.DISCARDED)

    def _log_summary(self, report: RunReport) -> None:
        if report.exit_code() == EXIT_OK:
            Log.ok(self.logger, f"Run finished: {report.summary()}")
        else:
            Log.fail(self.logger, f"Run finished with errors: {report.summary()}")
