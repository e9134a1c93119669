# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/mount/image.py
"""
WIM image attach/detach through DISM.

Responsibilities:
  - orphan sweep: release mounts left behind by a crashed run
  - mount dir preparation (escalating clear)
  - attach + sentinel verification, rollback on any failure
  - idempotent detach with explicit commit/discard
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..core.context import RunContext
from ..core.exceptions import (
    CommandFailed,
    Fatal,
    ImgTailorError,
    PermissionDenied,
    ResourceBusy,
    VerificationFailed,
)
from ..core.logger import Log
from ..process.command import Command
from .remediation import DirectoryClearer, HostShell

PathLike = Union[str, Path]

# DISM "reboot required" still means the servicing operation succeeded.
DISM_OK_CODES = (0, 3010)

_DISM_ACCESS_DENIED = (5, 0x80070005)
_DISM_BUSY_HINTS = ("0xc1420127", "already mounted", "being used by another process", "0x80070020")


def norm_path(p: PathLike) -> str:
    """Case-insensitive, separator-agnostic key for comparing Windows paths."""
    return str(p).replace("\\", "/").rstrip("/").lower()


class MountState(str, Enum):
    UNMOUNTED = "unmounted"
    MOUNTING = "mounting"
    MOUNTED = "mounted"
    DIRTY = "dirty"
    RELEASING = "releasing"


@dataclass
class MountHandle:
    image_path: Path
    index: int
    mount_dir: Path
    state: MountState = MountState.UNMOUNTED
    mounted_at: Optional[float] = None

    @property
    def resource_id(self) -> str:
        return f"{self.image_path}:{self.index}"

    @property
    def live(self) -> bool:
        return self.state is not MountState.UNMOUNTED


@dataclass(frozen=True)
class MountRecord:
    """One entry of `dism /Get-MountedImageInfo`."""
    mount_dir: str
    image_file: str = ""
    index: Optional[int] = None
    status: str = "Ok"

    @property
    def dirty(self) -> bool:
        return self.status.strip().lower() != "ok"


@dataclass(frozen=True)
class DetachResult:
    mount_dir: str
    ok: bool
    committed: bool = False
    noop: bool = False
    error: Optional[str] = None


class DismImageTool:
    """Command builders and output parsers for dism.exe."""

    def __init__(self, exe: str = "dism"):
        self.exe = exe

    def _cmd(self, *args, ok_codes=DISM_OK_CODES, description: Optional[str] = None) -> Command:
        return Command.of(self.exe, "/English", *args, ok_codes=ok_codes, description=description)

    def mount(self, image: Path, index: int, mount_dir: Path) -> Command:
        return self._cmd(
            "/Mount-Image",
            f"/ImageFile:{image}",
            f"/Index:{int(index)}",
            f"/MountDir:{mount_dir}",
            description=f"Mounting {image.name} index {index}",
        )

    def unmount(self, mount_dir: PathLike, *, commit: bool) -> Command:
        return self._cmd(
            "/Unmount-Image",
            f"/MountDir:{mount_dir}",
            "/Commit" if commit else "/Discard",
            description=f"Unmounting {mount_dir} ({'commit' if commit else 'discard'})",
        )

    def list_mounted(self) -> Command:
        return self._cmd("/Get-MountedImageInfo")

    def cleanup_mountpoints(self) -> Command:
        return self._cmd("/Cleanup-Mountpoints", description="Cleaning up stale mount points")

    def export(self, source: Path, index: int, destination: Path, *, compress: str = "recovery") -> Command:
        return self._cmd(
            "/Export-Image",
            f"/SourceImageFile:{source}",
            f"/SourceIndex:{int(index)}",
            f"/DestinationImageFile:{destination}",
            f"/Compress:{compress}",
            description=f"Exporting {source.name} -> {destination.name}",
        )

    def list_provisioned_packages(self, mount_dir: Path) -> Command:
        return self._cmd(f"/Image:{mount_dir}", "/Get-ProvisionedAppxPackages")

    def remove_provisioned_package(self, mount_dir: Path, package: str) -> Command:
        return self._cmd(
            f"/Image:{mount_dir}",
            "/Remove-ProvisionedAppxPackage",
            f"/PackageName:{package}",
            description=f"Removing {package}",
        )

    @staticmethod
    def _kv_lines(text: str):
        for raw in (text or "").splitlines():
            if " : " not in raw:
                continue
            k, v = raw.split(" : ", 1)
            yield k.strip().lower(), v.strip()

    @staticmethod
    def parse_mounted(text: str) -> List[MountRecord]:
        """
        Parses blocks like:

            Mount Dir : C:\\mount
            Image File : C:\\src\\install.wim
            Image Index : 1
            Mounted Read/Write : Yes
            Status : Needs Remount
        """
        records: List[MountRecord] = []
        cur: Optional[Dict[str, str]] = None
        for k, v in DismImageTool._kv_lines(text):
            if k == "mount dir":
                if cur is not None:
                    records.append(DismImageTool._record(cur))
                cur = {"mount dir": v}
            elif cur is not None:
                cur[k] = v
        if cur is not None:
            records.append(DismImageTool._record(cur))
        return records

    @staticmethod
    def _record(d: Dict[str, str]) -> MountRecord:
        try:
            idx: Optional[int] = int(d.get("image index", ""))
        except ValueError:
            idx = None
        return MountRecord(
            mount_dir=d.get("mount dir", ""),
            image_file=d.get("image file", ""),
            index=idx,
            status=d.get("status", "Ok") or "Ok",
        )

    @staticmethod
    def parse_provisioned(text: str) -> List[str]:
        return [v for k, v in DismImageTool._kv_lines(text) if k == "packagename" and v]


def classify_dism_failure(e: CommandFailed) -> ImgTailorError:
    text = e.output.lower()
    if e.exit_code in _DISM_ACCESS_DENIED or "access is denied" in text:
        return PermissionDenied(code=e.code, msg=e.msg, cause=e, context=e.context)
    if any(h in text for h in _DISM_BUSY_HINTS):
        return ResourceBusy(code=e.code, msg=e.msg, cause=e, context=e.context)
    return e


class ResourceMountManager:
    def __init__(
        self,
        ctx: RunContext,
        *,
        tool: Optional[DismImageTool] = None,
        shell: Optional[HostShell] = None,
        sentinel: str = "Windows",
        settle_s: float = 2.0,
        clear_attempts: int = 5,
    ):
        self.ctx = ctx
        self.logger = ctx.logger
        self.tool = tool or DismImageTool()
        self.clearer = DirectoryClearer(ctx, shell, max_attempts=clear_attempts)
        self.sentinel = sentinel
        self.settle_s = float(settle_s)
        # norm(mount_dir) -> handle; at most one live handle per mount dir
        self._live: Dict[str, MountHandle] = {}

    # -----------------------
    # registry of system mounts
    # -----------------------

    def list_mounted(self) -> List[MountRecord]:
        res = self.ctx.supervisor.run(self.tool.list_mounted(), self.ctx.command_policy)
        return self.tool.parse_mounted(res.stdout)

    def _matching(self, image_path: Path, mount_dir: Path) -> List[MountRecord]:
        img, md = norm_path(image_path), norm_path(mount_dir)
        out = []
        for r in self.list_mounted():
            if norm_path(r.mount_dir) == md or (r.image_file and norm_path(r.image_file) == img):
                out.append(r)
        return out

    def sweep_orphans(self, image_path: PathLike, mount_dir: PathLike) -> int:
        """
        Discard every system mount bound to `image_path` or `mount_dir`.
        Returns how many stale records were found. Raises ResourceBusy when
        some survive both discard and cleanup-mountpoints.
        """
        image_path, mount_dir = Path(image_path), Path(mount_dir)
        stale = self._matching(image_path, mount_dir)
        if not stale:
            return 0

        need_cleanup = False
        for r in stale:
            Log.warn(self.logger, "Releasing stale mount", mount_dir=r.mount_dir, image=r.image_file, status=r.status)
            try:
                self.ctx.supervisor.run(self.tool.unmount(r.mount_dir, commit=False), self.ctx.command_policy)
            except CommandFailed as e:
                self.logger.warning("Discard of stale mount %s failed: %s", r.mount_dir, e)
                need_cleanup = True
            if r.dirty:
                need_cleanup = True

        if need_cleanup:
            res = self.ctx.supervisor.run(self.tool.cleanup_mountpoints(), self.ctx.command_policy, check=False)
            if not res.ok:
                self.logger.warning("dism /Cleanup-Mountpoints: %s", res.outcome)

        left = self._matching(image_path, mount_dir)
        if left:
            raise ResourceBusy(
                code=3,
                msg=f"stale mount could not be released: {left[0].mount_dir}",
                context={"records": [r.mount_dir for r in left]},
            )
        return len(stale)

    # -----------------------
    # attach / detach
    # -----------------------

    def attach(self, image_path: PathLike, index: int, mount_dir: PathLike) -> MountHandle:
        image_path, mount_dir = Path(image_path), Path(mount_dir)
        if int(index) < 1:
            raise ValueError(f"image index must be >= 1 (got {index})")
        if not image_path.is_file():
            raise Fatal(code=2, msg=f"image not found: {image_path}")

        key = norm_path(mount_dir)
        existing = self._live.get(key)
        if existing is not None and existing.live:
            if existing.state is not MountState.DIRTY:
                raise ResourceBusy(code=3, msg=f"{mount_dir} already holds {existing.resource_id}")
            self.logger.warning("Force-releasing dirty handle %s before attach", existing.resource_id)
            self.detach(existing, commit=False)

        handle = MountHandle(image_path=image_path, index=int(index), mount_dir=mount_dir)
        Log.step(self.logger, f"Attaching {handle.resource_id} at {mount_dir}")

        self.sweep_orphans(image_path, mount_dir)
        self.clearer.clear(mount_dir)

        handle.state = MountState.MOUNTING
        self._live[key] = handle
        try:
            try:
                self.ctx.supervisor.run(self.tool.mount(image_path, handle.index, mount_dir), self.ctx.command_policy)
            except CommandFailed as e:
                raise classify_dism_failure(e)
            if self.settle_s > 0:
                self.ctx.sleep(self.settle_s)
            self.verify(handle)
        except BaseException as e:
            Log.fail(self.logger, f"Attach failed, rolling back: {e}")
            self._rollback(handle)
            raise

        handle.state = MountState.MOUNTED
        handle.mounted_at = time.time()
        Log.ok(self.logger, f"Mounted {handle.resource_id}", mount_dir=str(mount_dir))
        return handle

    def verify(self, handle: MountHandle) -> None:
        probe = handle.mount_dir / self.sentinel
        if not probe.exists():
            raise VerificationFailed(
                code=4,
                msg=f"mount verification failed: {probe} missing",
                context={"image": str(handle.image_path), "index": handle.index},
            )

    def _rollback(self, handle: MountHandle) -> None:
        res = self.detach(handle, commit=False)
        if not res.ok:
            self.logger.error("Rollback of %s left a dirty mount: %s", handle.mount_dir, res.error)

    def detach(self, handle: MountHandle, *, commit: bool) -> DetachResult:
        """
        Release the mount. Never raises for unmount failures; the returned
        DetachResult says what happened. Detaching an unmounted handle is a no-op.
        """
        md = str(handle.mount_dir)
        if handle.state is MountState.UNMOUNTED:
            self.logger.info("Detach %s: already unmounted", md)
            return DetachResult(md, ok=True, committed=False, noop=True)

        handle.state = MountState.RELEASING
        what = "commit" if commit else "discard"
        Log.step(self.logger, f"Detaching {md} ({what})")

        err = self._unmount(handle, commit=commit)
        if err is None:
            self._released(handle)
            Log.ok(self.logger, f"Detached {md} ({what})")
            return DetachResult(md, ok=True, committed=commit)

        if commit:
            Log.fail(self.logger, f"Commit of {md} failed; discarding changes: {err}")
            if self._unmount(handle, commit=False) is None:
                self._released(handle)
                return DetachResult(md, ok=False, committed=False, error=f"commit failed: {err}")

        try:
            cleaned = self.ctx.supervisor.run(self.tool.cleanup_mountpoints(), self.ctx.command_policy, check=False).ok
        except ImgTailorError as e:
            self.logger.warning("Mount point cleanup failed to launch: %s", e)
            cleaned = False
        still = [r for r in self._safe_list() if norm_path(r.mount_dir) == norm_path(md)]
        if cleaned and not still:
            self._released(handle)
            return DetachResult(md, ok=not commit, committed=False, error=(f"commit failed: {err}" if commit else None))

        handle.state = MountState.DIRTY
        Log.fail(self.logger, f"{md} is left dirty: {err}")
        return DetachResult(md, ok=False, committed=False, error=str(err))

    def _unmount(self, handle: MountHandle, *, commit: bool) -> Optional[ImgTailorError]:
        try:
            self.ctx.supervisor.run(self.tool.unmount(handle.mount_dir, commit=commit), self.ctx.command_policy)
            return None
        except ImgTailorError as e:
            self.logger.warning("Unmount %s failed: %s", handle.mount_dir, e)
            return e

    def _safe_list(self) -> List[MountRecord]:
        try:
            return self.list_mounted()
        except ImgTailorError as e:
            self.logger.warning("Could not read mounted image list: %s", e)
            return []

    def _released(self, handle: MountHandle) -> None:
        handle.state = MountState.UNMOUNTED
        handle.mounted_at = None
        self._live.pop(norm_path(handle.mount_dir), None)

    def live_handles(self) -> List[MountHandle]:
        return [h for h in self._live.values() if h.live]
