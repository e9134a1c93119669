# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for attaching and detaching WIM images through dism.exe."""
from __future__ import annotations

import pytest

from fakes.fake_host import FakeSupervisor, FakeWindowsHost, is_op
from imgtailor.core.context import RunContext
from imgtailor.core.exceptions import Fatal, PermissionDenied, ResourceBusy, SpawnError, VerificationFailed
from imgtailor.core.retry import no_sleep
from imgtailor.mount.image import DismImageTool, MountState, ResourceMountManager
from imgtailor.mount.remediation import PosixShell

MOUNTED_INFO = """
Deployment Image Servicing and Management tool
Version: 10.0.22621.1

Mounted images:

Mount Dir : C:\\mnt\\wim
Image File : D:\\src\\install.wim
Image Index : 6
Mounted Read/Write : Yes
Status : Ok

Mount Dir : C:\\old
Image File : D:\\src\\boot.wim
Image Index : 2
Mounted Read/Write : No
Status : Needs Remount

The operation completed successfully.
"""


@pytest.fixture
def mounts(ctx):
    return ResourceMountManager(ctx, shell=PosixShell(), settle_s=0)


@pytest.mark.unit
class TestDismTool:
    """Test dism command building and output parsing."""

    def test_parse_mounted(self):
        """Test parsing /Get-MountedImageInfo."""
        recs = DismImageTool.parse_mounted(MOUNTED_INFO)
        assert [r.mount_dir for r in recs] == ["C:\\mnt\\wim", "C:\\old"]
        assert recs[0].index == 6 and not recs[0].dirty
        assert recs[1].dirty

    def test_parse_mounted_empty(self):
        """Test parsing an empty mount list."""
        assert DismImageTool.parse_mounted("No mounted images found.") == []

    def test_parse_provisioned(self):
        """Test parsing provisioned package names."""
        text = "PackageName : Microsoft.BingNews_1.0_neutral\nVersion : 1\n\nPackageName : Microsoft.Paint_2\n"
        assert DismImageTool.parse_provisioned(text) == ["Microsoft.BingNews_1.0_neutral", "Microsoft.Paint_2"]

    def test_unmount_commit_flag(self, tmp_path):
        """Test /Commit versus /Discard."""
        t = DismImageTool()
        assert t.unmount(tmp_path, commit=True).args[-1] == "/Commit"
        assert t.unmount(tmp_path, commit=False).args[-1] == "/Discard"
        assert 3010 in t.unmount(tmp_path, commit=True).ok_codes


@pytest.mark.unit
class TestAttachDetach:
    """Test ResourceMountManager attach and detach."""

    def test_round_trip_discard_leaves_dir_empty(self, mounts, host, wim, tmp_path):
        """Test attach then discard."""
        md = tmp_path / "mnt"
        h = mounts.attach(wim, 1, md)
        assert h.state is MountState.MOUNTED
        assert (md / "Windows").is_dir()

        res = mounts.detach(h, commit=False)
        assert res.ok and not res.committed
        assert h.state is MountState.UNMOUNTED
        assert list(md.iterdir()) == []
        assert host.unmounts == [(str(md), False)]

    def test_detach_twice_is_noop(self, mounts, wim, tmp_path):
        """Test detaching an unmounted handle."""
        h = mounts.attach(wim, 1, tmp_path / "mnt")
        assert mounts.detach(h, commit=True).committed
        second = mounts.detach(h, commit=True)
        assert second.ok and second.noop

    def test_commit_is_keyword_only(self, mounts, wim, tmp_path):
        """Test that commit must be passed by keyword."""
        h = mounts.attach(wim, 1, tmp_path / "mnt")
        with pytest.raises(TypeError):
            mounts.detach(h)  # type: ignore[call-arg]
        with pytest.raises(TypeError):
            mounts.detach(h, True)  # type: ignore[misc]
        mounts.detach(h, commit=False)

    def test_stale_mount_released_before_attach(self, mounts, host, supervisor, wim, tmp_path):
        """Test that a stale mount is released first."""
        md = tmp_path / "mnt"
        md.mkdir()
        (md / "leftover.txt").write_text("x")
        host.add_stale_mount(wim, 1, md)

        h = mounts.attach(wim, 1, md)
        assert h.state is MountState.MOUNTED
        ops = supervisor.ops()
        assert ops.index("dism /Unmount-Image") < ops.index("dism /Mount-Image")
        assert "dism /Cleanup-Mountpoints" in ops

    def test_unreleasable_orphan_is_busy(self, mounts, host, supervisor, wim, tmp_path):
        """Test an orphan mount that cannot be released."""
        md = tmp_path / "mnt"
        host.add_stale_mount(wim, 1, md, status="Ok")
        supervisor.fail_when(is_op("dism", "/Unmount-Image"), rc=1, stderr="Error: 0xc1420117")
        with pytest.raises(ResourceBusy):
            mounts.attach(wim, 1, md)

    def test_missing_sentinel_rolls_back(self, tmp_path, logger, wim):
        """Test rollback when the sentinel path is missing."""
        sup = FakeSupervisor(FakeWindowsHost(populate_sentinel=False))
        ctx = RunContext(logger=logger, workdir=tmp_path / "w", supervisor=sup, sleep=no_sleep)
        mounts = ResourceMountManager(ctx, shell=PosixShell(), settle_s=0)

        with pytest.raises(VerificationFailed):
            mounts.attach(wim, 1, tmp_path / "mnt")
        assert sup.host.mounts == {}
        assert sup.host.unmounts == [(str(tmp_path / "mnt"), False)]
        assert mounts.live_handles() == []

    def test_access_denied_is_classified(self, mounts, supervisor, wim, tmp_path):
        """Test that access denied maps to PermissionDenied."""
        supervisor.fail_when(is_op("dism", "/Mount-Image"), rc=5, stderr="Error: 5 Access is denied.")
        with pytest.raises(PermissionDenied):
            mounts.attach(wim, 1, tmp_path / "mnt")

    def test_missing_image(self, mounts, tmp_path):
        """Test a missing image file."""
        with pytest.raises(Fatal) as ei:
            mounts.attach(tmp_path / "nope.wim", 1, tmp_path / "mnt")
        assert ei.value.code == 2

    def test_second_live_handle_refused(self, mounts, wim, tmp_path):
        """Test that a second live mount is refused."""
        mounts.attach(wim, 1, tmp_path / "mnt")
        with pytest.raises(ResourceBusy):
            mounts.attach(wim, 2, tmp_path / "mnt")


@pytest.mark.unit
class TestDetachFallbacks:
    """Test detach fallbacks when dism fails."""

    def test_failed_commit_falls_back_to_discard(self, mounts, host, supervisor, wim, tmp_path):
        """Test discard after a failed commit."""
        h = mounts.attach(wim, 1, tmp_path / "mnt")
        supervisor.fail_when(is_op("dism", "/Unmount-Image", "/Commit"), rc=2, stderr="commit failed")

        res = mounts.detach(h, commit=True)
        assert not res.ok and not res.committed
        assert "commit failed" in res.error
        assert h.state is MountState.UNMOUNTED
        assert host.unmounts[-1][1] is False

    def test_everything_fails_leaves_dirty(self, mounts, supervisor, wim, tmp_path):
        """Test the dirty state when every step fails."""
        md = tmp_path / "mnt"
        h = mounts.attach(wim, 1, md)
        supervisor.fail_when(is_op("dism", "/Unmount-Image"), rc=2)
        supervisor.fail_when(is_op("dism", "/Cleanup-Mountpoints"), rc=2)

        res = mounts.detach(h, commit=False)
        assert not res.ok
        assert h.state is MountState.DIRTY
        assert mounts.live_handles() == [h]

    def test_cleanup_launch_failure_leaves_dirty(self, mounts, host, supervisor, wim, tmp_path):
        """A dism that cannot be launched during cleanup is reported, not raised."""
        h = mounts.attach(wim, 1, tmp_path / "mnt")
        supervisor.fail_when(is_op("dism", "/Unmount-Image"), rc=1)

        def dism(cmd):
            if "/Cleanup-Mountpoints" in cmd.args:
                raise SpawnError(code=127, msg="command not found: dism")
            return host.dism(cmd)

        supervisor.handlers["dism"] = dism

        res = mounts.detach(h, commit=False)
        assert not res.ok and not res.committed
        assert h.state is MountState.DIRTY
        assert mounts.live_handles() == [h]

    def test_dirty_handle_forced_before_new_attach(self, mounts, supervisor, host, wim, tmp_path):
        """Test that a dirty mount is cleared before the next attach."""
        md = tmp_path / "mnt"
        h = mounts.attach(wim, 1, md)
        supervisor.fail_when(is_op("dism", "/Unmount-Image"), rc=2, times=1)
        supervisor.fail_when(is_op("dism", "/Cleanup-Mountpoints"), rc=2, times=1)
        mounts.detach(h, commit=False)
        assert h.state is MountState.DIRTY

        h2 = mounts.attach(wim, 1, md)
        assert h.state is MountState.UNMOUNTED
        assert h2.state is MountState.MOUNTED
