# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the full attach, configure, detach and export pipeline."""
from __future__ import annotations

import json

import pytest

from fakes.fake_host import is_op
from imgtailor.core.exceptions import PermissionDenied, SpawnError
from imgtailor.mount.hive import ConfigStoreMountManager
from imgtailor.mount.image import ResourceMountManager
from imgtailor.mount.remediation import PosixShell
from imgtailor.orchestrator import (
    EXIT_CLEANUP_FAILED,
    EXIT_COMPLETED_WITH_ERRORS,
    EXIT_EXPORT_FAILED,
    EXIT_OK,
    EXIT_PROCESSING_FAILED,
    DEFAULT_HIVES,
    ExportHook,
    HiveSpec,
    HookResult,
    HookStatus,
    ImageJob,
    MutationHook,
    Orchestrator,
    RunPhase,
    SettingsHook,
)
from imgtailor.registry.settings import SettingRecord

THREE_HIVES = DEFAULT_HIVES[:3]


class ExplodingHook(MutationHook):
    name = "explode"

    def run(self, ctx, image):
        raise RuntimeError("hook blew up")


class InterruptedHook(MutationHook):
    name = "interrupted"

    def run(self, ctx, image):
        raise KeyboardInterrupt


class RecordingHook(MutationHook):
    name = "record"

    def __init__(self, status=HookStatus.OK):
        self.status = status
        self.seen = None

    def run(self, ctx, image):
        self.seen = sorted(image.hives)
        return HookResult(self.name, self.status)


@pytest.fixture
def orch(ctx):
    return Orchestrator(
        ctx,
        mounts=ResourceMountManager(ctx, shell=PosixShell(), settle_s=0),
        hives=ConfigStoreMountManager(ctx, shell=PosixShell()),
    )


@pytest.fixture
def job(wim, tmp_path):
    return ImageJob(image_path=wim, index=1, mount_dir=tmp_path / "mnt", hives=THREE_HIVES)


def _cleanup_ops(supervisor):
    return [o for o in supervisor.ops() if o.startswith("reg unload") or o == "dism /Unmount-Image"]


@pytest.mark.unit
class TestHappyPath:
    """Test runs that commit."""

    def test_clean_run_commits_and_exports(self, orch, job, host, supervisor, tmp_path):
        """Test commit, export and the phase sequence."""
        dest = tmp_path / "out" / "final.wim"
        job.hooks = [SettingsHook("zSOFTWARE", [SettingRecord("Policies\\X", "On", "REG_DWORD", 1)])]
        job.export = ExportHook(dest)

        report = orch.run(job)

        assert report.exit_code() == EXIT_OK
        assert report.phase is RunPhase.COMMITTED
        assert report.settings_ok == 1
        assert host.unmounts == [(str(job.mount_dir), True)]
        assert host.exports == [str(dest)]
        assert report.export.status is HookStatus.OK
        assert report.phases == [
            RunPhase.ATTACHING,
            RunPhase.MOUNTED,
            RunPhase.LOADING,
            RunPhase.CONFIGURING,
            RunPhase.UNLOADING,
            RunPhase.DETACHING,
            RunPhase.COMMITTED,
            RunPhase.EXPORTING,
            RunPhase.COMMITTED,
        ]
        ops = supervisor.ops()
        assert ops.index("dism /Unmount-Image") < ops.index("dism /Export-Image")

    def test_hooks_see_loaded_hives(self, orch, job):
        """Test that hooks receive the loaded hives."""
        hook = RecordingHook()
        job.hooks = [hook]
        orch.run(job)
        assert hook.seen == ["zDEFAULT", "zSOFTWARE", "zSYSTEM"]

    def test_default_hives_include_optional_components(self, orch, job, host):
        """Test the default hive set."""
        job.hives = DEFAULT_HIVES
        report = orch.run(job)
        assert report.exit_code() == EXIT_OK
        assert len(report.unloads) == 5

    def test_missing_optional_hive_skipped(self, orch, job):
        """Test that an absent optional hive is skipped."""
        job.hives = list(THREE_HIVES) + [HiveSpec("zEXTRA", "Windows/System32/config/EXTRA", optional=True)]
        report = orch.run(job)
        assert report.exit_code() == EXIT_OK
        assert [u.alias for u in report.unloads] == ["zDEFAULT", "zSYSTEM", "zSOFTWARE"]

    def test_commit_disabled_discards(self, orch, job, host, tmp_path):
        """Test that commit=False discards a clean run."""
        job.commit = False
        job.export = ExportHook(tmp_path / "never.wim")
        report = orch.run(job)
        assert report.phase is RunPhase.DISCARDED
        assert report.exit_code() == EXIT_OK
        assert host.unmounts == [(str(job.mount_dir), False)]
        assert host.exports == []


@pytest.mark.unit
class TestFailures:
    """Test failure handling and guaranteed cleanup."""

    def test_raising_hook_unloads_every_hive_then_discards(self, orch, job, ctx, host, supervisor):
        """Test cleanup order after a hook raises."""
        job.hooks = [ExplodingHook()]

        report = orch.run(job)

        assert _cleanup_ops(supervisor) == [
            "reg unload HKLM\\zDEFAULT",
            "reg unload HKLM\\zSYSTEM",
            "reg unload HKLM\\zSOFTWARE",
            "dism /Unmount-Image",
        ]
        assert host.unmounts == [(str(job.mount_dir), False)]
        assert report.failed_phase is RunPhase.CONFIGURING
        assert report.phase is RunPhase.FAILED
        assert report.cleanup_ok
        assert report.exit_code() == EXIT_PROCESSING_FAILED
        assert not ctx.open_hives
        assert host.loaded == {}

    def test_interrupted_hook_discards_and_reraises(self, orch, job, ctx, host, supervisor):
        """Ctrl+C inside a hook still unloads every hive and discards the image."""
        job.hooks = [InterruptedHook()]

        with pytest.raises(KeyboardInterrupt):
            orch.run(job)

        assert _cleanup_ops(supervisor) == [
            "reg unload HKLM\\zDEFAULT",
            "reg unload HKLM\\zSYSTEM",
            "reg unload HKLM\\zSOFTWARE",
            "dism /Unmount-Image",
        ]
        assert host.unmounts == [(str(job.mount_dir), False)]
        assert host.loaded == {}
        assert not ctx.open_hives

    def test_interrupted_hive_load_discards(self, orch, job, host, supervisor):
        """Ctrl+C while loading hives unloads the ones already loaded and discards."""
        def reg(cmd):
            if cmd.args[0] == "load" and "zSYSTEM" in cmd.args[1]:
                raise KeyboardInterrupt
            return host.reg(cmd)

        supervisor.handlers["reg"] = reg

        with pytest.raises(KeyboardInterrupt):
            orch.run(job)

        assert _cleanup_ops(supervisor) == ["reg unload HKLM\\zSOFTWARE", "dism /Unmount-Image"]
        assert host.unmounts == [(str(job.mount_dir), False)]

    def test_hooks_after_failure_not_run(self, orch, job):
        """Test that later hooks are not run."""
        later = RecordingHook()
        job.hooks = [ExplodingHook(), later]
        orch.run(job)
        assert later.seen is None

    def test_attach_failure(self, orch, job, supervisor):
        """Test an attach failure."""
        supervisor.fail_when(is_op("dism", "/Mount-Image"), rc=5, stderr="Error: 5 Access is denied.")
        report = orch.run(job)
        assert report.failed_phase is RunPhase.ATTACHING
        assert isinstance(report.error, PermissionDenied)
        assert report.phase is RunPhase.FAILED
        assert report.cleanup_ok
        assert report.exit_code() == EXIT_PROCESSING_FAILED
        assert not [o for o in supervisor.ops() if o.startswith("reg ")]

    def test_hive_load_failure_unloads_loaded_ones(self, orch, job, host, supervisor):
        """Test that a load failure unloads earlier hives."""
        job.hives = [THREE_HIVES[0], HiveSpec("zMISSING", "Windows/System32/config/NOPE"), THREE_HIVES[1]]
        report = orch.run(job)
        assert report.failed_phase is RunPhase.LOADING
        assert _cleanup_ops(supervisor) == ["reg unload HKLM\\zSOFTWARE", "dism /Unmount-Image"]
        assert host.unmounts[-1][1] is False
        assert report.exit_code() == EXIT_PROCESSING_FAILED

    def test_stuck_hive_forces_discard_and_cleanup_failure(self, orch, job, host, supervisor):
        """Test a hive that will not unload."""
        supervisor.fail_when(is_op("reg", "unload", "zsystem"), stderr="ERROR: Access is denied.")
        report = orch.run(job)

        assert [u.ok for u in report.unloads] == [True, False, True]
        assert host.unmounts == [(str(job.mount_dir), False)]
        assert report.phase is RunPhase.DISCARDED
        assert not report.cleanup_ok
        assert report.exit_code() == EXIT_CLEANUP_FAILED

    def test_unlaunchable_cleanup_reported_not_raised(self, orch, job, host, supervisor):
        """A detach that cannot even run dism cleanup ends as a cleanup failure."""
        supervisor.fail_when(is_op("dism", "/Unmount-Image"), rc=1)

        def dism(cmd):
            if "/Cleanup-Mountpoints" in cmd.args:
                raise SpawnError(code=127, msg="command not found: dism")
            return host.dism(cmd)

        supervisor.handlers["dism"] = dism

        report = orch.run(job)
        assert not report.detach.ok
        assert not report.cleanup_ok
        assert report.exit_code() == EXIT_CLEANUP_FAILED

    def test_commit_failure_is_processing_failure(self, orch, job, host, supervisor, tmp_path):
        """Test a failed commit."""
        supervisor.fail_when(is_op("dism", "/Unmount-Image", "/Commit"), rc=2, stderr="Error: 0xc1510111")
        job.export = ExportHook(tmp_path / "o.wim")
        report = orch.run(job)
        assert report.failed_phase is RunPhase.DETACHING
        assert report.phase is RunPhase.FAILED
        assert report.cleanup_ok
        assert report.export is None
        assert host.unmounts == [(str(job.mount_dir), False)]
        assert report.exit_code() == EXIT_PROCESSING_FAILED

    def test_partial_settings_commit_with_errors(self, orch, job, supervisor):
        """Test partial settings."""
        supervisor.fail_when(is_op("reg", "add", "/v Bad"), stderr="ERROR: Invalid syntax.")
        job.hooks = [
            SettingsHook(
                "zSOFTWARE",
                [SettingRecord("K", "Good", "REG_SZ", "x"), SettingRecord("K", "Bad", "REG_SZ", "x")],
            )
        ]
        report = orch.run(job)
        assert report.committed
        assert (report.settings_ok, report.settings_failed) == (1, 1)
        assert report.exit_code() == EXIT_COMPLETED_WITH_ERRORS

    def test_failed_optional_hook_commits_with_errors(self, orch, job):
        """Test a failed optional hook."""
        job.hooks = [RecordingHook(HookStatus.FAILED)]
        report = orch.run(job)
        assert report.committed
        assert report.exit_code() == EXIT_COMPLETED_WITH_ERRORS

    def test_export_failure(self, orch, job, supervisor, tmp_path):
        """Test a failed export."""
        supervisor.fail_when(is_op("dism", "/Export-Image"), rc=112, stderr="disk full")
        job.export = ExportHook(tmp_path / "o.wim")
        report = orch.run(job)
        assert report.committed
        assert report.export.status is HookStatus.FAILED
        assert report.exit_code() == EXIT_EXPORT_FAILED

    def test_report_serializes(self, orch, job):
        """Test JSON serialization of the report."""
        job.hooks = [ExplodingHook()]
        d = json.loads(json.dumps(orch.run(job).to_dict()))
        assert d["failed_phase"] == "configuring"
        assert d["error"] == "hook blew up"
        assert d["exit_code"] == EXIT_PROCESSING_FAILED
        assert len(d["unloads"]) == 3
