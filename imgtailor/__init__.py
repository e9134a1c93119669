# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/__init__.py
"""
imgtailor - offline Windows image customization

Mounts a WIM image, loads its registry hives, applies settings and other
mutation hooks, and always unloads and detaches again (committing only a
clean run). Every external tool runs under a supervisor with timeouts,
heartbeats and operator cancellation.

Usage as a library:

    from imgtailor import ImageJob, Orchestrator, RunContext, SettingsHook, SettingRecord

    ctx = RunContext.create(logger, Path("work"))
    job = ImageJob(Path("install.wim"), 6, Path(r"C:\\mnt\\wim"),
                   hooks=[SettingsHook("zSOFTWARE", [SettingRecord("Policies\\X", "Y", "REG_DWORD", 1)])])
    report = Orchestrator(ctx).run(job)
"""

__version__ = "0.1.0"

from .core.context import RunContext
from .core.exceptions import Fatal, ImgTailorError
from .orchestrator import (
    CommandHook,
    ExportHook,
    HiveSpec,
    ImageJob,
    Orchestrator,
    PackageRemovalHook,
    RunReport,
    SettingsHook,
)
from .registry import SettingRecord

__all__ = [
    "__version__",
    "RunContext",
    "Fatal",
    "ImgTailorError",
    "CommandHook",
    "ExportHook",
    "HiveSpec",
    "ImageJob",
    "Orchestrator",
    "PackageRemovalHook",
    "RunReport",
    "SettingsHook",
    "SettingRecord",
]
