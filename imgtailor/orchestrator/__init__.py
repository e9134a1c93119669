# SPDX-License-Identifier: LGPL-3.0-or-later
# imgtailor/orchestrator/__init__.py
from .hooks import (
    CommandHook,
    ExportHook,
    HookResult,
    HookStatus,
    MountedImage,
    MutationHook,
    PackageRemovalHook,
    SettingsHook,
)
from .orchestrator import (
    DEFAULT_HIVES,
    EXIT_CLEANUP_FAILED,
    EXIT_COMPLETED_WITH_ERRORS,
    EXIT_EXPORT_FAILED,
    EXIT_OK,
    EXIT_PROCESSING_FAILED,
    HiveSpec,
    ImageJob,
    Orchestrator,
    RunPhase,
    RunReport,
)

__all__ = [
    "CommandHook",
    "ExportHook",
    "HookResult",
    "HookStatus",
    "MountedImage",
    "MutationHook",
    "PackageRemovalHook",
    "SettingsHook",
    "DEFAULT_HIVES",
    "EXIT_CLEANUP_FAILED",
    "EXIT_COMPLETED_WITH_ERRORS",
    "EXIT_EXPORT_FAILED",
    "EXIT_OK",
    "EXIT_PROCESSING_FAILED",
    "HiveSpec",
    "ImageJob",
    "Orchestrator",
    "RunPhase",
    "RunReport",
]
