# SPDX-License-Identifier: LGPL-3.0-or-later
# imgtailor/mount/__init__.py
"""
Image mounts (DISM) and offline registry hives (reg load/unload).
"""
from .hive import ConfigStoreMountManager, HiveHandle, HiveState, RegTool, UnloadResult
from .image import (
    DetachResult,
    DismImageTool,
    MountHandle,
    MountRecord,
    MountState,
    ResourceMountManager,
)
from .remediation import DirectoryClearer, HostShell, PosixShell, WindowsShell

__all__ = [
    "ConfigStoreMountManager",
    "HiveHandle",
    "HiveState",
    "RegTool",
    "UnloadResult",
    "DetachResult",
    "DismImageTool",
    "MountHandle",
    "MountRecord",
    "MountState",
    "ResourceMountManager",
    "DirectoryClearer",
    "HostShell",
    "PosixShell",
    "WindowsShell",
]
