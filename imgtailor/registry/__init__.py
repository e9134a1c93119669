# SPDX-License-Identifier: LGPL-3.0-or-later
# imgtailor/registry/__init__.py
from .settings import (
    VALUE_TYPES,
    BatchResult,
    ErrorClass,
    RecordStatus,
    SettingApplier,
    SettingRecord,
)

__all__ = [
    "VALUE_TYPES",
    "BatchResult",
    "ErrorClass",
    "RecordStatus",
    "SettingApplier",
    "SettingRecord",
]
