# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/registry/settings.py
"""
Batch writes of registry settings into a loaded offline hive.

Each record is independent: it gets its own retry loop, and a record that
still fails after its retries is reported and skipped, never aborting the
rest of the batch.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..core.context import RunContext
from ..core.exceptions import (
    CommandFailed,
    ImgTailorError,
    PermissionDenied,
    RetriesExhausted,
    SpawnError,
    StoreCorrupt,
)
from ..core.logger import Log
from ..core.retry import BACKOFF_LINEAR, RetryPolicy
from ..mount.hive import HiveHandle, RegTool, classify_reg_failure

REG_SZ = "REG_SZ"
REG_EXPAND_SZ = "REG_EXPAND_SZ"
REG_MULTI_SZ = "REG_MULTI_SZ"
REG_DWORD = "REG_DWORD"
REG_QWORD = "REG_QWORD"
REG_BINARY = "REG_BINARY"
REG_NONE = "REG_NONE"

VALUE_TYPES = (REG_SZ, REG_EXPAND_SZ, REG_MULTI_SZ, REG_DWORD, REG_QWORD, REG_BINARY, REG_NONE)

_INT_LIMITS = {REG_DWORD: 0xFFFFFFFF, REG_QWORD: 0xFFFFFFFFFFFFFFFF}

# reg.exe errors that no amount of retrying fixes.
_FATAL_HINTS = ("invalid syntax", "invalid parameter", "invalid key name", "type mismatch")


def normalize_key_path(path: str) -> str:
    parts = [p for p in str(path or "").replace("/", "\\").split("\\") if p.strip()]
    return "\\".join(p.strip() for p in parts)


def _as_int(value: Any, value_type: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{value_type} value must be an integer, not bool")
    if isinstance(value, int):
        v = value
    elif isinstance(value, str):
        try:
            v = int(value.strip(), 0)
        except ValueError:
            raise ValueError(f"{value_type} value is not an integer: {value!r}")
    else:
        raise ValueError(f"{value_type} value must be an integer (got {type(value).__name__})")
    if v < 0 or v > _INT_LIMITS[value_type]:
        raise ValueError(f"{value_type} value out of range: {v}")
    return v


def _as_binary(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        s = value.replace(" ", "").replace(",", "")
        try:
            return bytes.fromhex(s)
        except ValueError:
            raise ValueError(f"REG_BINARY value is not hex: {value!r}")
    if isinstance(value, (list, tuple)):
        return bytes(int(b) for b in value)
    raise ValueError(f"unsupported REG_BINARY value: {type(value).__name__}")


@dataclass(frozen=True)
class SettingRecord:
    """
    One registry value to write, relative to the hive alias root.

    An empty `name` targets the key's default value. The value is validated
    and normalized at construction; invalid records raise ValueError.
    """
    path: str
    name: str = ""
    value_type: str = REG_SZ
    value: Any = None

    def __post_init__(self) -> None:
        path = normalize_key_path(self.path)
        if not path:
            raise ValueError("setting path must not be empty")
        vt = str(self.value_type or "").strip().upper()
        if vt not in VALUE_TYPES:
            raise ValueError(f"unknown value type {self.value_type!r} (expected one of {', '.join(VALUE_TYPES)})")
        object.__setattr__(self, "path", path)
        object.__setattr__(self, "name", "" if self.name is None else str(self.name))
        object.__setattr__(self, "value_type", vt)
        object.__setattr__(self, "value", self._normalized_value(vt, self.value))

    @staticmethod
    def _normalized_value(vt: str, value: Any) -> Any:
        if vt in _INT_LIMITS:
            return _as_int(value, vt)
        if vt == REG_BINARY:
            return _as_binary(value)
        if vt == REG_MULTI_SZ:
            if value is None:
                return ()
            if isinstance(value, str):
                return (value,)
            return tuple(str(v) for v in value)
        if vt == REG_NONE:
            return None
        if value is None:
            return ""
        if isinstance(value, (dict, list, tuple, set)):
            raise ValueError(f"{vt} value must be a scalar (got {type(value).__name__})")
        return str(value)

    def data(self) -> Optional[str]:
        """The `/d` argument for reg.exe (None means omit it)."""
        if self.value_type in _INT_LIMITS:
            return str(self.value)
        if self.value_type == REG_BINARY:
            return self.value.hex().upper()
        if self.value_type == REG_MULTI_SZ:
            # reg.exe separator for multi-string data is the literal "\0".
            return "\\0".join(self.value)
        if self.value_type == REG_NONE:
            return None
        return self.value

    def describe(self) -> str:
        return f"{self.path}\\{self.name or '(default)'}"

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "SettingRecord":
        if not isinstance(d, Mapping):
            raise ValueError(f"setting must be a mapping (got {type(d).__name__})")
        path = d.get("path", d.get("key"))
        if path is None:
            raise ValueError(f"setting has no path: {dict(d)!r}")
        return cls(
            path=str(path),
            name=d.get("name", "") or "",
            value_type=d.get("type", REG_SZ),
            value=d.get("value"),
        )


class ErrorClass(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    TRANSIENT = "transient"
    FATAL = "fatal"


def classify_error(e: BaseException) -> ErrorClass:
    if isinstance(e, PermissionDenied):
        return ErrorClass.PERMISSION_DENIED
    if isinstance(e, (StoreCorrupt, SpawnError, ValueError)):
        return ErrorClass.FATAL
    if isinstance(e, CommandFailed):
        text = e.output.lower()
        if any(h in text for h in _FATAL_HINTS):
            return ErrorClass.FATAL
        return ErrorClass.TRANSIENT
    if isinstance(e, (ImgTailorError, OSError)):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


@dataclass(frozen=True)
class RecordStatus:
    record: SettingRecord
    ok: bool
    attempts: int
    target_path: str
    error_class: Optional[ErrorClass] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "setting": self.record.describe(),
            "ok": self.ok,
            "attempts": self.attempts,
            "target_path": self.target_path,
            "error_class": self.error_class.value if self.error_class else None,
            "error": self.error,
        }


@dataclass
class BatchResult:
    statuses: List[RecordStatus] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.statuses)

    @property
    def success_count(self) -> int:
        return sum(1 for s in self.statuses if s.ok)

    @property
    def failure_count(self) -> int:
        return self.total - self.success_count

    @property
    def failures(self) -> List[RecordStatus]:
        return [s for s in self.statuses if not s.ok]


AlternatePath = Callable[[SettingRecord], Optional[str]]


class SettingApplier:
    def __init__(
        self,
        ctx: RunContext,
        *,
        tool: Optional[RegTool] = None,
        max_attempts: int = 5,
        backoff_s: float = 1.0,
        alternate_path: Optional[AlternatePath] = None,
    ):
        self.ctx = ctx
        self.logger = ctx.logger
        self.tool = tool or RegTool()
        self.alternate_path = alternate_path
        self.policy = RetryPolicy(
            max_attempts=max_attempts,
            base_backoff_s=backoff_s,
            backoff=BACKOFF_LINEAR,
            is_retryable=lambda e: classify_error(e) is not ErrorClass.FATAL,
            sleep=ctx.sleep,
        )

    def apply(self, handle: HiveHandle, records: Iterable[SettingRecord]) -> BatchResult:
        if not handle.loaded:
            raise ValueError(f"hive {handle.alias} is not loaded")
        batch = BatchResult()
        records = list(records)
        Log.step(self.logger, f"Applying {len(records)} setting(s) to {handle.key}")
        for rec in records:
            batch.statuses.append(self._apply_one(handle, rec))

        if batch.failure_count:
            Log.warn(self.logger, f"{handle.key}: {batch.success_count}/{batch.total} settings applied")
            for s in batch.failures:
                self.logger.warning("  failed %s [%s]: %s", s.record.describe(), s.error_class.value, s.error)
        else:
            Log.ok(self.logger, f"{handle.key}: {batch.success_count}/{batch.total} settings applied")
        return batch

    def _apply_one(self, handle: HiveHandle, rec: SettingRecord) -> RecordStatus:
        target = {"path": rec.path, "switched": False}
        attempts = 0

        def attempt(n: int) -> None:
            nonlocal attempts
            attempts = n
            self._ensure_key(handle.alias, target["path"])
            key = self.tool.key(handle.alias, target["path"])
            cmd = self.tool.add_value(key, rec.name, rec.value_type, rec.data())
            try:
                self.ctx.supervisor.run(cmd, self.ctx.command_policy)
            except CommandFailed as e:
                raise classify_reg_failure(e)

        def on_retry(_n: int, e: BaseException) -> None:
            if classify_error(e) is not ErrorClass.PERMISSION_DENIED:
                return
            if self.alternate_path is None or target["switched"]:
                return
            alt = self.alternate_path(rec)
            if alt:
                alt = normalize_key_path(alt)
                self.logger.info("Access denied on %s; retrying via %s", target["path"], alt)
                target["path"] = alt
                target["switched"] = True

        try:
            self.policy.call(attempt, operation_name=f"set {rec.describe()}", logger=self.logger)
        except RetriesExhausted as e:
            last = e.last_error or e
            return RecordStatus(rec, False, attempts, target["path"], classify_error(last), str(last))
        except (ImgTailorError, ValueError) as e:
            return RecordStatus(rec, False, attempts, target["path"], ErrorClass.FATAL, str(e))

        Log.trace(self.logger, "set %s\\%s (%s)", target["path"], rec.name or "(default)", rec.value_type)
        return RecordStatus(rec, True, attempts, target["path"])

    def _ensure_key(self, alias: str, path: str) -> None:
        """Create the key chain one level at a time; an existing level counts as success."""
        parts = path.split("\\")
        for depth in range(1, len(parts) + 1):
            key = self.tool.key(alias, "\\".join(parts[:depth]))
            res = self.ctx.supervisor.run(self.tool.add_key(key), self.ctx.command_policy, check=False)
            if res.ok:
                continue
            probe = self.ctx.supervisor.run(self.tool.query(key), self.ctx.command_policy, check=False)
            if probe.ok:
                continue
            raise classify_reg_failure(self.ctx.supervisor.failure(res))
