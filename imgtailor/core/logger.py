# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from termcolor import colored as _colored

from .utils import U

# Below DEBUG; -vvv shows every supervised command line and phase change.
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_LEVEL_MARK = {
    "TRACE": ("🧬", "cyan"),
    "DEBUG": ("🔍", "blue"),
    "INFO": ("✅", "green"),
    "WARNING": ("⚠️", "yellow"),
    "ERROR": ("💥", "red"),
    "CRITICAL": ("🧨", "red"),
}


def c(text: str, color: Optional[str] = None, attrs: Optional[List[str]] = None, *, enable: bool = True) -> str:
    """Colorize text when enabled."""
    if not enable or not color:
        return text
    return _colored(text, color=color, attrs=attrs or [])


Ctx = Mapping[str, Any]


def _flat(v: Any, limit: int = 240) -> str:
    s = str(v).replace("\r", "\\r").replace("\n", "\\n")
    return s if len(s) <= limit else s[: limit - 1] + "…"


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    Logger that stamps every record with a fixed context dict
    (hook name, hive alias, package ...). Formatters render it as k=v pairs.

      log = Log.bind(logger, hook="remove-packages")
      log.bind(package=name).warning("removal failed")
    """

    def __init__(self, logger: logging.Logger, ctx: Optional[Ctx] = None):
        super().__init__(logger, extra={"ctx": dict(ctx or {})})

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        extra = kwargs.get("extra") or {}
        extra["ctx"] = {**self.extra["ctx"], **(extra.get("ctx") or {})}
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **ctx: Any) -> "ContextLoggerAdapter":
        return ContextLoggerAdapter(self.logger, {**self.extra["ctx"], **ctx})


class EmojiFormatter(logging.Formatter):
    """
    Console/file line: `HH:MM:SS 🔍 LEVEL [pid src] message k=v`.
    `detailed` adds milliseconds, pid and module:line.
    """

    def __init__(self, *, color: bool = True, detailed: bool = False):
        super().__init__()
        self.color = color
        self.detailed = detailed

    def format(self, record: logging.LogRecord) -> str:
        dt = _dt.datetime.fromtimestamp(record.created)
        ts = dt.strftime("%H:%M:%S.%f")[:-3] if self.detailed else dt.strftime("%H:%M:%S")
        mark, color = _LEVEL_MARK.get(record.levelname, ("•", None))
        on = self.color and U.is_tty(sys.stderr)

        msg = record.getMessage()
        if record.levelno >= logging.WARNING:
            msg = c(msg, color, ["bold"], enable=on)
        src = f" [pid={os.getpid()} {record.module}:{record.lineno}]" if self.detailed else ""
        ctx = getattr(record, "ctx", None) or {}
        kv = "".join(f" {k}={_flat(v)}" for k, v in sorted(ctx.items()))

        line = f"{ts} {mark} {c(record.levelname, color, enable=on):<8}{src} {msg}{kv}"
        if record.exc_info:
            tb = self.formatException(record.exc_info)
            line += "\n" + c("\n".join("  " + ln for ln in tb.splitlines()), "red", enable=on)
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per line with a UTC timestamp, for CI and log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        obj: Dict[str, Any] = {
            "ts": _dt.datetime.fromtimestamp(record.created, tz=_dt.timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "pid": os.getpid(),
            "module": record.module,
            "lineno": record.lineno,
        }
        ctx = getattr(record, "ctx", None)
        if ctx:
            obj["ctx"] = {str(k): _flat(v) for k, v in ctx.items()}
        if record.exc_info:
            et = record.exc_info[0]
            obj["exc_type"] = et.__name__ if et else "Exception"
            obj["traceback"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False, default=str)


class Log:
    @staticmethod
    def _level_from_flags(verbose: int, quiet: int) -> int:
        """-q WARNING, -qq ERROR, -vv DEBUG, -vvv TRACE; quiet wins."""
        if quiet >= 2:
            return logging.ERROR
        if quiet == 1:
            return logging.WARNING
        if verbose >= 3:
            return TRACE
        if verbose >= 2:
            return logging.DEBUG
        return logging.INFO

    @staticmethod
    def bind(logger: logging.Logger, **ctx: Any) -> ContextLoggerAdapter:
        return ContextLoggerAdapter(logger, ctx)

    @staticmethod
    def step(logger: logging.Logger, msg: str, **ctx: Any) -> None:
        logger.info("➡️  %s", msg, extra={"ctx": ctx} if ctx else None)

    @staticmethod
    def ok(logger: logging.Logger, msg: str, **ctx: Any) -> None:
        logger.info("✅ %s", msg, extra={"ctx": ctx} if ctx else None)

    @staticmethod
    def warn(logger: logging.Logger, msg: str, **ctx: Any) -> None:
        logger.warning("⚠️  %s", msg, extra={"ctx": ctx} if ctx else None)

    @staticmethod
    def fail(logger: logging.Logger, msg: str, **ctx: Any) -> None:
        logger.error("💥 %s", msg, extra={"ctx": ctx} if ctx else None)

    @staticmethod
    def trace(logger: logging.Logger, msg: str, *args: Any) -> None:
        if logger.isEnabledFor(TRACE):
            logger.log(TRACE, msg, *args)

    @staticmethod
    def setup(
        verbose: int = 0,
        log_file: Optional[str] = None,
        *,
        quiet: int = 0,
        color: bool = True,
        json_logs: bool = False,
        logger_name: str = "imgtailor",
    ) -> logging.Logger:
        """
        Configure and return the project's logger. Calling it again replaces
        the handlers instead of stacking them.

        - json_logs=True emits NDJSON on stderr (and in the log file).
        - log_file adds an uncolored, detailed file handler.
        """
        logger = logging.getLogger(logger_name)
        logger.propagate = False
        level = Log._level_from_flags(verbose, quiet)
        logger.setLevel(level)

        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()

        sh = logging.StreamHandler(stream=sys.stderr)
        sh.setFormatter(JsonFormatter() if json_logs else EmojiFormatter(color=color, detailed=verbose >= 3))
        logger.addHandler(sh)

        if log_file:
            fp = Path(log_file).expanduser().resolve()
            U.ensure_dir(fp.parent)
            fh = logging.FileHandler(fp, encoding="utf-8")
            fh.setFormatter(JsonFormatter() if json_logs else EmojiFormatter(color=False, detailed=True))
            logger.addHandler(fh)

        for h in logger.handlers:
            h.setLevel(level)

        logger.debug("Logger initialized (level=%s, pid=%s)", logging.getLevelName(level), os.getpid())
        Log.trace(logger, "TRACE enabled (verbose >= 3)")
        return logger
