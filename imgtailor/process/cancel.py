# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/process/cancel.py
"""
Cancellation tokens polled by the process supervisor.

A token only answers "has someone asked us to stop?". The supervisor decides
what stopping means (terminate, grace period, kill).
"""
from __future__ import annotations

import os
import sys
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

from ..core.utils import U


class CancelToken(ABC):
    @abstractmethod
    def is_cancelled(self) -> bool:
        raise NotImplementedError

    def describe(self) -> str:
        return type(self).__name__

    def reset(self) -> None:
        """Re-arm the token before the next supervised operation."""
        return None

    def close(self) -> None:
        """Release terminal state etc. Safe to call more than once."""
        return None


class NeverCancel(CancelToken):
    def is_cancelled(self) -> bool:
        return False


class EventCancelToken(CancelToken):
    """Programmatic token; `cancel()` may be called from any thread."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


class KeyPressCancelToken(CancelToken):
    """
    Cancels when the operator presses `key` on the controlling terminal.

    Windows reads the console with msvcrt; POSIX puts stdin into cbreak mode on
    first poll (restored by close()) and peeks with select(). When stdin is not
    a TTY the token never fires.
    """

    def __init__(self, key: str = "s", *, stream: Any = None):
        if len(key) != 1:
            raise ValueError(f"cancel key must be a single character (got {key!r})")
        self.key = key.lower()
        self._stream = stream if stream is not None else sys.stdin
        self._fired = False
        self._saved_attrs: Optional[Any] = None
        self._fd: Optional[int] = None
        self._enabled = U.is_tty(self._stream)

    def describe(self) -> str:
        return f"press '{self.key}' to skip"

    def reset(self) -> None:
        self._fired = False

    def is_cancelled(self) -> bool:
        if self._fired:
            return True
        if not self._enabled:
            return False
        for ch in self._drain_keys():
            if ch.lower() == self.key:
                self._fired = True
        return self._fired

    def _drain_keys(self) -> str:
        if os.name == "nt":
            import msvcrt

            out = ""
            while msvcrt.kbhit():
                out += msvcrt.getwch()
            return out

        import select

        self._enter_cbreak()
        out = b""
        # Raw reads on the fd: select() cannot see bytes already pulled into a text buffer.
        while select.select([self._fd], [], [], 0)[0]:
            chunk = os.read(self._fd, 64)
            if not chunk:
                break
            out += chunk
        return out.decode(getattr(self._stream, "encoding", None) or "utf-8", errors="replace")

    def _enter_cbreak(self) -> None:
        if self._saved_attrs is not None:
            return
        import termios
        import tty

        self._fd = self._stream.fileno()
        self._saved_attrs = termios.tcgetattr(self._fd)
        tty.setcbreak(self._fd)

    def close(self) -> None:
        if self._saved_attrs is None or self._fd is None:
            return
        import termios

        termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attrs)
        self._saved_attrs = None
