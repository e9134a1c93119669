# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/process/supervisor.py
"""
Supervision of external commands.

Every dism/reg/robocopy call goes through ProcessSupervisor. The child is
polled (never blocked on) so one loop can interleave:
  - liveness checks every poll interval
  - a heartbeat log line every heartbeat interval
  - cancellation token checks
  - the wall-clock timeout

Timed-out and cancelled runs are outcomes, not exceptions. Only a failure to
launch the program raises (SpawnError).
"""
from __future__ import annotations

import logging
import subprocess
import sys
import tempfile
import time
from contextlib import ExitStack
from dataclasses import dataclass, replace
from enum import Enum
from typing import IO, Callable, Optional

from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from ..core.exceptions import CommandFailed, SpawnError
from ..core.logger import Log
from ..core.utils import U
from .cancel import CancelToken
from .command import Command

_TAIL_CHARS = 64 * 1024

EXIT_TIMED_OUT = 124
EXIT_CANCELLED = 130


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    STILL_RUNNING = "still_running"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    exit_code: Optional[int] = None
    elapsed_s: float = 0.0

    @classmethod
    def completed(cls, exit_code: int, elapsed_s: float) -> "Outcome":
        return cls(OutcomeKind.COMPLETED, int(exit_code), elapsed_s)

    @classmethod
    def timed_out(cls, elapsed_s: float) -> "Outcome":
        return cls(OutcomeKind.TIMED_OUT, None, elapsed_s)

    @classmethod
    def cancelled(cls, elapsed_s: float) -> "Outcome":
        return cls(OutcomeKind.CANCELLED, None, elapsed_s)

    @property
    def is_completed(self) -> bool:
        return self.kind is OutcomeKind.COMPLETED

    @property
    def skipped(self) -> bool:
        """Timed out or cancelled: the caller should treat the step as skipped."""
        return self.kind in (OutcomeKind.TIMED_OUT, OutcomeKind.CANCELLED)

    def __str__(self) -> str:
        if self.is_completed:
            return f"completed(rc={self.exit_code}) in {self.elapsed_s:.1f}s"
        return f"{self.kind.value} after {self.elapsed_s:.1f}s"


@dataclass(frozen=True)
class SupervisorPolicy:
    timeout_s: Optional[float] = None
    poll_interval_s: float = 0.5
    heartbeat_s: float = 30.0
    grace_s: float = 5.0
    cancel_token: Optional[CancelToken] = None

    def __post_init__(self) -> None:
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0 when set")
        if self.grace_s < 0:
            raise ValueError("grace_s must be >= 0")

    def with_overrides(self, **kw) -> "SupervisorPolicy":
        return replace(self, **kw)


@dataclass(frozen=True)
class CommandResult:
    command: Command
    outcome: Outcome
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome.is_completed and self.command.succeeded(int(self.outcome.exit_code or 0))

    @property
    def exit_code(self) -> Optional[int]:
        return self.outcome.exit_code

    @property
    def output(self) -> str:
        return "\n".join(s for s in (self.stderr, self.stdout) if s)


class SupervisedProcess:
    """
    One launched command. The outcome is assigned exactly once; until then the
    status reads STILL_RUNNING.
    """

    def __init__(self, command: Command, policy: SupervisorPolicy, proc: subprocess.Popen, start_time: float):
        self.command = command
        self.policy = policy
        self.proc = proc
        self.start_time = start_time
        self._outcome: Optional[Outcome] = None

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def outcome(self) -> Optional[Outcome]:
        return self._outcome

    @property
    def status(self) -> OutcomeKind:
        return self._outcome.kind if self._outcome is not None else OutcomeKind.STILL_RUNNING

    def settle(self, outcome: Outcome) -> Outcome:
        if self._outcome is not None:
            raise RuntimeError(f"outcome already assigned for pid {self.pid}: {self._outcome}")
        if outcome.kind is OutcomeKind.STILL_RUNNING:
            raise ValueError("STILL_RUNNING is not a terminal outcome")
        self._outcome = outcome
        return outcome


def _read_tail(f: IO[bytes]) -> str:
    f.flush()
    f.seek(0, 2)
    size = f.tell()
    f.seek(max(0, size - _TAIL_CHARS))
    return U.to_text(f.read()).strip()


class ProcessSupervisor:
    def __init__(
        self,
        logger: logging.Logger,
        *,
        default_policy: Optional[SupervisorPolicy] = None,
        show_progress: Optional[bool] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = logger
        self.default_policy = default_policy or SupervisorPolicy()
        self.show_progress = U.is_tty(sys.stderr) if show_progress is None else bool(show_progress)
        self.clock = clock

    # -----------------------
    # public API
    # -----------------------

    def spawn(self, command: Command, policy: Optional[SupervisorPolicy] = None) -> Outcome:
        return self.execute(command, policy).outcome

    def run(self, command: Command, policy: Optional[SupervisorPolicy] = None, *, check: bool = True) -> CommandResult:
        """
        execute() plus the exit-code contract: with check=True anything other
        than a completed run with an accepted exit code raises CommandFailed.
        """
        res = self.execute(command, policy)
        if check and not res.ok:
            raise self.failure(res)
        return res

    @staticmethod
    def failure(res: CommandResult) -> CommandFailed:
        o = res.outcome
        if o.kind is OutcomeKind.TIMED_OUT:
            code, what = EXIT_TIMED_OUT, f"timed out after {o.elapsed_s:.1f}s"
        elif o.kind is OutcomeKind.CANCELLED:
            code, what = EXIT_CANCELLED, "cancelled by operator"
        else:
            code, what = int(o.exit_code or 1), f"exited with rc={o.exit_code}"
        return CommandFailed(
            code=code,
            msg=f"{res.command.name} {what}",
            context={"cmd": res.command.pretty()},
            exit_code=o.exit_code,
            outcome=o.kind.value,
            stderr=res.stderr,
            stdout=res.stdout,
        )

    def execute(self, command: Command, policy: Optional[SupervisorPolicy] = None) -> CommandResult:
        command.validate()
        pol = policy or self.default_policy
        pretty = command.pretty()
        self.logger.debug("Running: %s", pretty)

        with ExitStack() as stack:
            out_f = stack.enter_context(tempfile.TemporaryFile())
            err_f = stack.enter_context(tempfile.TemporaryFile())
            try:
                proc = subprocess.Popen(
                    command.argv(),
                    stdin=subprocess.DEVNULL,
                    stdout=out_f,
                    stderr=err_f,
                )
            except FileNotFoundError as e:
                raise SpawnError(code=127, msg=f"command not found: {command.name}", cause=e, context={"cmd": pretty})
            except OSError as e:
                raise SpawnError(code=126, msg=f"cannot launch {command.name}: {e}", cause=e, context={"cmd": pretty})

            sp = SupervisedProcess(command, pol, proc, self.clock())
            try:
                outcome = self._supervise(sp, stack)
            finally:
                if proc.poll() is None:
                    # Only reachable if the loop itself raised; never leave the child behind.
                    proc.kill()
                    proc.wait()

            result = CommandResult(command, outcome, _read_tail(out_f), _read_tail(err_f))

        if outcome.is_completed:
            Log.trace(self.logger, "%s -> %s", pretty, outcome)
        else:
            self.logger.warning("%s: %s", command.description or command.name, outcome)
        return result

    # -----------------------
    # polling loop
    # -----------------------

    def _progress(self, stack: ExitStack, command: Command):
        if not (self.show_progress and command.description):
            return None, None
        progress = stack.enter_context(
            Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                TimeElapsedColumn(),
                transient=True,
            )
        )
        return progress, progress.add_task(command.description, total=None)

    def _supervise(self, sp: SupervisedProcess, stack: ExitStack) -> Outcome:
        pol = sp.policy
        token = pol.cancel_token
        label = sp.command.description or sp.command.name
        next_hb = sp.start_time + pol.heartbeat_s
        progress, task_id = self._progress(stack, sp.command)

        if token is not None and sp.command.description:
            self.logger.info("⏳ %s (%s)", label, token.describe())

        while True:
            rc = sp.proc.poll()
            now = self.clock()
            elapsed = now - sp.start_time
            if rc is not None:
                return sp.settle(Outcome.completed(rc, elapsed))

            if token is not None and token.is_cancelled():
                self.logger.warning("🛑 Cancel requested for %s after %s; terminating", label, U.human_duration(elapsed))
                self._terminate(sp)
                return sp.settle(Outcome.cancelled(self.clock() - sp.start_time))

            if pol.timeout_s is not None and elapsed >= pol.timeout_s:
                self.logger.warning("⏱️  %s exceeded timeout %s; killing", label, U.human_duration(pol.timeout_s))
                sp.proc.kill()
                sp.proc.wait()
                return sp.settle(Outcome.timed_out(self.clock() - sp.start_time))

            if now >= next_hb:
                remaining = None if pol.timeout_s is None else pol.timeout_s - elapsed
                self.logger.info(
                    "⏳ %s still running: elapsed %s, remaining %s",
                    label,
                    U.human_duration(elapsed),
                    U.human_duration(remaining),
                )
                next_hb += pol.heartbeat_s

            if progress is not None:
                progress.update(task_id, description=label)

            wait = pol.poll_interval_s
            if pol.timeout_s is not None:
                wait = max(0.01, min(wait, pol.timeout_s - elapsed))
            time.sleep(wait)

    def _terminate(self, sp: SupervisedProcess) -> None:
        """Terminate, wait the grace period, then kill."""
        sp.proc.terminate()
        try:
            sp.proc.wait(timeout=sp.policy.grace_s)
            self.logger.info("%s exited after terminate request", sp.command.name)
            return
        except subprocess.TimeoutExpired:
            pass
        self.logger.warning("%s ignored terminate for %.1fs; killing", sp.command.name, sp.policy.grace_s)
        sp.proc.kill()
        sp.proc.wait()
