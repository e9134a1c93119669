# SPDX-License-Identifier: LGPL-3.0-or-later
# imgtailor/process/__init__.py
"""
External command execution: typed commands, cancellation tokens, supervisor.
"""
from .cancel import CancelToken, EventCancelToken, KeyPressCancelToken, NeverCancel
from .command import Command
from .supervisor import (
    CommandResult,
    Outcome,
    OutcomeKind,
    ProcessSupervisor,
    SupervisedProcess,
    SupervisorPolicy,
)

__all__ = [
    "CancelToken",
    "EventCancelToken",
    "KeyPressCancelToken",
    "NeverCancel",
    "Command",
    "CommandResult",
    "Outcome",
    "OutcomeKind",
    "ProcessSupervisor",
    "SupervisedProcess",
    "SupervisorPolicy",
]
