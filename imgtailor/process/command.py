# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# imgtailor/process/command.py
"""
Typed external command.

Arguments are never joined into a shell string; the argv list goes straight to
the OS. `validate()` rejects values that would otherwise be a path/argument
injection waiting to happen (NUL bytes, embedded newlines, empty program).
"""
from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from os import PathLike
from typing import Iterable, List, Optional, Tuple, Union

from ..core.exceptions import SpawnError

ArgLike = Union[str, int, "PathLike[str]"]


def _arg_text(a: ArgLike) -> str:
    if isinstance(a, bool):
        raise TypeError("bool is not a valid command argument")
    if isinstance(a, int):
        return str(a)
    if isinstance(a, PathLike):
        return str(a.__fspath__())
    if isinstance(a, str):
        return a
    raise TypeError(f"unsupported command argument type: {type(a).__name__}")


@dataclass(frozen=True)
class Command:
    name: str
    args: Tuple[str, ...] = ()
    ok_codes: Tuple[int, ...] = (0,)
    description: Optional[str] = field(default=None, compare=False)

    @classmethod
    def of(
        cls,
        name: str,
        *args: ArgLike,
        ok_codes: Iterable[int] = (0,),
        description: Optional[str] = None,
    ) -> "Command":
        return cls(
            name=name,
            args=tuple(_arg_text(a) for a in args),
            ok_codes=tuple(ok_codes),
            description=description,
        )

    def extend(self, *args: ArgLike) -> "Command":
        return Command(
            name=self.name,
            args=self.args + tuple(_arg_text(a) for a in args),
            ok_codes=self.ok_codes,
            description=self.description,
        )

    def validate(self) -> None:
        if not self.name or not self.name.strip():
            raise SpawnError(code=2, msg="command name is empty")
        if not self.ok_codes:
            raise SpawnError(code=2, msg=f"{self.name}: no accepted exit codes")
        for i, a in enumerate((self.name,) + tuple(self.args)):
            if not isinstance(a, str):
                raise SpawnError(code=2, msg=f"{self.name}: argv[{i}] is not a string")
            if "\x00" in a:
                raise SpawnError(code=2, msg=f"{self.name}: argv[{i}] contains a null byte")
            if "\n" in a or "\r" in a:
                raise SpawnError(code=2, msg=f"{self.name}: argv[{i}] contains a newline")

    def argv(self) -> List[str]:
        return [self.name, *self.args]

    def succeeded(self, exit_code: int) -> bool:
        return exit_code in self.ok_codes

    def pretty(self) -> str:
        return " ".join(shlex.quote(x) for x in self.argv())

    def __str__(self) -> str:
        return self.pretty()
