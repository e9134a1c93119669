# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the Command value type."""
from __future__ import annotations

from pathlib import Path

import pytest

from imgtailor.core.exceptions import SpawnError
from imgtailor.process.command import Command


@pytest.mark.unit
class TestCommand:
    """Test Command construction and validation."""

    def test_of_converts_arguments(self):
        """Test argument conversion in Command.of."""
        cmd = Command.of("dism", "/Index:", 3, Path("C:/mnt"))
        assert cmd.args == ("/Index:", "3", str(Path("C:/mnt")))
        assert cmd.argv()[0] == "dism"

    def test_bool_argument_rejected(self):
        """Test that bool arguments are rejected."""
        with pytest.raises(TypeError):
            Command.of("reg", True)

    def test_extend_keeps_codes(self):
        """Test that extend keeps ok codes."""
        cmd = Command.of("robocopy", "a", ok_codes=range(0, 8)).extend("/MIR")
        assert cmd.args == ("a", "/MIR")
        assert cmd.succeeded(7)
        assert not cmd.succeeded(8)

    @pytest.mark.parametrize(
        "cmd",
        [
            Command(""),
            Command("  "),
            Command("reg", ("add", "HKLM\\x\x00y")),
            Command("reg", ("add", "line\nbreak")),
            Command("reg", ("query",), ok_codes=()),
        ],
    )
    def test_validate_rejects(self, cmd):
        """Test rejected names and arguments."""
        with pytest.raises(SpawnError) as ei:
            cmd.validate()
        assert ei.value.code == 2

    def test_pretty_quotes(self):
        """Test shell quoting for display."""
        cmd = Command.of("reg", "add", "HKLM\\zSOFTWARE\\My Key", "/f")
        assert "'HKLM\\zSOFTWARE\\My Key'" in cmd.pretty()

    def test_description_not_part_of_equality(self):
        """Test equality ignores the description."""
        assert Command.of("dism", "/x", description="a") == Command.of("dism", "/x", description="b")
