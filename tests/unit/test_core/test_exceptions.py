# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the error taxonomy and secret redaction."""
from __future__ import annotations

import pytest

from imgtailor.core.exceptions import (
    CommandFailed,
    Fatal,
    ImgTailorError,
    PermissionDenied,
    RetriesExhausted,
    StoreCorrupt,
    format_exception_for_cli,
    wrap_fatal,
)


@pytest.mark.unit
class TestExceptionHierarchy:
    """Test the error classes and their fields."""

    def test_base_exception_creation(self):
        """Test creating the base error."""
        err = ImgTailorError(code=1, msg="Test error")

        assert err.code == 1
        assert err.msg == "Test error"
        assert err.cause is None
        assert err.context == {}

    def test_subclasses_share_base(self):
        """Test that every subclass derives from the base error."""
        for cls in (Fatal, PermissionDenied, StoreCorrupt):
            assert isinstance(cls(msg="x"), ImgTailorError)

    def test_code_is_clamped(self):
        """Test exit code clamping."""
        assert ImgTailorError(code=999).code == 255
        assert ImgTailorError(code=-4).code == 1
        assert ImgTailorError(code="nope").code == 1

    def test_message_is_single_line(self):
        """Test that messages are flattened to one line."""
        err = ImgTailorError(msg="line one\nline two\r\n  three")
        assert err.msg == "line one line two three"
        assert str(err) == err.msg

    def test_with_context_chains(self):
        """Test context chaining."""
        err = ImgTailorError(msg="Error").with_context(alias="zSOFTWARE", attempt=2)
        assert err.context == {"alias": "zSOFTWARE", "attempt": 2}

    def test_command_failed_output_combines_streams(self):
        """Test CommandFailed.output."""
        err = CommandFailed(code=5, msg="reg failed", exit_code=5, stderr="ERROR: Access is denied.", stdout="partial")
        assert err.exit_code == 5
        assert "Access is denied" in err.output
        assert "partial" in err.output

    def test_retries_exhausted_keeps_last_error(self):
        """Test RetriesExhausted fields."""
        last = ValueError("boom")
        err = RetriesExhausted(msg="gave up", attempts=3, last_error=last, cause=last)
        assert err.attempts == 3
        assert err.last_error is last


@pytest.mark.unit
class TestSecretRedaction:
    """Test that secrets are redacted from error contexts."""

    def test_password_redacted_in_dict(self):
        """Test redaction in to_dict()."""
        err = ImgTailorError(msg="Auth failed").with_context(user="admin", password="hunter2")
        d = err.to_dict()
        assert d["context"]["password"] == "***REDACTED***"
        assert d["context"]["user"] == "admin"
        assert d["type"] == "ImgTailorError"

    def test_context_in_cli_format_is_redacted(self):
        """Test redaction in CLI output."""
        err = Fatal(code=2, msg="bad", context={"api_token": "abc", "path": "C:/x"})
        text = format_exception_for_cli(err, verbose=1)
        assert "abc" not in text
        assert "C:/x" in text


@pytest.mark.unit
class TestCliFormatting:
    """Test CLI error formatting."""

    def test_plain_message_at_verbose_zero(self):
        """Test the short form."""
        err = Fatal(code=2, msg="image not found", context={"path": "x"})
        assert format_exception_for_cli(err) == "image not found"

    def test_cause_at_verbose_two(self):
        """Test that the cause shows at -vv."""
        err = wrap_fatal("mount failed", OSError("disk gone"), code=3)
        text = format_exception_for_cli(err, verbose=2)
        assert "OSError" in text
        assert err.code == 3

    def test_foreign_exception(self):
        """Test formatting of a non-project exception."""
        assert format_exception_for_cli(KeyError("k")) == "'k'"
        assert format_exception_for_cli(RuntimeError(""), verbose=0) == "RuntimeError"
