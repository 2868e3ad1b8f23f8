"""Tests for utility helpers."""

import json
import logging

from stackpipe.utils import (
    StructuredFormatter,
    format_duration,
    get_directory_checksum,
    sanitize_error_message,
)

TOKEN = "ghp_" + "A" * 36


class TestSanitizeErrorMessage:

    def test_masks_token(self):
        assert sanitize_error_message(f"clone failed: {TOKEN}") == "clone failed: [REDACTED]"

    def test_token_across_truncation_boundary(self):
        message = "x" * 480 + TOKEN + "z" * 100
        sanitized = sanitize_error_message(message, max_length=500)
        assert "ghp_" not in sanitized
        assert "AAAA" not in sanitized
        assert sanitized.endswith("...")

    def test_truncates_long_message(self):
        sanitized = sanitize_error_message("y" * 600)
        assert sanitized == "y" * 500 + "..."

    def test_accepts_exception(self):
        assert sanitize_error_message(ValueError(TOKEN)) == "[REDACTED]"


class TestStructuredFormatter:

    def test_masks_message_and_keeps_extra(self):
        record = logging.LogRecord("stackpipe", logging.INFO, __file__, 1, f"token {TOKEN}", None, None)
        record.event = "stage_failed"
        data = json.loads(StructuredFormatter().format(record))
        assert data["message"] == "token [REDACTED]"
        assert data["event"] == "stage_failed"


def test_format_duration():
    assert format_duration(45) == "45s"
    assert format_duration(83) == "1m 23s"
    assert format_duration(3725) == "1h 2m 5s"


def test_directory_checksum_ignores_git(tmp_path):
    (tmp_path / "a.txt").write_text("a")
    before = get_directory_checksum(tmp_path)
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref")
    assert get_directory_checksum(tmp_path) == before
