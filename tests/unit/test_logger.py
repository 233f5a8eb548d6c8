"""Unit tests for sanitized logging helpers."""

import logging

from dedup_engine.utils.logger import configure_logging, logger, safe_json, sanitize_text


class TestSanitize:
    """Test scrubbing of personal data from log context."""

    def test_masks_emails_and_urls(self):
        text = sanitize_text("john@acme.com connected via redis://cache:6379/0")
        assert "john@acme.com" not in text
        assert "<email>" in text
        assert "<url>" in text

    def test_masks_uuids(self):
        assert sanitize_text("dup 123e4567-e89b-12d3-a456-426614174000") == "dup <uuid>"

    def test_empty_passthrough(self):
        assert sanitize_text("") == ""

    def test_safe_json_truncates(self):
        out = safe_json({"note": "x " * 1000}, max_length=50)
        assert out.endswith("... [truncated]")

    def test_safe_json_unserializable(self):
        class Loop(dict):
            pass

        loop = Loop()
        loop["self"] = loop
        assert safe_json(loop) == "<unable to serialize>"


class TestConfigureLogging:
    """Test applying the configured level."""

    def test_sets_level(self):
        previous = logger.level
        try:
            configure_logging("debug")
            assert logger.level == logging.DEBUG
            configure_logging("nonsense")
            assert logger.level == logging.INFO
        finally:
            logger.setLevel(previous)
