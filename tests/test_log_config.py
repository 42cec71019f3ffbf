"""Tests for printer_mcp.log_config: scrubbing and handler setup."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler

import pytest

from printer_mcp import log_config
from printer_mcp.log_config import ScrubFilter, _scrub, configure_logging, register_secret


@pytest.fixture(autouse=True)
def _reset_secrets():
    saved = set(log_config._KNOWN_SECRETS)
    yield
    log_config._KNOWN_SECRETS.clear()
    log_config._KNOWN_SECRETS.update(saved)


@pytest.fixture
def clean_root():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    root.handlers = []
    yield root
    for handler in root.handlers:
        handler.close()
    root.handlers = saved_handlers
    root.setLevel(saved_level)


class TestScrub:
    @pytest.mark.parametrize("text,secret", [
        ("api_key=abc123", "abc123"),
        ('{"X-Api-Key": "abc123"}', "abc123"),
        ("password: hunter22", "hunter22"),
        ("access_code=87654321", "87654321"),
        ("X-Session-Key: 99887766", "99887766"),
    ])
    def test_patterns(self, text: str, secret: str) -> None:
        scrubbed = _scrub(text)
        assert secret not in scrubbed
        assert "***REDACTED***" in scrubbed

    def test_registered_composite_keeps_serial(self) -> None:
        register_secret("01S00A000:87654321")
        scrubbed = _scrub("connecting with 01S00A000:87654321")
        assert "87654321" not in scrubbed
        assert "01S00A000" in scrubbed

    def test_short_secret_ignored(self) -> None:
        register_secret("ab")
        assert _scrub("a table") == "a table"

    def test_filter_scrubs_args(self) -> None:
        register_secret("s3cr3tcode")
        record = logging.LogRecord("t", logging.INFO, __file__, 1, "code %s", ("s3cr3tcode",), None)
        assert ScrubFilter().filter(record) is True
        assert record.getMessage() == "code ***REDACTED***"


class TestConfigureLogging:
    def test_handlers_installed_once(self, tmp_path, clean_root) -> None:
        configure_logging(str(tmp_path), level="DEBUG")
        configure_logging(str(tmp_path), level="DEBUG")
        rotating = [h for h in clean_root.handlers if isinstance(h, RotatingFileHandler)]
        stderr = [
            h for h in clean_root.handlers
            if type(h) is logging.StreamHandler and h.stream is sys.stderr
        ]
        assert len(rotating) == 1
        assert len(stderr) == 1
        assert clean_root.level == logging.DEBUG
        assert all(any(isinstance(f, ScrubFilter) for f in h.filters) for h in clean_root.handlers)
        assert (tmp_path / "printer-mcp.log").exists()

    def test_file_output_scrubbed(self, tmp_path, clean_root) -> None:
        configure_logging(str(tmp_path), stderr=False)
        logging.getLogger("printer_mcp.test").info("api_key=topsecret")
        for handler in clean_root.handlers:
            handler.flush()
        content = (tmp_path / "printer-mcp.log").read_text()
        assert "topsecret" not in content
        assert "REDACTED" in content
