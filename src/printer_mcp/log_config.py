"""Log rotation and sensitive data scrubbing.

Provides a logging filter that redacts API keys, access codes and
passwords from log output, and a helper that installs a rotating file
handler plus a stderr handler.  stdout is reserved for the MCP stdio
transport, so nothing here ever writes to it.

Only stdlib modules are used.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

_DEFAULT_LOG_DIR = os.path.join(str(Path.home()), ".printer-mcp", "logs")

_REDACTED = "***REDACTED***"

# Patterns that match sensitive values in log messages.
_SCRUB_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r'((?:api_key|x-api-key)["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]]+)', re.IGNORECASE),
     rf'\1{_REDACTED}'),
    (re.compile(r'(token["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]]+)', re.IGNORECASE),
     rf'\1{_REDACTED}'),
    (re.compile(r'(password["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]]+)', re.IGNORECASE),
     rf'\1{_REDACTED}'),
    (re.compile(r'(access_code["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]]+)', re.IGNORECASE),
     rf'\1{_REDACTED}'),
    (re.compile(r'(X-Session-Key["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]]+)', re.IGNORECASE),
     rf'\1{_REDACTED}'),
]

# Literal secrets registered at runtime (e.g. the access-code half of a
# composite "serial:code" credential, which no key=value pattern catches).
_KNOWN_SECRETS: set[str] = set()


def register_secret(secret: str) -> None:
    """Redact every literal occurrence of *secret* from now on.

    For a composite ``"<identifier>:<secret>"`` token only the secret
    half is registered, so serial numbers stay readable in logs.
    """
    if not secret:
        return
    if ":" in secret:
        secret = secret.split(":", 1)[1]
    # Very short values would redact unrelated text.
    if len(secret) >= 4:
        _KNOWN_SECRETS.add(secret)


class ScrubFilter(logging.Filter):
    """Logging filter that redacts sensitive data from log messages.

    Matches common patterns for API keys, tokens, passwords and access
    codes, plus any literal registered with :func:`register_secret`, and
    replaces them with ``***REDACTED***``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg and isinstance(record.msg, str):
            record.msg = _scrub(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: _scrub(v) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    _scrub(a) if isinstance(a, str) else a
                    for a in record.args
                )
        return True


def _scrub(text: str) -> str:
    """Apply all scrub patterns to *text*."""
    for pattern, replacement in _SCRUB_PATTERNS:
        text = pattern.sub(replacement, text)
    for secret in _KNOWN_SECRETS:
        text = text.replace(secret, _REDACTED)
    return text


def configure_logging(
    log_dir: Optional[str] = None,
    *,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
    level: Optional[str] = None,
    stderr: bool = True,
) -> None:
    """Configure logging with rotation and sensitive data scrubbing.

    :param log_dir: Directory for log files.  Reads ``PRINTER_MCP_LOG_DIR``
        env var, then falls back to ``~/.printer-mcp/logs/``.
    :param max_bytes: Maximum log file size before rotation (default 10 MB).
    :param backup_count: Number of rotated log files to keep (default 5).
    :param level: Log level string.  Reads ``PRINTER_MCP_LOG_LEVEL`` env
        var, then falls back to ``"INFO"``.
    :param stderr: Also log to stderr.
    """
    log_dir = log_dir or os.environ.get("PRINTER_MCP_LOG_DIR", _DEFAULT_LOG_DIR)
    level = level or os.environ.get("PRINTER_MCP_LOG_LEVEL", "INFO")

    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "printer-mcp.log")

    log_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    scrub_filter = ScrubFilter()

    root = logging.getLogger()
    root.setLevel(log_level)

    # Add rotating file handler if not already present.
    has_rotating = any(
        isinstance(h, RotatingFileHandler) for h in root.handlers
    )
    if not has_rotating:
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    has_stderr = any(
        isinstance(h, logging.StreamHandler)
        and not isinstance(h, logging.FileHandler)
        and getattr(h, "stream", None) is sys.stderr
        for h in root.handlers
    )
    if stderr and not has_stderr:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setLevel(log_level)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

    # Install scrub filter on all handlers.
    for handler in root.handlers:
        if not any(isinstance(f, ScrubFilter) for f in handler.filters):
            handler.addFilter(scrub_filter)
