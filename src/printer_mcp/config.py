"""Server configuration.

Settings are resolved per field with this precedence (highest first):

    1. Environment variables (``PRINTER_HOST``, ``API_KEY``, ...)
    2. Config file (``PRINTER_MCP_CONFIG`` or ``~/.printer-mcp/config.yaml``)
    3. Built-in defaults

A ``.env`` file in the working directory is loaded into the environment
by :func:`load_dotenv_file` before the server reads its settings.

Example ``config.yaml``::

    host: 192.168.1.50
    port: "80"
    printer_type: bambu
    bambu_serial: 01S00A000000000
    bambu_token: "12345678"
    connect_timeout: 15
"""

from __future__ import annotations

import logging
import os
import stat
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from printer_mcp import parse_float_env

logger = logging.getLogger(__name__)

# Field name -> environment variable.
_ENV_VARS: dict[str, str] = {
    "host": "PRINTER_HOST",
    "port": "PRINTER_PORT",
    "api_key": "API_KEY",
    "printer_type": "PRINTER_TYPE",
    "bambu_serial": "BAMBU_SERIAL",
    "bambu_token": "BAMBU_TOKEN",
    "temp_dir": "TEMP_DIR",
    "http_timeout": "PRINTER_MCP_HTTP_TIMEOUT",
    "connect_timeout": "PRINTER_MCP_CONNECT_TIMEOUT",
    "publish_timeout": "PRINTER_MCP_PUBLISH_TIMEOUT",
    "log_level": "PRINTER_MCP_LOG_LEVEL",
    "log_dir": "PRINTER_MCP_LOG_DIR",
}

_FLOAT_FIELDS = frozenset({"http_timeout", "connect_timeout", "publish_timeout"})


def _default_temp_dir() -> str:
    return os.path.join(os.getcwd(), "temp")


@dataclass
class ServerConfig:
    """Resolved server settings.  Tool arguments default from these."""

    host: str = "localhost"
    port: str = "80"
    api_key: str = ""
    printer_type: str = "octoprint"
    bambu_serial: str = ""
    bambu_token: str = ""
    temp_dir: str = field(default_factory=_default_temp_dir)
    http_timeout: float = 10.0
    connect_timeout: float = 10.0
    publish_timeout: float = 10.0
    log_level: str = "INFO"
    log_dir: str = ""

    def to_dict(self, *, redact: bool = True) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if redact:
            for key in ("api_key", "bambu_token"):
                if data[key]:
                    data[key] = "***"
        return data


def get_config_path() -> Path:
    """Return the config file path (``PRINTER_MCP_CONFIG`` or the default)."""
    override = os.environ.get("PRINTER_MCP_CONFIG", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".printer-mcp" / "config.yaml"


def load_dotenv_file(path: str | None = None) -> bool:
    """Load ``.env`` into the process environment without overriding it."""
    return load_dotenv(path, override=False)


def _check_file_permissions(path: Path) -> None:
    """Warn if *path* is readable by group or others.

    Skipped on Windows where POSIX permission semantics do not apply.
    """
    if sys.platform == "win32":
        return
    try:
        mode = path.stat().st_mode
    except OSError:
        return
    if mode & (stat.S_IRGRP | stat.S_IWGRP | stat.S_IROTH | stat.S_IWOTH):
        logger.warning(
            "Config file %s has overly permissive permissions (mode %04o). Recommended: chmod 600 %s",
            path,
            stat.S_IMODE(mode),
            path,
        )


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read and parse the YAML config file; return ``{}`` on any failure."""
    if not path.is_file():
        return {}
    _check_file_permissions(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        logger.warning("Config file %s has invalid YAML: %s", path, exc)
        return {}
    except OSError as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        return {}

    known = {f.name for f in fields(ServerConfig)}
    for key in sorted(set(data) - known):
        logger.warning(
            "Config file %s contains unknown key %r (expected one of: %s)",
            path, key, ", ".join(sorted(known)),
        )
    return {k: v for k, v in data.items() if k in known}


def _coerce_float(name: str, value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid number for %s=%r, using default %s", name, value, default)
        return default


def load_config(config_path: Path | None = None) -> ServerConfig:
    """Resolve a :class:`ServerConfig` from env vars, file and defaults."""
    defaults = ServerConfig()
    values: dict[str, Any] = {}

    for key, value in _read_config_file(config_path or get_config_path()).items():
        if value is None:
            continue
        if key in _FLOAT_FIELDS:
            values[key] = _coerce_float(key, value, getattr(defaults, key))
        else:
            values[key] = str(value)

    for key, env_name in _ENV_VARS.items():
        if key in _FLOAT_FIELDS:
            if os.environ.get(env_name, "").strip():
                values[key] = parse_float_env(env_name, values.get(key, getattr(defaults, key)))
            continue
        raw = os.environ.get(env_name)
        if raw is not None and raw.strip():
            values[key] = raw.strip()

    config = ServerConfig(**values)
    config.printer_type = config.printer_type.lower()
    return config
