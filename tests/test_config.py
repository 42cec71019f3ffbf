"""Tests for printer_mcp.config: precedence, YAML file and permissions."""

from __future__ import annotations

import logging
import os
import stat
import sys

import pytest

from printer_mcp.config import (
    _ENV_VARS,
    ServerConfig,
    get_config_path,
    load_config,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (*_ENV_VARS.values(), "PRINTER_MCP_CONFIG"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "host: 192.168.1.50\n"
        "port: 8080\n"
        "printer_type: Klipper\n"
        "connect_timeout: 15\n"
    )
    os.chmod(path, 0o600)
    return path


class TestDefaults:
    def test_defaults_without_file(self, tmp_path) -> None:
        config = load_config(tmp_path / "missing.yaml")
        assert config.host == "localhost"
        assert config.port == "80"
        assert config.printer_type == "octoprint"
        assert config.temp_dir.endswith("temp")
        assert config.connect_timeout == 10.0


class TestFile:
    def test_values_read_and_coerced(self, config_file) -> None:
        config = load_config(config_file)
        assert config.host == "192.168.1.50"
        assert config.port == "8080"
        assert config.printer_type == "klipper"
        assert config.connect_timeout == 15.0

    def test_unknown_key_warned(self, tmp_path, caplog) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("host: a\nprinters: {}\n")
        with caplog.at_level(logging.WARNING, logger="printer_mcp.config"):
            config = load_config(path)
        assert config.host == "a"
        assert "unknown key 'printers'" in caplog.text

    def test_invalid_yaml_ignored(self, tmp_path, caplog) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("host: [unclosed\n")
        with caplog.at_level(logging.WARNING, logger="printer_mcp.config"):
            config = load_config(path)
        assert config.host == "localhost"
        assert "invalid YAML" in caplog.text

    def test_bad_number_falls_back(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("http_timeout: soon\n")
        assert load_config(path).http_timeout == 10.0

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_permissive_file_warned(self, config_file, caplog) -> None:
        os.chmod(config_file, stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP | stat.S_IROTH)
        with caplog.at_level(logging.WARNING, logger="printer_mcp.config"):
            load_config(config_file)
        assert "overly permissive" in caplog.text


class TestEnvironment:
    def test_env_beats_file(self, config_file, monkeypatch) -> None:
        monkeypatch.setenv("PRINTER_HOST", "10.0.0.9")
        monkeypatch.setenv("PRINTER_TYPE", "BAMBU")
        monkeypatch.setenv("BAMBU_SERIAL", "01S00")
        monkeypatch.setenv("BAMBU_TOKEN", "abcd1234")
        monkeypatch.setenv("PRINTER_MCP_CONNECT_TIMEOUT", "3.5")
        config = load_config(config_file)
        assert config.host == "10.0.0.9"
        assert config.port == "8080"
        assert config.printer_type == "bambu"
        assert config.bambu_serial == "01S00"
        assert config.connect_timeout == 3.5

    def test_bad_env_number_keeps_file_value(self, config_file, monkeypatch) -> None:
        monkeypatch.setenv("PRINTER_MCP_CONNECT_TIMEOUT", "fast")
        assert load_config(config_file).connect_timeout == 15.0

    def test_blank_env_ignored(self, config_file, monkeypatch) -> None:
        monkeypatch.setenv("PRINTER_HOST", "   ")
        assert load_config(config_file).host == "192.168.1.50"

    def test_config_path_override(self, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("PRINTER_MCP_CONFIG", str(tmp_path / "alt.yaml"))
        assert get_config_path() == tmp_path / "alt.yaml"


class TestToDict:
    def test_secrets_redacted(self) -> None:
        config = ServerConfig(api_key="k", bambu_token="t")
        data = config.to_dict()
        assert data["api_key"] == "***"
        assert data["bambu_token"] == "***"
        assert config.to_dict(redact=False)["api_key"] == "k"
