"""Tests for the Bambu Lab implicit-FTPS channel with a mocked ftplib client."""

from __future__ import annotations

import asyncio
import ftplib
from unittest import mock

import pytest

from printer_mcp.printers.bambu_ftp import FtpHandle, _parse_mlsd_time, open_ftps
from printer_mcp.printers.base import (
    AuthError,
    NotFoundError,
    PrinterConnectionError,
    TransferError,
    ValidationError,
)
from printer_mcp.printers.pool import ConnectionKey

from conftest import ACCESS_CODE


@pytest.fixture
def ftp() -> mock.MagicMock:
    client = mock.MagicMock()
    client.mlsd.return_value = []
    return client


def _open(key: ConnectionKey, ftp: mock.MagicMock) -> FtpHandle:
    return asyncio.run(open_ftps(key, ACCESS_CODE, timeout=5, ftp_factory=lambda: ftp))


class TestOpen:
    def test_login_sequence(self, key: ConnectionKey, ftp: mock.MagicMock) -> None:
        handle = _open(key, ftp)
        assert isinstance(handle, FtpHandle)
        ftp.connect.assert_called_once_with(key.host, 990, timeout=5)
        ftp.login.assert_called_once_with("bblp", ACCESS_CODE)
        ftp.prot_p.assert_called_once()

    def test_rejected_code_is_auth_error(self, key: ConnectionKey, ftp: mock.MagicMock) -> None:
        ftp.login.side_effect = ftplib.error_perm("530 Login incorrect.")
        with pytest.raises(AuthError):
            _open(key, ftp)
        ftp.close.assert_called_once()

    def test_socket_failure(self, key: ConnectionKey, ftp: mock.MagicMock) -> None:
        ftp.connect.side_effect = ConnectionRefusedError("refused")
        with pytest.raises(PrinterConnectionError, match="refused"):
            _open(key, ftp)
        ftp.close.assert_called_once()


class TestListFiles:
    def test_mlsd(self, key: ConnectionKey, ftp: mock.MagicMock) -> None:
        ftp.mlsd.return_value = [
            (".", {"type": "cdir"}),
            ("timelapse", {"type": "dir"}),
            ("cube.gcode", {"type": "file", "size": "12", "modify": "20240101120000"}),
        ]
        handle = _open(key, ftp)
        files = asyncio.run(handle.list_files())
        assert [f.name for f in files] == ["cube.gcode"]
        assert files[0].path == "/sdcard/cube.gcode"
        assert files[0].size_bytes == 12
        assert files[0].date == 1704110400

    def test_falls_back_to_nlst(self, key: ConnectionKey, ftp: mock.MagicMock) -> None:
        ftp.mlsd.side_effect = ftplib.error_perm("502 Command not implemented.")
        ftp.nlst.return_value = ["/sdcard/a.gcode", "/sdcard/b.3mf"]
        handle = _open(key, ftp)
        files = asyncio.run(handle.list_files())
        assert [f.name for f in files] == ["a.gcode", "b.3mf"]
        assert files[0].size_bytes is None

    def test_falls_back_to_list(self, key: ConnectionKey, ftp: mock.MagicMock) -> None:
        ftp.mlsd.side_effect = ftplib.error_perm("502 Command not implemented.")
        ftp.nlst.side_effect = ftplib.error_perm("550 No files found.")

        def _retrlines(cmd, callback):
            callback("drwxr-xr-x 1 root root 0 Jan 01 00:00 cache")
            callback("-rw-r--r-- 1 root root 2048 Jan 01 00:00 part one.gcode")

        ftp.retrlines.side_effect = _retrlines
        handle = _open(key, ftp)
        files = asyncio.run(handle.list_files())
        assert [(f.name, f.size_bytes) for f in files] == [("part one.gcode", 2048)]

    def test_mlsd_other_error_not_swallowed(self, key: ConnectionKey, ftp: mock.MagicMock) -> None:
        ftp.mlsd.side_effect = ftplib.error_perm("550 No such directory.")
        handle = _open(key, ftp)
        with pytest.raises(TransferError):
            asyncio.run(handle.list_files())
        assert not handle.closed


class TestTransfer:
    def test_upload(self, key: ConnectionKey, ftp: mock.MagicMock, gcode_file: str) -> None:
        handle = _open(key, ftp)
        remote = asyncio.run(handle.upload(gcode_file, "cube.gcode"))
        assert remote == "/sdcard/cube.gcode"
        assert ftp.storbinary.call_args[0][0] == "STOR /sdcard/cube.gcode"

    def test_upload_missing_local_file(self, key: ConnectionKey, ftp: mock.MagicMock) -> None:
        handle = _open(key, ftp)
        with pytest.raises(ValidationError):
            asyncio.run(handle.upload("/nonexistent/cube.gcode", "cube.gcode"))
        assert not handle.closed
        ftp.storbinary.assert_not_called()

    def test_upload_refused_is_transfer_error(
        self, key: ConnectionKey, ftp: mock.MagicMock, gcode_file: str,
    ) -> None:
        ftp.storbinary.side_effect = ftplib.error_perm("550 Permission denied.")
        handle = _open(key, ftp)
        with pytest.raises(TransferError) as excinfo:
            asyncio.run(handle.upload(gcode_file, "cube.gcode"))
        assert not isinstance(excinfo.value, NotFoundError)
        assert not handle.closed

    def test_dropped_session_closes_handle(
        self, key: ConnectionKey, ftp: mock.MagicMock, gcode_file: str,
    ) -> None:
        ftp.storbinary.side_effect = EOFError()
        handle = _open(key, ftp)
        with pytest.raises(TransferError):
            asyncio.run(handle.upload(gcode_file, "cube.gcode"))
        assert handle.closed

    def test_timeout_reply_closes_handle(self, key: ConnectionKey, ftp: mock.MagicMock) -> None:
        ftp.delete.side_effect = ftplib.error_temp("421 Timeout.")
        handle = _open(key, ftp)
        with pytest.raises(TransferError):
            asyncio.run(handle.remove("cube.gcode"))
        assert handle.closed

    def test_remove_missing_file(self, key: ConnectionKey, ftp: mock.MagicMock) -> None:
        ftp.delete.side_effect = ftplib.error_perm("550 File not found.")
        handle = _open(key, ftp)
        with pytest.raises(NotFoundError):
            asyncio.run(handle.remove("ghost.gcode"))
        assert not handle.closed
        ftp.delete.assert_called_once_with("/sdcard/ghost.gcode")

    def test_closed_handle_refuses_work(self, key: ConnectionKey, ftp: mock.MagicMock) -> None:
        handle = _open(key, ftp)
        asyncio.run(handle.close())
        with pytest.raises(PrinterConnectionError):
            asyncio.run(handle.list_files())


class TestClose:
    def test_quit(self, key: ConnectionKey, ftp: mock.MagicMock) -> None:
        handle = _open(key, ftp)
        asyncio.run(handle.close())
        ftp.quit.assert_called_once()
        assert handle.closed

    def test_quit_failure_releases_socket(self, key: ConnectionKey, ftp: mock.MagicMock) -> None:
        ftp.quit.side_effect = EOFError()
        handle = _open(key, ftp)
        with pytest.raises(EOFError):
            asyncio.run(handle.close())
        ftp.close.assert_called_once()
        assert handle.closed


class TestParseMlsdTime:
    def test_values(self) -> None:
        assert _parse_mlsd_time("20240101120000.123") == 1704110400
        assert _parse_mlsd_time(None) is None
        assert _parse_mlsd_time("garbage") is None
