"""Shared fixtures and fakes for the printer_mcp test suite.

Provides in-memory stand-ins for the Bambu MQTT and FTPS handles so the
pool and backend tests run without a printer or a network.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from printer_mcp.printers.base import (
    NotFoundError,
    PrinterFile,
)
from printer_mcp.printers.pool import ConnectionHandle, ConnectionKey

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HOST = "192.168.1.100"
SERIAL = "01P00A000000001"
ACCESS_CODE = "12345678"
TOKEN = f"{SERIAL}:{ACCESS_CODE}"


# ---------------------------------------------------------------------------
# Fake handles
# ---------------------------------------------------------------------------


class FakeHandle(ConnectionHandle):
    """Minimal handle that records close calls."""

    def __init__(self, key: ConnectionKey, *, close_error: Exception | None = None) -> None:
        super().__init__(key)
        self.close_calls = 0
        self.close_error = close_error

    async def close(self) -> None:
        self.close_calls += 1
        self._mark_closed("closed by client")
        if self.close_error is not None:
            raise self.close_error

    def lose(self, reason: str = "socket reset") -> None:
        """Simulate the transport dropping the session."""
        self._mark_closed(reason)


class FakeMqttHandle(FakeHandle):
    """Records published payloads; serves a canned status report."""

    def __init__(self, key: ConnectionKey, **kwargs: Any) -> None:
        super().__init__(key, **kwargs)
        self.published: list[dict[str, Any]] = []
        self.last_report: dict[str, Any] | None = None
        self.reports_received = 0
        self.pending_report: dict[str, Any] | None = None

    async def publish(self, payload: dict[str, Any]) -> None:
        self.published.append(payload)

    async def next_report(self, timeout: float) -> dict[str, Any]:
        if self.pending_report is None:
            raise asyncio.TimeoutError()
        self.last_report = self.pending_report
        self.reports_received += 1
        return self.last_report


class FakeFtpHandle(FakeHandle):
    """In-memory remote directory."""

    def __init__(self, key: ConnectionKey, **kwargs: Any) -> None:
        super().__init__(key, **kwargs)
        self.files: dict[str, int] = {}

    async def list_files(self) -> list[PrinterFile]:
        return [
            PrinterFile(name=name, path=f"/sdcard/{name}", size_bytes=size)
            for name, size in self.files.items()
        ]

    async def upload(self, local_path: str, remote_name: str) -> str:
        with open(local_path, "rb") as fh:
            self.files[remote_name] = len(fh.read())
        return f"/sdcard/{remote_name}"

    async def remove(self, remote_name: str) -> None:
        if remote_name not in self.files:
            raise NotFoundError(f"File not found: {remote_name}")
        del self.files[remote_name]


class Dialer:
    """Connect factory that counts dials and hands out fresh handles."""

    def __init__(self, handle_cls: type[FakeHandle] = FakeHandle, *, delay: float = 0.0) -> None:
        self.handle_cls = handle_cls
        self.delay = delay
        self.calls: list[tuple[ConnectionKey, tuple[Any, ...]]] = []
        self.handles: list[FakeHandle] = []
        self.error: BaseException | None = None
        self.close_error: Exception | None = None

    async def __call__(self, key: ConnectionKey, *args: Any) -> FakeHandle:
        self.calls.append((key, args))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        handle = self.handle_cls(key, close_error=self.close_error)
        self.handles.append(handle)
        return handle


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def key() -> ConnectionKey:
    return ConnectionKey(host=HOST, serial=SERIAL)


@pytest.fixture
def gcode_file(tmp_path):
    path = tmp_path / "cube.gcode"
    path.write_text("G28\nG1 X10 Y10\n")
    return str(path)


@pytest.fixture
def project_file(tmp_path):
    path = tmp_path / "benchy.3mf"
    path.write_bytes(b"PK\x03\x04 fake 3mf")
    return str(path)
