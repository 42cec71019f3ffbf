"""Duet / RepRapFirmware backend over the ``rr_*`` HTTP API.

The API key is the board password, if one is set.  RepRapFirmware 3.x
answers ``rr_connect`` with a session key that must accompany later
requests as ``X-Session-Key``.
"""

from __future__ import annotations

import datetime
import os
from typing import Any

from printer_mcp.printers.base import (
    AuthError,
    CommandResult,
    NotFoundError,
    PrinterCapabilities,
    PrinterError,
    PrinterFile,
    TransferError,
    UploadResult,
    parse_component,
)
from printer_mcp.printers.http import HttpPrinter, safe_get

_GCODES_DIR = "0:/gcodes"


def _parse_date(value: Any) -> int | None:
    if not value:
        return None
    try:
        return int(datetime.datetime.fromisoformat(str(value)).timestamp())
    except ValueError:
        return None


class DuetImplementation(HttpPrinter):
    """Backend for Duet boards running RepRapFirmware."""

    display_name = "Duet"

    @property
    def name(self) -> str:
        return "duet"

    @property
    def capabilities(self) -> PrinterCapabilities:
        return PrinterCapabilities(can_pause=True, can_send_gcode=True)

    async def _session_headers(self, host: str, port: str, api_key: str) -> dict[str, str]:
        """Log in with the board password when one is given."""
        if not api_key:
            return {}
        payload = await self._get_json(
            host, port, "/rr_connect",
            params={"password": api_key, "time": datetime.datetime.now().strftime("%Y-%m-%dT%H:%M:%S")},
        )
        err = safe_get(payload, "err", default=0)
        if err == 1:
            raise AuthError("Duet rejected the board password.")
        if err:
            raise PrinterError(f"Duet rr_connect failed (err={err}).")
        session_key = safe_get(payload, "sessionKey")
        return {"X-Session-Key": str(session_key)} if session_key is not None else {}

    async def _get(self, host: str, port: str, api_key: str, path: str, **params: Any) -> Any:
        headers = await self._session_headers(host, port, api_key)
        return await self._get_json(host, port, path, headers=headers, params=params)

    async def _gcode(self, host: str, port: str, api_key: str, gcode: str) -> Any:
        return await self._get(host, port, api_key, "/rr_gcode", gcode=gcode)

    async def get_status(self, host: str, port: str, api_key: str) -> dict[str, Any]:
        payload = await self._get(host, port, api_key, "/rr_model", flags="d99fn")
        return safe_get(payload, "result", default=payload)

    async def get_files(self, host: str, port: str, api_key: str) -> list[PrinterFile]:
        payload = await self._get(host, port, api_key, "/rr_filelist", dir=_GCODES_DIR)
        entries = safe_get(payload, "files", default=[])
        if not isinstance(entries, list):
            entries = []
        return [
            PrinterFile(
                name=entry.get("name", ""),
                path=f"{_GCODES_DIR}/{entry.get('name', '')}",
                size_bytes=entry.get("size"),
                date=_parse_date(entry.get("date")),
            )
            for entry in entries
            if isinstance(entry, dict) and entry.get("type") == "f"
        ]

    async def get_file(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> PrinterFile:
        path = f"{_GCODES_DIR}/{filename}"
        payload = await self._get(host, port, api_key, "/rr_fileinfo", name=path)
        if safe_get(payload, "err", default=0):
            raise NotFoundError(f"File not found: {filename}")
        return PrinterFile(
            name=filename,
            path=path,
            size_bytes=safe_get(payload, "size"),
            date=_parse_date(safe_get(payload, "lastModified")),
        )

    async def upload_file(
        self,
        host: str,
        port: str,
        api_key: str,
        file_path: str,
        filename: str,
        print_after: bool = False,
    ) -> UploadResult:
        filename = filename or os.path.basename(file_path)
        remote = f"{_GCODES_DIR}/{filename}"
        headers = await self._session_headers(host, port, api_key)
        response = await self._upload(
            host, port, "/rr_upload", file_path, filename,
            raw=True, headers=headers, params={"name": remote},
        )
        if safe_get(self._json(response, "POST /rr_upload"), "err", default=0):
            raise TransferError(f"Duet rejected the upload of {filename}.")
        if print_after:
            await self._gcode(host, port, api_key, f'M32 "{remote}"')
        return UploadResult(
            success=True,
            file_name=filename,
            message=f"Uploaded {filename} to Duet.",
            printing=print_after,
        )

    async def start_job(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> CommandResult:
        await self._gcode(host, port, api_key, f'M32 "{_GCODES_DIR}/{filename}"')
        return CommandResult(success=True, message=f"Started printing {filename}.")

    async def cancel_job(self, host: str, port: str, api_key: str) -> CommandResult:
        # RepRapFirmware only cancels a paused job.
        await self._gcode(host, port, api_key, "M25")
        await self._gcode(host, port, api_key, "M0")
        return CommandResult(success=True, message="Print cancelled.")

    async def pause_job(self, host: str, port: str, api_key: str) -> CommandResult:
        await self._gcode(host, port, api_key, "M25")
        return CommandResult(success=True, message="Print paused.")

    async def resume_job(self, host: str, port: str, api_key: str) -> CommandResult:
        await self._gcode(host, port, api_key, "M24")
        return CommandResult(success=True, message="Print resumed.")

    async def set_temperature(
        self,
        host: str,
        port: str,
        api_key: str,
        component: str,
        temperature: float,
    ) -> CommandResult:
        kind, index = parse_component(component)
        self._validate_temp(kind, temperature)
        if kind == "bed":
            gcode = f"M140 S{int(temperature)}"
        else:
            gcode = f"G10 P{index} S{int(temperature)}"
        await self._gcode(host, port, api_key, gcode)
        return CommandResult(success=True, message=f"Sent {gcode}.")

    async def send_gcode(
        self, host: str, port: str, api_key: str, commands: list[str],
    ) -> CommandResult:
        await self._gcode(host, port, api_key, "\n".join(commands))
        return CommandResult(success=True, message=f"Sent {len(commands)} G-code line(s).")
