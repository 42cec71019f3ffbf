"""Prusa Link backend (MK4, XL, MINI, Core One).

Uses the Prusa Link v1 API with ``X-Api-Key`` authentication.  Files
live on the USB drive (``/api/v1/files/usb``).  Prusa Link has no heater
endpoint, so :meth:`PrusaImplementation.set_temperature` is unsupported.
"""

from __future__ import annotations

import os
from typing import Any
from urllib.parse import quote

from printer_mcp.printers.base import (
    CommandResult,
    PrinterCapabilities,
    PrinterError,
    PrinterFile,
    UnsupportedError,
    UploadResult,
)
from printer_mcp.printers.http import HttpPrinter, safe_get

_STORAGE = "usb"


def _collect_files(children: list[Any], prefix: str = "") -> list[PrinterFile]:
    found: list[PrinterFile] = []
    for entry in children:
        if not isinstance(entry, dict):
            continue
        name = entry.get("display_name") or entry.get("name", "")
        path = f"{prefix}{entry.get('name', '')}"
        if entry.get("type") == "FOLDER":
            found.extend(_collect_files(entry.get("children", []), prefix=f"{path}/"))
            continue
        found.append(PrinterFile(
            name=name,
            path=path,
            size_bytes=entry.get("size"),
            date=entry.get("m_timestamp"),
        ))
    return found


class PrusaImplementation(HttpPrinter):
    """Backend for Prusa printers running Prusa Link."""

    display_name = "Prusa Link"

    @property
    def name(self) -> str:
        return "prusa"

    @property
    def capabilities(self) -> PrinterCapabilities:
        return PrinterCapabilities(can_set_temp=False, can_pause=True, supported_extensions=(".gcode", ".bgcode"))

    def _auth_headers(self, api_key: str) -> dict[str, str]:
        return {"X-Api-Key": api_key}

    def _file_path(self, filename: str) -> str:
        return f"/api/v1/files/{_STORAGE}/{quote(filename, safe='/')}"

    async def _active_job_id(self, host: str, port: str, api_key: str) -> Any:
        status = await self.get_status(host, port, api_key)
        job_id = safe_get(status, "job", "id")
        if job_id is None:
            raise PrinterError("No active job.")
        return job_id

    async def get_status(self, host: str, port: str, api_key: str) -> dict[str, Any]:
        return await self._get_json(host, port, "/api/v1/status", api_key=api_key)

    async def get_files(self, host: str, port: str, api_key: str) -> list[PrinterFile]:
        payload = await self._get_json(host, port, f"/api/v1/files/{_STORAGE}", api_key=api_key)
        children = safe_get(payload, "children", default=[])
        return _collect_files(children if isinstance(children, list) else [])

    async def get_file(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> PrinterFile:
        payload = await self._get_json(host, port, self._file_path(filename), api_key=api_key)
        return PrinterFile(
            name=safe_get(payload, "display_name", default=filename) or filename,
            path=filename,
            size_bytes=safe_get(payload, "size"),
            date=safe_get(payload, "m_timestamp"),
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
        await self._upload(
            host, port, self._file_path(filename), file_path, filename,
            api_key=api_key,
            method="PUT",
            raw=True,
            headers={
                "Content-Type": "application/octet-stream",
                "Print-After-Upload": "?1" if print_after else "?0",
                "Overwrite": "?1",
            },
        )
        return UploadResult(
            success=True,
            file_name=filename,
            message=f"Uploaded {filename} to Prusa Link.",
            printing=print_after,
        )

    async def start_job(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> CommandResult:
        await self._request("POST", host, port, self._file_path(filename), api_key=api_key)
        return CommandResult(success=True, message=f"Started printing {filename}.")

    async def cancel_job(self, host: str, port: str, api_key: str) -> CommandResult:
        job_id = await self._active_job_id(host, port, api_key)
        await self._request("DELETE", host, port, f"/api/v1/job/{job_id}", api_key=api_key)
        return CommandResult(success=True, message="Print cancelled.")

    async def pause_job(self, host: str, port: str, api_key: str) -> CommandResult:
        job_id = await self._active_job_id(host, port, api_key)
        await self._request("PUT", host, port, f"/api/v1/job/{job_id}/pause", api_key=api_key)
        return CommandResult(success=True, message="Print paused.")

    async def resume_job(self, host: str, port: str, api_key: str) -> CommandResult:
        job_id = await self._active_job_id(host, port, api_key)
        await self._request("PUT", host, port, f"/api/v1/job/{job_id}/resume", api_key=api_key)
        return CommandResult(success=True, message="Print resumed.")

    async def set_temperature(
        self,
        host: str,
        port: str,
        api_key: str,
        component: str,
        temperature: float,
    ) -> CommandResult:
        raise UnsupportedError("Prusa Link has no endpoint for setting heater targets.")

    async def delete_file(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> CommandResult:
        await self._request("DELETE", host, port, self._file_path(filename), api_key=api_key)
        return CommandResult(success=True, message=f"Deleted {filename}.")
