"""OctoPrint backend.

Talks to the `OctoPrint REST API <https://docs.octoprint.org/en/master/api/>`_
with the ``X-Api-Key`` header.
"""

from __future__ import annotations

import os
from typing import Any
from urllib.parse import quote

from printer_mcp.printers.base import (
    CommandResult,
    PrinterCapabilities,
    PrinterFile,
    UploadResult,
    parse_component,
)
from printer_mcp.printers.http import HttpPrinter, safe_get

_CONTENT_TYPES = {
    ".stl": "model/stl",
    ".3mf": "model/3mf",
}


def _flatten_files(entries: list[dict[str, Any]], prefix: str = "") -> list[dict[str, Any]]:
    """Recursively flatten OctoPrint's nested file/folder listing."""
    flat: list[dict[str, Any]] = []
    for entry in entries:
        if entry.get("type") == "folder":
            folder_path = f"{prefix}{entry.get('name', '')}/"
            flat.extend(_flatten_files(entry.get("children", []), prefix=folder_path))
        else:
            flat.append(entry)
    return flat


def _to_file(entry: dict[str, Any]) -> PrinterFile:
    return PrinterFile(
        name=entry.get("name", ""),
        path=entry.get("path", entry.get("name", "")),
        size_bytes=entry.get("size"),
        date=entry.get("date"),
    )


class OctoPrintImplementation(HttpPrinter):
    """Backend for OctoPrint servers."""

    display_name = "OctoPrint"

    @property
    def name(self) -> str:
        return "octoprint"

    @property
    def capabilities(self) -> PrinterCapabilities:
        return PrinterCapabilities(
            can_pause=True,
            can_send_gcode=True,
            supported_extensions=(".gcode", ".gco", ".g", ".stl", ".3mf"),
        )

    def _auth_headers(self, api_key: str) -> dict[str, str]:
        return {"X-Api-Key": api_key}

    async def get_status(self, host: str, port: str, api_key: str) -> dict[str, Any]:
        return await self._get_json(host, port, "/api/printer", api_key=api_key)

    async def get_job(self, host: str, port: str, api_key: str) -> dict[str, Any]:
        return await self._get_json(host, port, "/api/job", api_key=api_key)

    async def get_files(self, host: str, port: str, api_key: str) -> list[PrinterFile]:
        payload = await self._get_json(
            host, port, "/api/files/local", api_key=api_key, params={"recursive": "true"},
        )
        raw_files = payload.get("files", []) if isinstance(payload, dict) else []
        if not isinstance(raw_files, list):
            raw_files = []
        return [_to_file(entry) for entry in _flatten_files(raw_files)]

    async def get_file(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> PrinterFile:
        entry = await self._get_json(
            host, port, f"/api/files/local/{quote(filename, safe='/')}", api_key=api_key,
        )
        return _to_file(entry)

    async def upload_file(
        self,
        host: str,
        port: str,
        api_key: str,
        file_path: str,
        filename: str,
        print_after: bool = False,
    ) -> UploadResult:
        """Upload via ``POST /api/files/local`` (multipart).

        Models (``.stl``/``.3mf``) are sent with their model content type;
        OctoPrint only prints G-code, so ``print`` is ignored by the
        server for them.
        """
        filename = filename or os.path.basename(file_path)
        ext = os.path.splitext(filename)[1].lower()
        data = {"print": "true"} if print_after else None
        response = await self._upload(
            host, port, "/api/files/local", file_path, filename,
            api_key=api_key,
            data=data,
            content_type=_CONTENT_TYPES.get(ext, "application/octet-stream"),
        )
        body = self._json(response, "POST /api/files/local")
        uploaded_name = safe_get(body, "files", "local", "name", default=filename)
        return UploadResult(
            success=True,
            file_name=uploaded_name,
            message=f"Uploaded {uploaded_name} to OctoPrint.",
            printing=print_after,
        )

    async def start_job(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> CommandResult:
        await self._request(
            "POST", host, port, f"/api/files/local/{quote(filename, safe='/')}",
            api_key=api_key, json={"command": "select", "print": True},
        )
        return CommandResult(success=True, message=f"Started printing {filename}.")

    async def cancel_job(self, host: str, port: str, api_key: str) -> CommandResult:
        await self._request(
            "POST", host, port, "/api/job", api_key=api_key, json={"command": "cancel"},
        )
        return CommandResult(success=True, message="Print cancelled.")

    async def pause_job(self, host: str, port: str, api_key: str) -> CommandResult:
        await self._request(
            "POST", host, port, "/api/job",
            api_key=api_key, json={"command": "pause", "action": "pause"},
        )
        return CommandResult(success=True, message="Print paused.")

    async def resume_job(self, host: str, port: str, api_key: str) -> CommandResult:
        await self._request(
            "POST", host, port, "/api/job",
            api_key=api_key, json={"command": "pause", "action": "resume"},
        )
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
            path = "/api/printer/bed"
            body: dict[str, Any] = {"command": "target", "target": int(temperature)}
        else:
            path = "/api/printer/tool"
            body = {"command": "target", "targets": {f"tool{index}": int(temperature)}}
        await self._request("POST", host, port, path, api_key=api_key, json=body)
        return CommandResult(
            success=True, message=f"{component} target set to {int(temperature)}°C.",
        )

    async def send_gcode(
        self, host: str, port: str, api_key: str, commands: list[str],
    ) -> CommandResult:
        await self._request(
            "POST", host, port, "/api/printer/command",
            api_key=api_key, json={"commands": commands},
        )
        return CommandResult(success=True, message=f"Sent {len(commands)} G-code line(s).")

    async def delete_file(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> CommandResult:
        await self._request(
            "DELETE", host, port, f"/api/files/local/{quote(filename, safe='/')}",
            api_key=api_key,
        )
        return CommandResult(success=True, message=f"Deleted {filename}.")
