"""Klipper backend via the Moonraker API server.

Moonraker only needs an API key when ``authorization`` is enabled; when
one is given it is sent as ``X-Api-Key``.  Creality's K1 firmware runs
Moonraker too, see :class:`CrealityImplementation`.
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

_STATUS_OBJECTS = {
    "heater_bed": "",
    "extruder": "",
    "print_stats": "",
    "virtual_sdcard": "",
    "webhooks": "",
}


def _to_file(entry: dict[str, Any]) -> PrinterFile:
    path = entry.get("path") or entry.get("filename", "")
    modified = entry.get("modified")
    return PrinterFile(
        name=path.rsplit("/", 1)[-1],
        path=path,
        size_bytes=entry.get("size"),
        date=int(modified) if modified is not None else None,
    )


class KlipperImplementation(HttpPrinter):
    """Backend for Klipper printers running Moonraker."""

    display_name = "Moonraker"

    @property
    def name(self) -> str:
        return "klipper"

    @property
    def capabilities(self) -> PrinterCapabilities:
        return PrinterCapabilities(can_pause=True, can_send_gcode=True)

    def _auth_headers(self, api_key: str) -> dict[str, str]:
        return {"X-Api-Key": api_key} if api_key else {}

    async def _gcode(self, host: str, port: str, api_key: str, script: str) -> None:
        await self._request(
            "POST", host, port, "/printer/gcode/script",
            api_key=api_key, params={"script": script},
        )

    async def get_status(self, host: str, port: str, api_key: str) -> dict[str, Any]:
        payload = await self._get_json(
            host, port, "/printer/objects/query", api_key=api_key, params=_STATUS_OBJECTS,
        )
        return safe_get(payload, "result", default=payload)

    async def get_files(self, host: str, port: str, api_key: str) -> list[PrinterFile]:
        payload = await self._get_json(
            host, port, "/server/files/list", api_key=api_key, params={"root": "gcodes"},
        )
        raw_files = safe_get(payload, "result", default=[])
        if not isinstance(raw_files, list):
            raw_files = []
        return [_to_file(entry) for entry in raw_files if isinstance(entry, dict)]

    async def get_file(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> PrinterFile:
        payload = await self._get_json(
            host, port, "/server/files/metadata", api_key=api_key, params={"filename": filename},
        )
        meta = safe_get(payload, "result", default={})
        if not isinstance(meta, dict):
            meta = {}
        meta.setdefault("filename", filename)
        return _to_file(meta)

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
        data = {"root": "gcodes"}
        if print_after:
            data["print"] = "true"
        response = await self._upload(
            host, port, "/server/files/upload", file_path, filename,
            api_key=api_key, data=data,
        )
        body = self._json(response, "POST /server/files/upload")
        uploaded = safe_get(body, "item", "path", default=None) or safe_get(
            body, "result", "item", "path", default=filename,
        )
        return UploadResult(
            success=True,
            file_name=uploaded,
            message=f"Uploaded {uploaded} to {self.display_name}.",
            printing=print_after,
        )

    async def start_job(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> CommandResult:
        await self._request(
            "POST", host, port, "/printer/print/start",
            api_key=api_key, params={"filename": filename},
        )
        return CommandResult(success=True, message=f"Started printing {filename}.")

    async def cancel_job(self, host: str, port: str, api_key: str) -> CommandResult:
        await self._request("POST", host, port, "/printer/print/cancel", api_key=api_key)
        return CommandResult(success=True, message="Print cancelled.")

    async def pause_job(self, host: str, port: str, api_key: str) -> CommandResult:
        await self._request("POST", host, port, "/printer/print/pause", api_key=api_key)
        return CommandResult(success=True, message="Print paused.")

    async def resume_job(self, host: str, port: str, api_key: str) -> CommandResult:
        await self._request("POST", host, port, "/printer/print/resume", api_key=api_key)
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
            heater = "heater_bed"
        else:
            heater = "extruder" if index == 0 else f"extruder{index}"
        await self._gcode(
            host, port, api_key,
            f"SET_HEATER_TEMPERATURE HEATER={heater} TARGET={int(temperature)}",
        )
        return CommandResult(success=True, message=f"{heater} target set to {int(temperature)}°C.")

    async def send_gcode(
        self, host: str, port: str, api_key: str, commands: list[str],
    ) -> CommandResult:
        await self._gcode(host, port, api_key, "\n".join(commands))
        return CommandResult(success=True, message=f"Sent {len(commands)} G-code line(s).")

    async def delete_file(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> CommandResult:
        await self._request(
            "DELETE", host, port, f"/server/files/gcodes/{quote(filename, safe='/')}",
            api_key=api_key,
        )
        return CommandResult(success=True, message=f"Deleted {filename}.")


class CrealityImplementation(KlipperImplementation):
    """Creality K1-family printers, whose firmware exposes Moonraker."""

    display_name = "Creality"

    @property
    def name(self) -> str:
        return "creality"
