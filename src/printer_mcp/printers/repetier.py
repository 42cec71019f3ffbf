"""Repetier-Server backend.

Repetier-Server exposes one action endpoint per printer,
``/printer/api/<slug>?a=<action>&data=<json>``.  The slug of the first
configured printer is used.
"""

from __future__ import annotations

import json
import os
from typing import Any

from printer_mcp.printers.base import (
    CommandResult,
    NotFoundError,
    PrinterCapabilities,
    PrinterError,
    PrinterFile,
    UploadResult,
    parse_component,
)
from printer_mcp.printers.http import HttpPrinter


class RepetierImplementation(HttpPrinter):
    """Backend for Repetier-Server."""

    display_name = "Repetier-Server"

    @property
    def name(self) -> str:
        return "repetier"

    @property
    def capabilities(self) -> PrinterCapabilities:
        return PrinterCapabilities(can_send_gcode=True)

    def _auth_headers(self, api_key: str) -> dict[str, str]:
        return {"X-Api-Key": api_key}

    async def _slug(self, host: str, port: str, api_key: str) -> str:
        printers = await self._get_json(
            host, port, "/printer/api/", api_key=api_key, params={"a": "listPrinter"},
        )
        if not isinstance(printers, list) or not printers:
            raise PrinterError("Repetier-Server has no printers configured.")
        return printers[0]["slug"]

    async def _action(
        self,
        host: str,
        port: str,
        api_key: str,
        action: str,
        data: dict[str, Any] | None = None,
    ) -> Any:
        slug = await self._slug(host, port, api_key)
        params = {"a": action}
        if data is not None:
            params["data"] = json.dumps(data)
        return await self._get_json(
            host, port, f"/printer/api/{slug}", api_key=api_key, params=params,
        )

    async def _models(self, host: str, port: str, api_key: str) -> list[dict[str, Any]]:
        payload = await self._action(host, port, api_key, "listModels")
        data = payload.get("data", []) if isinstance(payload, dict) else []
        return [entry for entry in data if isinstance(entry, dict)]

    async def get_status(self, host: str, port: str, api_key: str) -> dict[str, Any]:
        return await self._action(host, port, api_key, "stateList")

    async def get_files(self, host: str, port: str, api_key: str) -> list[PrinterFile]:
        return [
            PrinterFile(
                name=entry.get("name", ""),
                path=str(entry.get("id", "")),
                size_bytes=entry.get("length"),
                date=entry.get("created"),
            )
            for entry in await self._models(host, port, api_key)
        ]

    async def get_file(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> PrinterFile:
        stem = os.path.splitext(filename)[0]
        for entry in await self.get_files(host, port, api_key):
            if entry.name in (filename, stem):
                return entry
        raise NotFoundError(f"File not found: {filename}")

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
        slug = await self._slug(host, port, api_key)
        await self._upload(
            host, port, f"/printer/model/{slug}", file_path, filename,
            api_key=api_key,
            field="filename",
            data={"a": "upload", "name": os.path.splitext(filename)[0]},
        )
        if print_after:
            await self.start_job(host, port, api_key, filename)
        return UploadResult(
            success=True,
            file_name=filename,
            message=f"Uploaded {filename} to Repetier-Server.",
            printing=print_after,
        )

    async def start_job(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> CommandResult:
        model = await self.get_file(host, port, api_key, filename)
        await self._action(host, port, api_key, "copyModel", {"id": int(model.path)})
        return CommandResult(success=True, message=f"Started printing {filename}.")

    async def cancel_job(self, host: str, port: str, api_key: str) -> CommandResult:
        await self._action(host, port, api_key, "stopJob")
        return CommandResult(success=True, message="Print cancelled.")

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
            await self._action(
                host, port, api_key, "setBedTemperature",
                {"temperature": int(temperature), "bedId": 0},
            )
        else:
            await self._action(
                host, port, api_key, "setExtruderTemperature",
                {"temperature": int(temperature), "extruder": index},
            )
        return CommandResult(
            success=True, message=f"{component} target set to {int(temperature)}°C.",
        )

    async def send_gcode(
        self, host: str, port: str, api_key: str, commands: list[str],
    ) -> CommandResult:
        for command in commands:
            await self._action(host, port, api_key, "send", {"cmd": command})
        return CommandResult(success=True, message=f"Sent {len(commands)} G-code line(s).")
