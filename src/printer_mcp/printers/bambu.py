"""Bambu Lab backend over MQTT (control) and implicit FTPS (files).

Bambu printers in LAN mode expose:

* An MQTT broker on port 8883 (TLS, self-signed) for commands and for
  the printer's asynchronous status reports.
* An FTPS server on port 990 (implicit TLS) for the printer's storage.

The credential token is ``"<serial>:<access_code>"``; the access code is
shown on the printer's network settings screen.

Both channels are pooled per ``(host, serial)`` so concurrent tool calls
share one session per device.  Commands are fire-and-forget: a
successful result means the broker acknowledged the message, and the
printer's reaction arrives later in the status reports returned by
:meth:`BambuImplementation.get_status`.
"""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
import os
import re
from typing import Any

from printer_mcp.printers.bambu_ftp import FtpHandle, open_ftps
from printer_mcp.printers.bambu_mqtt import (
    REMOTE_DIR,
    MqttHandle,
    build_command,
    build_project_command,
    open_mqtt,
)
from printer_mcp.printers.base import (
    CommandResult,
    NotFoundError,
    PrinterCapabilities,
    PrinterFile,
    PrinterImplementation,
    ProjectPrinter,
    ProjectPrintOptions,
    UnsupportedError,
    UploadResult,
    ValidationError,
)
from printer_mcp.printers.credentials import extract_credentials
from printer_mcp.printers.pool import ConnectionKey, ConnectionPool

logger = logging.getLogger(__name__)


class BambuImplementation(PrinterImplementation, ProjectPrinter):
    """Stateful backend for Bambu Lab printers (X1, P1, A1 series).

    Args:
        connect_timeout: Seconds allowed for one MQTT or FTPS connection
            attempt.
        publish_timeout: Seconds to wait for the broker to acknowledge a
            command.
        status_wait: Seconds :meth:`get_status` waits for a first report
            on a fresh connection.
        mqtt_connect: Override for the MQTT connect coroutine.
        ftp_connect: Override for the FTPS connect coroutine.
    """

    def __init__(
        self,
        *,
        connect_timeout: float = 10.0,
        publish_timeout: float = 10.0,
        status_wait: float = 2.0,
        mqtt_connect: Any = None,
        ftp_connect: Any = None,
    ) -> None:
        if mqtt_connect is None:
            mqtt_connect = functools.partial(
                open_mqtt, connect_timeout=connect_timeout, publish_timeout=publish_timeout,
            )
        if ftp_connect is None:
            ftp_connect = functools.partial(open_ftps, timeout=connect_timeout)
        self._mqtt_pool: ConnectionPool[MqttHandle] = ConnectionPool(
            "mqtt", mqtt_connect, connect_timeout=connect_timeout,
        )
        self._ftp_pool: ConnectionPool[FtpHandle] = ConnectionPool(
            "ftps", ftp_connect, connect_timeout=connect_timeout,
        )
        self._status_wait = status_wait
        self._sequence = itertools.count(1)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "bambu"

    @property
    def capabilities(self) -> PrinterCapabilities:
        return PrinterCapabilities(
            can_upload=True,
            can_start_job=True,
            can_set_temp=False,
            can_pause=True,
            can_send_gcode=True,
            can_print_project=True,
            supported_extensions=(".3mf", ".gcode"),
        )

    @property
    def mqtt_pool(self) -> ConnectionPool[MqttHandle]:
        return self._mqtt_pool

    @property
    def ftp_pool(self) -> ConnectionPool[FtpHandle]:
        return self._ftp_pool

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _next_seq(self) -> str:
        return str(next(self._sequence))

    @staticmethod
    def _resolve(host: str, api_key: str) -> tuple[ConnectionKey, str]:
        # MQTT and FTPS need a bare hostname.
        host = re.sub(r"^https?://", "", (host or "").strip(), flags=re.IGNORECASE).rstrip("/")
        if not host:
            raise ValidationError("Printer host is required.")
        serial, access_code = extract_credentials(api_key)
        return ConnectionKey(host=host, serial=serial), access_code

    async def _mqtt(self, host: str, api_key: str) -> MqttHandle:
        key, access_code = self._resolve(host, api_key)
        return await self._mqtt_pool.acquire(key, access_code)

    async def _ftp(self, host: str, api_key: str) -> FtpHandle:
        key, access_code = self._resolve(host, api_key)
        return await self._ftp_pool.acquire(key, access_code)

    async def _send_print_command(
        self, host: str, api_key: str, command: str, message: str, **params: Any,
    ) -> CommandResult:
        handle = await self._mqtt(host, api_key)
        sequence_id = self._next_seq()
        await handle.publish(build_command("print", command, sequence_id, **params))
        return CommandResult(
            success=True, message=message, data={"sequence_id": sequence_id},
        )

    async def _start_remote(
        self, host: str, api_key: str, remote_name: str,
    ) -> CommandResult:
        """Start a file already on the printer's storage."""
        if remote_name.lower().endswith(".3mf"):
            return await self._publish_project(
                host, api_key, remote_name, ProjectPrintOptions(file_path=remote_name),
            )
        return await self._send_print_command(
            host, api_key, "gcode_file", f"Print command sent for {remote_name}.",
            param=f"{REMOTE_DIR}/{remote_name}",
        )

    async def _publish_project(
        self, host: str, api_key: str, remote_name: str, options: ProjectPrintOptions,
    ) -> CommandResult:
        handle = await self._mqtt(host, api_key)
        sequence_id = self._next_seq()
        payload = build_project_command(sequence_id, remote_name, options)
        await handle.publish(payload)
        body = payload["print"]
        return CommandResult(
            success=True,
            message=f"Print command sent for {remote_name}.",
            data={
                "sequence_id": sequence_id,
                "file": f"{REMOTE_DIR}/{remote_name}",
                "use_ams": body["use_ams"],
                "ams_mapping": body.get("ams_mapping"),
            },
        )

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    async def get_status(self, host: str, port: str, api_key: str) -> dict[str, Any]:
        """Return the latest status report received over MQTT.

        On a fresh connection waits up to ``status_wait`` seconds for the
        first report; ``report`` is ``None`` if none arrived yet.
        """
        handle = await self._mqtt(host, api_key)
        if handle.last_report is None and self._status_wait > 0:
            try:
                await handle.next_report(self._status_wait)
            except asyncio.TimeoutError:
                logger.debug("No status report from %s yet", handle.key)
        return {
            "status": "connected",
            "serial": handle.key.serial,
            "report": handle.last_report,
            "reports_received": handle.reports_received,
        }

    async def get_files(self, host: str, port: str, api_key: str) -> list[PrinterFile]:
        handle = await self._ftp(host, api_key)
        return await handle.list_files()

    async def get_file(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> PrinterFile:
        wanted = os.path.basename(filename)
        for entry in await self.get_files(host, port, api_key):
            if entry.name == wanted:
                return entry
        raise NotFoundError(f"File not found: {filename}")

    # ------------------------------------------------------------------
    # File management
    # ------------------------------------------------------------------

    async def upload_file(
        self,
        host: str,
        port: str,
        api_key: str,
        file_path: str,
        filename: str,
        print_after: bool = False,
    ) -> UploadResult:
        """Upload a file to the printer's storage via FTPS.

        With *print_after* the uploaded file is started immediately
        (project command for ``.3mf``, ``gcode_file`` otherwise).
        """
        if not os.path.isfile(file_path):
            raise ValidationError(f"Local file not found: {file_path}")
        remote_name = os.path.basename(filename or file_path)
        handle = await self._ftp(host, api_key)
        await handle.upload(file_path, remote_name)

        if not print_after:
            return UploadResult(
                success=True,
                file_name=remote_name,
                message=f"Uploaded {remote_name} to {REMOTE_DIR}.",
            )
        await self._start_remote(host, api_key, remote_name)
        return UploadResult(
            success=True,
            file_name=remote_name,
            message=f"Uploaded {remote_name} and sent print command.",
            printing=True,
        )

    async def delete_file(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> CommandResult:
        """Remove a file from the printer's storage."""
        handle = await self._ftp(host, api_key)
        remote_name = os.path.basename(filename)
        await handle.remove(remote_name)
        return CommandResult(success=True, message=f"Deleted {remote_name}.")

    # ------------------------------------------------------------------
    # Print control
    # ------------------------------------------------------------------

    async def start_job(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> CommandResult:
        """Start a G-code file already on the printer.

        Raises:
            UnsupportedError: For ``.3mf`` archives, which need the
                project print options (use :meth:`print_project`).
        """
        remote_name = os.path.basename(filename)
        if remote_name.lower().endswith(".3mf"):
            raise UnsupportedError(
                "Starting .3mf projects by name is not supported on Bambu printers; "
                "use print_3mf instead."
            )
        self._resolve(host, api_key)
        return await self._start_remote(host, api_key, remote_name)

    async def cancel_job(self, host: str, port: str, api_key: str) -> CommandResult:
        return await self._send_print_command(host, api_key, "stop", "Cancel command sent.")

    async def pause_job(self, host: str, port: str, api_key: str) -> CommandResult:
        return await self._send_print_command(host, api_key, "pause", "Pause command sent.")

    async def resume_job(self, host: str, port: str, api_key: str) -> CommandResult:
        return await self._send_print_command(host, api_key, "resume", "Resume command sent.")

    async def send_gcode(
        self, host: str, port: str, api_key: str, commands: list[str],
    ) -> CommandResult:
        if not commands:
            raise ValidationError("No G-code commands given.")
        script = "\n".join(commands) + "\n"
        return await self._send_print_command(
            host, api_key, "gcode_line", f"Sent {len(commands)} G-code line(s).", param=script,
        )

    async def set_temperature(
        self,
        host: str,
        port: str,
        api_key: str,
        component: str,
        temperature: float,
    ) -> CommandResult:
        raise UnsupportedError(
            "Bambu printers have no MQTT command for heater targets; "
            "send M104/M140 with send_gcode instead."
        )

    # ------------------------------------------------------------------
    # Print from archive
    # ------------------------------------------------------------------

    async def print_project(
        self, host: str, api_key: str, options: ProjectPrintOptions,
    ) -> CommandResult:
        """Upload a 3MF project and publish its ``project_file`` command."""
        if not os.path.isfile(options.file_path):
            raise ValidationError(f"Local file not found: {options.file_path}")
        self._resolve(host, api_key)
        remote_name = os.path.basename(options.file_path)

        ftp = await self._ftp(host, api_key)
        await ftp.upload(options.file_path, remote_name)
        return await self._publish_project(host, api_key, remote_name, options)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Close every MQTT and FTPS session, each independently."""
        mqtt_results, ftp_results = await asyncio.gather(
            self._mqtt_pool.shutdown_all(), self._ftp_pool.shutdown_all(),
        )
        failures = sum(
            1 for result in (*mqtt_results.values(), *ftp_results.values())
            if result is not None
        )
        if failures:
            logger.warning("Bambu shutdown finished with %d close failure(s)", failures)
