"""MCP server exposing 3D printer control as agent tools.

Every tool takes optional connection arguments (``host``, ``port``,
``printer_type``, ``api_key`` and, for Bambu Lab printers, ``bambu_serial``
and ``bambu_token``).  Anything left empty falls back to the server
configuration, see :mod:`printer_mcp.config`.

Failures are returned, not raised::

    {"success": False, "error": {"code": "CONNECTION_ERROR",
                                 "message": "...", "retryable": True}}
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import anyio
from mcp.server.fastmcp import FastMCP

import printer_mcp
from printer_mcp.config import ServerConfig, load_config, load_dotenv_file
from printer_mcp.factory import PrinterFactory
from printer_mcp.log_config import configure_logging, register_secret
from printer_mcp.printers import (
    BambuImplementation,
    PrinterError,
    PrinterImplementation,
    ProjectPrinter,
    ProjectPrintOptions,
    UnsupportedError,
    ValidationError,
)
from printer_mcp.printers.credentials import combine_credentials

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration and backends
# ---------------------------------------------------------------------------

load_dotenv_file()
_config: ServerConfig = load_config()

_factory = PrinterFactory(
    http_timeout=_config.http_timeout,
    connect_timeout=_config.connect_timeout,
    publish_timeout=_config.publish_timeout,
)

_start_time = time.time()


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    try:
        yield
    finally:
        # Runs during cancellation too; the sessions must still be closed.
        with anyio.CancelScope(shield=True):
            await _factory.disconnect_all()


# ---------------------------------------------------------------------------
# MCP server instance
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "mcp-3d-printer-server",
    instructions=(
        "Control 3D printers (OctoPrint, Klipper, Duet, Repetier, Bambu Lab, "
        "Prusa Link, Creality) from an agent.\n\n"
        "Start with `get_printer_status`. Use `list_printer_files` to see what "
        "is on the printer, `upload_file` or `upload_gcode` to add files and "
        "`start_print` to print them. For Bambu Lab .3mf projects use "
        "`print_3mf`. Bambu commands are acknowledged by the printer's broker "
        "only; poll `get_printer_status` to see their effect."
    ),
    lifespan=_lifespan,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error_dict(message: str, code: str = "ERROR", retryable: bool = False) -> Dict[str, Any]:
    """Build a standardised error response dict."""
    return {
        "success": False,
        "error": {"code": code, "message": message, "retryable": retryable},
    }


def _printer_error(exc: PrinterError) -> Dict[str, Any]:
    return _error_dict(str(exc), code=exc.code, retryable=exc.retryable)


def _resolve(
    printer_type: str,
    host: str,
    port: str,
    api_key: str,
    bambu_serial: str = "",
    bambu_token: str = "",
) -> tuple[PrinterImplementation, str, str, str]:
    """Fill missing connection details from config and pick the backend.

    Bambu printers take a composite ``"<serial>:<access_code>"`` key;
    explicit serial/token arguments win over ``api_key``, which wins over
    the configured serial/token.
    """
    backend = _factory.get_implementation(printer_type or _config.printer_type)
    host = host or _config.host
    port = port or _config.port

    if isinstance(backend, BambuImplementation):
        if bambu_serial or bambu_token:
            api_key = combine_credentials(
                bambu_serial or _config.bambu_serial, bambu_token or _config.bambu_token,
            )
        elif not api_key:
            if _config.bambu_serial and _config.bambu_token:
                api_key = combine_credentials(_config.bambu_serial, _config.bambu_token)
            else:
                api_key = _config.api_key
    else:
        api_key = api_key or _config.api_key

    register_secret(api_key)
    return backend, host, port, api_key


# ---------------------------------------------------------------------------
# MCP Tools -- status and files
# ---------------------------------------------------------------------------


@mcp.tool()
async def get_printer_status(
    host: str = "",
    port: str = "",
    printer_type: str = "",
    api_key: str = "",
    bambu_serial: str = "",
    bambu_token: str = "",
) -> dict:
    """Get the current status of a 3D printer.

    Returns the backend's own status object (temperatures, job state, ...)
    plus what the backend supports.  For Bambu Lab printers ``status``
    holds the most recent MQTT report and how many reports were received.
    """
    try:
        backend, host, port, api_key = _resolve(
            printer_type, host, port, api_key, bambu_serial, bambu_token,
        )
        status = await backend.get_status(host, port, api_key)
        return {
            "success": True,
            "printer_type": backend.name,
            "status": status,
            "capabilities": backend.capabilities.to_dict(),
        }
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error in get_printer_status")
        return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


@mcp.tool()
async def list_printer_files(
    host: str = "",
    port: str = "",
    printer_type: str = "",
    api_key: str = "",
    bambu_serial: str = "",
    bambu_token: str = "",
) -> dict:
    """List the files stored on the printer.

    Each entry has ``name``, ``path``, ``size_bytes`` and ``date`` (the
    last two may be null).  Pass ``name`` to ``start_print``.
    """
    try:
        backend, host, port, api_key = _resolve(
            printer_type, host, port, api_key, bambu_serial, bambu_token,
        )
        files = await backend.get_files(host, port, api_key)
        return {
            "success": True,
            "files": [f.to_dict() for f in files],
            "count": len(files),
        }
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error in list_printer_files")
        return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


@mcp.tool()
async def get_printer_file(
    filename: str,
    host: str = "",
    port: str = "",
    printer_type: str = "",
    api_key: str = "",
    bambu_serial: str = "",
    bambu_token: str = "",
) -> dict:
    """Get information about one file on the printer.

    Args:
        filename: Name of the file as shown by ``list_printer_files``.
    """
    try:
        backend, host, port, api_key = _resolve(
            printer_type, host, port, api_key, bambu_serial, bambu_token,
        )
        entry = await backend.get_file(host, port, api_key, filename)
        return {"success": True, "file": entry.to_dict()}
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error in get_printer_file")
        return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


@mcp.tool()
async def upload_file(
    file_path: str,
    filename: str = "",
    print_after: bool = False,
    host: str = "",
    port: str = "",
    printer_type: str = "",
    api_key: str = "",
    bambu_serial: str = "",
    bambu_token: str = "",
) -> dict:
    """Upload a local file to the printer.

    Args:
        file_path: Path of the file on this machine.
        filename: Name to store it under; defaults to the local name.
        print_after: Start printing once the upload finishes.
    """
    try:
        backend, host, port, api_key = _resolve(
            printer_type, host, port, api_key, bambu_serial, bambu_token,
        )
        result = await backend.upload_file(
            host, port, api_key, file_path,
            filename or os.path.basename(file_path),
            print_after,
        )
        return result.to_dict()
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error in upload_file")
        return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


@mcp.tool()
async def upload_gcode(
    filename: str,
    gcode: str,
    print_after: bool = False,
    host: str = "",
    port: str = "",
    printer_type: str = "",
    api_key: str = "",
    bambu_serial: str = "",
    bambu_token: str = "",
) -> dict:
    """Upload G-code text to the printer as a file.

    Args:
        filename: Name for the file on the printer (e.g. ``"test.gcode"``).
        gcode: The G-code program text.
        print_after: Start printing once the upload finishes.
    """
    if not filename or os.path.basename(filename) != filename:
        return _error_dict("filename must be a plain file name.", code=ValidationError.code)
    try:
        backend, host, port, api_key = _resolve(
            printer_type, host, port, api_key, bambu_serial, bambu_token,
        )
        os.makedirs(_config.temp_dir, exist_ok=True)
        temp_path = os.path.join(_config.temp_dir, f"{uuid.uuid4().hex}_{filename}")
        with open(temp_path, "w", encoding="utf-8") as fh:
            fh.write(gcode)
        try:
            result = await backend.upload_file(host, port, api_key, temp_path, filename, print_after)
        finally:
            try:
                os.remove(temp_path)
            except OSError as exc:
                logger.warning("Could not remove temp file %s: %s", temp_path, exc)
        return result.to_dict()
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error in upload_gcode")
        return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


@mcp.tool()
async def delete_printer_file(
    filename: str,
    host: str = "",
    port: str = "",
    printer_type: str = "",
    api_key: str = "",
    bambu_serial: str = "",
    bambu_token: str = "",
) -> dict:
    """Delete a file from the printer's storage.

    This is irreversible.
    """
    try:
        backend, host, port, api_key = _resolve(
            printer_type, host, port, api_key, bambu_serial, bambu_token,
        )
        result = await backend.delete_file(host, port, api_key, filename)
        return result.to_dict()
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error in delete_printer_file")
        return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


# ---------------------------------------------------------------------------
# MCP Tools -- print control
# ---------------------------------------------------------------------------


@mcp.tool()
async def start_print(
    filename: str,
    host: str = "",
    port: str = "",
    printer_type: str = "",
    api_key: str = "",
    bambu_serial: str = "",
    bambu_token: str = "",
) -> dict:
    """Start printing a file that is already on the printer.

    For Bambu Lab .3mf projects use ``print_3mf`` instead.
    """
    try:
        backend, host, port, api_key = _resolve(
            printer_type, host, port, api_key, bambu_serial, bambu_token,
        )
        result = await backend.start_job(host, port, api_key, filename)
        return result.to_dict()
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error in start_print")
        return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


@mcp.tool()
async def cancel_print(
    host: str = "",
    port: str = "",
    printer_type: str = "",
    api_key: str = "",
    bambu_serial: str = "",
    bambu_token: str = "",
) -> dict:
    """Cancel the current print job.  Cancellation cannot be undone."""
    try:
        backend, host, port, api_key = _resolve(
            printer_type, host, port, api_key, bambu_serial, bambu_token,
        )
        result = await backend.cancel_job(host, port, api_key)
        return result.to_dict()
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error in cancel_print")
        return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


@mcp.tool()
async def pause_print(
    host: str = "",
    port: str = "",
    printer_type: str = "",
    api_key: str = "",
    bambu_serial: str = "",
    bambu_token: str = "",
) -> dict:
    """Pause the current print job."""
    try:
        backend, host, port, api_key = _resolve(
            printer_type, host, port, api_key, bambu_serial, bambu_token,
        )
        result = await backend.pause_job(host, port, api_key)
        return result.to_dict()
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error in pause_print")
        return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


@mcp.tool()
async def resume_print(
    host: str = "",
    port: str = "",
    printer_type: str = "",
    api_key: str = "",
    bambu_serial: str = "",
    bambu_token: str = "",
) -> dict:
    """Resume a paused print job."""
    try:
        backend, host, port, api_key = _resolve(
            printer_type, host, port, api_key, bambu_serial, bambu_token,
        )
        result = await backend.resume_job(host, port, api_key)
        return result.to_dict()
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error in resume_print")
        return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


@mcp.tool()
async def send_gcode(
    commands: str,
    host: str = "",
    port: str = "",
    printer_type: str = "",
    api_key: str = "",
    bambu_serial: str = "",
    bambu_token: str = "",
) -> dict:
    """Send raw G-code to the printer.

    Args:
        commands: One or more G-code lines separated by newlines.
    """
    lines = [line.strip() for line in commands.splitlines() if line.strip()]
    if not lines:
        return _error_dict("No G-code commands given.", code=ValidationError.code)
    try:
        backend, host, port, api_key = _resolve(
            printer_type, host, port, api_key, bambu_serial, bambu_token,
        )
        result = await backend.send_gcode(host, port, api_key, lines)
        return result.to_dict()
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error in send_gcode")
        return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


@mcp.tool()
async def set_printer_temperature(
    component: str,
    temperature: float,
    host: str = "",
    port: str = "",
    printer_type: str = "",
    api_key: str = "",
    bambu_serial: str = "",
    bambu_token: str = "",
) -> dict:
    """Set a heater's target temperature in °C.

    Args:
        component: ``"bed"``, ``"tool0"``, ``"extruder"`` ...
        temperature: Target in °C; ``0`` turns the heater off.
    """
    try:
        backend, host, port, api_key = _resolve(
            printer_type, host, port, api_key, bambu_serial, bambu_token,
        )
        result = await backend.set_temperature(host, port, api_key, component, temperature)
        return result.to_dict()
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error in set_printer_temperature")
        return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


@mcp.tool()
async def print_3mf(
    file_path: str,
    host: str = "",
    bambu_serial: str = "",
    bambu_token: str = "",
    api_key: str = "",
    printer_type: str = "bambu",
    project_name: str = "",
    plate_index: int = 0,
    use_ams: Optional[bool] = None,
    ams_mapping: Optional[Union[Dict[str, int], List[int]]] = None,
    md5: str = "",
    bed_leveling: bool = True,
    flow_calibration: bool = False,
    vibration_calibration: bool = False,
    layer_inspect: bool = False,
    timelapse: bool = False,
) -> dict:
    """Upload a .3mf project to a Bambu Lab printer and start printing it.

    Args:
        file_path: Local path of the sliced .3mf project.
        plate_index: Zero-based plate to print.
        use_ams: Set ``False`` to print without the AMS.  The AMS is only
            ever used when ``ams_mapping`` is given.
        ams_mapping: Filament-to-slot mapping (``{"PLA@slot": 0}``) or a
            list of slots.  An object contributes its slot numbers.
        md5: Optional checksum of the project file.

    The result only confirms the printer's broker accepted the command;
    poll ``get_printer_status`` to follow the print.
    """
    try:
        backend, host, _, api_key = _resolve(
            printer_type, host, "", api_key, bambu_serial, bambu_token,
        )
        if not isinstance(backend, ProjectPrinter):
            raise UnsupportedError(f"{backend.name} printers cannot print .3mf projects directly.")
        if not file_path.lower().endswith(".3mf"):
            raise ValidationError(f"Not a .3mf file: {file_path}")
        # An explicit disable drops the mapping before it reaches the backend.
        mapping = None if use_ams is False else ams_mapping
        options = ProjectPrintOptions(
            file_path=file_path,
            project_name=project_name or None,
            plate_index=plate_index,
            use_ams=use_ams,
            ams_mapping=mapping,
            md5=md5 or None,
            bed_leveling=bed_leveling,
            flow_calibration=flow_calibration,
            vibration_calibration=vibration_calibration,
            layer_inspect=layer_inspect,
            timelapse=timelapse,
        )
        result = await backend.print_project(host, api_key, options)
        return result.to_dict()
    except PrinterError as exc:
        return _printer_error(exc)
    except Exception as exc:
        logger.exception("Unexpected error in print_3mf")
        return _error_dict(f"Unexpected error: {exc}", code="INTERNAL_ERROR")


@mcp.tool()
def server_health() -> dict:
    """Report server version, uptime, supported printer types and open connections."""
    uptime_secs = time.time() - _start_time
    hours, rem = divmod(int(uptime_secs), 3600)
    mins, secs = divmod(rem, 60)

    connections: Dict[str, int] = {}
    bambu = _factory.get_implementation("bambu")
    if isinstance(bambu, BambuImplementation):
        connections = {"mqtt": len(bambu.mqtt_pool), "ftps": len(bambu.ftp_pool)}

    return {
        "success": True,
        "version": printer_mcp.__version__,
        "uptime_seconds": round(uptime_secs, 1),
        "uptime_human": f"{hours}h {mins}m {secs}s",
        "supported_types": _factory.supported_types,
        "default_printer_type": _config.printer_type,
        "bambu_connections": connections,
        "healthy": True,
    }


# ---------------------------------------------------------------------------
# MCP Resources
# ---------------------------------------------------------------------------


@mcp.resource("printer://{host}/status")
async def resource_status(host: str) -> str:
    """Status of the printer at *host*, using the configured type and key."""
    return json.dumps(await get_printer_status(host=host), default=str)


@mcp.resource("printer://{host}/files")
async def resource_files(host: str) -> str:
    """Files on the printer at *host*, using the configured type and key."""
    return json.dumps(await list_printer_files(host=host), default=str)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the MCP server on stdio."""
    configure_logging(_config.log_dir or None, level=_config.log_level)
    for secret in (_config.api_key, _config.bambu_token):
        register_secret(secret)
    logger.info(
        "Starting mcp-3d-printer-server %s (default type %s)",
        printer_mcp.__version__, _config.printer_type,
    )
    mcp.run()


if __name__ == "__main__":
    main()
