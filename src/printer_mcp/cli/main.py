"""printer-mcp CLI: drive a printer from the shell or start the MCP server.

Connection options default to the server configuration (env vars, then
``~/.printer-mcp/config.yaml``), so ``printer-mcp status`` talks to the
same printer the MCP server would.  Every command supports ``--json``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any, Awaitable, Callable, TypeVar

import click

from printer_mcp.cli.output import (
    format_action,
    format_error,
    format_files,
    format_status,
    format_types,
)
from printer_mcp.config import ServerConfig, load_config, load_dotenv_file
from printer_mcp.factory import PrinterFactory
from printer_mcp.printers import BambuImplementation, PrinterError, PrinterImplementation
from printer_mcp.printers.credentials import combine_credentials

logger = logging.getLogger(__name__)

T = TypeVar("T")

Action = Callable[[PrinterImplementation, str, str, str], Awaitable[T]]


def _build_factory(config: ServerConfig) -> PrinterFactory:
    return PrinterFactory(
        http_timeout=config.http_timeout,
        connect_timeout=config.connect_timeout,
        publish_timeout=config.publish_timeout,
    )


def _credentials(backend: PrinterImplementation, opts: dict[str, Any]) -> str:
    if isinstance(backend, BambuImplementation) and opts["serial"] and opts["access_code"]:
        return combine_credentials(opts["serial"], opts["access_code"])
    return opts["api_key"] or ""


def _run(ctx: click.Context, action: Action[T]) -> T:
    """Run *action* against the selected backend and close connections after."""
    opts = ctx.obj
    factory = _build_factory(opts["config"])

    async def _go() -> T:
        try:
            backend = factory.get_implementation(opts["printer_type"])
            return await action(backend, opts["host"], opts["port"], _credentials(backend, opts))
        finally:
            await factory.disconnect_all()

    return asyncio.run(_go())


def _fail(action: str, exc: Exception, json_mode: bool) -> None:
    if isinstance(exc, PrinterError):
        click.echo(format_error(f"Failed to {action}: {exc}", exc.code, json_mode=json_mode))
    else:
        logger.debug("Unexpected CLI failure", exc_info=True)
        click.echo(format_error(f"Failed to {action}: {exc}", "INTERNAL_ERROR", json_mode=json_mode))
    sys.exit(1)


@click.group()
@click.option("--type", "-t", "printer_type", default=None, help="Printer type (octoprint, bambu, ...).")
@click.option("--host", "-H", default=None, help="Printer host or IP.")
@click.option("--port", default=None, help="Printer port (REST backends).")
@click.option("--api-key", default=None, help="API key, or 'serial:access_code' for Bambu.")
@click.option("--serial", default=None, help="Printer serial number (Bambu).")
@click.option("--access-code", default=None, help="LAN access code (Bambu).")
@click.version_option(package_name="mcp-3d-printer-server")
@click.pass_context
def cli(
    ctx: click.Context,
    printer_type: str | None,
    host: str | None,
    port: str | None,
    api_key: str | None,
    serial: str | None,
    access_code: str | None,
) -> None:
    """printer-mcp: 3D printer control for agents."""
    load_dotenv_file()
    config = load_config()
    ctx.ensure_object(dict)
    ctx.obj.update(
        config=config,
        printer_type=printer_type or config.printer_type,
        host=host or config.host,
        port=port or config.port,
        api_key=api_key or config.api_key,
        serial=serial or config.bambu_serial,
        access_code=access_code or config.bambu_token,
    )


# ---------------------------------------------------------------------------
# serve / types
# ---------------------------------------------------------------------------


@cli.command()
def serve() -> None:
    """Start the MCP server on stdio."""
    from printer_mcp.server import main as _server_main

    _server_main()


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def types(ctx: click.Context, json_mode: bool) -> None:
    """List supported printer types."""
    factory = _build_factory(ctx.obj["config"])
    click.echo(format_types(factory.supported_types, json_mode=json_mode))


# ---------------------------------------------------------------------------
# status / files
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def status(ctx: click.Context, json_mode: bool) -> None:
    """Show the printer's current status."""

    async def action(backend, host, port, key):
        return backend.name, await backend.get_status(host, port, key)

    try:
        name, state = _run(ctx, action)
        click.echo(format_status(name, state, json_mode=json_mode))
    except Exception as exc:
        _fail("get printer status", exc, json_mode)


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def files(ctx: click.Context, json_mode: bool) -> None:
    """List files stored on the printer."""

    async def action(backend, host, port, key):
        return await backend.get_files(host, port, key)

    try:
        entries = _run(ctx, action)
        click.echo(format_files([f.to_dict() for f in entries], json_mode=json_mode))
    except Exception as exc:
        _fail("list printer files", exc, json_mode)


# ---------------------------------------------------------------------------
# upload / delete
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", "filename", default=None, help="Name on the printer (default: local name).")
@click.option("--print", "print_after", is_flag=True, help="Start printing after upload.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def upload(
    ctx: click.Context, file_path: str, filename: str | None, print_after: bool, json_mode: bool,
) -> None:
    """Upload a local file to the printer."""

    async def action(backend, host, port, key):
        return await backend.upload_file(
            host, port, key, file_path, filename or os.path.basename(file_path), print_after,
        )

    try:
        click.echo(format_action("upload", _run(ctx, action).to_dict(), json_mode=json_mode))
    except Exception as exc:
        _fail("upload file", exc, json_mode)


@cli.command()
@click.argument("filename")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def delete(ctx: click.Context, filename: str, json_mode: bool) -> None:
    """Delete a file from the printer."""

    async def action(backend, host, port, key):
        return await backend.delete_file(host, port, key, filename)

    try:
        click.echo(format_action("delete", _run(ctx, action).to_dict(), json_mode=json_mode))
    except Exception as exc:
        _fail("delete file", exc, json_mode)


# ---------------------------------------------------------------------------
# print control
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("filename")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def start(ctx: click.Context, filename: str, json_mode: bool) -> None:
    """Start printing a file already on the printer."""

    async def action(backend, host, port, key):
        return await backend.start_job(host, port, key, filename)

    try:
        click.echo(format_action("start", _run(ctx, action).to_dict(), json_mode=json_mode))
    except Exception as exc:
        _fail("start print", exc, json_mode)


def _job_command(name: str, method: str, verb: str) -> click.Command:
    @click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
    @click.pass_context
    def command(ctx: click.Context, json_mode: bool) -> None:
        async def action(backend, host, port, key):
            return await getattr(backend, method)(host, port, key)

        try:
            click.echo(format_action(name, _run(ctx, action).to_dict(), json_mode=json_mode))
        except Exception as exc:
            _fail(f"{name} print", exc, json_mode)

    command.__doc__ = f"{verb} the current print job."
    return cli.command(name)(command)


cancel = _job_command("cancel", "cancel_job", "Cancel")
pause = _job_command("pause", "pause_job", "Pause")
resume = _job_command("resume", "resume_job", "Resume")


@cli.command()
@click.argument("commands", nargs=-1, required=True)
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def gcode(ctx: click.Context, commands: tuple[str, ...], json_mode: bool) -> None:
    """Send G-code lines, e.g. ``printer-mcp gcode G28 "M104 S200"``."""

    async def action(backend, host, port, key):
        return await backend.send_gcode(host, port, key, list(commands))

    try:
        click.echo(format_action("gcode", _run(ctx, action).to_dict(), json_mode=json_mode))
    except Exception as exc:
        _fail("send G-code", exc, json_mode)


@cli.command()
@click.argument("component")
@click.argument("temperature", type=float)
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def temp(ctx: click.Context, component: str, temperature: float, json_mode: bool) -> None:
    """Set a heater target, e.g. ``printer-mcp temp bed 60``."""

    async def action(backend, host, port, key):
        return await backend.set_temperature(host, port, key, component, temperature)

    try:
        click.echo(format_action("temperature", _run(ctx, action).to_dict(), json_mode=json_mode))
    except Exception as exc:
        _fail("set temperature", exc, json_mode)


if __name__ == "__main__":
    cli()
