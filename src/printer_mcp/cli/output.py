"""Output formatting for the printer-mcp CLI.

Every public function accepts a ``json_mode`` flag:
    - ``True``  → indented JSON envelope ``{status, data | error}``
    - ``False`` → Rich-rendered panels and tables for humans
"""

from __future__ import annotations

import json
import math
from datetime import datetime
from io import StringIO
from typing import Any, Dict, List, Optional, Union

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


def _render(renderable: Any) -> str:
    buf = StringIO()
    Console(file=buf, force_terminal=False, width=100).print(renderable)
    return buf.getvalue().rstrip("\n")


def format_bytes(size_bytes: Optional[Union[int, float]]) -> str:
    """Convert bytes to ``1.2 MB``."""
    if size_bytes is None or size_bytes < 0:
        return "N/A"
    if size_bytes == 0:
        return "0 B"
    units = ("B", "KB", "MB", "GB", "TB")
    exponent = min(int(math.log(size_bytes, 1024)), len(units) - 1)
    value = size_bytes / (1024 ** exponent)
    if exponent == 0:
        return f"{int(value)} B"
    return f"{value:.1f} {units[exponent]}"


def _format_date(timestamp: Optional[int]) -> str:
    if not timestamp:
        return "N/A"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M")


def format_response(
    status: str,
    data: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
    *,
    json_mode: bool = False,
) -> str:
    """Build a standard ``{status, data, error}`` response."""
    if json_mode:
        envelope: Dict[str, Any] = {"status": status}
        if data is not None:
            envelope["data"] = data
        if error is not None:
            envelope["error"] = error
        return json.dumps(envelope, indent=2, sort_keys=False, default=str)

    if status == "error" and error:
        t = Text()
        t.append("Error", style="bold red")
        t.append(f" [{error.get('code', 'UNKNOWN')}]: ", style="red")
        t.append(error.get("message", "An unknown error occurred."))
        return _render(Panel(t, title="Error", border_style="red"))
    return _render(Panel(json.dumps(data or {}, indent=2, default=str), border_style="green"))


def format_error(message: str, code: str = "ERROR", *, json_mode: bool = False) -> str:
    """Shortcut for a standard error response."""
    return format_response(
        "error", error={"code": code, "message": message}, json_mode=json_mode,
    )


def format_status(
    printer_type: str,
    status: Dict[str, Any],
    *,
    json_mode: bool = False,
) -> str:
    """Format a backend status object.

    Backends return their own status shapes, so the human view lists the
    top-level fields and leaves nested objects as JSON.
    """
    if json_mode:
        return format_response(
            "success", data={"printer_type": printer_type, "status": status}, json_mode=True,
        )

    table = Table(title=f"Printer status ({printer_type})", border_style="blue")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in status.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, default=str)
            if len(value) > 80:
                value = value[:77] + "..."
        table.add_row(str(key), str(value))
    return _render(table)


def format_files(files: List[Dict[str, Any]], *, json_mode: bool = False) -> str:
    """Format a list of printer files.

    Expects dicts from ``PrinterFile.to_dict()``.
    """
    if json_mode:
        return format_response(
            "success", data={"files": files, "count": len(files)}, json_mode=True,
        )
    if not files:
        return _render(Panel("No files on printer.", title="Files", border_style="yellow"))

    table = Table(title="Files", border_style="blue")
    table.add_column("Name", style="bold")
    table.add_column("Size", justify="right")
    table.add_column("Date")
    for f in files:
        table.add_row(
            f.get("name", ""), format_bytes(f.get("size_bytes")), _format_date(f.get("date")),
        )
    return _render(table)


def format_action(action: str, result: Dict[str, Any], *, json_mode: bool = False) -> str:
    """Format the result of a print-control or upload action.

    *result* should come from ``CommandResult.to_dict()`` or
    ``UploadResult.to_dict()``.
    """
    if json_mode:
        return format_response("success", data={"action": action, **result}, json_mode=True)

    style_map = {
        "start": "green",
        "cancel": "red",
        "pause": "yellow",
        "resume": "green",
        "upload": "green",
        "delete": "red",
    }
    border = style_map.get(action, "blue")
    if not result.get("success", True):
        border = "red"
    message = result.get("message", f"{action.capitalize()} completed.")
    return _render(Panel(message, title=action.capitalize(), border_style=border))


def format_types(types: List[str], *, json_mode: bool = False) -> str:
    """Format the supported printer types."""
    if json_mode:
        return format_response("success", data={"types": types}, json_mode=True)
    return "\n".join(types)
