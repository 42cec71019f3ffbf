"""Printer backend package.

Re-exports the public API so consumers can write::

    from printer_mcp.printers import PrinterImplementation, PrinterError, ...
"""

from __future__ import annotations

from printer_mcp.printers.bambu import BambuImplementation
from printer_mcp.printers.base import (
    AuthError,
    CommandResult,
    NotFoundError,
    PrinterCapabilities,
    PrinterConnectionError,
    PrinterError,
    PrinterFile,
    PrinterImplementation,
    ProjectPrinter,
    ProjectPrintOptions,
    TransferError,
    UnsupportedError,
    UnsupportedTypeError,
    UploadResult,
    ValidationError,
)
from printer_mcp.printers.credentials import extract_credentials
from printer_mcp.printers.duet import DuetImplementation
from printer_mcp.printers.klipper import CrealityImplementation, KlipperImplementation
from printer_mcp.printers.octoprint import OctoPrintImplementation
from printer_mcp.printers.prusa import PrusaImplementation
from printer_mcp.printers.repetier import RepetierImplementation

__all__ = [
    "AuthError",
    "BambuImplementation",
    "CommandResult",
    "CrealityImplementation",
    "DuetImplementation",
    "KlipperImplementation",
    "NotFoundError",
    "OctoPrintImplementation",
    "PrinterCapabilities",
    "PrinterConnectionError",
    "PrinterError",
    "PrinterFile",
    "PrinterImplementation",
    "ProjectPrinter",
    "ProjectPrintOptions",
    "PrusaImplementation",
    "RepetierImplementation",
    "TransferError",
    "UnsupportedError",
    "UnsupportedTypeError",
    "UploadResult",
    "ValidationError",
    "extract_credentials",
]
