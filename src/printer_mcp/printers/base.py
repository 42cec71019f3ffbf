"""Abstract printer backend interface.

Every printer family (OctoPrint, Klipper/Moonraker, Duet, Repetier,
Prusa Link, Creality, Bambu Lab) subclasses :class:`PrinterImplementation`
and implements every abstract coroutine so that the tool layer can drive
any printer through one uniform contract.

Backends are long-lived singletons shared by all requests for their
printer type, so connection details (host, port, credentials) are passed
on every call rather than held by the instance.
"""

from __future__ import annotations

import math
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Sequence

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PrinterError(Exception):
    """Base exception for all printer-related errors.

    Backends raise one of the subclasses below so that callers can tell
    a transient connection problem from a permanent capability gap.
    """

    code: str = "PRINTER_ERROR"
    retryable: bool = False

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class ValidationError(PrinterError):
    """Malformed credentials or arguments, detected before any I/O."""

    code = "VALIDATION_ERROR"


class UnsupportedTypeError(PrinterError):
    """The requested printer type has no registered backend."""

    code = "UNSUPPORTED_TYPE"

    def __init__(self, printer_type: str) -> None:
        super().__init__(f"Unsupported printer type: {printer_type}")
        self.printer_type = printer_type


class PrinterConnectionError(PrinterError):
    """The printer or service is unreachable, closed, or timed out."""

    code = "CONNECTION_ERROR"
    retryable = True


class AuthError(PrinterError):
    """The printer or service rejected the supplied credentials."""

    code = "AUTH_ERROR"


class TransferError(PrinterError):
    """A file transfer failed mid-flight."""

    code = "TRANSFER_ERROR"
    retryable = True


class UnsupportedError(PrinterError):
    """The backend cannot perform this operation."""

    code = "UNSUPPORTED"


class NotFoundError(PrinterError):
    """The requested file does not exist on the printer."""

    code = "NOT_FOUND"


# ---------------------------------------------------------------------------
# Dataclasses -- structured return types
# ---------------------------------------------------------------------------


@dataclass
class PrinterFile:
    """Metadata for a single file stored on the printer / print server."""

    name: str
    path: str
    size_bytes: int | None = None
    date: int | None = None  # Unix timestamp

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return asdict(self)


@dataclass
class UploadResult:
    """Outcome of a file-upload operation."""

    success: bool
    file_name: str
    message: str
    printing: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CommandResult:
    """Outcome of a control command (start / cancel / temperature / ...).

    For publish/subscribe backends ``success`` only means the transport
    accepted the command; the printer's reaction arrives later in its
    status reports.
    """

    success: bool
    message: str
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {"success": self.success, "message": self.message}
        if self.data is not None:
            result["data"] = self.data
        return result


@dataclass
class PrinterCapabilities:
    """Declares what a specific backend is able to do."""

    can_upload: bool = True
    can_start_job: bool = True
    can_set_temp: bool = True
    can_pause: bool = False
    can_send_gcode: bool = False
    can_print_project: bool = False
    supported_extensions: tuple[str, ...] = (".gcode", ".gco", ".g")

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary.

        The :attr:`supported_extensions` tuple is converted to a list for
        JSON compatibility.
        """
        data = asdict(self)
        data["supported_extensions"] = list(self.supported_extensions)
        return data


@dataclass
class ProjectPrintOptions:
    """Options for printing a packaged project (3MF) archive.

    ``ams_mapping`` is either a filament-name to slot mapping (as found in
    a project's slicer settings) or a plain list of slots.  ``use_ams``
    left as ``None`` means "enable whenever a mapping is present".
    """

    file_path: str
    project_name: str | None = None
    plate_index: int = 0
    use_ams: bool | None = None
    ams_mapping: Mapping[str, int] | Sequence[int] | None = None
    md5: str | None = None
    bed_leveling: bool = True
    flow_calibration: bool = False
    vibration_calibration: bool = False
    layer_inspect: bool = False
    timelapse: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Abstract base class
# ---------------------------------------------------------------------------

# Fallback heater limits in Celsius.
_MAX_HOTEND_TEMP = 300.0
_MAX_BED_TEMP = 130.0

_HEATER_RE = re.compile(r"^(tool|extruder)(\d*)$")


def parse_component(component: str) -> tuple[str, int]:
    """Parse a heater name into ``("bed", 0)`` or ``("tool", index)``.

    ``tool0``, ``tool1``, ``extruder`` and ``extruder1`` are accepted for
    hotends; a missing index means 0.

    Raises:
        ValidationError: For any other name.
    """
    name = (component or "").strip().lower()
    if name == "bed":
        return "bed", 0
    match = _HEATER_RE.match(name)
    if match is None:
        raise ValidationError(
            f"Unsupported component: {component!r}. Use 'bed', 'tool<N>' or 'extruder<N>'."
        )
    return "tool", int(match.group(2) or 0)


class PrinterImplementation(ABC):
    """Abstract base for all printer backends.

    Concrete subclasses must implement **every** abstract coroutine.
    Capabilities a backend cannot provide are reported by raising
    :class:`UnsupportedError` so any backend can stand in for another at
    the call site.

    Example minimal implementation::

        class MyPrinter(PrinterImplementation):

            @property
            def name(self) -> str:
                return "my-printer"

            async def get_status(self, host, port, api_key):
                ...

            # ... remaining abstract methods ...
    """

    # -- identity & feature discovery -----------------------------------

    @property
    @abstractmethod
    def name(self) -> str:
        """Printer type identifier for this backend (e.g. ``"octoprint"``)."""

    @property
    def capabilities(self) -> PrinterCapabilities:
        """Return the set of capabilities this backend supports."""
        return PrinterCapabilities()

    # -- state queries --------------------------------------------------

    @abstractmethod
    async def get_status(self, host: str, port: str, api_key: str) -> dict[str, Any]:
        """Return the backend-specific status object.

        Raises:
            PrinterConnectionError: If the printer is unreachable.
            AuthError: If the credentials are rejected.
        """

    @abstractmethod
    async def get_files(self, host: str, port: str, api_key: str) -> list[PrinterFile]:
        """Return the files stored on the printer.

        Raises:
            PrinterConnectionError: If the printer is unreachable.
        """

    @abstractmethod
    async def get_file(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> PrinterFile:
        """Return metadata for one file on the printer.

        Raises:
            NotFoundError: If *filename* does not exist.
        """

    # -- file management ------------------------------------------------

    @abstractmethod
    async def upload_file(
        self,
        host: str,
        port: str,
        api_key: str,
        file_path: str,
        filename: str,
        print_after: bool = False,
    ) -> UploadResult:
        """Upload a local file to the printer, optionally starting it.

        Raises:
            ValidationError: If *file_path* does not exist locally.
            TransferError: If the upload fails.
        """

    # -- print control --------------------------------------------------

    @abstractmethod
    async def start_job(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> CommandResult:
        """Begin printing a file that already exists on the printer.

        Raises:
            UnsupportedError: If the backend cannot start jobs this way.
        """

    @abstractmethod
    async def cancel_job(self, host: str, port: str, api_key: str) -> CommandResult:
        """Cancel the currently running job.

        Raises:
            PrinterConnectionError: If the printer is unreachable.
        """

    # -- temperature control --------------------------------------------

    @abstractmethod
    async def set_temperature(
        self,
        host: str,
        port: str,
        api_key: str,
        component: str,
        temperature: float,
    ) -> CommandResult:
        """Set a heater target (``bed``, ``tool0``, ``extruder`` ...).

        Raises:
            UnsupportedError: If the backend cannot set temperatures.
            ValidationError: If the component or target is invalid.
        """

    def _validate_temp(self, component: str, target: float) -> None:
        """Reject negative or out-of-range heater targets before any I/O."""
        is_bed = component.lower() == "bed"
        limit = _MAX_BED_TEMP if is_bed else _MAX_HOTEND_TEMP
        heater = "Bed" if is_bed else "Hotend"
        if not math.isfinite(target):
            raise ValidationError(f"{heater} temperature must be a finite number, got {target}.")
        if target < 0:
            raise ValidationError(f"{heater} temperature {target}°C is negative -- must be >= 0.")
        if target > limit:
            raise ValidationError(f"{heater} temperature {target}°C exceeds safety limit ({limit}°C).")

    # -- optional capabilities ------------------------------------------

    async def pause_job(self, host: str, port: str, api_key: str) -> CommandResult:
        """Pause the active job.  Optional."""
        raise UnsupportedError(f"{self.name} does not support pausing jobs.")

    async def resume_job(self, host: str, port: str, api_key: str) -> CommandResult:
        """Resume a paused job.  Optional."""
        raise UnsupportedError(f"{self.name} does not support resuming jobs.")

    async def send_gcode(
        self, host: str, port: str, api_key: str, commands: list[str],
    ) -> CommandResult:
        """Send raw G-code lines to the printer.  Optional."""
        raise UnsupportedError(f"{self.name} does not support raw G-code.")

    async def delete_file(
        self, host: str, port: str, api_key: str, filename: str,
    ) -> CommandResult:
        """Remove a file from the printer's storage.  Optional."""
        raise UnsupportedError(f"{self.name} does not support deleting files.")

    # -- lifecycle --------------------------------------------------------

    async def shutdown(self) -> None:
        """Release every connection held by this backend.

        Stateless backends hold nothing, so the default does nothing.
        """
        return None

    def __repr__(self) -> str:  # pragma: no cover
        return f"<{type(self).__name__} name={self.name!r}>"


class ProjectPrinter(ABC):
    """Optional capability: upload and print a packaged project archive."""

    @abstractmethod
    async def print_project(
        self, host: str, api_key: str, options: ProjectPrintOptions,
    ) -> CommandResult:
        """Upload ``options.file_path`` and publish the print command.

        Raises:
            TransferError: If the upload fails.
            PrinterConnectionError: If the command channel is unreachable.
        """
