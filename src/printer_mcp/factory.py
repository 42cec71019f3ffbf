"""Printer factory: resolves a printer type name to its backend.

Each backend is created once, when the factory is constructed, and then
shared by every request naming that type for the life of the process.

Example::

    factory = PrinterFactory()
    backend = factory.get_implementation("OctoPrint")
    status = await backend.get_status("octopi.local", "80", "API_KEY")
    ...
    await factory.disconnect_all()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import requests

from printer_mcp.printers import (
    BambuImplementation,
    CrealityImplementation,
    DuetImplementation,
    KlipperImplementation,
    OctoPrintImplementation,
    PrinterImplementation,
    PrusaImplementation,
    RepetierImplementation,
    UnsupportedTypeError,
)

logger = logging.getLogger(__name__)


class PrinterFactory:
    """Fixed mapping of printer type to backend singleton.

    Args:
        http_timeout: Per-request timeout for the REST backends.
        connect_timeout: Connection timeout for the Bambu MQTT/FTPS channels.
        publish_timeout: Seconds to wait for a Bambu command acknowledgement.
        session: Shared HTTP session for the REST backends.
    """

    def __init__(
        self,
        *,
        http_timeout: float = 10.0,
        connect_timeout: float = 10.0,
        publish_timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._session = session if session is not None else requests.Session()
        http: dict[str, Any] = {"timeout": http_timeout}
        backends: list[PrinterImplementation] = [
            OctoPrintImplementation(self._session, **http),
            KlipperImplementation(self._session, **http),
            DuetImplementation(self._session, **http),
            RepetierImplementation(self._session, **http),
            BambuImplementation(
                connect_timeout=connect_timeout, publish_timeout=publish_timeout,
            ),
            PrusaImplementation(self._session, **http),
            CrealityImplementation(self._session, **http),
        ]
        self._implementations: dict[str, PrinterImplementation] = {
            backend.name: backend for backend in backends
        }

    @property
    def supported_types(self) -> list[str]:
        return list(self._implementations)

    def get_implementation(self, printer_type: str) -> PrinterImplementation:
        """Return the backend for *printer_type* (case-insensitive).

        Raises:
            UnsupportedTypeError: If no backend handles *printer_type*.
        """
        backend = self._implementations.get((printer_type or "").strip().lower())
        if backend is None:
            raise UnsupportedTypeError(printer_type)
        return backend

    async def disconnect_all(self) -> None:
        """Shut down every backend; call once before the process exits.

        One backend failing to shut down does not stop the others.
        """
        backends = list(self._implementations.values())
        results = await asyncio.gather(
            *(backend.shutdown() for backend in backends), return_exceptions=True,
        )
        for backend, result in zip(backends, results):
            if isinstance(result, BaseException):
                logger.warning("Shutdown of %s backend failed: %s", backend.name, result)
        self._session.close()
        logger.info("All printer connections closed")
