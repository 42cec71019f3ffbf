"""Shared plumbing for the stateless REST backends.

Every REST backend is a thin translation of the capability contract into
HTTP calls.  They share one :class:`requests.Session` owned by the
registry; blocking calls run on worker threads so the event loop stays
responsive.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any
from urllib.parse import urlsplit

import requests
from requests.exceptions import ConnectionError as ReqConnectionError
from requests.exceptions import RequestException, Timeout

from printer_mcp.printers.base import (
    AuthError,
    NotFoundError,
    PrinterConnectionError,
    PrinterError,
    PrinterImplementation,
    TransferError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# HTTP status codes eligible for automatic retry.
_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({502, 503, 504})

DEFAULT_TIMEOUT = 10.0


def safe_get(data: Any, *keys: str, default: Any = None) -> Any:
    """Walk nested dicts safely, returning *default* on any miss or type error."""
    current = data
    for key in keys:
        if not isinstance(current, dict):
            return default
        current = current.get(key, default)
    return current


def base_url(host: str, port: str | int | None) -> str:
    """Build ``scheme://host[:port]`` from a bare host or a URL.

    An explicit port in *host* wins over *port*.
    """
    host = (host or "").strip().rstrip("/")
    if not host:
        raise ValidationError("Printer host is required.")
    if "://" not in host:
        host = f"http://{host}"
    if port and urlsplit(host).port is None:
        host = f"{host}:{port}"
    return host


def require_local_file(file_path: str) -> str:
    """Return the absolute path of *file_path* or raise :class:`ValidationError`."""
    abs_path = os.path.abspath(file_path)
    if not os.path.isfile(abs_path):
        raise ValidationError(f"Local file not found: {abs_path}")
    return abs_path


class HttpPrinter(PrinterImplementation):
    """Base for backends that speak a vendor REST API.

    Args:
        session: Shared HTTP session.  A private one is created if omitted.
        timeout: Per-request timeout in seconds.
        retries: Maximum attempts for transient failures (connection errors
            and HTTP 502/503/504).
        backoff: Base delay in seconds between attempts; doubles each time.
    """

    #: Label used in error messages.
    display_name = "Printer"

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = 3,
        backoff: float = 1.0,
    ) -> None:
        self._session = session if session is not None else requests.Session()
        self._timeout = timeout
        self._retries = max(retries, 1)
        self._backoff = backoff

    def _auth_headers(self, api_key: str) -> dict[str, str]:
        """Headers carrying *api_key*.  Override per vendor."""
        return {}

    async def _request(
        self,
        method: str,
        host: str,
        port: str,
        path: str,
        *,
        api_key: str = "",
        headers: dict[str, str] | None = None,
        retry: bool = True,
        **kwargs: Any,
    ) -> requests.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Returns the :class:`requests.Response` on success (2xx).

        Raises:
            AuthError: On HTTP 401/403.
            NotFoundError: On HTTP 404.
            PrinterConnectionError: On connection failure or timeout, or
                when all retry attempts are exhausted.
            PrinterError: On any other non-2xx response.
        """
        url = f"{base_url(host, port)}{path}"
        merged = {**self._auth_headers(api_key), **(headers or {})}
        attempts = self._retries if retry else 1
        last_exc: PrinterError | None = None

        for attempt in range(attempts):
            try:
                response = await asyncio.to_thread(
                    self._session.request,
                    method,
                    url,
                    headers=merged,
                    timeout=self._timeout,
                    **kwargs,
                )
                if response.ok:
                    return response

                status = response.status_code
                detail = f"{self.display_name} returned HTTP {status} for {method} {path}"
                if status in (401, 403):
                    raise AuthError(f"{detail}: check the API key.")
                if status == 404:
                    raise NotFoundError(f"{detail}.")
                if status not in _RETRYABLE_STATUS_CODES:
                    raise PrinterError(f"{detail}: {response.text[:300]}")

                last_exc = PrinterConnectionError(f"{detail} (attempt {attempt + 1}/{attempts})")

            except Timeout as exc:
                last_exc = PrinterConnectionError(
                    f"Request to {url} timed out after {self._timeout:g}s "
                    f"(attempt {attempt + 1}/{attempts})",
                    cause=exc,
                )
            except ReqConnectionError as exc:
                last_exc = PrinterConnectionError(
                    f"Could not connect to {self.display_name} at {url} "
                    f"(attempt {attempt + 1}/{attempts})",
                    cause=exc,
                )
            except RequestException as exc:
                raise PrinterError(f"Request error for {method} {path}: {exc}", cause=exc) from exc

            if attempt < attempts - 1:
                delay = self._backoff * 2**attempt
                logger.debug(
                    "Retrying %s %s in %.1fs (attempt %d/%d)",
                    method, path, delay, attempt + 1, attempts,
                )
                await asyncio.sleep(delay)

        assert last_exc is not None
        raise last_exc

    async def _get_json(self, host: str, port: str, path: str, **kwargs: Any) -> Any:
        """GET *path* and return the parsed JSON body."""
        response = await self._request("GET", host, port, path, **kwargs)
        return self._json(response, f"GET {path}")

    @staticmethod
    def _json(response: requests.Response, what: str) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise PrinterError(f"Invalid JSON in response from {what}", cause=exc) from exc

    async def _upload(
        self,
        host: str,
        port: str,
        path: str,
        file_path: str,
        filename: str,
        *,
        api_key: str = "",
        field: str = "file",
        data: dict[str, Any] | None = None,
        content_type: str = "application/octet-stream",
        method: str = "POST",
        raw: bool = False,
        **kwargs: Any,
    ) -> requests.Response:
        """Send *file_path* as multipart form field *field*.

        With *raw* the file is the whole request body instead.  Not
        retried: a half-sent upload is reported, not repeated.

        Raises:
            ValidationError: If the local file is missing or unreadable.
            TransferError: If the server rejects or drops the upload.
        """
        abs_path = require_local_file(file_path)
        try:
            with open(abs_path, "rb") as fh:
                if raw:
                    body: dict[str, Any] = {"data": fh}
                else:
                    body = {"files": {field: (filename, fh, content_type)}, "data": data}
                return await self._request(
                    method, host, port, path,
                    api_key=api_key,
                    retry=False,
                    **body,
                    **kwargs,
                )
        except PermissionError as exc:
            raise ValidationError(f"Permission denied reading file: {abs_path}", cause=exc) from exc
        except AuthError:
            raise
        except PrinterError as exc:
            raise TransferError(f"Upload of {filename} failed: {exc}", cause=exc) from exc
