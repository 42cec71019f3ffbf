"""Bambu Lab implicit-FTPS file channel.

Bambu printers expose their storage over FTPS on port 990 with the TLS
handshake done immediately on connect (implicit mode).  ftplib is
blocking, so every command runs on a worker thread; a per-session lock
keeps commands from interleaving on the shared control connection.
"""

from __future__ import annotations

import asyncio
import datetime
import ftplib
import logging
import os
import socket
import ssl
import threading
from typing import Any, Callable, TypeVar

from printer_mcp.printers.base import (
    AuthError,
    NotFoundError,
    PrinterConnectionError,
    PrinterFile,
    TransferError,
    ValidationError,
)
from printer_mcp.printers.bambu_mqtt import REMOTE_DIR
from printer_mcp.printers.pool import ConnectionHandle, ConnectionKey

logger = logging.getLogger(__name__)

FTPS_PORT = 990
FTPS_USERNAME = "bblp"

T = TypeVar("T")


class _ImplicitFTP_TLS(ftplib.FTP_TLS):
    """FTP_TLS for servers that expect TLS from the first byte.

    :class:`ftplib.FTP_TLS` only knows explicit ``AUTH TLS``.  Data
    connections also have to resume the control connection's TLS session
    or the printer drops them.
    """

    def connect(
        self,
        host: str = "",
        port: int = 0,
        timeout: float = -999,
        source_address: Any = None,
    ) -> str:
        if host:
            self.host = host
        if port:
            self.port = port
        if timeout != -999:
            self.timeout = timeout
        if source_address is not None:
            self.source_address = source_address

        raw = socket.create_connection(
            (self.host, self.port), self.timeout, source_address=self.source_address,
        )
        self.af = raw.family
        self.sock = self.context.wrap_socket(raw, server_hostname=self.host)
        self.file = self.sock.makefile("r", encoding=self.encoding)
        self.welcome = self.getresp()
        return self.welcome

    def ntransfercmd(self, cmd: str, rest: Any = None) -> Any:
        conn, size = ftplib.FTP.ntransfercmd(self, cmd, rest)
        if self._prot_p:  # type: ignore[attr-defined]
            conn = self.context.wrap_socket(
                conn,
                server_hostname=self.host,
                session=self.sock.session,  # type: ignore[union-attr]
            )
        return conn, size


def _tls_context() -> ssl.SSLContext:
    # Printers ship self-signed certificates.
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def _parse_mlsd_time(modify: str | None) -> int | None:
    if not modify:
        return None
    try:
        stamp = datetime.datetime.strptime(modify[:14], "%Y%m%d%H%M%S")
    except ValueError:
        return None
    return int(stamp.replace(tzinfo=datetime.timezone.utc).timestamp())


def _remote_path(name: str) -> str:
    return f"{REMOTE_DIR}/{name}"


def _is_session_lost(exc: BaseException) -> bool:
    if isinstance(exc, (FileNotFoundError, PermissionError, IsADirectoryError)):
        # Local file problems leave the session intact.
        return False
    if isinstance(exc, (OSError, EOFError)):
        return True
    return isinstance(exc, ftplib.error_temp) and str(exc).startswith("421")


class FtpHandle(ConnectionHandle):
    """One authenticated FTPS session to one printer."""

    def __init__(self, key: ConnectionKey, ftp: ftplib.FTP_TLS) -> None:
        super().__init__(key)
        self._ftp = ftp
        self._lock = threading.Lock()

    async def _run(
        self, action: str, func: Callable[..., T], *args: Any, not_found: bool = False,
    ) -> T:
        """Run a blocking ftplib call on a worker thread.

        A dropped session closes the handle so the pool reconnects.  With
        *not_found* set, a 550 reply means the remote file is missing and
        raises :class:`NotFoundError`; otherwise it is a :class:`TransferError`.
        """
        if self.closed:
            raise PrinterConnectionError(f"FTPS connection to {self.key} is closed.")
        try:
            return await asyncio.to_thread(self._locked, func, *args)
        except ftplib.error_perm as exc:
            if not_found and str(exc).startswith("550"):
                raise NotFoundError(f"{action} failed on {self.key}: {exc}", cause=exc) from exc
            raise TransferError(f"{action} failed on {self.key}: {exc}", cause=exc) from exc
        except (OSError, EOFError, ftplib.Error) as exc:
            if _is_session_lost(exc):
                self._mark_closed(f"{action}: {exc}")
            raise TransferError(f"{action} failed on {self.key}: {exc}", cause=exc) from exc

    def _locked(self, func: Callable[..., T], *args: Any) -> T:
        with self._lock:
            return func(*args)

    # -- listing -----------------------------------------------------------

    async def list_files(self) -> list[PrinterFile]:
        """List files under the printer's storage directory."""
        return await self._run("List files", self._list_sync)

    def _list_sync(self) -> list[PrinterFile]:
        try:
            return self._list_via_mlsd()
        except ftplib.error_perm as exc:
            if not str(exc).startswith("502"):
                raise
            logger.info("MLSD not supported on %s, falling back to NLST", self.key)
        try:
            return self._list_via_nlst()
        except ftplib.error_perm as exc:
            logger.info("NLST failed on %s (%s), falling back to LIST", self.key, exc)
        return self._list_via_list()

    def _list_via_mlsd(self) -> list[PrinterFile]:
        entries: list[PrinterFile] = []
        for name, facts in self._ftp.mlsd(f"{REMOTE_DIR}/"):
            if name in (".", "..") or facts.get("type") in ("dir", "cdir", "pdir"):
                continue
            size = facts.get("size")
            entries.append(PrinterFile(
                name=name,
                path=_remote_path(name),
                size_bytes=int(size) if size else None,
                date=_parse_mlsd_time(facts.get("modify")),
            ))
        return entries

    def _list_via_nlst(self) -> list[PrinterFile]:
        entries: list[PrinterFile] = []
        for raw in self._ftp.nlst(f"{REMOTE_DIR}/"):
            name = raw.rsplit("/", 1)[-1]
            if name in ("", ".", ".."):
                continue
            entries.append(PrinterFile(name=name, path=_remote_path(name)))
        return entries

    def _list_via_list(self) -> list[PrinterFile]:
        lines: list[str] = []
        self._ftp.retrlines(f"LIST {REMOTE_DIR}/", lines.append)
        entries: list[PrinterFile] = []
        for line in lines:
            parts = line.split(None, 8)
            if not parts or line.startswith("d"):
                continue
            name = parts[-1]
            if name in (".", ".."):
                continue
            size = int(parts[4]) if len(parts) >= 5 and parts[4].isdigit() else None
            entries.append(PrinterFile(name=name, path=_remote_path(name), size_bytes=size))
        return entries

    # -- transfer ------------------------------------------------------------

    async def upload(self, local_path: str, remote_name: str) -> str:
        """Upload *local_path* as *remote_name*; returns the remote path."""
        if not os.path.isfile(local_path):
            raise ValidationError(f"Local file not found: {local_path}")
        remote = _remote_path(remote_name)
        logger.info("Uploading %s to %s:%s", local_path, self.key, remote)
        await self._run("Upload", self._store, local_path, remote)
        return remote

    def _store(self, local_path: str, remote: str) -> None:
        with open(local_path, "rb") as fh:
            self._ftp.storbinary(f"STOR {remote}", fh)

    async def remove(self, remote_name: str) -> None:
        """Delete *remote_name* from the printer's storage.

        Raises:
            NotFoundError: If the file does not exist.
        """
        await self._run("Remove", self._ftp.delete, _remote_path(remote_name), not_found=True)

    async def close(self) -> None:
        try:
            await asyncio.to_thread(self._locked, self._quit)
        finally:
            self._mark_closed("closed by client")

    def _quit(self) -> None:
        try:
            self._ftp.quit()
        except (OSError, EOFError, ftplib.Error):
            # Server already gone; make sure the socket is released.
            self._ftp.close()
            raise


def _login(ftp: ftplib.FTP_TLS, host: str, port: int, access_code: str, timeout: float) -> None:
    ftp.connect(host, port, timeout=timeout)
    ftp.login(FTPS_USERNAME, access_code)
    ftp.prot_p()


async def open_ftps(
    key: ConnectionKey,
    access_code: str,
    *,
    timeout: float = 10.0,
    port: int = FTPS_PORT,
    ftp_factory: Callable[[], ftplib.FTP_TLS] | None = None,
) -> FtpHandle:
    """Log in to the printer's FTPS server and return an established handle.

    Raises:
        AuthError: If the access code is rejected.
        PrinterConnectionError: On socket or TLS failure.
    """
    ftp = ftp_factory() if ftp_factory else _ImplicitFTP_TLS(context=_tls_context())
    try:
        await asyncio.to_thread(_login, ftp, key.host, port, access_code, timeout)
    except asyncio.CancelledError:
        asyncio.get_running_loop().run_in_executor(None, ftp.close)
        raise
    except ftplib.error_perm as exc:
        ftp.close()
        if str(exc).startswith("530"):
            raise AuthError(
                f"Printer {key} rejected the LAN access code over FTPS.", cause=exc,
            ) from exc
        raise PrinterConnectionError(f"FTPS login to {key} failed: {exc}", cause=exc) from exc
    except (OSError, EOFError, ftplib.Error) as exc:
        ftp.close()
        raise PrinterConnectionError(
            f"FTPS connection to {key.host}:{port} failed: {exc}", cause=exc,
        ) from exc
    return FtpHandle(key, ftp)
