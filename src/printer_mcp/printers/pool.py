"""Per-device connection pooling for stateful backends.

A :class:`ConnectionPool` owns every live transport session of one kind
(for example all MQTT control channels of a backend), keyed by
:class:`ConnectionKey`.  Concurrent callers asking for the same key share
one establishment attempt: the first caller starts a task, later callers
await that same task, so a device is never dialled twice at once.

Handles report their own loss through close callbacks.  The pool drops a
lost handle immediately so the next :meth:`ConnectionPool.acquire`
reconnects instead of returning a dead session.

All bookkeeping happens on the event loop thread.  Transport libraries
that deliver events on their own threads must hop back with
``loop.call_soon_threadsafe`` before touching a handle's state.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from printer_mcp.printers.base import PrinterConnectionError, PrinterError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionKey:
    """Identifies one physical device on the network."""

    host: str
    serial: str

    def __str__(self) -> str:
        return f"{self.serial}@{self.host}"


class ConnectionState(enum.Enum):
    """Lifecycle of a pool slot."""

    NOT_CONNECTED = "not_connected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class ConnectionHandle(ABC):
    """A live transport session owned by a :class:`ConnectionPool`.

    Subclasses call :meth:`_mark_closed` (on the event loop thread) as soon
    as the transport reports a close or error.
    """

    def __init__(self, key: ConnectionKey) -> None:
        self.key = key
        self._closed = False
        self._close_reason: str | None = None
        self._close_callbacks: list[Callable[[ConnectionHandle], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    def add_close_callback(self, callback: Callable[[ConnectionHandle], None]) -> None:
        """Run *callback* once when this handle is closed or lost.

        If the handle is already closed the callback runs immediately.
        """
        if self._closed:
            callback(self)
            return
        self._close_callbacks.append(callback)

    def _mark_closed(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Close callback failed for %s", self.key)

    @abstractmethod
    async def close(self) -> None:
        """Gracefully close the session.  May raise if the close fails."""


H = TypeVar("H", bound=ConnectionHandle)


def _consume_result(task: asyncio.Task) -> None:
    # The failure is kept in the pool's FAILED slot even if every waiter left.
    if not task.cancelled():
        task.exception()


@dataclass
class PoolSlot(Generic[H]):
    """Tagged view of one key's slot in a pool."""

    state: ConnectionState
    handle: H | None = None
    pending: asyncio.Task | None = None
    error: PrinterError | None = None


class ConnectionPool(Generic[H]):
    """Deduplicating pool of :class:`ConnectionHandle` objects.

    Args:
        name: Label used in log messages (``"mqtt"``, ``"ftps"`` ...).
        connect: Coroutine factory called as ``connect(key, *connect_args)``
            that dials one device and returns an established handle.
            Raise :class:`PrinterError` subclasses for typed failures;
            anything else is wrapped as :class:`PrinterConnectionError`.
        connect_timeout: Upper bound in seconds for one establishment
            attempt.
    """

    def __init__(
        self,
        name: str,
        connect: Callable[..., Awaitable[H]],
        *,
        connect_timeout: float = 10.0,
    ) -> None:
        self.name = name
        self._connect = connect
        self._connect_timeout = connect_timeout
        self._handles: dict[ConnectionKey, H] = {}
        self._pending: dict[ConnectionKey, asyncio.Task] = {}
        self._failures: dict[ConnectionKey, PrinterError] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, key: object) -> bool:
        return key in self._handles

    def keys(self) -> list[ConnectionKey]:
        return list(self._handles)

    def slot(self, key: ConnectionKey) -> PoolSlot[H]:
        """Return the tagged state of *key*."""
        handle = self._handles.get(key)
        if handle is not None and not handle.closed:
            return PoolSlot(ConnectionState.CONNECTED, handle=handle)
        pending = self._pending.get(key)
        if pending is not None:
            return PoolSlot(ConnectionState.CONNECTING, pending=pending)
        error = self._failures.get(key)
        if error is not None:
            return PoolSlot(ConnectionState.FAILED, error=error)
        return PoolSlot(ConnectionState.NOT_CONNECTED)

    def state(self, key: ConnectionKey) -> ConnectionState:
        return self.slot(key).state

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire(self, key: ConnectionKey, *connect_args: Any) -> H:
        """Return an established handle for *key*, connecting if needed.

        *connect_args* (typically the device secret) are passed to the
        connect factory only when a new attempt is started.

        Raises:
            PrinterConnectionError: If the device cannot be reached within
                the connect timeout.
            AuthError: If the device rejects the credentials.
        """
        handle = self._handles.get(key)
        if handle is not None:
            if not handle.closed:
                return handle
            # Lost while nobody was looking; its callback may still be queued.
            self._handles.pop(key, None)

        task = self._pending.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._establish(key, connect_args), name=f"{self.name}-connect-{key}",
            )
            task.add_done_callback(_consume_result)
            self._pending[key] = task
        else:
            logger.debug("Joining in-flight %s connection to %s", self.name, key)
        # A caller that gives up must not cancel the attempt other callers share.
        return await asyncio.shield(task)

    async def release(self, key: ConnectionKey) -> bool:
        """Close and forget the handle for *key*.

        Returns ``True`` if a handle was present.
        """
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        logger.info("Releasing %s connection to %s", self.name, key)
        await handle.close()
        return True

    def invalidate(self, key: ConnectionKey, handle: H) -> None:
        """Drop *handle* from the pool if it is still the current one for *key*."""
        if self._handles.get(key) is handle:
            del self._handles[key]
            logger.info(
                "%s connection to %s lost (%s); next call will reconnect",
                self.name, key, handle.close_reason or "closed",
            )

    async def shutdown_all(self) -> dict[ConnectionKey, BaseException | None]:
        """Close every handle, independently of individual failures.

        Returns a mapping of key to the exception raised while closing it
        (``None`` for a clean close).  The pool is empty afterwards.
        """
        handles = list(self._handles.items())
        self._handles.clear()
        # Attempts still in flight see they were superseded and close themselves.
        self._pending.clear()
        self._failures.clear()
        if not handles:
            return {}

        results = await asyncio.gather(
            *(handle.close() for _, handle in handles),
            return_exceptions=True,
        )
        outcome: dict[ConnectionKey, BaseException | None] = {}
        for (key, _), result in zip(handles, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Failed to close %s connection to %s: %s", self.name, key, result,
                )
                outcome[key] = result
            else:
                outcome[key] = None
        logger.info("Closed %d %s connection(s)", len(handles), self.name)
        return outcome

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _establish(self, key: ConnectionKey, connect_args: tuple[Any, ...]) -> H:
        task = asyncio.current_task()
        self._failures.pop(key, None)
        logger.info("Opening %s connection to %s", self.name, key)
        try:
            handle = await asyncio.wait_for(
                self._connect(key, *connect_args), timeout=self._connect_timeout,
            )
        except asyncio.CancelledError:
            self._forget_pending(key, task)
            raise
        except asyncio.TimeoutError as exc:
            self._forget_pending(key, task)
            raise self._record_failure(key, PrinterConnectionError(
                f"Timed out connecting to {key} via {self.name} "
                f"after {self._connect_timeout:g}s.",
                cause=exc,
            )) from exc
        except PrinterError as exc:
            self._forget_pending(key, task)
            raise self._record_failure(key, exc)
        except Exception as exc:
            self._forget_pending(key, task)
            raise self._record_failure(key, PrinterConnectionError(
                f"Could not connect to {key} via {self.name}: {exc}",
                cause=exc,
            )) from exc

        if not self._forget_pending(key, task):
            # shutdown_all() ran while we were dialling.
            try:
                await handle.close()
            except Exception as exc:
                logger.debug("Closing superseded %s handle failed: %s", self.name, exc)
            raise PrinterConnectionError(
                f"{self.name} connection to {key} was abandoned during shutdown."
            )

        if handle.closed:
            raise self._record_failure(key, PrinterConnectionError(
                f"{self.name} connection to {key} closed during setup "
                f"({handle.close_reason or 'unknown reason'})."
            ))

        self._handles[key] = handle
        handle.add_close_callback(lambda lost: self.invalidate(key, lost))
        logger.info("%s connection to %s established", self.name, key)
        return handle

    def _forget_pending(self, key: ConnectionKey, task: asyncio.Task | None) -> bool:
        """Remove *task* as the pending record for *key*.

        Returns ``False`` if the record was already gone or replaced.
        """
        if self._pending.get(key) is task:
            del self._pending[key]
            return True
        return False

    def _record_failure(self, key: ConnectionKey, error: PrinterError) -> PrinterError:
        self._failures[key] = error
        logger.warning("%s connection to %s failed: %s", self.name, key, error)
        return error
