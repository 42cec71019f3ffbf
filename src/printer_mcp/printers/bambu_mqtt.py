"""Bambu Lab MQTT control channel.

Commands are published as single-key JSON objects to
``device/<serial>/request`` and the printer answers, whenever it likes,
on ``device/<serial>/report``.  A publish only confirms that the broker
acknowledged the message (QoS 1); whether the printer acted on it shows
up later in the report stream.

paho-mqtt runs its network loop on its own thread.  Every callback below
hops back to the asyncio loop with ``call_soon_threadsafe`` before it
touches handle state.
"""

from __future__ import annotations

import asyncio
import json
import logging
import ssl
import threading
import time
from typing import Any, Callable, Mapping, Sequence

import paho.mqtt.client as mqtt

from printer_mcp.printers.base import (
    AuthError,
    PrinterConnectionError,
    ProjectPrintOptions,
)
from printer_mcp.printers.pool import ConnectionHandle, ConnectionKey

logger = logging.getLogger(__name__)

MQTT_PORT = 8883
MQTT_USERNAME = "bblp"
MQTT_KEEPALIVE = 60
COMMAND_QOS = 1

# paho-mqtt v2 reason codes for a rejected CONNECT.
_AUTH_REASON_CODES = frozenset({134, 135})  # bad username/password, not authorized

# Remote directory on the printer's storage.
REMOTE_DIR = "/sdcard"


# ---------------------------------------------------------------------------
# Topics and payloads
# ---------------------------------------------------------------------------


def request_topic(serial: str) -> str:
    return f"device/{serial}/request"


def report_topic(serial: str) -> str:
    return f"device/{serial}/report"


def build_command(
    category: str, command: str, sequence_id: str, **params: Any,
) -> dict[str, Any]:
    """Build ``{category: {"sequence_id", "command", **params}}``.

    Parameters whose value is ``None`` are left out.
    """
    body: dict[str, Any] = {"sequence_id": sequence_id, "command": command}
    body.update({k: v for k, v in params.items() if v is not None})
    return {category: body}


def normalize_ams_mapping(
    mapping: Mapping[str, int] | Sequence[int] | None,
) -> list[int]:
    """Return the sorted AMS slot list for *mapping*.

    A filament-name to slot mapping contributes its values.
    """
    if not mapping:
        return []
    values = mapping.values() if isinstance(mapping, Mapping) else mapping
    return sorted(int(slot) for slot in values)


def build_project_command(
    sequence_id: str, remote_name: str, options: ProjectPrintOptions,
) -> dict[str, Any]:
    """Build the ``print.project_file`` command for an uploaded archive.

    Multi-material feed is only enabled when a non-empty mapping is given
    and the caller did not switch it off.  An explicit enable without a
    mapping is ignored, and a disabled feed never carries a mapping.
    """
    slots = normalize_ams_mapping(options.ams_mapping)
    use_ams = bool(slots) and options.use_ams is not False

    params: dict[str, Any] = {
        "param": f"Metadata/plate_{options.plate_index + 1}.gcode",
        "url": f"file://{REMOTE_DIR}/{remote_name}",
        "subtask_name": options.project_name or remote_name.rsplit(".", 1)[0],
        "plate_idx": options.plate_index,
        "bed_type": "auto",
        "bed_leveling": options.bed_leveling,
        "flow_cali": options.flow_calibration,
        "vibration_cali": options.vibration_calibration,
        "layer_inspect": options.layer_inspect,
        "timelapse": options.timelapse,
        "profile_id": "0",
        "project_id": "0",
        "subtask_id": "0",
        "task_id": "0",
    }
    params.update(options.extra)
    params["use_ams"] = use_ams
    params.pop("ams_mapping", None)
    params.pop("md5", None)
    if use_ams:
        params["ams_mapping"] = slots
    if options.md5:
        params["md5"] = options.md5
    return build_command("print", "project_file", sequence_id, **params)


# ---------------------------------------------------------------------------
# Connection handle
# ---------------------------------------------------------------------------


class MqttHandle(ConnectionHandle):
    """One MQTT-over-TLS session to one printer.

    Created by :func:`open_mqtt`.  Keeps the most recent status report and
    fans every report out to listeners registered with
    :meth:`add_report_listener`.
    """

    def __init__(
        self,
        key: ConnectionKey,
        client: mqtt.Client,
        loop: asyncio.AbstractEventLoop,
        *,
        publish_timeout: float = 10.0,
    ) -> None:
        super().__init__(key)
        self._client = client
        self._loop = loop
        self._publish_timeout = publish_timeout
        self._request_topic = request_topic(key.serial)
        self._report_topic = report_topic(key.serial)
        self._connected: asyncio.Future[None] = loop.create_future()
        self._abandoned = False
        self._dialing = False
        self._dial_lock = threading.Lock()
        self._listeners: list[Callable[[dict[str, Any]], None]] = []
        self.last_report: dict[str, Any] | None = None
        self.reports_received = 0

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

    # -- establishment ----------------------------------------------------

    async def start(self, port: int = MQTT_PORT) -> None:
        """Dial the broker and wait for its CONNACK.

        Raises:
            AuthError: If the printer refuses the access code.
            PrinterConnectionError: On socket or TLS failure.
        """
        try:
            await asyncio.to_thread(self._dial, port)
            self._client.loop_start()
            await self._connected
        except BaseException:
            self._abandon()
            raise

    def _dial(self, port: int) -> None:
        with self._dial_lock:
            if self._abandoned:
                return
            self._dialing = True
        try:
            self._client.connect(self.key.host, port, MQTT_KEEPALIVE)
        finally:
            with self._dial_lock:
                self._dialing = False
                abandoned = self._abandoned
            if abandoned:
                # start() gave up while connect() was blocking this thread.
                self._stop_client()

    def _abandon(self) -> None:
        with self._dial_lock:
            self._abandoned = True
            dialing = self._dialing
        if not dialing:
            self._loop.run_in_executor(None, self._stop_client)

    def _stop_client(self) -> None:
        try:
            self._client.disconnect()
        except Exception as exc:
            logger.debug("Disconnect of abandoned MQTT client %s failed: %s", self.key, exc)
        finally:
            self._client.loop_stop()

    # -- paho callbacks (network thread) ----------------------------------

    def _call_on_loop(self, callback: Callable[..., Any], *args: Any) -> None:
        if self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop shut down between the check and the call.
            logger.debug("Event loop closed; dropping MQTT event for %s", self.key)

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if reason_code.is_failure:
            # Stop paho's own retry loop; the pool decides when to redial.
            client.loop_stop()
            self._call_on_loop(self._connect_refused, int(reason_code.value), str(reason_code))
            return
        if self._abandoned:
            client.disconnect()
            return
        # Each new session starts without subscriptions.
        client.subscribe(self._report_topic, qos=COMMAND_QOS)
        client.publish(
            self._request_topic,
            json.dumps(build_command("pushing", "pushall", "0")),
            qos=COMMAND_QOS,
        )
        self._call_on_loop(self._connect_accepted)

    def _on_connect_fail(self, client: mqtt.Client, userdata: Any) -> None:
        client.loop_stop()
        self._call_on_loop(self._connection_lost, "connect failed")

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any = None,
        reason_code: Any = None,
        properties: Any = None,
    ) -> None:
        # No silent reconnect: a lost session is dropped from the pool.
        client.loop_stop()
        self._call_on_loop(self._connection_lost, f"disconnected ({reason_code})")

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            report = json.loads(msg.payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Dropping unparseable report from %s: %s", self.key, exc)
            return
        if not isinstance(report, dict):
            logger.warning("Dropping non-object report from %s", self.key)
            return
        self._call_on_loop(self._deliver_report, report)

    # -- loop-thread state transitions ------------------------------------

    def _connect_accepted(self) -> None:
        if not self._connected.done():
            self._connected.set_result(None)

    def _connect_refused(self, code: int, reason: str) -> None:
        if code in _AUTH_REASON_CODES:
            error: Exception = AuthError(
                f"Printer {self.key} rejected the LAN access code ({reason})."
            )
        else:
            error = PrinterConnectionError(
                f"Printer {self.key} refused the MQTT connection ({reason})."
            )
        if not self._connected.done():
            self._connected.set_exception(error)
        self._mark_closed(reason)

    def _connection_lost(self, reason: str) -> None:
        if not self._connected.done():
            self._connected.set_exception(PrinterConnectionError(
                f"MQTT connection to {self.key} failed: {reason}"
            ))
        if not self.closed:
            logger.info("MQTT connection to %s closed: %s", self.key, reason)
        self._mark_closed(reason)

    def _deliver_report(self, report: dict[str, Any]) -> None:
        self.last_report = report
        self.reports_received += 1
        for listener in list(self._listeners):
            try:
                listener(report)
            except Exception:
                logger.exception("Report listener failed for %s", self.key)

    # -- public API ---------------------------------------------------------

    def add_report_listener(
        self, listener: Callable[[dict[str, Any]], None],
    ) -> Callable[[], None]:
        """Register *listener* for every future report.

        Returns a function that unregisters it.
        """
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def next_report(self, timeout: float) -> dict[str, Any]:
        """Wait for the next status report.

        Raises:
            asyncio.TimeoutError: If none arrives within *timeout* seconds.
        """
        future: asyncio.Future[dict[str, Any]] = self._loop.create_future()

        def _resolve(report: dict[str, Any]) -> None:
            if not future.done():
                future.set_result(report)

        remove = self.add_report_listener(_resolve)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            remove()

    async def publish(self, payload: dict[str, Any]) -> None:
        """Publish *payload* and wait for the broker's QoS 1 acknowledgement.

        Raises:
            PrinterConnectionError: If the session is gone or the message
                is not acknowledged within the publish timeout.
        """
        if self.closed:
            raise PrinterConnectionError(f"MQTT connection to {self.key} is closed.")
        message = json.dumps(payload)
        logger.debug("Publishing to %s: %s", self._request_topic, message)
        info = self._client.publish(self._request_topic, message, qos=COMMAND_QOS)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PrinterConnectionError(
                f"Failed to publish MQTT command to {self.key}: {mqtt.error_string(info.rc)}"
            )
        try:
            await asyncio.to_thread(info.wait_for_publish, self._publish_timeout)
        except (RuntimeError, ValueError) as exc:
            raise PrinterConnectionError(
                f"Failed to publish MQTT command to {self.key}: {exc}", cause=exc,
            ) from exc
        if not info.is_published():
            raise PrinterConnectionError(
                f"MQTT command to {self.key} not acknowledged within "
                f"{self._publish_timeout:g}s."
            )

    async def close(self) -> None:
        self._abandoned = True
        try:
            rc = await asyncio.to_thread(self._disconnect)
        finally:
            self._mark_closed("closed by client")
        if rc not in (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
            raise PrinterConnectionError(
                f"Error closing MQTT connection to {self.key}: {mqtt.error_string(rc)}"
            )

    def _disconnect(self) -> int:
        rc = self._client.disconnect()
        self._client.loop_stop()
        return rc


def create_client(serial: str, access_code: str) -> mqtt.Client:
    """Create a paho client configured for a Bambu printer's local broker."""
    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=f"mcp_client_{serial}_{int(time.time() * 1000)}",
        protocol=mqtt.MQTTv311,
    )
    client.username_pw_set(MQTT_USERNAME, access_code)

    # Printers ship self-signed certificates.
    tls_context = ssl.create_default_context()
    tls_context.check_hostname = False
    tls_context.verify_mode = ssl.CERT_NONE
    client.tls_set_context(tls_context)
    return client


async def open_mqtt(
    key: ConnectionKey,
    access_code: str,
    *,
    connect_timeout: float = 10.0,
    publish_timeout: float = 10.0,
    port: int = MQTT_PORT,
) -> MqttHandle:
    """Connect to the printer's broker and return an established handle."""
    client = create_client(key.serial, access_code)
    client.connect_timeout = connect_timeout
    handle = MqttHandle(
        key, client, asyncio.get_running_loop(), publish_timeout=publish_timeout,
    )
    await handle.start(port)
    return handle
