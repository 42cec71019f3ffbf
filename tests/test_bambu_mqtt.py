"""Tests for the Bambu Lab MQTT channel: payload builders and MqttHandle.

The paho client is replaced by a MagicMock; its callbacks are invoked by
hand to simulate the network thread.
"""

from __future__ import annotations

import asyncio
import json
import threading
from types import SimpleNamespace
from unittest import mock

import pytest

from printer_mcp.printers.bambu_mqtt import (
    MqttHandle,
    build_command,
    build_project_command,
    normalize_ams_mapping,
    report_topic,
    request_topic,
)
from printer_mcp.printers.base import AuthError, PrinterConnectionError, ProjectPrintOptions
from printer_mcp.printers.pool import ConnectionKey

from conftest import SERIAL


def _rc(value: int) -> mock.MagicMock:
    rc = mock.MagicMock()
    rc.value = value
    rc.is_failure = value >= 0x80
    rc.__str__.return_value = f"rc {value}"
    return rc


def _client(connect_rc: int | None = 0) -> mock.MagicMock:
    """Fake paho client whose loop_start fires on_connect with *connect_rc*."""
    client = mock.MagicMock()
    info = mock.MagicMock(rc=0)
    info.is_published.return_value = True
    client.publish.return_value = info
    client.disconnect.return_value = 0
    if connect_rc is not None:
        client.loop_start.side_effect = lambda: client.on_connect(client, None, {}, _rc(connect_rc))
    return client


def _options(**kwargs) -> ProjectPrintOptions:
    return ProjectPrintOptions(file_path="/tmp/benchy.3mf", **kwargs)


# ---------------------------------------------------------------------------
# Topics and payloads
# ---------------------------------------------------------------------------


class TestTopics:
    def test_topics(self) -> None:
        assert request_topic(SERIAL) == f"device/{SERIAL}/request"
        assert report_topic(SERIAL) == f"device/{SERIAL}/report"


class TestBuildCommand:
    def test_shape_and_none_dropped(self) -> None:
        payload = build_command("print", "gcode_file", "7", param="/sdcard/a.gcode", extra=None)
        assert payload == {
            "print": {"sequence_id": "7", "command": "gcode_file", "param": "/sdcard/a.gcode"},
        }


class TestNormalizeAmsMapping:
    def test_mapping_contributes_values(self) -> None:
        assert normalize_ams_mapping({"B@slot": 3, "A@slot": 1}) == [1, 3]

    def test_list_sorted(self) -> None:
        assert normalize_ams_mapping([2, 0]) == [0, 2]

    def test_empty(self) -> None:
        assert normalize_ams_mapping(None) == []
        assert normalize_ams_mapping({}) == []


class TestBuildProjectCommand:
    def test_mapping_enables_ams(self) -> None:
        payload = build_project_command(
            "5", "benchy.3mf", _options(ams_mapping={"A@slot": 0, "B@slot": 1}, use_ams=True),
        )
        body = payload["print"]
        assert body["command"] == "project_file"
        assert body["use_ams"] is True
        assert body["ams_mapping"] == [0, 1]

    def test_mapping_without_flag_enables_ams(self) -> None:
        body = build_project_command("5", "benchy.3mf", _options(ams_mapping=[2]))["print"]
        assert body["use_ams"] is True
        assert body["ams_mapping"] == [2]

    def test_enable_without_mapping_ignored(self) -> None:
        body = build_project_command("5", "benchy.3mf", _options(use_ams=True, ams_mapping={}))["print"]
        assert body["use_ams"] is False
        assert "ams_mapping" not in body

    def test_explicit_disable_drops_mapping(self) -> None:
        body = build_project_command(
            "5", "benchy.3mf", _options(use_ams=False, ams_mapping=[0, 1]),
        )["print"]
        assert body["use_ams"] is False
        assert "ams_mapping" not in body

    def test_fields(self) -> None:
        body = build_project_command(
            "9", "benchy.3mf", _options(plate_index=1, timelapse=True),
        )["print"]
        assert body["sequence_id"] == "9"
        assert body["param"] == "Metadata/plate_2.gcode"
        assert body["url"] == "file:///sdcard/benchy.3mf"
        assert body["subtask_name"] == "benchy"
        assert body["plate_idx"] == 1
        assert body["timelapse"] is True
        assert body["bed_leveling"] is True
        assert "md5" not in body

    def test_md5_and_project_name(self) -> None:
        body = build_project_command(
            "1", "benchy.3mf", _options(md5="abc123", project_name="Boat"),
        )["print"]
        assert body["md5"] == "abc123"
        assert body["subtask_name"] == "Boat"

    def test_extra_cannot_override_ams_guard(self) -> None:
        body = build_project_command(
            "1", "benchy.3mf", _options(extra={"use_ams": True, "ams_mapping": [4], "bed_type": "textured"}),
        )["print"]
        assert body["use_ams"] is False
        assert "ams_mapping" not in body
        assert body["bed_type"] == "textured"


# ---------------------------------------------------------------------------
# MqttHandle
# ---------------------------------------------------------------------------


class TestMqttHandleStart:
    def test_connect_subscribes_and_requests_pushall(self, key: ConnectionKey) -> None:
        client = _client()

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop())
            await handle.start(8883)
            return handle

        handle = asyncio.run(scenario())
        assert not handle.closed
        client.connect.assert_called_once_with(key.host, 8883, 60)
        client.subscribe.assert_called_once_with(report_topic(SERIAL), qos=1)
        topic, payload = client.publish.call_args[0]
        assert topic == request_topic(SERIAL)
        assert json.loads(payload)["pushing"]["command"] == "pushall"

    def test_bad_access_code_is_auth_error(self, key: ConnectionKey) -> None:
        client = _client(connect_rc=135)

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop())
            with pytest.raises(AuthError):
                await handle.start()
            return handle

        handle = asyncio.run(scenario())
        assert handle.closed
        client.subscribe.assert_not_called()

    def test_other_refusal_is_connection_error(self, key: ConnectionKey) -> None:
        client = _client(connect_rc=0x88)

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop())
            with pytest.raises(PrinterConnectionError, match="refused"):
                await handle.start()

        asyncio.run(scenario())

    def test_socket_failure_propagates(self, key: ConnectionKey) -> None:
        client = _client(connect_rc=None)
        client.connect.side_effect = ConnectionRefusedError("refused")

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop())
            with pytest.raises(ConnectionRefusedError):
                await handle.start()

        asyncio.run(scenario())
        client.loop_start.assert_not_called()

    def test_timed_out_connect_cleaned_up_after_it_returns(self, key: ConnectionKey) -> None:
        client = _client(connect_rc=None)
        released = threading.Event()
        events: list[str] = []

        def slow_connect(*args):
            events.append("connect")
            released.wait(2)
            events.append("connected")

        def disconnect():
            events.append("disconnect")
            return 0

        client.connect.side_effect = slow_connect
        client.disconnect.side_effect = disconnect

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop())
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(handle.start(), 0.05)
            await asyncio.sleep(0.02)
            assert "disconnect" not in events
            released.set()

        asyncio.run(scenario())
        assert events == ["connect", "connected", "disconnect"]
        client.loop_stop.assert_called_once()
        client.loop_start.assert_not_called()


class TestMqttHandleReports:
    def test_reports_delivered_and_bad_json_dropped(self, key: ConnectionKey) -> None:
        client = _client()
        seen: list[dict] = []

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop())
            await handle.start()
            handle.add_report_listener(seen.append)
            handle._on_message(client, None, SimpleNamespace(payload=b"not json"))
            handle._on_message(client, None, SimpleNamespace(payload=b"[1, 2]"))
            handle._on_message(
                client, None, SimpleNamespace(payload=json.dumps({"print": {"gcode_state": "IDLE"}}).encode()),
            )
            await asyncio.sleep(0)
            return handle

        handle = asyncio.run(scenario())
        assert handle.reports_received == 1
        assert handle.last_report == {"print": {"gcode_state": "IDLE"}}
        assert seen == [handle.last_report]

    def test_next_report_times_out(self, key: ConnectionKey) -> None:
        client = _client()

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop())
            await handle.start()
            with pytest.raises(asyncio.TimeoutError):
                await handle.next_report(0.01)

        asyncio.run(scenario())

    def test_listener_removal(self, key: ConnectionKey) -> None:
        client = _client()
        seen: list[dict] = []

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop())
            await handle.start()
            remove = handle.add_report_listener(seen.append)
            remove()
            handle._on_message(client, None, SimpleNamespace(payload=b"{}"))
            await asyncio.sleep(0)

        asyncio.run(scenario())
        assert seen == []


class TestMqttHandlePublish:
    def test_publish_waits_for_ack(self, key: ConnectionKey) -> None:
        client = _client()

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop(), publish_timeout=3)
            await handle.start()
            await handle.publish(build_command("print", "pause", "1"))

        asyncio.run(scenario())
        topic, payload = client.publish.call_args[0]
        assert client.publish.call_args[1] == {"qos": 1}
        assert json.loads(payload) == {"print": {"sequence_id": "1", "command": "pause"}}
        client.publish.return_value.wait_for_publish.assert_called_with(3)

    def test_unacknowledged_publish_fails(self, key: ConnectionKey) -> None:
        client = _client()

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop(), publish_timeout=0.1)
            await handle.start()
            client.publish.return_value.is_published.return_value = False
            with pytest.raises(PrinterConnectionError, match="not acknowledged"):
                await handle.publish({"print": {}})

        asyncio.run(scenario())

    def test_rejected_publish_fails(self, key: ConnectionKey) -> None:
        client = _client()

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop())
            await handle.start()
            client.publish.return_value = mock.MagicMock(rc=4)
            with pytest.raises(PrinterConnectionError, match="Failed to publish"):
                await handle.publish({"print": {}})

        asyncio.run(scenario())

    def test_publish_after_disconnect_fails(self, key: ConnectionKey) -> None:
        client = _client()

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop())
            await handle.start()
            handle._on_disconnect(client, None, None, _rc(0x8B))
            await asyncio.sleep(0)
            assert handle.closed
            with pytest.raises(PrinterConnectionError, match="closed"):
                await handle.publish({"print": {}})

        asyncio.run(scenario())
        client.loop_stop.assert_called()


class TestMqttHandleClose:
    def test_close(self, key: ConnectionKey) -> None:
        client = _client()

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop())
            await handle.start()
            await handle.close()
            return handle

        handle = asyncio.run(scenario())
        assert handle.closed
        client.disconnect.assert_called_once()
        client.loop_stop.assert_called_once()

    def test_close_error_still_marks_closed(self, key: ConnectionKey) -> None:
        client = _client()
        client.disconnect.return_value = 7

        async def scenario():
            handle = MqttHandle(key, client, asyncio.get_running_loop())
            await handle.start()
            with pytest.raises(PrinterConnectionError, match="Error closing"):
                await handle.close()
            return handle

        assert asyncio.run(scenario()).closed
