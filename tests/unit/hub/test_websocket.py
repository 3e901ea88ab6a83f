"""Tests for hass_assistant/hub/websocket.py

Tests the realtime event client against an in-memory socket:
- URL building and backoff schedule
- auth handshake (ok / invalid)
- Subscription message ids and event dispatch
- Malformed frames and handler crashes not killing the connection
- Reconnect delays, resubscription, give-up signal, explicit disconnect
- Heartbeat closing a silent connection
"""

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from hass_assistant.hub.models import HubEvent
from hass_assistant.hub.websocket import (
    HubAuthError,
    RealtimeEventClient,
    build_websocket_url,
    compute_backoff_delay,
)

_CLOSED = object()


class FakeWebSocket:
    """Scripted socket: queued frames are returned by recv()/iteration."""

    def __init__(self, *frames: dict):
        self.sent: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self.push(frame)

    def push(self, frame: Any) -> None:
        self._incoming.put_nowait(json.dumps(frame))

    async def recv(self) -> str:
        item = await self._incoming.get()
        if item is _CLOSED:
            raise ConnectionError("closed")
        return item

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def sent_of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent if m.get("type") == msg_type]


def handshake_ok() -> FakeWebSocket:
    return FakeWebSocket({"type": "auth_required"}, {"type": "auth_ok"})


class SocketFactory:
    """connect_factory that hands out queued sockets, raising OSError when empty."""

    def __init__(self, *sockets: FakeWebSocket):
        self.sockets = list(sockets)
        self.calls = 0

    async def __call__(self, url: str) -> FakeWebSocket:
        self.calls += 1
        if not self.sockets:
            raise OSError("connection refused")
        return self.sockets.pop(0)


def make_client(factory, **kwargs) -> RealtimeEventClient:
    defaults = {
        "connect_factory": factory,
        "initial_reconnect_delay": 0.001,
        "max_reconnect_delay": 0.001,
        "ping_interval": 60,
    }
    defaults.update(kwargs)
    return RealtimeEventClient("http://hub.local:8123/", "secret-token", **defaults)


async def wait_for(predicate, timeout: float = 1.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


# ─────────────────────────────────────────────────────────────────────────────
# Pure Helpers
# ─────────────────────────────────────────────────────────────────────────────


class TestHelpers:
    def test_http_url_becomes_ws(self):
        assert build_websocket_url("http://hub.local:8123/") == "ws://hub.local:8123/api/websocket"

    def test_https_url_becomes_wss(self):
        assert build_websocket_url("https://hub.example.com") == "wss://hub.example.com/api/websocket"

    def test_supervisor_url(self):
        assert build_websocket_url("http://supervisor/core") == "ws://supervisor/core/api/websocket"

    def test_backoff_schedule(self):
        delays = [compute_backoff_delay(n) for n in range(1, 11)]
        assert delays == [1, 2, 4, 8, 16, 32, 60, 60, 60, 60]

    def test_missing_token_rejected(self):
        with pytest.raises(ValueError):
            RealtimeEventClient("http://hub.local", "")


# ─────────────────────────────────────────────────────────────────────────────
# Handshake and Messaging
# ─────────────────────────────────────────────────────────────────────────────


class TestHandshake:
    @pytest.mark.asyncio
    async def test_auth_ok_connects(self):
        ws = handshake_ok()
        client = make_client(SocketFactory(ws))

        await client.connect()

        assert client.is_connected
        assert ws.sent[0] == {"type": "auth", "access_token": "secret-token"}
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_auth_invalid_raises_and_does_not_retry(self):
        ws = FakeWebSocket({"type": "auth_required"}, {"type": "auth_invalid", "message": "bad token"})
        factory = SocketFactory(ws)
        client = make_client(factory)
        auth_failed = []
        client.on_auth_failed(lambda: auth_failed.append(True))

        with pytest.raises(HubAuthError):
            await client.connect()

        await asyncio.sleep(0.02)
        assert auth_failed == [True]
        assert factory.calls == 1
        assert not client.is_connected


class TestMessaging:
    @pytest.mark.asyncio
    async def test_subscribe_uses_increasing_ids(self):
        ws = handshake_ok()
        client = make_client(SocketFactory(ws))
        await client.connect()

        first = await client.subscribe_events("state_changed")
        second = await client.subscribe_events("automation_triggered")

        assert second > first
        assert ws.sent_of_type("subscribe_events") == [
            {"id": first, "type": "subscribe_events", "event_type": "state_changed"},
            {"id": second, "type": "subscribe_events", "event_type": "automation_triggered"},
        ]
        assert client.subscribed_event_types == {"state_changed", "automation_triggered"}
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_unsubscribe_references_subscription(self):
        ws = handshake_ok()
        client = make_client(SocketFactory(ws))
        await client.connect()
        sub_id = await client.subscribe_events("state_changed")

        await client.unsubscribe_events(sub_id)

        assert ws.sent_of_type("unsubscribe_events")[0]["subscription"] == sub_id
        assert client.subscribed_event_types == set()
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_events_reach_every_handler_despite_errors(self):
        ws = handshake_ok()
        client = make_client(SocketFactory(ws))
        received: list[HubEvent] = []

        def broken(event):
            raise RuntimeError("handler bug")

        async def collecting(event):
            received.append(event)

        client.on_event(broken)
        client.on_event(collecting)
        await client.connect()

        ws.push({"id": 1, "type": "event", "event": {"event_type": "state_changed", "data": {"entity_id": "light.a"}}})
        ws.push({"id": 1, "type": "event", "event": {"type": "call_service", "data": {}}})
        await wait_for(lambda: len(received) == 2)

        assert received[0].event_type == "state_changed"
        assert received[0].data == {"entity_id": "light.a"}
        assert received[1].event_type == "call_service"
        await client.disconnect()


class TestMalformedFrames:
    @pytest.mark.asyncio
    async def test_non_object_frames_are_skipped(self):
        ws = handshake_ok()
        factory = SocketFactory(ws, handshake_ok())
        client = make_client(factory)
        received: list[HubEvent] = []
        client.on_event(received.append)
        await client.connect()

        ws.push([1, 2])
        ws.push(None)
        ws.push(5)
        ws.push("state_changed")
        ws._incoming.put_nowait("{not json")
        ws.push({"id": 1, "type": "event", "event": {"event_type": "state_changed", "data": {}}})
        await wait_for(lambda: received)

        assert received[0].event_type == "state_changed"
        assert client.is_connected
        assert not ws.closed
        assert factory.calls == 1

        # The receive loop is still alive, so a close is noticed and reconnected
        await ws.close()
        await wait_for(lambda: factory.calls == 2 and client.is_connected)
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_dispatch_crash_drops_and_reconnects(self):
        ws = handshake_ok()
        factory = SocketFactory(ws, handshake_ok())
        client = make_client(factory)
        await client.connect()

        with patch.object(client, "_handle_message", AsyncMock(side_effect=RuntimeError("boom"))):
            ws.push({"id": 1, "type": "result", "success": True})
            await wait_for(lambda: ws.closed)
            await wait_for(lambda: factory.calls == 2 and client.is_connected)

        assert client.is_connected
        await client.disconnect()


# ─────────────────────────────────────────────────────────────────────────────
# Reconnect
# ─────────────────────────────────────────────────────────────────────────────


class TestReconnect:
    @pytest.mark.asyncio
    async def test_reconnect_delays_follow_backoff_schedule(self):
        real_sleep = asyncio.sleep
        slept: list[float] = []

        async def fast_sleep(delay, *args, **kwargs):
            slept.append(delay)
            await real_sleep(0)

        ws = handshake_ok()
        client = make_client(
            SocketFactory(ws),
            initial_reconnect_delay=1.0,
            max_reconnect_delay=60.0,
            ping_interval=999,
        )
        failures = []
        client.on_connection_failed(lambda: failures.append(True))
        await client.connect()

        with patch("hass_assistant.hub.websocket.asyncio.sleep", fast_sleep):
            await ws.close()
            await wait_for(lambda: failures, timeout=2.0)

        # Heartbeat sleeps use ping_interval, polling sleeps are sub-second
        reconnect_delays = [d for d in slept if 1 <= d <= 60]
        assert reconnect_delays == [min(2 ** (n - 1), 60) for n in range(1, 11)]
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_connection_failed_fires_once_after_max_attempts(self):
        ws = handshake_ok()
        factory = SocketFactory(ws)
        client = make_client(factory)
        failures = []
        client.on_connection_failed(lambda: failures.append(True))
        await client.connect()

        await ws.close()
        await wait_for(lambda: failures)
        await asyncio.sleep(0.05)

        assert failures == [True]
        assert factory.calls == 1 + 10
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_reconnect_resubscribes_current_types(self):
        first, second = handshake_ok(), handshake_ok()
        active_types = {"state_changed"}
        client = make_client(SocketFactory(first, second), event_types_provider=lambda: sorted(active_types))
        reconnected = asyncio.Event()
        client.on_reconnected(reconnected.set)
        await client.connect()
        await client.subscribe_events("state_changed")

        active_types.add("automation_triggered")
        await first.close()
        await asyncio.wait_for(reconnected.wait(), 1.0)

        subscribed = [m["event_type"] for m in second.sent_of_type("subscribe_events")]
        assert subscribed == ["automation_triggered", "state_changed"]
        assert client.is_connected
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_suppresses_reconnect(self):
        ws = handshake_ok()
        factory = SocketFactory(ws, handshake_ok())
        client = make_client(factory)
        await client.connect()

        await client.disconnect()
        await asyncio.sleep(0.05)

        assert ws.closed
        assert factory.calls == 1
        assert not client.is_connected


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_missing_pong_closes_connection(self):
        ws = handshake_ok()
        client = make_client(
            SocketFactory(ws), ping_interval=0.01, pong_timeout=0.01, max_reconnect_attempts=0
        )
        await client.connect()

        await wait_for(lambda: ws.closed)

        assert ws.sent_of_type("ping")
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_pong_keeps_connection_open(self):
        ws = handshake_ok()
        client = make_client(SocketFactory(ws), ping_interval=0.02, pong_timeout=0.05)
        await client.connect()

        await wait_for(lambda: ws.sent_of_type("ping"))
        ws.push({"id": ws.sent_of_type("ping")[0]["id"], "type": "pong"})
        await asyncio.sleep(0.01)

        assert not ws.closed
        assert client.is_connected
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_pending_pong_at_next_tick_closes_connection(self):
        ws = handshake_ok()
        client = make_client(
            SocketFactory(ws), ping_interval=0.02, pong_timeout=5.0, max_reconnect_attempts=0
        )
        await client.connect()

        # The watchdog would only fire after 5s, so this close comes from the second tick
        await wait_for(lambda: ws.closed, timeout=0.5)

        assert len(ws.sent_of_type("ping")) == 1
        await client.disconnect()
