"""
Tool: Realtime Event Client
Purpose: Long-lived hub WebSocket connection with reconnect and heartbeat

Protocol (JSON text frames):
    hub    -> {"type": "auth_required"}
    client -> {"type": "auth", "access_token": "..."}
    hub    -> {"type": "auth_ok"} | {"type": "auth_invalid", "message": "..."}
    client -> {"id": 1, "type": "subscribe_events", "event_type": "state_changed"}
    hub    -> {"id": 1, "type": "result", "success": true}
    hub    -> {"id": 1, "type": "event", "event": {...}}
    client -> {"id": 2, "type": "ping"}   hub -> {"id": 2, "type": "pong"}

Resilience:
- Heartbeat ping every 30s, connection closed if no pong within 10s
- Reconnect with exponential backoff (1s doubling, capped at 60s)
- After 10 failed attempts the connection-failed callbacks fire once
- After a reconnect the current event types are subscribed again
- auth_invalid is terminal: callbacks fire and no reconnect is attempted

Usage:
    client = RealtimeEventClient(url, token, event_types_provider=registry.active_event_types)
    client.on_event(pipeline.handle_event)
    await client.connect()
    await client.subscribe_events("automation_triggered")

Dependencies:
    - websockets>=12.0
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from hass_assistant.hub.models import HubEvent

logger = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS = 10
INITIAL_RECONNECT_DELAY_SECONDS = 1.0
MAX_RECONNECT_DELAY_SECONDS = 60.0

PING_INTERVAL_SECONDS = 30.0
PONG_TIMEOUT_SECONDS = 10.0
HANDSHAKE_TIMEOUT_SECONDS = 10.0

# Hub events such as large state dumps exceed the library's 1 MiB default
MAX_FRAME_SIZE = 16 * 1024 * 1024


class HubConnectionError(Exception):
    """The socket could not be opened or the handshake did not complete."""


class HubAuthError(Exception):
    """The hub rejected the access token (auth_invalid)."""


def build_websocket_url(http_url: str) -> str:
    """Turn ``http(s)://host[/]`` into ``ws(s)://host/api/websocket``."""
    url = http_url.strip()
    if url.startswith("https://"):
        url = "wss://" + url[len("https://"):]
    elif url.startswith("http://"):
        url = "ws://" + url[len("http://"):]
    return url.rstrip("/") + "/api/websocket"


def compute_backoff_delay(
    attempt: int,
    initial: float = INITIAL_RECONNECT_DELAY_SECONDS,
    maximum: float = MAX_RECONNECT_DELAY_SECONDS,
) -> float:
    """Delay before reconnect ``attempt`` (1-based): initial * 2^(n-1), capped."""
    return min(initial * 2 ** (attempt - 1), maximum)


async def _default_connect(url: str):
    # Heartbeat is done at the protocol level with ping/pong frames
    return await websockets.connect(url, ping_interval=None, max_size=MAX_FRAME_SIZE)


Callback = Callable[..., Any]


class RealtimeEventClient:
    """Authenticated hub event stream with observer-style callbacks."""

    def __init__(
        self,
        url: str,
        token: str,
        event_types_provider: Callable[[], Iterable[str]] | None = None,
        connect_factory: Callable[[str], Awaitable[Any]] | None = None,
        ping_interval: float = PING_INTERVAL_SECONDS,
        pong_timeout: float = PONG_TIMEOUT_SECONDS,
        handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS,
        initial_reconnect_delay: float = INITIAL_RECONNECT_DELAY_SECONDS,
        max_reconnect_delay: float = MAX_RECONNECT_DELAY_SECONDS,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
    ):
        if not url or not token:
            raise ValueError("Hub URL and token are required")

        self.url = build_websocket_url(url) if url.startswith("http") else url
        self._token = token
        self._event_types_provider = event_types_provider
        self._connect_factory = connect_factory or _default_connect

        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self.handshake_timeout = handshake_timeout
        self.initial_reconnect_delay = initial_reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts

        self._ws: Any = None
        self._authenticated = False
        self._intentional_close = False
        self._msg_id = 0

        # message id -> event type
        self._subscriptions: dict[int, str] = {}
        self._subscribed_types: set[str] = set()

        self._event_callbacks: list[Callback] = []
        self._reconnected_callbacks: list[Callback] = []
        self._connection_failed_callbacks: list[Callback] = []
        self._auth_failed_callbacks: list[Callback] = []

        self._reconnect_attempts = 0
        self._reconnect_task: asyncio.Task | None = None
        self._receive_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._pong_task: asyncio.Task | None = None
        self._awaiting_pong = False

    # ─────────────────────────────────────────────────────────────────────
    # Observer registration
    # ─────────────────────────────────────────────────────────────────────

    def on_event(self, callback: Callback) -> None:
        self._event_callbacks.append(callback)

    def on_reconnected(self, callback: Callback) -> None:
        self._reconnected_callbacks.append(callback)

    def on_connection_failed(self, callback: Callback) -> None:
        self._connection_failed_callbacks.append(callback)

    def on_auth_failed(self, callback: Callback) -> None:
        self._auth_failed_callbacks.append(callback)

    async def _fire(self, callbacks: list[Callback], *args: Any) -> None:
        for callback in list(callbacks):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                name = getattr(callback, "__name__", repr(callback))
                logger.exception(f"Callback {name} failed")

    # ─────────────────────────────────────────────────────────────────────
    # Connection lifecycle
    # ─────────────────────────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._authenticated

    @property
    def subscribed_event_types(self) -> set[str]:
        return set(self._subscribed_types)

    async def connect(self) -> None:
        """
        Open the socket and authenticate.

        Raises:
            HubConnectionError: Socket could not be opened or handshake timed out
            HubAuthError: The hub answered auth_invalid
        """
        self._intentional_close = False
        await self._open_connection()

    async def _open_connection(self) -> None:
        logger.info(f"Connecting to {self.url}...")
        try:
            ws = await asyncio.wait_for(self._connect_factory(self.url), self.handshake_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise HubConnectionError(f"Failed to connect to {self.url}: {e!s}") from e

        try:
            await asyncio.wait_for(self._authenticate(ws), self.handshake_timeout)
        except HubAuthError:
            await self._close_quietly(ws)
            raise
        except (asyncio.TimeoutError, ConnectionClosed, OSError, json.JSONDecodeError) as e:
            await self._close_quietly(ws)
            raise HubConnectionError(f"Handshake with {self.url} failed: {e!s}") from e

        self._ws = ws
        self._authenticated = True
        self._reconnect_attempts = 0
        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        self._start_heartbeat(ws)

    async def _authenticate(self, ws: Any) -> None:
        while True:
            msg = json.loads(await ws.recv())
            if not isinstance(msg, dict):
                continue
            msg_type = msg.get("type")

            if msg_type == "auth_required":
                await ws.send(json.dumps({"type": "auth", "access_token": self._token}))
            elif msg_type == "auth_ok":
                logger.info("Authenticated successfully")
                return
            elif msg_type == "auth_invalid":
                reason = msg.get("message") or "Invalid access token"
                logger.error(f"Authentication failed: {reason}")
                await self._fire(self._auth_failed_callbacks)
                raise HubAuthError(reason)

    async def disconnect(self) -> None:
        """Close for good: no reconnect, heartbeat stopped, subscriptions cleared."""
        self._intentional_close = True
        self._stop_heartbeat()
        self._cancel_reconnect()
        self._subscriptions.clear()
        self._subscribed_types.clear()

        ws, self._ws = self._ws, None
        self._authenticated = False

        receive_task, self._receive_task = self._receive_task, None
        if receive_task is not None and receive_task is not asyncio.current_task():
            receive_task.cancel()

        if ws is not None:
            await self._close_quietly(ws)
        logger.info("Disconnected")

    async def _close_quietly(self, ws: Any) -> None:
        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.debug(f"Error while closing socket: {e}")

    # ─────────────────────────────────────────────────────────────────────
    # Messaging
    # ─────────────────────────────────────────────────────────────────────

    def _next_id(self) -> int:
        self._msg_id += 1
        return self._msg_id

    async def _send(self, msg: dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None:
            logger.debug(f"Not connected, dropping {msg.get('type')} message")
            return False
        try:
            await ws.send(json.dumps(msg))
        except ConnectionClosed:
            logger.warning(f"Connection closed while sending {msg.get('type')}")
            return False
        return True

    async def subscribe_events(self, event_type: str) -> int:
        """Subscribe to one hub event type; returns the subscription message id."""
        msg_id = self._next_id()
        await self._send({"id": msg_id, "type": "subscribe_events", "event_type": event_type})
        self._subscriptions[msg_id] = event_type
        self._subscribed_types.add(event_type)
        logger.info(f"Subscribed to {event_type} (id: {msg_id})")
        return msg_id

    async def unsubscribe_events(self, subscription_id: int) -> None:
        await self._send({
            "id": self._next_id(),
            "type": "unsubscribe_events",
            "subscription": subscription_id,
        })
        event_type = self._subscriptions.pop(subscription_id, None)
        if event_type and event_type not in self._subscriptions.values():
            self._subscribed_types.discard(event_type)
        logger.info(f"Unsubscribed from subscription {subscription_id}")

    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except (json.JSONDecodeError, TypeError) as e:
                    logger.error(f"Failed to parse message: {e}")
                    continue
                if not isinstance(msg, dict):
                    logger.warning(f"Ignoring non-object message: {raw!r:.200}")
                    continue
                await self._handle_message(msg)
        except ConnectionClosed as e:
            logger.debug(f"Connection closed: {e}")
        except Exception:
            logger.exception("Receive loop crashed, dropping connection")
            await self._close_quietly(ws)
        finally:
            self._handle_close(ws)

    async def _handle_message(self, msg: dict[str, Any]) -> None:
        msg_type = msg.get("type")

        if msg_type == "event":
            raw_event = msg.get("event")
            if isinstance(raw_event, dict):
                await self._fire(self._event_callbacks, HubEvent.from_dict(raw_event))
        elif msg_type == "pong":
            self._awaiting_pong = False
            pong_task, self._pong_task = self._pong_task, None
            if pong_task is not None:
                pong_task.cancel()
        elif msg_type == "result":
            if msg.get("success") is False:
                logger.error(f"Command {msg.get('id')} failed: {msg.get('error')}")
        elif msg_type == "auth_invalid":
            logger.error(f"Authentication revoked: {msg.get('message')}")
            await self._fire(self._auth_failed_callbacks)

    # ─────────────────────────────────────────────────────────────────────
    # Heartbeat
    # ─────────────────────────────────────────────────────────────────────

    def _start_heartbeat(self, ws: Any) -> None:
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))

    def _stop_heartbeat(self) -> None:
        for task in (self._heartbeat_task, self._pong_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._heartbeat_task = None
        self._pong_task = None
        self._awaiting_pong = False

    async def _heartbeat_loop(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            if self._ws is not ws or not self._authenticated:
                return

            if self._awaiting_pong:
                logger.warning("Pong timeout, reconnecting...")
                self._heartbeat_task = None
                await self._close_quietly(ws)
                return

            self._awaiting_pong = True
            await self._send({"id": self._next_id(), "type": "ping"})
            self._pong_task = asyncio.create_task(self._pong_watchdog(ws))

    async def _pong_watchdog(self, ws: Any) -> None:
        await asyncio.sleep(self.pong_timeout)
        if self._awaiting_pong and self._ws is ws:
            logger.warning("Pong not received within timeout, closing connection")
            self._pong_task = None
            await self._close_quietly(ws)

    # ─────────────────────────────────────────────────────────────────────
    # Reconnection
    # ─────────────────────────────────────────────────────────────────────

    def _handle_close(self, ws: Any) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        self._authenticated = False
        self._receive_task = None
        self._stop_heartbeat()

        if self._intentional_close:
            return

        logger.warning("Connection closed unexpectedly")
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._reconnect_attempts = 0

    async def _reconnect_loop(self) -> None:
        while not self._intentional_close:
            if self._reconnect_attempts >= self.max_reconnect_attempts:
                logger.error(f"Giving up after {self.max_reconnect_attempts} reconnect attempts")
                await self._fire(self._connection_failed_callbacks)
                return

            self._reconnect_attempts += 1
            delay = compute_backoff_delay(
                self._reconnect_attempts, self.initial_reconnect_delay, self.max_reconnect_delay
            )
            logger.info(
                f"Reconnecting in {delay:g}s "
                f"(attempt {self._reconnect_attempts}/{self.max_reconnect_attempts})..."
            )
            await asyncio.sleep(delay)
            if self._intentional_close:
                return

            try:
                await self._open_connection()
            except HubAuthError:
                logger.error("Hub rejected the token, not reconnecting")
                return
            except HubConnectionError as e:
                logger.error(f"Reconnect failed: {e}")
                continue

            # A drop from here on must be able to schedule a fresh loop
            self._reconnect_task = None
            await self._resubscribe_all()
            await self._fire(self._reconnected_callbacks)
            return

    async def _resubscribe_all(self) -> None:
        if self._event_types_provider is not None:
            event_types = list(self._event_types_provider())
        else:
            event_types = list(self._subscribed_types)

        self._subscriptions.clear()
        self._subscribed_types.clear()
        for event_type in dict.fromkeys(event_types):
            await self.subscribe_events(event_type)

        if event_types:
            logger.info(f"Re-subscribed to {len(self._subscribed_types)} event type(s)")


__all__ = [
    "HubAuthError",
    "HubConnectionError",
    "RealtimeEventClient",
    "build_websocket_url",
    "compute_backoff_delay",
]
