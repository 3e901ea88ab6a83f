"""
Tool: Event Listener Daemon
Purpose: Wire the hub socket, subscription rules, pipeline and notifications together

Startup:
1. Token refresh engine started, its notifications routed to the notification manager
2. Subscription registry loaded (a default automation_triggered rule is created
   when there are no rules)
3. Hub socket connected; failure here is fatal
4. Socket subscriptions synced with the enabled rule event types
5. Rule file watched; every reload re-syncs subscriptions

Shutdown on SIGINT/SIGTERM, or after the hub rejects the access token (the
user is notified and ``failure`` is set): refresh loop stopped, watcher
stopped, socket closed.

Usage:
    settings = load_settings()
    await EventListener(settings).run()
"""

from __future__ import annotations

import asyncio
import logging
import signal

from hass_assistant import VERSION
from hass_assistant.auth.oauth_config import OAuthConfigResolver
from hass_assistant.auth.token_refresh import TokenRefreshEngine
from hass_assistant.auth.token_store import TokenStore
from hass_assistant.automation.pipeline import EventProcessingPipeline
from hass_assistant.automation.prompt_runner import PromptRunner
from hass_assistant.automation.subscriptions import SubscriptionRegistry
from hass_assistant.config import Settings
from hass_assistant.hub.rest import HubRestClient
from hass_assistant.hub.websocket import RealtimeEventClient
from hass_assistant.notifications.manager import NotificationManager
from hass_assistant.notifications.models import NotificationMessage
from hass_assistant.notifications.slack import SlackNotificationAdapter

logger = logging.getLogger(__name__)

DEFAULT_RULE = {
    "name": "Automation triggered notifications",
    "event_type": "automation_triggered",
    "entity_filter": None,
    "description": "When a Home Assistant automation is triggered, write a friendly notification about what it did",
}

CONNECTION_FAILED_MESSAGE = "❌ *Event Listener*: WebSocket connection failed, reconnect attempts exhausted"
AUTH_FAILED_MESSAGE = (
    "❌ *Event Listener*: Home Assistant rejected the access token. "
    "Check HA_TOKEN (or the add-on configuration) and restart the listener."
)


def build_notification_manager(settings: Settings) -> NotificationManager:
    manager = NotificationManager()
    manager.register_adapter(
        SlackNotificationAdapter(settings.slack.bot_token, settings.slack.default_channel)
    )
    return manager


class EventListener:
    """Composition root: owns the one instance of every long-lived service."""

    def __init__(
        self,
        settings: Settings,
        notifications: NotificationManager | None = None,
        token_engine: TokenRefreshEngine | None = None,
        registry: SubscriptionRegistry | None = None,
        client: RealtimeEventClient | None = None,
        prompt_runner: PromptRunner | None = None,
    ):
        self.settings = settings
        self.notifications = notifications or build_notification_manager(settings)

        self.token_engine = token_engine or TokenRefreshEngine(
            TokenStore(settings.credentials_path),
            OAuthConfigResolver(settings.claude_binary),
        )
        self.registry = registry or SubscriptionRegistry(
            settings.subscriptions_path, settings.subscriptions.debounce_seconds
        )

        rest_client: HubRestClient | None = None
        if client is None:
            url, token = settings.hub_connection()
            client = RealtimeEventClient(url, token, event_types_provider=self.registry.active_event_types)
            rest_client = HubRestClient(url, token)
        self.client = client

        self.pipeline = EventProcessingPipeline(
            self.registry,
            self.token_engine,
            prompt_runner or PromptRunner(
                settings.claude_binary,
                config_dir=settings.claude_config_dir,
                timeout_seconds=settings.claude.timeout_seconds,
            ),
            self.notifications,
            automation_config_fetcher=rest_client.fetch_automation_config if rest_client else None,
            max_concurrent=settings.listener.max_concurrent,
            max_queue_size=settings.listener.max_queue_size,
            timezone=settings.listener.timezone,
            language=settings.listener.language,
        )

        self._ws_subscribed_types: set[str] = set()
        self._stop_event = asyncio.Event()
        # Set when the listener stops because of an unrecoverable error
        self.failure: str | None = None

    async def _send_text(self, text: str) -> None:
        await self.notifications.send(NotificationMessage.from_text(text, source="event"))

    # ─────────────────────────────────────────────────────────────────────
    # Subscription sync
    # ─────────────────────────────────────────────────────────────────────

    async def sync_subscriptions(self) -> list[str]:
        """
        Subscribe the socket to event types that gained rules.

        The hub unsubscribes by subscription id rather than event type, so types
        that lost all their rules stay subscribed and the pipeline filters
        their events out.

        Returns:
            Event types newly subscribed
        """
        active_types = self.registry.active_event_types()
        added = []
        for event_type in sorted(active_types - self._ws_subscribed_types):
            await self.client.subscribe_events(event_type)
            self._ws_subscribed_types.add(event_type)
            added.append(event_type)

        for event_type in sorted(self._ws_subscribed_types - active_types):
            logger.info(f"Event type {event_type!r} no longer has active subscriptions, events will be filtered")
        return added

    async def _on_registry_changed(self) -> None:
        logger.info("Subscription file changed, syncing...")
        await self.sync_subscriptions()

    def _on_reconnected(self) -> None:
        # The client has already subscribed the current types during reconnect
        self._ws_subscribed_types = self.client.subscribed_event_types
        logger.info(f"WebSocket reconnected, {len(self._ws_subscribed_types)} event type(s) subscribed")

    async def _on_connection_failed(self) -> None:
        await self._send_text(CONNECTION_FAILED_MESSAGE)

    async def _on_auth_failed(self) -> None:
        logger.error("Home Assistant rejected the access token, check HA_TOKEN")
        self.failure = "Home Assistant rejected the access token"
        await self._send_text(AUTH_FAILED_MESSAGE)
        self.request_stop()

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    def _ensure_default_rule(self) -> None:
        if self.registry.get_all() or not self.settings.subscriptions.create_default:
            return
        logger.info("No subscriptions found, creating default automation_triggered subscription...")
        self.registry.create(**DEFAULT_RULE)

    async def start(self) -> None:
        """
        Bring every service up.

        Raises:
            HubConnectionError / HubAuthError: If the initial socket connection fails
        """
        logger.info(f"Starting event listener v{VERSION}...")
        logger.info(f"Timezone: {self.settings.listener.timezone}")
        if self.settings.slack.bot_token and self.settings.slack.default_channel:
            logger.info(f"Slack channel: {self.settings.slack.default_channel}")
        else:
            logger.info("Slack not configured")

        self.token_engine.set_notifier(self._send_text)
        self.token_engine.start()

        self.registry.init()
        self._ensure_default_rule()
        subs = self.registry.get_all()
        logger.info(f"Found {len(subs)} subscription(s), {sum(1 for s in subs if s.enabled)} enabled")

        self.client.on_event(self.pipeline.handle_event)
        self.client.on_reconnected(self._on_reconnected)
        self.client.on_connection_failed(self._on_connection_failed)
        self.client.on_auth_failed(self._on_auth_failed)

        try:
            await self.client.connect()
        except Exception:
            self.token_engine.stop()
            raise
        logger.info("WebSocket connected")

        await self.sync_subscriptions()
        self.registry.start_watching(self._on_registry_changed)
        logger.info("Listener running. Press Ctrl+C to stop.")

    def request_stop(self) -> None:
        self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(self.request_stop))

    async def shutdown(self) -> None:
        logger.info("Shutting down...")
        self.token_engine.stop()
        self.registry.stop_watching()
        await self.client.disconnect()

    async def run(self) -> None:
        """Start, block until SIGINT/SIGTERM, then shut down."""
        await self.start()
        self._install_signal_handlers()
        try:
            await self._stop_event.wait()
        finally:
            await self.shutdown()


__all__ = [
    "AUTH_FAILED_MESSAGE",
    "CONNECTION_FAILED_MESSAGE",
    "DEFAULT_RULE",
    "EventListener",
    "build_notification_manager",
]
