"""
Tool: Notification Manager
Purpose: Fan a notification out to every configured channel adapter

Each adapter reports independently; one failing channel never prevents the
others from sending.

Usage:
    manager = NotificationManager()
    manager.register_adapter(SlackNotificationAdapter(token, channel))
    results = await manager.send(NotificationMessage(text="Hi", source="manual"))
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from hass_assistant.notifications.models import NotificationMessage, NotificationResult

logger = logging.getLogger(__name__)


class NotificationAdapter(ABC):
    """
    Abstract base class for notification channels.

    Adapters that are registered but not configured are skipped silently.
    """

    @property
    @abstractmethod
    def channel_type(self) -> str:
        """Channel identifier, e.g. 'slack'."""
        ...

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    async def send(self, message: NotificationMessage, target: str | None = None) -> NotificationResult:
        """
        Deliver one message.

        Args:
            message: Message to deliver
            target: Channel-specific destination overriding the default

        Returns:
            NotificationResult for this channel
        """
        ...


class NotificationManager:
    """Explicitly constructed fan-out; the listener owns the single instance."""

    def __init__(self) -> None:
        self._adapters: dict[str, NotificationAdapter] = {}

    def register_adapter(self, adapter: NotificationAdapter) -> None:
        self._adapters[adapter.channel_type] = adapter
        logger.info(f"Registered notification adapter: {adapter.channel_type}")

    def get_configured_channels(self) -> list[str]:
        return [name for name, adapter in self._adapters.items() if adapter.is_configured()]

    async def send(
        self,
        message: NotificationMessage,
        channels: list[str] | None = None,
        target: str | None = None,
    ) -> list[NotificationResult]:
        """
        Send to all configured adapters, or only to ``channels`` if given.

        Returns:
            One NotificationResult per attempted channel
        """
        results: list[NotificationResult] = []
        selected = channels if channels is not None else list(self._adapters)

        for channel in selected:
            adapter = self._adapters.get(channel)
            if adapter is None:
                results.append(NotificationResult(channel=channel, success=False, error="Unknown channel"))
                continue
            if not adapter.is_configured():
                continue

            try:
                result = await adapter.send(message, target)
            except Exception as e:
                logger.error(f"Notification adapter {channel} failed: {e}")
                result = NotificationResult(channel=channel, success=False, error=str(e))

            if not result.success:
                logger.warning(f"Notification via {channel} failed: {result.error}")
            results.append(result)

        if not results:
            logger.info("No notification channels configured, message not sent")
        return results

    async def send_text(self, text: str) -> list[NotificationResult]:
        """Send ``text`` as an event notification to every configured channel."""
        return await self.send(NotificationMessage.from_text(text))
