"""
Tool: Slack Notification Adapter
Purpose: Post notifications to a Slack channel with the bot token

Configuration:
    SLACK_BOT_TOKEN: Bot token (xoxb-...)
    SLACK_DEFAULT_CHANNEL: Channel id used when no target is given

Dependencies:
    - slack_sdk (pip install slack_sdk)
"""

from __future__ import annotations

import logging

from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from hass_assistant.notifications.manager import NotificationAdapter
from hass_assistant.notifications.models import NotificationMessage, NotificationResult

logger = logging.getLogger(__name__)


class SlackNotificationAdapter(NotificationAdapter):
    def __init__(
        self,
        bot_token: str | None,
        default_channel: str | None,
        client: AsyncWebClient | None = None,
    ):
        self.bot_token = bot_token
        self.default_channel = default_channel
        self._client = client

    @property
    def channel_type(self) -> str:
        return "slack"

    def is_configured(self) -> bool:
        return bool(self.bot_token and self.default_channel)

    def _get_client(self) -> AsyncWebClient:
        if self._client is None:
            self._client = AsyncWebClient(token=self.bot_token)
        return self._client

    async def send(self, message: NotificationMessage, target: str | None = None) -> NotificationResult:
        channel = target or self.default_channel
        if not self.bot_token or not channel:
            return NotificationResult(channel="slack", success=False, error="Slack not configured")

        try:
            await self._get_client().chat_postMessage(
                channel=channel,
                text=message.markdown or message.text,
                mrkdwn=True,
            )
        except SlackApiError as e:
            error = e.response.get("error", str(e)) if e.response is not None else str(e)
            logger.error(f"Slack API error: {error}")
            return NotificationResult(channel="slack", success=False, error=str(error))

        logger.info(f"Slack notification sent to {channel}")
        return NotificationResult(channel="slack", success=True)
