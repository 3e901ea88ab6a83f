"""
Notification Tools - Outbound notification fan-out

Components:
    models.py: NotificationMessage / NotificationResult
    manager.py: NotificationAdapter base class and NotificationManager
    slack.py: Slack adapter (chat.postMessage)

Usage:
    from hass_assistant.notifications import NotificationManager, NotificationMessage
"""

from hass_assistant.notifications.manager import NotificationAdapter, NotificationManager
from hass_assistant.notifications.models import NotificationMessage, NotificationResult

__all__ = [
    "NotificationAdapter",
    "NotificationManager",
    "NotificationMessage",
    "NotificationResult",
]
