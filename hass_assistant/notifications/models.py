"""
Tool: Notification Models
Purpose: Message and per-channel result structures for notification fan-out

Usage:
    from hass_assistant.notifications.models import NotificationMessage

    message = NotificationMessage(text="Front door opened", source="event")
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Optional

NotificationSource = Literal["event", "schedule", "manual"]


@dataclass
class NotificationMessage:
    """
    Outbound notification.

    Attributes:
        text: Plain text body (always present, used as fallback)
        markdown: Rich body for channels that render markup
        source: What produced it ('event' | 'schedule' | 'manual')
        metadata: Free-form context such as eventType / subscriptionName
    """
    text: str
    markdown: Optional[str] = None
    source: NotificationSource = "manual"
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_text(cls, text: str, source: NotificationSource = "event") -> "NotificationMessage":
        """Message whose text and markdown bodies are the same string."""
        return cls(text=text, markdown=text, source=source)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class NotificationResult:
    channel: str
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
