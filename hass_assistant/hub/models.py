"""
Tool: Hub Models
Purpose: Data structures shared by the hub socket client and its consumers

Usage:
    from hass_assistant.hub.models import HubEvent

    event = HubEvent.from_dict(frame["event"])
"""

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class HubEvent:
    """
    One event pushed by the hub over the realtime socket.

    Attributes:
        event_type: Hub event type (``state_changed``, ``automation_triggered``, ...)
        data: Event payload, shape depends on the event type
        origin: ``LOCAL`` or ``REMOTE``
        time_fired: ISO-8601 timestamp set by the hub
        context: Hub context ids (``id``, ``parent_id``, ``user_id``)
    """
    event_type: str
    data: dict[str, Any] = field(default_factory=dict)
    origin: str = ""
    time_fired: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        """Alias of ``event_type``."""
        return self.event_type

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HubEvent":
        """Create from a socket frame payload; ``type`` is accepted for ``event_type``."""
        return cls(
            event_type=data.get("event_type") or data.get("type") or "",
            data=data.get("data") or {},
            origin=data.get("origin") or "",
            time_fired=data.get("time_fired") or "",
            context=data.get("context") or {},
        )
