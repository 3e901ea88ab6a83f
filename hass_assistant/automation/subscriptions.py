"""
Tool: Event Subscription Registry
Purpose: Persistent set of event subscription rules with hot reload

A rule says "when the hub fires <eventType> (optionally for entities matching
<entityFilter>), generate a notification following <description>".

Storage: a JSON array of camelCase rule records. The file may be edited by
other tools while the listener runs; changes are picked up through a
watchdog observer, debounced, and fanned out to registered callbacks.

Usage:
    registry = SubscriptionRegistry(Path("data/event-subscriptions.json"))
    registry.init()
    rule = registry.create(
        name="Front door",
        event_type="state_changed",
        description="Tell me when the front door opens",
        entity_filter=["binary_sensor.front_*", "!binary_sensor.front_gate"],
    )
    registry.start_watching(lambda: print("reloaded"))

Dependencies:
    - watchdog>=4.0.0 (file system watching)
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

RELOAD_DEBOUNCE_SECONDS = 0.5

# snake_case attribute -> stored camelCase key
UPDATABLE_FIELDS = {
    "name": "name",
    "event_type": "eventType",
    "entity_filter": "entityFilter",
    "description": "description",
    "enabled": "enabled",
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class EventSubscription:
    """
    One subscription rule.

    Attributes:
        id: uuid4, never changes
        name: Human label, used for lookups by name
        event_type: Hub event type to react to
        description: Instruction handed to the prompt runner
        entity_filter: Glob patterns; ``!`` prefix excludes. None means all entities
        enabled: Disabled rules never match
    """
    id: str
    name: str
    event_type: str
    description: str = ""
    entity_filter: list[str] | None = None
    enabled: bool = True
    created_at: str = field(default_factory=_utc_now_iso)
    updated_at: str = field(default_factory=_utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "eventType": self.event_type,
            "entityFilter": list(self.entity_filter) if self.entity_filter is not None else None,
            "description": self.description,
            "enabled": self.enabled,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventSubscription:
        entity_filter = data.get("entityFilter")
        return cls(
            id=data["id"],
            name=data["name"],
            event_type=data["eventType"],
            description=data.get("description", ""),
            entity_filter=list(entity_filter) if entity_filter else None,
            enabled=bool(data.get("enabled", True)),
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
        )


class _SubscriptionFileHandler(FileSystemEventHandler):
    """Forward changes of one file from the observer thread into the event loop."""

    def __init__(self, target: str, loop: asyncio.AbstractEventLoop, on_change: Callable[[], None]):
        super().__init__()
        self.target = target
        self.loop = loop
        self.on_change = on_change

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return

        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(p and os.path.abspath(os.fsdecode(p)) == self.target for p in paths):
            self.loop.call_soon_threadsafe(self.on_change)


class SubscriptionRegistry:
    """In-memory rule set backed by a JSON file."""

    def __init__(self, path: Path | str, debounce_seconds: float = RELOAD_DEBOUNCE_SECONDS):
        self.path = Path(path)
        self.debounce_seconds = debounce_seconds
        self._subscriptions: dict[str, EventSubscription] = {}

        self._callbacks: list[Callable[[], Any]] = []
        self._observer: Observer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._reload_handle: asyncio.TimerHandle | None = None
        self._pending: set[asyncio.Future] = set()

    # ─────────────────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────────────────

    def init(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.load()

    def load(self) -> None:
        """
        Reload rules from disk.

        An empty file, malformed JSON or a non-array document usually means a
        writer is mid-save, so the current rules are kept.
        """
        if not self.path.exists():
            self.save()
            return

        content = self.path.read_text(encoding="utf-8")
        if not content.strip():
            logger.warning("Subscription file is empty, skipping load")
            return

        try:
            raw = json.loads(content)
        except json.JSONDecodeError:
            logger.warning("Subscription file is not valid JSON (write in progress?), keeping current rules")
            return

        if not isinstance(raw, list):
            logger.warning("Subscription file is not a JSON array, keeping current rules")
            return

        loaded: dict[str, EventSubscription] = {}
        for item in raw:
            try:
                sub = EventSubscription.from_dict(item)
            except (KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping malformed subscription record: {e!r}")
                continue
            loaded[sub.id] = sub

        self._subscriptions = loaded
        summary = ", ".join(
            f'"{s.name}" (filter: {json.dumps(s.entity_filter) if s.entity_filter else "none"})'
            for s in loaded.values()
        )
        logger.info(f"Loaded {len(loaded)} subscription(s): {summary}")

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump([s.to_dict() for s in self._subscriptions.values()], f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    # ─────────────────────────────────────────────────────────────────────
    # CRUD
    # ─────────────────────────────────────────────────────────────────────

    def create(
        self,
        name: str,
        event_type: str,
        description: str = "",
        entity_filter: list[str] | None = None,
        enabled: bool = True,
    ) -> EventSubscription:
        if not name or not event_type:
            raise ValueError("name and event_type are required")

        now = _utc_now_iso()
        sub = EventSubscription(
            id=str(uuid.uuid4()),
            name=name,
            event_type=event_type,
            description=description,
            entity_filter=list(entity_filter) if entity_filter else None,
            enabled=enabled,
            created_at=now,
            updated_at=now,
        )
        self._subscriptions[sub.id] = sub
        self.save()
        logger.info(f"Created subscription {sub.name!r} ({sub.event_type})")
        return sub

    def get_all(self) -> list[EventSubscription]:
        return list(self._subscriptions.values())

    def get(self, subscription_id: str) -> EventSubscription | None:
        return self._subscriptions.get(subscription_id)

    def find_by_name(self, name: str) -> EventSubscription | None:
        """First rule whose name contains ``name``, case-insensitive."""
        needle = name.lower()
        for sub in self._subscriptions.values():
            if needle in sub.name.lower():
                return sub
        return None

    def update(self, subscription_id: str, **updates: Any) -> EventSubscription | None:
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            return None

        unknown = set(updates) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        data = sub.to_dict()
        for attr, value in updates.items():
            data[UPDATABLE_FIELDS[attr]] = value
        data["updatedAt"] = _utc_now_iso()

        updated = EventSubscription.from_dict(data)
        self._subscriptions[subscription_id] = updated
        self.save()
        return updated

    def enable(self, subscription_id: str) -> bool:
        return self.update(subscription_id, enabled=True) is not None

    def disable(self, subscription_id: str) -> bool:
        return self.update(subscription_id, enabled=False) is not None

    def delete(self, subscription_id: str) -> bool:
        if self._subscriptions.pop(subscription_id, None) is None:
            return False
        self.save()
        return True

    def active_event_types(self) -> set[str]:
        return {s.event_type for s in self._subscriptions.values() if s.enabled}

    # ─────────────────────────────────────────────────────────────────────
    # Hot reload
    # ─────────────────────────────────────────────────────────────────────

    def start_watching(self, callback: Callable[[], Any]) -> None:
        """
        Reload and call ``callback`` whenever the file changes.

        Must be called from the running event loop. Callbacks may be plain
        functions or coroutine functions.
        """
        self._callbacks.append(callback)
        if self._observer is not None:
            return

        self._loop = asyncio.get_running_loop()
        handler = _SubscriptionFileHandler(
            str(self.path.absolute()), self._loop, self._schedule_reload
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)

        observer = Observer()
        observer.schedule(handler, str(self.path.parent.absolute()), recursive=False)
        observer.start()
        self._observer = observer
        logger.info(f"Watching {self.path} for changes")

    def _schedule_reload(self) -> None:
        if self._loop is None:
            return
        if self._reload_handle is not None:
            self._reload_handle.cancel()
        self._reload_handle = self._loop.call_later(self.debounce_seconds, self._reload_and_notify)

    def _reload_and_notify(self) -> None:
        self._reload_handle = None
        try:
            self.load()
        except OSError as e:
            logger.error(f"Reload error: {e}")
            return

        for callback in list(self._callbacks):
            try:
                result = callback()
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._callback_done)
            except Exception:
                logger.exception("Subscription change callback failed")

    def _callback_done(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Subscription change callback failed", exc_info=error)

    def stop_watching(self) -> None:
        if self._reload_handle is not None:
            self._reload_handle.cancel()
            self._reload_handle = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None
        self._callbacks.clear()
        self._loop = None


__all__ = ["EventSubscription", "SubscriptionRegistry"]
