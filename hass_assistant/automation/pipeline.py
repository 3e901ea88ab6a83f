"""
Tool: Event Processing Pipeline
Purpose: Match hub events against subscription rules and turn matches into notifications

Flow per event:
1. Every enabled rule with the same event type and a passing entity filter
   yields one task (event, rule)
2. Tasks enter a bounded FIFO (20); when full the oldest task is dropped
3. At most 3 tasks run at once; each completion admits the next
4. A task makes sure the Claude token is valid, builds a prompt, runs the
   CLI and sends the output as a notification
5. If the CLI failed because the token expired, the token is refreshed and
   the prompt retried once

Entity filters:
    ["binary_sensor.front_*", "!binary_sensor.front_gate"]
    - '*' matches any run of characters, '?' a single character
    - '!' patterns exclude and win over includes
    - if include patterns exist, at least one must match

Usage:
    pipeline = EventProcessingPipeline(registry, token_engine, runner, notifications)
    client.on_event(pipeline.handle_event)
    await pipeline.wait_idle()
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from hass_assistant.auth.token_refresh import TokenRefreshEngine
from hass_assistant.automation.prompt_runner import PromptResult, PromptRunner
from hass_assistant.automation.subscriptions import EventSubscription, SubscriptionRegistry
from hass_assistant.hub.models import HubEvent
from hass_assistant.notifications.manager import NotificationManager
from hass_assistant.notifications.models import NotificationMessage

logger = logging.getLogger(__name__)

MAX_CONCURRENT = 3
MAX_QUEUE_SIZE = 20

_TOKEN_EXPIRED_PATTERNS = [
    re.compile(r"\b401\b"),
    re.compile(r"authentication_error"),
    re.compile(r"token.{0,40}expired|expired.{0,40}token", re.IGNORECASE | re.DOTALL),
]

AutomationConfigFetcher = Callable[[str], Awaitable[dict[str, Any] | None]]


# ─────────────────────────────────────────────────────────────────────────────
# Matching
# ─────────────────────────────────────────────────────────────────────────────

def wildcard_to_regex(pattern: str) -> re.Pattern[str]:
    """Anchored regex for a glob pattern: '*' -> '.*', '?' -> '.', rest literal."""
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$")


def matches_wildcard(pattern: str, text: str) -> bool:
    if "*" not in pattern and "?" not in pattern:
        return pattern == text
    return wildcard_to_regex(pattern).match(text) is not None


def extract_entity_id(event: HubEvent) -> str:
    entity_id = event.data.get("entity_id")
    if not entity_id:
        new_state = event.data.get("new_state")
        if isinstance(new_state, dict):
            entity_id = new_state.get("entity_id")
    return entity_id if isinstance(entity_id, str) else ""


def matches_subscription(subscription: EventSubscription, event: HubEvent) -> bool:
    if not subscription.enabled or subscription.event_type != event.event_type:
        return False

    if not subscription.entity_filter:
        return True

    entity_id = extract_entity_id(event)
    includes = [p for p in subscription.entity_filter if not p.startswith("!")]
    excludes = [p[1:] for p in subscription.entity_filter if p.startswith("!")]

    if any(matches_wildcard(p, entity_id) for p in excludes):
        return False
    if includes and not any(matches_wildcard(p, entity_id) for p in includes):
        return False
    return True


def find_matching_subscriptions(
    subscriptions: list[EventSubscription], event: HubEvent
) -> list[EventSubscription]:
    return [s for s in subscriptions if matches_subscription(s, event)]


def is_token_expired_error(stdout: str, stderr: str) -> bool:
    """Heuristic: does CLI output look like an expired or rejected token?"""
    combined = f"{stdout}\n{stderr}"
    return any(p.search(combined) for p in _TOKEN_EXPIRED_PATTERNS)


# ─────────────────────────────────────────────────────────────────────────────
# Queue
# ─────────────────────────────────────────────────────────────────────────────

class EventQueue:
    """FIFO with a hard cap that drops the oldest item instead of blocking."""

    def __init__(self, max_size: int = MAX_QUEUE_SIZE):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._items: deque = deque()

    def push(self, item: Any) -> Any | None:
        """Append ``item``; returns the dropped item if the queue was full."""
        dropped = None
        if len(self._items) >= self.max_size:
            dropped = self._items.popleft()
            logger.warning(f"Queue full ({self.max_size}), dropping oldest event")
        self._items.append(item)
        return dropped

    def pop(self) -> Any:
        return self._items.popleft()

    def items(self) -> list[Any]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


# ─────────────────────────────────────────────────────────────────────────────
# Pipeline
# ─────────────────────────────────────────────────────────────────────────────

class EventProcessingPipeline:
    """Bounded, concurrency-limited event -> prompt -> notification pipeline."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        token_engine: TokenRefreshEngine,
        prompt_runner: PromptRunner,
        notifications: NotificationManager,
        automation_config_fetcher: AutomationConfigFetcher | None = None,
        max_concurrent: int = MAX_CONCURRENT,
        max_queue_size: int = MAX_QUEUE_SIZE,
        timezone: str = "UTC",
        language: str = "English",
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self.registry = registry
        self.token_engine = token_engine
        self.prompt_runner = prompt_runner
        self.notifications = notifications
        self.automation_config_fetcher = automation_config_fetcher
        self.max_concurrent = max_concurrent
        self.language = language

        try:
            self.tz = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown timezone {timezone!r}, using UTC")
            self.tz = ZoneInfo("UTC")

        self.queue = EventQueue(max_queue_size)
        self._active = 0
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._counters = {"received": 0, "matched": 0, "dropped": 0, "succeeded": 0, "failed": 0}

    # Intake ----------------------------------------------------------------

    def handle_event(self, event: HubEvent) -> int:
        """
        Entry point for socket events. Never blocks.

        Returns:
            Number of tasks enqueued for this event
        """
        self._counters["received"] += 1
        matches = find_matching_subscriptions(self.registry.get_all(), event)
        for subscription in matches:
            self.enqueue(event, subscription)
        return len(matches)

    def enqueue(self, event: HubEvent, subscription: EventSubscription) -> None:
        self._counters["matched"] += 1
        if self.queue.push((event, subscription)) is not None:
            self._counters["dropped"] += 1
        self._idle.clear()
        self._drain()

    def _drain(self) -> None:
        while self._active < self.max_concurrent and len(self.queue) > 0:
            event, subscription = self.queue.pop()
            self._active += 1
            task = asyncio.create_task(self._run_task(event, subscription))
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

        if self._active == 0 and len(self.queue) == 0:
            self._idle.set()

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._active -= 1
        self._drain()

    async def _run_task(self, event: HubEvent, subscription: EventSubscription) -> None:
        try:
            ok = await self.process_event(event, subscription)
        except Exception:
            logger.exception(f"Process event error for {subscription.name!r}")
            ok = False
        self._counters["succeeded" if ok else "failed"] += 1

    async def wait_idle(self) -> None:
        """Wait until the queue is empty and nothing is running."""
        await self._idle.wait()

    @property
    def stats(self) -> dict[str, int]:
        return {**self._counters, "active": self._active, "queued": len(self.queue)}

    # Processing ------------------------------------------------------------

    def _format_time(self, time_fired: str) -> str:
        if not time_fired:
            return datetime.now(self.tz).strftime("%Y-%m-%d %H:%M:%S")
        try:
            fired = datetime.fromisoformat(time_fired.replace("Z", "+00:00"))
        except ValueError:
            return time_fired
        if fired.tzinfo is None:
            return fired.strftime("%Y-%m-%d %H:%M:%S")
        return fired.astimezone(self.tz).strftime("%Y-%m-%d %H:%M:%S %Z")

    def build_prompt(
        self,
        event: HubEvent,
        subscription: EventSubscription,
        automation_config: dict[str, Any] | None = None,
    ) -> str:
        parts = [
            "You received a Home Assistant event. Write a short, friendly notification "
            f"message in {self.language} based on the information below.",
            "",
            f"Event type: {event.event_type}",
            f"Fired at: {self._format_time(event.time_fired)}",
        ]
        data = event.data

        if event.event_type == "automation_triggered":
            if data.get("entity_id"):
                parts.append(f"Automation ID: {data['entity_id']}")
                if data.get("name"):
                    parts.append(f"Automation name: {data['name']}")
                if data.get("source"):
                    parts.append(f"Trigger source: {data['source']}")
                if automation_config:
                    actions = automation_config.get("actions") or automation_config.get("action")
                    if actions:
                        parts.append(f"Automation actions: {json.dumps(actions, indent=2, ensure_ascii=False)}")
                    if automation_config.get("description"):
                        parts.append(f"Automation description: {automation_config['description']}")

        elif event.event_type == "state_changed":
            if data.get("entity_id"):
                parts.append(f"Entity ID: {data['entity_id']}")
            old_state = data.get("old_state") or {}
            new_state = data.get("new_state") or {}
            if "state" in old_state and "state" in new_state:
                parts.append(f"State change: {old_state['state']} → {new_state['state']}")
            friendly_name = (new_state.get("attributes") or {}).get("friendly_name")
            if friendly_name:
                parts.append(f"Device name: {friendly_name}")

        else:
            parts.append(f"Event data: {json.dumps(data, indent=2, ensure_ascii=False, default=str)}")

        parts.extend([
            "",
            f"User request: {subscription.description}",
            "",
            "Output only the notification message itself, without any other explanation. "
            "Keep it concise and easy to read in Slack.",
        ])
        return "\n".join(parts)

    async def _notify_failure(self, subscription: EventSubscription, event: HubEvent, error: str) -> None:
        text = "\n".join([
            "❌ *Event notification failed*",
            f"*Subscription*: {subscription.name}",
            f"*Event*: {event.event_type}",
            f"*Error*: {error}",
        ])
        await self.notifications.send(NotificationMessage.from_text(text, source="event"))

    async def process_event(self, event: HubEvent, subscription: EventSubscription) -> bool:
        """
        Run one (event, rule) task to completion.

        Returns:
            True if a notification with generated content was sent
        """
        logger.info(f"Processing event: {event.event_type} for subscription {subscription.name!r}")

        token_result = await self.token_engine.ensure_valid_token()
        if not token_result.success:
            logger.error(f"Token not available: {token_result.message}")
            await self._notify_failure(subscription, event, token_result.message)
            return False

        automation_config = None
        entity_id = event.data.get("entity_id")
        if event.event_type == "automation_triggered" and entity_id and self.automation_config_fetcher:
            automation_config = await self.automation_config_fetcher(entity_id)

        prompt = self.build_prompt(event, subscription, automation_config)
        result: PromptResult = await self.prompt_runner.run(prompt)

        if not result.success and is_token_expired_error(result.stdout, result.stderr):
            logger.info("Token expired during execution, refreshing and retrying...")
            refresh_result = await self.token_engine.refresh_token()
            if refresh_result.success:
                result = await self.prompt_runner.run(prompt)

        if result.success:
            await self.notifications.send(
                NotificationMessage(
                    text=result.output,
                    markdown=result.output,
                    source="event",
                    metadata={"eventType": event.event_type, "subscriptionName": subscription.name},
                )
            )
            logger.info(f"Notification sent for {subscription.name!r}")
            return True

        error = result.error or "Unknown error"
        logger.error(f"Failed to process event for {subscription.name!r}: {error}")
        await self._notify_failure(subscription, event, error)
        return False


__all__ = [
    "MAX_CONCURRENT",
    "MAX_QUEUE_SIZE",
    "EventProcessingPipeline",
    "EventQueue",
    "extract_entity_id",
    "find_matching_subscriptions",
    "is_token_expired_error",
    "matches_subscription",
    "matches_wildcard",
    "wildcard_to_regex",
]
