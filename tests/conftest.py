"""Shared test fixtures for hass-assistant tests.

This module provides common fixtures used across all test modules:
- Temporary credentials files with a controllable expiry
- A fixed-clock token refresh engine wired to a mocked token endpoint
- Subscription registries backed by temporary files
- Sample hub events

Usage:
    async def test_something(make_engine, write_credentials):
        write_credentials(expires_in_ms=5 * 60 * 1000)
        engine = make_engine()
        ...
"""

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from hass_assistant.auth.oauth_config import OAuthConfigResolver
from hass_assistant.auth.token_refresh import TokenRefreshEngine
from hass_assistant.auth.token_store import TokenStore
from hass_assistant.automation.subscriptions import SubscriptionRegistry
from hass_assistant.hub.models import HubEvent


# ─────────────────────────────────────────────────────────────────────────────
# Path Constants
# ─────────────────────────────────────────────────────────────────────────────

PROJECT_ROOT = Path(__file__).parent.parent

# Fixed "now" for deterministic expiry arithmetic (2025-01-01T00:00:00Z)
NOW_MS = 1_735_689_600_000
MINUTE_MS = 60 * 1000


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Undo setup_logging() handler changes made by CLI and logging tests."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


# ─────────────────────────────────────────────────────────────────────────────
# Credential Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def credentials_path(tmp_path: Path) -> Path:
    """Path of a credentials file inside a temporary config dir."""
    config_dir = tmp_path / "claude"
    config_dir.mkdir()
    return config_dir / ".credentials.json"


@pytest.fixture
def write_credentials(credentials_path: Path) -> Callable[..., dict]:
    """Write a credentials file whose token expires ``expires_in_ms`` after NOW_MS.

    Returns:
        Function accepting expiry and extra record fields; returns the document written
    """

    def _write(
        expires_in_ms: int = 8 * 60 * MINUTE_MS,
        access_token: str = "sk-ant-oat-old",
        refresh_token: str | None = "sk-ant-ort-old",
        **extra: Any,
    ) -> dict:
        record: dict[str, Any] = {
            "accessToken": access_token,
            "expiresAt": NOW_MS + expires_in_ms,
            **extra,
        }
        if refresh_token is not None:
            record["refreshToken"] = refresh_token
        document = {"claudeAiOauth": record}
        credentials_path.write_text(json.dumps(document, indent=2))
        return document

    return _write


@pytest.fixture
def token_store(credentials_path: Path) -> TokenStore:
    return TokenStore(credentials_path)


@pytest.fixture
def resolver() -> OAuthConfigResolver:
    """Resolver without a binary, so it always yields the fallback config."""
    return OAuthConfigResolver(None)


@pytest.fixture
def post_request() -> AsyncMock:
    """Mocked token endpoint transport returning (status, body)."""
    return AsyncMock(return_value=(200, json.dumps({
        "access_token": "sk-ant-oat-new",
        "refresh_token": "sk-ant-ort-new",
        "expires_in": 28800,
        "token_type": "Bearer",
    })))


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def make_engine(token_store, resolver, post_request, notifier) -> Callable[..., TokenRefreshEngine]:
    """Build a TokenRefreshEngine with a fixed clock and mocked transport."""

    def _make(**overrides: Any) -> TokenRefreshEngine:
        kwargs = {
            "notifier": notifier,
            "post_request": post_request,
            "clock": lambda: NOW_MS,
        }
        kwargs.update(overrides)
        return TokenRefreshEngine(token_store, resolver, **kwargs)

    return _make


# ─────────────────────────────────────────────────────────────────────────────
# Subscription Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def subscriptions_path(tmp_path: Path) -> Path:
    return tmp_path / "subs" / "event-subscriptions.json"


@pytest.fixture
def registry(subscriptions_path: Path) -> SubscriptionRegistry:
    reg = SubscriptionRegistry(subscriptions_path, debounce_seconds=0.05)
    reg.init()
    return reg


# ─────────────────────────────────────────────────────────────────────────────
# Hub Event Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def state_changed_event() -> HubEvent:
    return HubEvent(
        event_type="state_changed",
        data={
            "entity_id": "binary_sensor.front_door",
            "old_state": {"state": "off"},
            "new_state": {
                "entity_id": "binary_sensor.front_door",
                "state": "on",
                "attributes": {"friendly_name": "Front Door"},
            },
        },
        origin="LOCAL",
        time_fired="2025-01-01T08:30:00+00:00",
    )


@pytest.fixture
def automation_event() -> HubEvent:
    return HubEvent(
        event_type="automation_triggered",
        data={
            "entity_id": "automation.morning_lights",
            "name": "Morning lights",
            "source": "time pattern",
        },
        origin="LOCAL",
        time_fired="2025-01-01T06:00:00+00:00",
    )
