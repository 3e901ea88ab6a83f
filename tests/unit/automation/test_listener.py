"""Tests for hass_assistant/automation/listener.py"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, PropertyMock, patch

import pytest

from hass_assistant.automation.listener import (
    AUTH_FAILED_MESSAGE,
    CONNECTION_FAILED_MESSAGE,
    DEFAULT_RULE,
    EventListener,
)
from hass_assistant.config import load_settings
from hass_assistant.hub.websocket import HubConnectionError


@pytest.fixture
def settings(tmp_path, subscriptions_path):
    return load_settings(
        tmp_path / "none.yaml",
        environ={
            "HA_URL": "http://ha.local:8123",
            "HA_TOKEN": "token",
            "EVENT_SUBSCRIPTIONS_PATH": str(subscriptions_path),
        },
    )


@pytest.fixture
def client():
    mock = MagicMock()
    mock.connect = AsyncMock()
    mock.disconnect = AsyncMock()
    mock.subscribe_events = AsyncMock(side_effect=lambda event_type: 1)
    return mock


@pytest.fixture
def token_engine():
    return MagicMock()


@pytest.fixture
def notifications():
    mock = MagicMock()
    mock.send = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def listener(settings, registry, client, token_engine, notifications):
    return EventListener(
        settings,
        notifications=notifications,
        token_engine=token_engine,
        registry=registry,
        client=client,
        prompt_runner=MagicMock(),
    )


def subscribed_types(client) -> list[str]:
    return [c.args[0] for c in client.subscribe_events.call_args_list]


class TestStartup:
    @pytest.mark.asyncio
    async def test_start_creates_default_rule_and_subscribes(self, listener, registry, client, token_engine):
        await listener.start()
        try:
            [rule] = registry.get_all()
            assert rule.name == DEFAULT_RULE["name"]
            assert subscribed_types(client) == ["automation_triggered"]
            client.on_event.assert_called_once_with(listener.pipeline.handle_event)
            token_engine.start.assert_called_once()
            token_engine.set_notifier.assert_called_once()
        finally:
            await listener.shutdown()

        token_engine.stop.assert_called()
        client.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_default_rule_when_disabled(self, listener, registry, client):
        listener.settings.subscriptions.create_default = False

        await listener.start()
        try:
            assert registry.get_all() == []
            client.subscribe_events.assert_not_called()
        finally:
            await listener.shutdown()

    @pytest.mark.asyncio
    async def test_connection_failure_is_fatal(self, listener, client, token_engine):
        client.connect.side_effect = HubConnectionError("refused")

        with pytest.raises(HubConnectionError):
            await listener.start()

        token_engine.stop.assert_called_once()


class TestSubscriptionSync:
    @pytest.mark.asyncio
    async def test_only_new_types_are_subscribed(self, listener, registry, client):
        registry.create(name="Door", event_type="state_changed")
        assert await listener.sync_subscriptions() == ["state_changed"]

        registry.create(name="Lights", event_type="automation_triggered")
        registry.create(name="Window", event_type="state_changed")
        assert await listener.sync_subscriptions() == ["automation_triggered"]

        assert subscribed_types(client) == ["state_changed", "automation_triggered"]

    @pytest.mark.asyncio
    async def test_disabled_rules_are_not_subscribed(self, listener, registry, client):
        registry.create(name="Door", event_type="state_changed", enabled=False)

        assert await listener.sync_subscriptions() == []
        client.subscribe_events.assert_not_called()

    @pytest.mark.asyncio
    async def test_reconnect_adopts_client_subscriptions(self, listener, registry, client):
        type(client).subscribed_event_types = PropertyMock(return_value={"state_changed"})
        registry.create(name="Door", event_type="state_changed")

        listener._on_reconnected()

        assert await listener.sync_subscriptions() == []


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_connection_failed_sends_notification(self, listener, notifications):
        await listener._on_connection_failed()

        message = notifications.send.call_args.args[0]
        assert message.text == CONNECTION_FAILED_MESSAGE

    @pytest.mark.asyncio
    async def test_auth_failed_notifies_and_stops(self, listener, notifications):
        await listener._on_auth_failed()

        message = notifications.send.call_args.args[0]
        assert message.text == AUTH_FAILED_MESSAGE
        assert "HA_TOKEN" in message.text
        assert listener.failure
        assert listener._stop_event.is_set()

    @pytest.mark.asyncio
    async def test_token_rejected_after_reconnect_ends_run(self, listener, client, notifications):
        with patch.object(listener, "_install_signal_handlers"):
            task = asyncio.create_task(listener.run())
            while not client.on_auth_failed.called:
                await asyncio.sleep(0.01)
            on_auth_failed = client.on_auth_failed.call_args.args[0]

            await on_auth_failed()
            await asyncio.wait_for(task, timeout=2)

        client.disconnect.assert_awaited_once()
        assert notifications.send.call_args.args[0].text == AUTH_FAILED_MESSAGE
        assert listener.failure == "Home Assistant rejected the access token"
