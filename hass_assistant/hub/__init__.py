"""
Hub Tools - Home-automation hub connectivity

Components:
    models.py: HubEvent data structure
    websocket.py: Realtime event socket with auth, heartbeat and reconnect
    rest.py: REST lookups used to enrich event prompts

Usage:
    from hass_assistant.hub.websocket import RealtimeEventClient

    client = RealtimeEventClient(url, token)
    client.on_event(handle_event)
    await client.connect()
    await client.subscribe_events("state_changed")
"""

from hass_assistant.hub.models import HubEvent

__all__ = ["HubEvent"]
