"""
Tool: Hub REST Client
Purpose: Small set of hub REST lookups used when building event prompts

Usage:
    client = HubRestClient("http://homeassistant.local:8123", token)
    config = await client.fetch_automation_config("automation.morning_lights")

Dependencies:
    - aiohttp (pip install aiohttp)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)

REST_TIMEOUT_SECONDS = 10


class HubRestClient:
    """Bearer-token REST access to the hub API."""

    def __init__(self, url: str, token: str, timeout: float = REST_TIMEOUT_SECONDS):
        self.base_url = url.rstrip("/")
        self._token = token
        self.timeout = timeout

    async def _get_json(self, path: str) -> Any:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(f"{self.base_url}{path}", headers=headers) as resp:
                if resp.status != 200:
                    raise aiohttp.ClientResponseError(
                        resp.request_info,
                        resp.history,
                        status=resp.status,
                        message=f"GET {path} returned HTTP {resp.status}",
                    )
                return await resp.json()

    async def get_state(self, entity_id: str) -> dict[str, Any]:
        return await self._get_json(f"/api/states/{entity_id}")

    async def fetch_automation_config(self, entity_id: str) -> dict[str, Any] | None:
        """
        Look up the stored configuration of an automation entity.

        The automation's config id lives in the entity's ``id`` attribute.

        Returns:
            Automation config (triggers, conditions, actions, description) or
            None when it cannot be fetched
        """
        try:
            state = await self.get_state(entity_id)
            automation_id = (state.get("attributes") or {}).get("id")
            if not automation_id:
                logger.warning(f"No automation id found in attributes for {entity_id}")
                return None
            return await self._get_json(f"/api/config/automation/config/{automation_id}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Failed to fetch automation config for {entity_id}: {e}")
            return None


__all__ = ["REST_TIMEOUT_SECONDS", "HubRestClient"]
