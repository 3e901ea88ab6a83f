"""
Token endpoint transport shared by the refresh engine and the login flow.

Both POST a JSON body to the resolved token URL and need the raw status and
body back so they can classify provider errors themselves.
"""

from __future__ import annotations

import json
from typing import Any

import aiohttp

TOKEN_REQUEST_TIMEOUT_SECONDS = 30


async def post_token_request(
    url: str,
    payload: dict[str, Any],
    timeout: float = TOKEN_REQUEST_TIMEOUT_SECONDS,
) -> tuple[int, str]:
    """
    POST ``payload`` as JSON to the token endpoint.

    Returns:
        Tuple of (HTTP status, response body text)

    Raises:
        aiohttp.ClientError: On connection failures
        asyncio.TimeoutError: When the request exceeds ``timeout``
    """
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        async with session.post(
            url,
            json=payload,
            headers={"Content-Type": "application/json"},
        ) as resp:
            return resp.status, await resp.text()


def parse_oauth_error(body: str) -> tuple[str | None, str | None]:
    """
    Pull ``error`` / ``error_description`` out of a failed response body.

    Returns:
        Tuple of (error code, description); (None, None) if the body is not JSON
    """
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return None, None
    if not isinstance(data, dict):
        return None, None

    error = data.get("error")
    # Some providers nest: {"error": {"type": ..., "message": ...}}
    if isinstance(error, dict):
        return error.get("type"), error.get("message")
    return error, data.get("error_description")


__all__ = ["TOKEN_REQUEST_TIMEOUT_SECONDS", "parse_oauth_error", "post_token_request"]
