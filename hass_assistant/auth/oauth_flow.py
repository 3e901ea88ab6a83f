"""
Tool: OAuth Login Flow
Purpose: Browser-based Claude login using OAuth 2.0 with PKCE (RFC 7636)

Flow:
1. start_auth_flow() creates a PKCE session and returns the authorization URL
2. The user authorizes in a browser and copies the code from the callback page
3. exchange_code_for_tokens(code, state) trades the code for tokens
4. save_credentials(tokens) merges them into the credentials file

Sessions live in memory only and expire after 10 minutes.

Usage:
    flow = OAuthFlow(resolver, store)
    started = flow.start_auth_flow()
    print(started["auth_url"])
    result = await flow.exchange_code_for_tokens(pasted_code, started["state"])
    if result["success"]:
        flow.save_credentials(result["tokens"])
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

from hass_assistant.auth.endpoint import parse_oauth_error, post_token_request
from hass_assistant.auth.oauth_config import OAuthConfigResolver
from hass_assistant.auth.token_store import TokenStore

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://claude.ai/oauth/authorize"
REDIRECT_URI = "https://platform.claude.com/oauth/code/callback"
OAUTH_SCOPES = "org:create_api_key user:profile user:inference user:sessions:claude_code user:mcp_servers"

SESSION_TTL_SECONDS = 10 * 60


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_pkce() -> tuple[str, str]:
    """
    Generate a PKCE code verifier and S256 challenge.

    Returns:
        Tuple of (code_verifier, code_challenge)
    """
    code_verifier = _b64url(secrets.token_bytes(32))
    code_challenge = _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())
    return code_verifier, code_challenge


def generate_state() -> str:
    """Random CSRF state parameter."""
    return _b64url(secrets.token_bytes(32))


@dataclass
class PKCESession:
    code_verifier: str
    code_challenge: str
    state: str
    created_at: float = field(default_factory=time.time)

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > SESSION_TTL_SECONDS


class OAuthFlow:
    """Owns the in-flight PKCE sessions of one process."""

    def __init__(
        self,
        config_resolver: OAuthConfigResolver,
        store: TokenStore,
        post_request: Callable[[str, dict[str, Any]], Awaitable[tuple[int, str]]] = post_token_request,
        clock: Callable[[], float] = time.time,
    ):
        self.config_resolver = config_resolver
        self.store = store
        self._post_request = post_request
        self._clock = clock
        self._sessions: dict[str, PKCESession] = {}

    def build_authorization_url(self, code_challenge: str, state: str) -> str:
        config = self.config_resolver.resolve()
        params = {
            "code": "true",
            "client_id": config.client_id,
            "response_type": "code",
            "redirect_uri": REDIRECT_URI,
            "scope": OAUTH_SCOPES,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def _cleanup_expired_sessions(self) -> None:
        now = self._clock()
        for state in [s for s, session in self._sessions.items() if session.is_expired(now)]:
            del self._sessions[state]

    def start_auth_flow(self) -> dict[str, str]:
        """
        Begin a login: new PKCE pair, new state, new session.

        Returns:
            dict with ``auth_url`` and ``state``
        """
        self._cleanup_expired_sessions()

        code_verifier, code_challenge = generate_pkce()
        state = generate_state()
        self._sessions[state] = PKCESession(
            code_verifier=code_verifier,
            code_challenge=code_challenge,
            state=state,
            created_at=self._clock(),
        )

        logger.info("OAuth flow started")
        return {"auth_url": self.build_authorization_url(code_challenge, state), "state": state}

    async def exchange_code_for_tokens(self, code: str, state: str) -> dict[str, Any]:
        """
        Exchange an authorization code for tokens.

        The callback page shows ``<code>#<state>``; that form is accepted and
        split here. The session is consumed whether or not the exchange works.

        Returns:
            dict with success status and ``tokens`` or ``error``
        """
        code = code.strip()
        if "#" in code:
            code, pasted_state = code.split("#", 1)
            state = state or pasted_state

        session = self._sessions.pop(state, None)
        if session is None:
            return {
                "success": False,
                "error": "Invalid or expired session. Please start the login flow again.",
            }
        if session.is_expired(self._clock()):
            return {"success": False, "error": "Session expired. Please start the login flow again."}

        config = await self.config_resolver.resolve_async()
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": config.client_id,
            "code_verifier": session.code_verifier,
            "state": state,
        }

        logger.info("Exchanging authorization code for tokens...")
        try:
            status, body = await self._post_request(config.token_url, payload)
        except Exception as e:
            logger.error(f"Token exchange request failed: {e}")
            return {"success": False, "error": f"Token exchange request failed: {e!s}"}

        if not 200 <= status < 300:
            error_code, description = parse_oauth_error(body)
            detail = description or error_code or body.strip()[:200]
            logger.error(f"Token exchange failed: {status} {error_code}")
            return {"success": False, "error": f"Token exchange failed: {status} - {detail}"}

        try:
            tokens = json.loads(body)
        except json.JSONDecodeError:
            return {"success": False, "error": "Token exchange returned invalid JSON"}

        if not isinstance(tokens, dict) or not tokens.get("access_token"):
            return {"success": False, "error": "Token exchange response missing access_token"}

        logger.info("Token exchange successful")
        return {"success": True, "tokens": tokens}

    def save_credentials(self, tokens: dict[str, Any]) -> dict[str, Any]:
        try:
            record = self.store.save_token_response(tokens)
        except OSError as e:
            logger.error(f"Failed to save credentials: {e}")
            return {"success": False, "error": str(e)}

        logger.info(f"Credentials saved to {self.store.path}")
        return {"success": True, "expires_at": record.expires_at, "path": str(self.store.path)}

    def active_session_count(self) -> int:
        return len(self._sessions)

    def clear_sessions(self) -> None:
        self._sessions.clear()


__all__ = [
    "AUTHORIZE_URL",
    "OAUTH_SCOPES",
    "REDIRECT_URI",
    "SESSION_TTL_SECONDS",
    "OAuthFlow",
    "PKCESession",
    "generate_pkce",
    "generate_state",
]
