"""
Tool: Token Refresh Engine
Purpose: Keep the Claude CLI access token valid without manual logins

Token lifecycle:
- Access token: expires after roughly 8-12 hours
- Refresh token: expires after roughly 7-30 days

Refresh strategy:
- Check every 5 minutes
- Refresh once the access token is within 30 minutes of expiry
- Concurrent refresh requests in this process share one network call
- An invalid_grant answer is re-checked against the file, since another
  process sharing the credentials may have rotated the refresh token first
- Refresh-token expiry and repeated failures are reported via the notifier

Usage:
    engine = TokenRefreshEngine(store, resolver, notifier=send_text)
    engine.start()
    result = await engine.ensure_valid_token()
    if result.needs_relogin:
        ...
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from hass_assistant.auth.endpoint import parse_oauth_error, post_token_request
from hass_assistant.auth.oauth_config import OAuthConfigResolver
from hass_assistant.auth.token_store import CredentialRecord, TokenStore, now_ms

logger = logging.getLogger(__name__)

CHECK_INTERVAL_SECONDS = 5 * 60
REFRESH_BEFORE_EXPIRY_MS = 30 * 60 * 1000
MAX_CONSECUTIVE_FAILURES = 3

RELOGIN_MESSAGE = (
    "⚠️ *Claude token expired*\n"
    "The refresh token is no longer valid, a manual login is required.\n"
    "Log in again from the web UI, or inside the container run:\n"
    "```\n"
    "su-exec claude env CLAUDE_CONFIG_DIR=/data/claude claude login\n"
    "```"
)

Notifier = Callable[[str], Awaitable[None]]
PostRequest = Callable[[str, dict[str, Any]], Awaitable[tuple[int, str]]]


@dataclass(frozen=True)
class RefreshResult:
    success: bool
    message: str
    expires_at: int | None = None
    needs_relogin: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.expires_at is not None:
            result["expires_at"] = self.expires_at
        if self.needs_relogin:
            result["needs_relogin"] = True
        return result


class TokenRefreshEngine:
    """Refresh-before-expiry state machine for one credentials file."""

    def __init__(
        self,
        store: TokenStore,
        config_resolver: OAuthConfigResolver,
        notifier: Notifier | None = None,
        post_request: PostRequest = post_token_request,
        clock: Callable[[], int] = now_ms,
        check_interval_seconds: float = CHECK_INTERVAL_SECONDS,
    ):
        self.store = store
        self.config_resolver = config_resolver
        self.check_interval_seconds = check_interval_seconds
        self._notifier = notifier
        self._post_request = post_request
        self._clock = clock

        self._inflight: asyncio.Future | None = None
        self._inflight_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._running = False

        self.consecutive_failures = 0
        self.last_refresh_attempt: int | None = None
        self._relogin_notified = False

    def set_notifier(self, notifier: Notifier | None) -> None:
        self._notifier = notifier

    async def _notify(self, message: str) -> None:
        logger.info(f"Token notification: {message.splitlines()[0]}")
        if self._notifier is None:
            return
        try:
            await self._notifier(message)
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")

    def is_expiring_soon(self, expires_at: int) -> bool:
        return self._clock() >= expires_at - REFRESH_BEFORE_EXPIRY_MS

    def is_expired(self, expires_at: int) -> bool:
        return self._clock() >= expires_at

    def _remaining_minutes(self, expires_at: int) -> int:
        return max(0, round((expires_at - self._clock()) / 60000))

    # ─────────────────────────────────────────────────────────────────────
    # Public operations
    # ─────────────────────────────────────────────────────────────────────

    async def ensure_valid_token(self) -> RefreshResult:
        """
        Make sure a usable access token exists before running the CLI.

        Returns:
            RefreshResult; fresh tokens return without any network call
        """
        record = self.store.read_credentials()
        if record is None or not record.refresh_token:
            return RefreshResult(
                success=False,
                message="No credentials found. Please login with: claude login",
                needs_relogin=True,
            )

        expires_at = record.expires_at
        if expires_at is None or self.is_expiring_soon(expires_at):
            return await self.refresh_token()

        return RefreshResult(success=True, message="Token is valid", expires_at=expires_at)

    async def refresh_token(self) -> RefreshResult:
        """
        Refresh the access token if it is close to expiry.

        Concurrent callers share one in-flight refresh and all receive the
        same RefreshResult object.
        """
        async with self._inflight_lock:
            if self._inflight is None:
                self._inflight = asyncio.ensure_future(self._run_refresh())
            inflight = self._inflight
        return await asyncio.shield(inflight)

    async def get_token_status(self) -> dict[str, Any]:
        record = self.store.read_credentials()
        if record is None or record.expires_at is None:
            return {"has_credentials": False}

        expires_at = record.expires_at
        return {
            "has_credentials": True,
            "has_refresh_token": bool(record.refresh_token),
            "expires_at": expires_at,
            "is_expired": self.is_expired(expires_at),
            "is_expiring_soon": self.is_expiring_soon(expires_at),
            "remaining_minutes": self._remaining_minutes(expires_at),
            "consecutive_failures": self.consecutive_failures,
        }

    # ─────────────────────────────────────────────────────────────────────
    # Refresh internals
    # ─────────────────────────────────────────────────────────────────────

    async def _run_refresh(self) -> RefreshResult:
        try:
            return await self._refresh()
        finally:
            self._inflight = None

    async def _refresh(self) -> RefreshResult:
        self.last_refresh_attempt = self._clock()

        record = self.store.read_credentials()
        if record is None or not record.refresh_token:
            return RefreshResult(
                success=False,
                message="No OAuth credentials found. Please login with: claude login",
                needs_relogin=True,
            )

        current_expiry = record.expires_at
        if current_expiry is not None and not self.is_expiring_soon(current_expiry):
            return RefreshResult(
                success=True,
                message=f"Token still valid for {self._remaining_minutes(current_expiry)} minutes",
                expires_at=current_expiry,
            )

        logger.info("Token expiring soon, refreshing...")
        config = await self.config_resolver.resolve_async()
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": record.refresh_token,
            "client_id": config.client_id,
        }

        try:
            status, body = await self._post_request(config.token_url, payload)
        except Exception as e:
            return await self._record_failure(f"Network error: {e!s}")

        if 200 <= status < 300:
            return await self._apply_response(record, body)

        error_code, description = parse_oauth_error(body)
        if status == 400 and error_code == "invalid_grant":
            return await self._handle_invalid_grant(current_expiry)

        detail = description or body.strip()[:200]
        return await self._record_failure(f"OAuth refresh failed: HTTP {status} - {detail}")

    async def _apply_response(self, record: CredentialRecord, body: str) -> RefreshResult:
        try:
            response = json.loads(body)
        except json.JSONDecodeError:
            return await self._record_failure("OAuth refresh returned invalid JSON")

        if not isinstance(response, dict) or not response.get("access_token"):
            return await self._record_failure("OAuth refresh response missing access_token")

        updated = record.merge_token_response(response, self._clock())
        try:
            self.store.write_credentials(updated)
        except OSError as e:
            return await self._record_failure(f"Failed to write credentials: {e!s}")

        self.consecutive_failures = 0
        self._relogin_notified = False

        expires_at = updated.expires_at
        valid_minutes = self._remaining_minutes(expires_at) if expires_at else 0
        return RefreshResult(
            success=True,
            message=f"Token refreshed successfully. Valid for {valid_minutes} minutes",
            expires_at=expires_at,
        )

    async def _handle_invalid_grant(self, previous_expiry: int | None) -> RefreshResult:
        # Another process sharing the file may have used the refresh token first
        latest = self.store.read_credentials()
        latest_expiry = latest.expires_at if latest else None

        if (
            latest_expiry is not None
            and (previous_expiry is None or latest_expiry > previous_expiry)
            and not self.is_expired(latest_expiry)
        ):
            logger.info("Credentials were refreshed by another process")
            self.consecutive_failures = 0
            self._relogin_notified = False
            return RefreshResult(
                success=True,
                message=(
                    "Token refreshed by another process. "
                    f"Valid for {self._remaining_minutes(latest_expiry)} minutes"
                ),
                expires_at=latest_expiry,
            )

        logger.error("Refresh token rejected (invalid_grant), manual re-login required")
        if not self._relogin_notified:
            self._relogin_notified = True
            await self._notify(RELOGIN_MESSAGE)

        return RefreshResult(
            success=False,
            message="Refresh token expired. Manual re-login required.",
            needs_relogin=True,
        )

    async def _record_failure(self, error_message: str) -> RefreshResult:
        self.consecutive_failures += 1
        logger.error(f"Refresh failed ({self.consecutive_failures}): {error_message}")

        if self.consecutive_failures == MAX_CONSECUTIVE_FAILURES:
            await self._notify(
                "⚠️ *Claude token refresh failed*\n"
                f"{self.consecutive_failures} consecutive refresh attempts failed.\n"
                f"Error: {error_message}"
            )

        return RefreshResult(success=False, message=f"Refresh failed: {error_message}")

    # ─────────────────────────────────────────────────────────────────────
    # Periodic checks
    # ─────────────────────────────────────────────────────────────────────

    async def perform_check(self) -> RefreshResult | None:
        status = await self.get_token_status()
        if not status["has_credentials"]:
            logger.info("No credentials found, skipping check")
            return None

        logger.info(
            f"Token status: expires in {status['remaining_minutes']} minutes, "
            f"expired={status['is_expired']}, expiring_soon={status['is_expiring_soon']}"
        )

        if status["is_expired"] or status["is_expiring_soon"]:
            result = await self.refresh_token()
            logger.info(f"Refresh result: {result.message}")
            return result
        return None

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.perform_check()
            except Exception as e:
                logger.error(f"Token check error: {e}")
            await asyncio.sleep(self.check_interval_seconds)

    def start(self) -> None:
        """Start periodic checks; the first one runs immediately. Needs a running loop."""
        if self._running:
            logger.info("Token refresh service already running")
            return

        logger.info(
            f"Starting token refresh service (interval {self.check_interval_seconds / 60:g} min, "
            f"threshold {REFRESH_BEFORE_EXPIRY_MS // 60000} min before expiry)"
        )
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._running = False
        logger.info("Token refresh service stopped")

    @property
    def is_running(self) -> bool:
        return self._running


__all__ = [
    "CHECK_INTERVAL_SECONDS",
    "MAX_CONSECUTIVE_FAILURES",
    "REFRESH_BEFORE_EXPIRY_MS",
    "RefreshResult",
    "TokenRefreshEngine",
]
