"""
Tool: OAuth Config Resolver
Purpose: Find the Claude OAuth token endpoint and client id

The endpoint and client id change with Claude CLI releases, so they are read
out of the installed CLI binary whenever possible. Anything that cannot be
found falls back to the compiled-in values field by field.

Resolution order:
1. Printable strings of the CLI binary (symlinks resolved)
2. FALLBACK_TOKEN_URL / FALLBACK_CLIENT_ID

Usage:
    resolver = OAuthConfigResolver("/usr/local/bin/claude")
    config = resolver.resolve()
    config = await resolver.resolve_async()  # inside the event loop
    print(config.token_url, config.client_id, config.source)
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

FALLBACK_TOKEN_URL = "https://platform.claude.com/v1/oauth/token"
FALLBACK_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"

# Printable ASCII runs, same as `strings` with its default minimum length
_PRINTABLE_RUN = re.compile(rb"[\x20-\x7e]{4,}")

_UUID = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"

TOKEN_URL_PATTERNS = [
    re.compile(r"TOKEN_URL[\":]+\s*(https://[^\"'\s]+/oauth/token)", re.IGNORECASE),
    re.compile(r"(https://[^\"'\s]+/v1/oauth/token)", re.IGNORECASE),
    re.compile(r"(https://platform\.claude\.com[^\"'\s]*/oauth/token)", re.IGNORECASE),
    re.compile(r"(https://console\.anthropic\.com[^\"'\s]*/oauth/token)", re.IGNORECASE),
]

CLIENT_ID_PATTERNS = [
    re.compile(rf"CLIENT_ID[\":]+\s*({_UUID})", re.IGNORECASE),
    re.compile(rf"client_id[\":]+\s*({_UUID})", re.IGNORECASE),
]


@dataclass(frozen=True)
class OAuthConfig:
    token_url: str
    client_id: str
    source: Literal["binary", "fallback"]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def get_fallback_config() -> dict[str, str]:
    """Compiled-in endpoint and client id (for comparison or debugging)."""
    return {"token_url": FALLBACK_TOKEN_URL, "client_id": FALLBACK_CLIENT_ID}


def extract_strings(data: bytes) -> str:
    """Return the printable strings of a binary, one per line."""
    return "\n".join(m.group().decode("ascii") for m in _PRINTABLE_RUN.finditer(data))


def extract_oauth_fields(text: str) -> dict[str, str]:
    """
    Pattern-match the token URL and client id in extracted strings.

    Returns:
        dict with any of ``token_url`` / ``client_id`` that were found
    """
    found: dict[str, str] = {}

    for pattern in TOKEN_URL_PATTERNS:
        match = pattern.search(text)
        if match:
            found["token_url"] = match.group(1)
            break

    for pattern in CLIENT_ID_PATTERNS:
        match = pattern.search(text)
        if match:
            found["client_id"] = match.group(1)
            break

    # Unlabelled: accept the known client id if the binary carries it
    if "client_id" not in found and "token_url" in found:
        if FALLBACK_CLIENT_ID in text.lower():
            found["client_id"] = FALLBACK_CLIENT_ID

    return found


class OAuthConfigResolver:
    """Memoized OAuth endpoint discovery for one CLI binary."""

    def __init__(self, binary_path: Path | str | None = None):
        self.binary_path = Path(binary_path).expanduser() if binary_path else None
        self._cached: OAuthConfig | None = None

    def _resolve_binary(self) -> Path | None:
        if self.binary_path is None:
            return None
        if not self.binary_path.exists():
            logger.debug(f"Claude CLI not found at: {self.binary_path}")
            return None
        try:
            real_path = self.binary_path.resolve(strict=True)
        except OSError:
            return self.binary_path
        logger.debug(f"Claude CLI resolved path: {real_path}")
        return real_path

    def _extract_from_binary(self, path: Path) -> dict[str, str]:
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.debug(f"Failed to read CLI binary: {e}")
            return {}
        return extract_oauth_fields(extract_strings(data))

    def resolve(self) -> OAuthConfig:
        """
        Resolve the OAuth config, using the cached result after the first call.

        Returns:
            OAuthConfig with source 'binary' if anything came from the binary
        """
        if self._cached is not None:
            return self._cached

        extracted: dict[str, str] = {}
        binary = self._resolve_binary()
        if binary is not None:
            extracted = self._extract_from_binary(binary)

        if extracted:
            self._cached = OAuthConfig(
                token_url=extracted.get("token_url", FALLBACK_TOKEN_URL),
                client_id=extracted.get("client_id", FALLBACK_CLIENT_ID),
                source="binary",
            )
        else:
            self._cached = OAuthConfig(
                token_url=FALLBACK_TOKEN_URL,
                client_id=FALLBACK_CLIENT_ID,
                source="fallback",
            )

        logger.info(
            f"OAuth config loaded from {self._cached.source}: "
            f"token_url={self._cached.token_url} client_id={self._cached.client_id}"
        )
        return self._cached

    async def resolve_async(self) -> OAuthConfig:
        """Like resolve(), with the binary scan run in a worker thread."""
        if self._cached is not None:
            return self._cached
        return await asyncio.to_thread(self.resolve)

    @property
    def source(self) -> str | None:
        """Which source produced the active config (None before resolution)."""
        return self._cached.source if self._cached else None

    def clear_cache(self) -> None:
        self._cached = None


__all__ = [
    "FALLBACK_CLIENT_ID",
    "FALLBACK_TOKEN_URL",
    "OAuthConfig",
    "OAuthConfigResolver",
    "extract_oauth_fields",
    "extract_strings",
    "get_fallback_config",
]
