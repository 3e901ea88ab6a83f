"""
Tool: Token Store
Purpose: Read and write the Claude CLI OAuth credentials file

The credentials file is shared with the Claude CLI (and possibly other
instances of this service), so every write is a whole-file read-modify-write
that keeps top-level keys and record fields this module does not know about.

File layout:
    {
      "claudeAiOauth": {
        "accessToken": "...",
        "refreshToken": "...",
        "expiresAt": 1735689600000,
        "scopes": ["user:inference"],
        "subscriptionType": "max",
        ...
      }
    }

Usage:
    store = TokenStore(Path("~/.claude/.credentials.json").expanduser())
    record = store.read_credentials()
    if record and record.refresh_token:
        ...
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from hass_assistant.auth import CREDENTIALS_KEY

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 3600


def now_ms() -> int:
    return int(time.time() * 1000)


def snake_to_camel(key: str) -> str:
    """Convert ``rate_limit_tier`` to ``rateLimitTier``."""
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def parse_expires_at(value: Any) -> int | None:
    """
    Normalize an ``expiresAt`` value to Unix milliseconds.

    Accepts integers/floats (ms), digit strings, and ISO-8601 strings written
    by older releases.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return int(parsed.timestamp() * 1000)
    return None


@dataclass
class CredentialRecord:
    """
    OAuth credential record.

    ``fields`` is the ordered mapping exactly as stored; the properties are
    views onto the three keys the refresh logic cares about.
    """
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def access_token(self) -> str | None:
        return self.fields.get("accessToken") or None

    @property
    def refresh_token(self) -> str | None:
        return self.fields.get("refreshToken") or None

    @property
    def expires_at(self) -> int | None:
        return parse_expires_at(self.fields.get("expiresAt"))

    def to_dict(self) -> dict[str, Any]:
        return dict(self.fields)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CredentialRecord:
        return cls(fields=dict(data))

    def merge_token_response(
        self,
        response: dict[str, Any],
        issued_at_ms: int | None = None,
    ) -> CredentialRecord:
        """
        Produce a new record from a token endpoint response.

        Scalar response fields are copied in with camelCase keys, newer values
        winning over stored ones. Object and array values are skipped. The
        token fields and ``expiresAt`` are then set explicitly.
        """
        issued_at_ms = now_ms() if issued_at_ms is None else issued_at_ms
        merged = dict(self.fields)

        for key, value in response.items():
            if value is None or isinstance(value, (dict, list)):
                continue
            merged[snake_to_camel(key)] = value

        merged["accessToken"] = response["access_token"]
        if response.get("refresh_token"):
            merged["refreshToken"] = response["refresh_token"]
        else:
            merged["refreshToken"] = self.fields.get("refreshToken")

        expires_in = response.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS
        merged["expiresAt"] = issued_at_ms + int(float(expires_in) * 1000)

        return CredentialRecord(fields=merged)


class TokenStore:
    """Whole-file JSON access to the credentials file."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def read_file(self) -> dict[str, Any] | None:
        """Read the whole credentials document, or None if missing/unreadable."""
        if not self.path.exists():
            logger.info(f"Credentials file not found: {self.path}")
            return None

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read credentials: {e}")
            return None

        if not isinstance(data, dict):
            logger.error("Credentials file does not contain a JSON object")
            return None
        return data

    def read_credentials(self) -> CredentialRecord | None:
        data = self.read_file()
        if not data:
            return None
        record = data.get(CREDENTIALS_KEY)
        if not isinstance(record, dict):
            return None
        return CredentialRecord.from_dict(record)

    def write_credentials(self, record: CredentialRecord) -> None:
        """
        Persist ``record`` under the credentials key.

        Other top-level keys already in the file are kept. The file is
        replaced atomically and restricted to the owner.

        Raises:
            OSError: If the file cannot be written
        """
        document = self.read_file() or {}
        document[CREDENTIALS_KEY] = record.to_dict()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        logger.info("Credentials updated successfully")

    def save_token_response(
        self,
        response: dict[str, Any],
        issued_at_ms: int | None = None,
    ) -> CredentialRecord:
        """Merge a token endpoint response into the stored record and persist it."""
        current = self.read_credentials() or CredentialRecord()
        updated = current.merge_token_response(response, issued_at_ms)
        self.write_credentials(updated)
        return updated


__all__ = [
    "CredentialRecord",
    "TokenStore",
    "now_ms",
    "parse_expires_at",
    "snake_to_camel",
]
