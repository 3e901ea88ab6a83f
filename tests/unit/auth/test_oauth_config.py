"""Tests for hass_assistant/auth/oauth_config.py

Tests OAuth endpoint discovery:
- Pattern extraction from binary strings
- Field-by-field fallback
- Memoization and cache clearing
"""

import threading
from unittest.mock import patch

import pytest

from hass_assistant.auth.oauth_config import (
    FALLBACK_CLIENT_ID,
    FALLBACK_TOKEN_URL,
    OAuthConfigResolver,
    extract_oauth_fields,
    extract_strings,
    get_fallback_config,
)

CUSTOM_CLIENT_ID = "11111111-2222-3333-4444-555555555555"


class TestExtractStrings:
    def test_keeps_printable_runs_only(self):
        data = b"\x00\x01abc\x00hello world\x02\x03xy\x00"
        assert extract_strings(data) == "hello world"


class TestExtractOAuthFields:
    def test_labelled_values(self):
        text = f'TOKEN_URL:"https://example.claude.com/v1/oauth/token",CLIENT_ID:"{CUSTOM_CLIENT_ID}"'
        assert extract_oauth_fields(text) == {
            "token_url": "https://example.claude.com/v1/oauth/token",
            "client_id": CUSTOM_CLIENT_ID,
        }

    def test_unlabelled_known_client_id(self):
        text = f"url https://platform.claude.com/v1/oauth/token id {FALLBACK_CLIENT_ID}"
        found = extract_oauth_fields(text)
        assert found["client_id"] == FALLBACK_CLIENT_ID

    def test_nothing_found(self):
        assert extract_oauth_fields("nothing interesting here") == {}


class TestOAuthConfigResolver:
    def test_no_binary_uses_fallback(self):
        config = OAuthConfigResolver(None).resolve()
        assert config.source == "fallback"
        assert config.token_url == FALLBACK_TOKEN_URL
        assert config.client_id == FALLBACK_CLIENT_ID

    def test_missing_binary_uses_fallback(self, tmp_path):
        config = OAuthConfigResolver(tmp_path / "missing").resolve()
        assert config.source == "fallback"

    def test_binary_fills_missing_fields_from_fallback(self, tmp_path):
        binary = tmp_path / "claude"
        binary.write_bytes(b"\x00\x00https://staging.claude.com/v1/oauth/token\x00\x00")

        config = OAuthConfigResolver(binary).resolve()

        assert config.source == "binary"
        assert config.token_url == "https://staging.claude.com/v1/oauth/token"
        assert config.client_id == FALLBACK_CLIENT_ID

    def test_resolves_symlink(self, tmp_path):
        real = tmp_path / "cli.js"
        real.write_bytes(f'\x00CLIENT_ID:"{CUSTOM_CLIENT_ID}"\x00'.encode())
        link = tmp_path / "claude"
        link.symlink_to(real)

        config = OAuthConfigResolver(link).resolve()

        assert config.client_id == CUSTOM_CLIENT_ID
        assert config.token_url == FALLBACK_TOKEN_URL

    def test_result_is_memoized(self, tmp_path):
        binary = tmp_path / "claude"
        binary.write_bytes(f'CLIENT_ID:"{CUSTOM_CLIENT_ID}"'.encode())
        resolver = OAuthConfigResolver(binary)

        first = resolver.resolve()
        binary.write_bytes(b"")

        assert resolver.resolve() is first
        resolver.clear_cache()
        assert resolver.resolve().source == "fallback"

    def test_get_fallback_config(self):
        assert get_fallback_config() == {"token_url": FALLBACK_TOKEN_URL, "client_id": FALLBACK_CLIENT_ID}

    @pytest.mark.asyncio
    async def test_resolve_async_scans_binary_in_worker_thread(self, tmp_path):
        binary = tmp_path / "claude"
        binary.write_bytes(f'CLIENT_ID:"{CUSTOM_CLIENT_ID}"'.encode())
        resolver = OAuthConfigResolver(binary)
        original = resolver._extract_from_binary
        scan_threads = []

        def _recording(path):
            scan_threads.append(threading.get_ident())
            return original(path)

        with patch.object(resolver, "_extract_from_binary", side_effect=_recording):
            config = await resolver.resolve_async()
            again = await resolver.resolve_async()

        assert config.client_id == CUSTOM_CLIENT_ID
        assert again is config
        assert len(scan_threads) == 1
        assert scan_threads[0] != threading.get_ident()
