"""
Auth Tools - Claude CLI OAuth credential lifecycle

Components:
    token_store.py: Read/write the credentials file, preserving unknown fields
    oauth_config.py: Discover token endpoint and client id from the CLI binary
    oauth_flow.py: PKCE login flow (authorization URL, code exchange)
    token_refresh.py: Refresh-before-expiry engine with single-flight refreshes

Usage:
    from hass_assistant.auth.token_store import TokenStore
    from hass_assistant.auth.oauth_config import OAuthConfigResolver
    from hass_assistant.auth.token_refresh import TokenRefreshEngine

    engine = TokenRefreshEngine(TokenStore(path), OAuthConfigResolver(cli_path))
    result = await engine.ensure_valid_token()
"""

# Top-level key holding the OAuth record inside the credentials file
CREDENTIALS_KEY = "claudeAiOauth"

__all__ = ["CREDENTIALS_KEY"]
