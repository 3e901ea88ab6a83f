"""
Settings for the notification core.

Values come from args/assistant.yaml first, then environment variables (a
local .env is loaded as well). Running inside a Home Assistant add-on is
detected through SUPERVISOR_TOKEN, which switches the hub URL to the
supervisor proxy and moves persistent data under /data.

Usage:
    from hass_assistant.config import load_settings
    settings = load_settings()
    url, token = settings.hub_connection()
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hass_assistant import CONFIG_PATH, DATA_DIR

logger = logging.getLogger(__name__)

SUPERVISOR_URL = "http://supervisor/core"
ADDON_DATA_ROOT = Path("/data")


class ConfigurationError(Exception):
    """Required connection parameters are missing."""


# =============================================================================
# Sections (args/assistant.yaml)
# =============================================================================

class HubConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    url: Optional[str] = None
    token: Optional[str] = None


class ClaudeConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    path: Optional[str] = None
    config_dir: Optional[str] = None
    timeout_seconds: float = Field(default=180.0, gt=0)


class SubscriptionsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    path: Optional[str] = None
    debounce_seconds: float = Field(default=0.5, ge=0)
    create_default: bool = Field(default=True)


class SlackConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    bot_token: Optional[str] = None
    default_channel: Optional[str] = None


class ListenerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    max_concurrent: int = Field(default=3, ge=1)
    max_queue_size: int = Field(default=20, ge=1)
    timezone: str = Field(default="UTC")
    language: str = Field(default="English")


class Settings(BaseModel):
    model_config = ConfigDict(extra="allow")
    is_addon: bool = False
    supervisor_token: Optional[str] = None
    hub: HubConfig = Field(default_factory=HubConfig)
    claude: ClaudeConfig = Field(default_factory=ClaudeConfig)
    subscriptions: SubscriptionsConfig = Field(default_factory=SubscriptionsConfig)
    slack: SlackConfig = Field(default_factory=SlackConfig)
    listener: ListenerConfig = Field(default_factory=ListenerConfig)

    @property
    def claude_binary(self) -> str:
        if self.claude.path:
            return self.claude.path
        if self.is_addon:
            return "claude"
        return str(Path.home() / ".local" / "bin" / "claude")

    @property
    def claude_config_dir(self) -> Path:
        if self.claude.config_dir:
            return Path(self.claude.config_dir)
        if self.is_addon:
            return ADDON_DATA_ROOT / "claude"
        return Path.home() / ".claude"

    @property
    def credentials_path(self) -> Path:
        return self.claude_config_dir / ".credentials.json"

    @property
    def subscriptions_path(self) -> Path:
        if self.subscriptions.path:
            return Path(self.subscriptions.path)
        if self.is_addon:
            return ADDON_DATA_ROOT / "event-subscriptions" / "event-subscriptions.json"
        return DATA_DIR / "event-subscriptions.json"

    def hub_connection(self) -> tuple[str, str]:
        """
        Resolve the hub URL and token.

        Returns:
            Tuple of (url, token)

        Raises:
            ConfigurationError: If neither add-on nor HA_URL/HA_TOKEN settings exist
        """
        if self.hub.url and self.hub.token:
            return self.hub.url, self.hub.token

        if self.is_addon and self.supervisor_token:
            return SUPERVISOR_URL, self.supervisor_token

        raise ConfigurationError(
            "Home Assistant connection not configured. "
            "Set HA_URL and HA_TOKEN, or run as an add-on with SUPERVISOR_TOKEN."
        )


# Environment variable -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "HA_URL": ("hub", "url"),
    "HA_TOKEN": ("hub", "token"),
    "CLAUDE_PATH": ("claude", "path"),
    "CLAUDE_CONFIG_DIR": ("claude", "config_dir"),
    "EVENT_SUBSCRIPTIONS_PATH": ("subscriptions", "path"),
    "SLACK_BOT_TOKEN": ("slack", "bot_token"),
    "SLACK_DEFAULT_CHANNEL": ("slack", "default_channel"),
    "TZ": ("listener", "timezone"),
    "NOTIFICATION_LANGUAGE": ("listener", "language"),
}


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    # "hub:" with nothing under it loads as None
    if not isinstance(raw.get(name), dict):
        raw[name] = {}
    return raw[name]


def _load_yaml(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not read {config_path}: {e}, using defaults")
        return {}
    if not isinstance(raw, dict):
        logger.warning(f"{config_path} is not a mapping, using defaults")
        return {}
    section = raw.get("assistant", raw)
    return section if isinstance(section, dict) else {}


def load_settings(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """
    Build Settings from YAML and the environment.

    Args:
        config_path: YAML file to read (defaults to args/assistant.yaml)
        environ: Environment mapping (defaults to os.environ after loading .env)

    Returns:
        Validated Settings; a section that fails validation falls back to its defaults
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    raw = _load_yaml(config_path or CONFIG_PATH)

    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            _section(raw, section)[key] = value

    timeout_ms = environ.get("CLAUDE_TIMEOUT_MS")
    if timeout_ms:
        try:
            _section(raw, "claude")["timeout_seconds"] = int(timeout_ms) / 1000
        except ValueError:
            logger.warning(f"Ignoring invalid CLAUDE_TIMEOUT_MS: {timeout_ms!r}")

    supervisor_token = environ.get("SUPERVISOR_TOKEN")
    raw["is_addon"] = bool(supervisor_token)
    raw["supervisor_token"] = supervisor_token or None

    try:
        return Settings.model_validate(raw)
    except ValidationError as e:
        invalid = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
        logger.warning(f"Settings validation failed, using defaults for {', '.join(invalid)}: {e}")

    # Only the sections that failed fall back to defaults
    for name in invalid:
        raw.pop(name, None)
    return Settings.model_validate(raw)


__all__ = [
    "ConfigurationError",
    "Settings",
    "load_settings",
    "SUPERVISOR_URL",
]
