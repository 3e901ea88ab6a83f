"""
hass-assistant - Home Assistant notification core

Turns Home Assistant events into chat notifications written by the Claude CLI,
while keeping the CLI's OAuth credentials fresh.

Packages:
    auth/: Credential file, OAuth config discovery, PKCE login, token refresh
    hub/: Home Assistant WebSocket client and REST lookups
    automation/: Subscription rules, event pipeline, listener daemon
    notifications/: Notification fan-out and channel adapters

Usage:
    hass-assistant listen
    hass-assistant token status
"""

from pathlib import Path

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent
ARGS_DIR = PROJECT_ROOT / "args"
DATA_DIR = PROJECT_ROOT / "data"
CONFIG_PATH = ARGS_DIR / "assistant.yaml"

VERSION = "1.4.0"

__all__ = [
    "PROJECT_ROOT",
    "ARGS_DIR",
    "DATA_DIR",
    "CONFIG_PATH",
    "VERSION",
]
