#!/usr/bin/env python3
"""
hass-assistant Command Line Interface

Main entry point for the `hass-assistant` command.

Usage:
    hass-assistant listen                                  # Run the event listener daemon
    hass-assistant token status                            # Show credential expiry
    hass-assistant token refresh                           # Refresh now if expiring soon
    hass-assistant login                                   # Browser login (PKCE)
    hass-assistant oauth-config                            # Show resolved OAuth endpoint
    hass-assistant subscriptions list
    hass-assistant subscriptions create --name "Door" --event-type state_changed \\
        --description "Tell me when the front door opens" --filter "binary_sensor.front_*"
    hass-assistant subscriptions disable "Door"
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from hass_assistant import VERSION
from hass_assistant.auth.oauth_config import OAuthConfigResolver, get_fallback_config
from hass_assistant.auth.oauth_flow import OAuthFlow
from hass_assistant.auth.token_refresh import TokenRefreshEngine
from hass_assistant.auth.token_store import TokenStore
from hass_assistant.automation.subscriptions import EventSubscription, SubscriptionRegistry
from hass_assistant.config import ConfigurationError, Settings, load_settings
from hass_assistant.hub.websocket import HubAuthError, HubConnectionError
from hass_assistant.logging_config import setup_logging

logger = logging.getLogger(__name__)


def _emit(result: dict[str, Any], ok_message: str) -> int:
    if result.get("success"):
        print(f"OK {ok_message}")
    else:
        print(f"ERROR {result.get('error') or result.get('message')}")
    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("success") else 1


def _token_engine(settings: Settings) -> TokenRefreshEngine:
    return TokenRefreshEngine(
        TokenStore(settings.credentials_path),
        OAuthConfigResolver(settings.claude_binary),
    )


# =============================================================================
# Commands
# =============================================================================

def cmd_listen(args, settings: Settings) -> int:
    from hass_assistant.automation.listener import EventListener

    async def _run() -> str | None:
        listener = EventListener(settings)
        await listener.run()
        return listener.failure

    try:
        failure = asyncio.run(_run())
    except ConfigurationError as e:
        print(f"ERROR {e}")
        return 1
    except (HubConnectionError, HubAuthError) as e:
        print(f"ERROR Failed to connect WebSocket: {e}")
        return 1
    if failure:
        print(f"ERROR {failure}")
        return 1
    return 0


def cmd_token(args, settings: Settings) -> int:
    engine = _token_engine(settings)

    if args.token_action == "status":
        status = asyncio.run(engine.get_token_status())
        status["success"] = status["has_credentials"]
        if not status["success"]:
            status["error"] = f"No credentials at {settings.credentials_path}"
        return _emit(status, f"Token expires in {status.get('remaining_minutes')} minutes")

    result = asyncio.run(engine.refresh_token())
    return _emit(result.to_dict(), result.message)


def cmd_login(args, settings: Settings) -> int:
    flow = OAuthFlow(OAuthConfigResolver(settings.claude_binary), TokenStore(settings.credentials_path))
    started = flow.start_auth_flow()

    print("Open this URL in a browser and authorize:\n")
    print(started["auth_url"])
    print()
    code = args.code or input("Paste the code shown after authorizing: ").strip()
    if not code:
        print("ERROR No authorization code given")
        return 1

    result = asyncio.run(flow.exchange_code_for_tokens(code, started["state"]))
    if not result["success"]:
        return _emit(result, "")

    saved = flow.save_credentials(result["tokens"])
    return _emit(saved, f"Credentials saved to {settings.credentials_path}")


def cmd_oauth_config(args, settings: Settings) -> int:
    config = OAuthConfigResolver(settings.claude_binary).resolve()
    result = {"success": True, **config.to_dict(), "fallback": get_fallback_config()}
    return _emit(result, f"OAuth config from {config.source}")


def _find_subscription(registry: SubscriptionRegistry, ref: str) -> EventSubscription | None:
    return registry.get(ref) or registry.find_by_name(ref)


def cmd_subscriptions(args, settings: Settings) -> int:
    registry = SubscriptionRegistry(settings.subscriptions_path)
    registry.init()
    action = args.subscriptions_action

    if action == "list":
        subs = [s.to_dict() for s in registry.get_all()]
        return _emit({"success": True, "subscriptions": subs}, f"{len(subs)} subscription(s)")

    if action == "create":
        try:
            sub = registry.create(
                name=args.name,
                event_type=args.event_type,
                description=args.description,
                entity_filter=args.filter or None,
                enabled=not args.disabled,
            )
        except ValueError as e:
            return _emit({"success": False, "error": str(e)}, "")
        return _emit({"success": True, "subscription": sub.to_dict()}, f"Created {sub.name!r}")

    sub = _find_subscription(registry, args.ref)
    if sub is None:
        return _emit({"success": False, "error": f"Subscription not found: {args.ref}"}, "")

    if action == "enable":
        registry.enable(sub.id)
    elif action == "disable":
        registry.disable(sub.id)
    elif action == "delete":
        registry.delete(sub.id)
        return _emit({"success": True, "deleted": sub.id}, f"Deleted {sub.name!r}")

    updated = registry.get(sub.id)
    return _emit({"success": True, "subscription": updated.to_dict()}, f"{action.capitalize()}d {sub.name!r}")


# =============================================================================
# Parser
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hass-assistant",
        description="Home Assistant event notifications written by the Claude CLI",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("--log-level", help="Override HASS_ASSISTANT_LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    listen = subparsers.add_parser("listen", help="Run the event listener daemon")
    listen.set_defaults(func=cmd_listen)

    token = subparsers.add_parser("token", help="Inspect or refresh the Claude OAuth token")
    token.add_argument("token_action", choices=["status", "refresh"])
    token.set_defaults(func=cmd_token)

    login = subparsers.add_parser("login", help="Log in to Claude via browser (PKCE)")
    login.add_argument("--code", help="Authorization code (prompted for if omitted)")
    login.set_defaults(func=cmd_login)

    oauth_config = subparsers.add_parser("oauth-config", help="Show the resolved OAuth endpoint")
    oauth_config.set_defaults(func=cmd_oauth_config)

    subs = subparsers.add_parser("subscriptions", help="Manage event subscription rules")
    subs_actions = subs.add_subparsers(dest="subscriptions_action", required=True)
    subs_actions.add_parser("list", help="List rules")

    create = subs_actions.add_parser("create", help="Create a rule")
    create.add_argument("--name", required=True)
    create.add_argument("--event-type", required=True)
    create.add_argument("--description", default="", help="What the notification should say")
    create.add_argument(
        "--filter", action="append", help="Entity glob pattern, '!' prefix excludes (repeatable)"
    )
    create.add_argument("--disabled", action="store_true", help="Create the rule disabled")

    for action in ("enable", "disable", "delete"):
        p = subs_actions.add_parser(action, help=f"{action.capitalize()} a rule")
        p.add_argument("ref", help="Rule id or (part of) its name")

    subs.set_defaults(func=cmd_subscriptions)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level)
    settings = load_settings()
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
