"""hass-assistant Test Suite

This package contains all tests for the Home Assistant event listener.

Test organization:
- unit/: Unit tests for individual modules
  - auth/: Claude OAuth tests (token_store, oauth_config, oauth_flow, token_refresh, endpoint)
  - hub/: Home Assistant client tests (websocket, rest)
  - automation/: Listener tests (subscriptions, pipeline, prompt_runner, listener)
  - notifications/: Notification manager and Slack adapter tests
  - test_config.py, test_cli.py, test_logging_config.py: settings, CLI and logging

Running tests:
    # All tests
    pytest

    # Specific area
    pytest tests/unit/hub/
"""
