"""Tests for hass_assistant/logging_config.py"""

import json
import logging

from hass_assistant.logging_config import get_logger, setup_logging


class TestSetupLogging:
    def test_level_from_environment(self, monkeypatch):
        monkeypatch.setenv("HASS_ASSISTANT_LOG_LEVEL", "debug")

        setup_logging()

        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("websockets").level == logging.WARNING

    def test_json_output(self, capsys):
        setup_logging(level="INFO", json_output=True)

        logging.getLogger("hass_assistant.test").info("Subscribed to state_changed")

        line = capsys.readouterr().err.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "Subscribed to state_changed"
        assert record["level"] == "info"
        assert record["logger"] == "hass_assistant.test"

    def test_get_logger_binds_name(self, capsys):
        setup_logging(level="INFO", json_output=True)

        get_logger("hass_assistant.cli").warning("token expiring", remaining_minutes=12)

        record = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert record["remaining_minutes"] == 12
        assert record["logger"] == "hass_assistant.cli"
