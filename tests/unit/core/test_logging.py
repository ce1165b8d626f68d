"""Unit tests for logging helpers."""

import json
import logging

import pytest

from policyguard.core.config import Settings
from policyguard.core.logging import (CustomJsonFormatter,
                                      get_logger_with_context, log_event,
                                      setup_logging)


@pytest.fixture
def restore_root_logger():
    """setup_logging replaces root handlers; put them back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.mark.unit
class TestSetupLogging:
    """Test root logger configuration."""

    def test_json_formatter(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("LOG_JSON", "true")
        setup_logging(Settings(_env_file=None))

        handlers = restore_root_logger.handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0].formatter, CustomJsonFormatter)

    def test_plain_formatter(self, restore_root_logger, monkeypatch):
        monkeypatch.delenv("LOG_JSON", raising=False)
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        setup_logging(Settings(_env_file=None))

        handler = restore_root_logger.handlers[0]
        assert not isinstance(handler.formatter, CustomJsonFormatter)
        assert restore_root_logger.level == logging.WARNING


@pytest.mark.unit
class TestCustomJsonFormatter:
    def test_adds_context_fields(self):
        formatter = CustomJsonFormatter(
            "%(message)s", settings=Settings(_env_file=None)
        )
        record = logging.LogRecord(
            "policyguard.test", logging.INFO, __file__, 1, "hello", None, None
        )
        record.controller = "policyserver"
        record.policy_server = "default"

        payload = json.loads(formatter.format(record))

        assert payload["message"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["app_name"] == "PolicyGuard Controller"
        assert payload["controller"] == "policyserver"
        assert payload["policy_server"] == "default"
        assert "timestamp" in payload


@pytest.mark.unit
class TestContextLogging:
    """Test bound context and structured events."""

    def test_adapter_merges_context(self, caplog):
        log = get_logger_with_context("policyguard.test", controller="policyserver")

        with caplog.at_level(logging.INFO, logger="policyguard.test"):
            log.info("converged", extra={"policy_server": "default"})

        record = caplog.records[-1]
        assert record.controller == "policyserver"
        assert record.policy_server == "default"

    def test_log_event(self, caplog):
        logger = logging.getLogger("policyguard.test")

        with caplog.at_level(logging.DEBUG, logger="policyguard.test"):
            log_event(logger, "debug", "reconcile_completed", key="default")

        record = caplog.records[-1]
        assert record.event == "reconcile_completed"
        assert record.key == "default"
        assert record.getMessage() == 'reconcile_completed: {"key": "default"}'

    def test_log_event_unknown_level(self):
        with pytest.raises(ValueError):
            log_event(logging.getLogger("policyguard.test"), "loud", "event")
