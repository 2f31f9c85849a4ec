"""
Tests for JSON log output and context binding.
"""
import json
import logging
from typing import Any, Dict, List

import pytest
import structlog

from storebot.monitoring.logging import (
    QUIET_LOGGERS,
    bind_request_context,
    bind_worker_context,
    setup_logging,
)


@pytest.fixture
def json_logs(capsys, test_settings):
    root_logger = logging.getLogger()
    saved_handlers, saved_level = root_logger.handlers[:], root_logger.level
    setup_logging(test_settings)

    def read() -> List[Dict[str, Any]]:
        lines = capsys.readouterr().out.splitlines()
        return [json.loads(line) for line in lines if line.startswith("{")]

    yield read

    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()
    root_logger.handlers = saved_handlers
    root_logger.setLevel(saved_level)


def find(events: List[Dict[str, Any]], name: str) -> Dict[str, Any]:
    return next(event for event in events if event.get("event") == name)


class TestSetupLogging:
    """Test suite for logging configuration."""

    @pytest.mark.unit
    def test_worker_events_are_json_with_context(self, json_logs, test_settings) -> None:
        bind_worker_context("catalog_sync")
        structlog.get_logger("storebot.realtime").info("catalog_synced", product_id=7)

        event = find(json_logs(), "catalog_synced")

        assert event["product_id"] == 7
        assert event["worker"] == "catalog_sync"
        assert event["component"] == "worker"
        assert event["level"] == "INFO"
        assert event["logger"] == "storebot.realtime"
        assert event["service"] == test_settings.app_name
        assert event["env"] == test_settings.app_env
        assert "timestamp" in event

    @pytest.mark.unit
    def test_request_context_replaces_worker_context(self, json_logs) -> None:
        bind_worker_context("notification_retry")
        bind_request_context("req-42", "GET", "/stock/1")
        structlog.get_logger("storebot.api").warning("slow_request")

        event = find(json_logs(), "slow_request")

        assert event["request_id"] == "req-42"
        assert event["path"] == "/stock/1"
        assert event["component"] == "api"
        assert "worker" not in event

    @pytest.mark.unit
    def test_library_records_share_the_format(self, json_logs, test_settings) -> None:
        logging.getLogger("sqlalchemy.pool").warning("connection pool exhausted")

        event = find(json_logs(), "connection pool exhausted")

        assert event["logger"] == "sqlalchemy.pool"
        assert event["level"] == "WARNING"
        assert event["service"] == test_settings.app_name

    @pytest.mark.unit
    def test_noisy_loggers_quieted(self, json_logs) -> None:
        logging.getLogger("httpx").info("HTTP Request: POST https://api.telegram.org")

        assert not any("HTTP Request" in str(e.get("event")) for e in json_logs())
        for name in QUIET_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    @pytest.mark.unit
    def test_configuration_is_logged(self, json_logs, test_settings) -> None:
        event = find(json_logs(), "logging_configured")

        assert event["log_level"] == test_settings.log_level
