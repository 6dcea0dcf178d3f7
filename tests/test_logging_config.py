import logging

import pytest
import structlog

from ccsync import logging_config


@pytest.fixture
def restore_structlog():
    yield
    structlog.reset_defaults()


def test_configure_logging_from_env(monkeypatch, restore_structlog):
    monkeypatch.setenv("LOG_LEVEL", "warning")
    monkeypatch.setenv("LOG_FORMAT", "json")
    logging_config.configure_logging()

    assert logging_config.is_configured()
    assert logging.getLogger().level == logging.WARNING
    processors = structlog.get_config()["processors"]
    assert isinstance(processors[-1], structlog.processors.JSONRenderer)


def test_explicit_arguments_win(monkeypatch, restore_structlog):
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    logging_config.configure_logging("debug", "console")

    assert logging.getLogger().level == logging.DEBUG
    processors = structlog.get_config()["processors"]
    assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


def test_get_logger_binds_context(restore_structlog):
    with structlog.testing.capture_logs() as logs:
        logging_config.get_logger("ccsync.test").bind(domain="queue").info("Domain started", live=3)
    assert logs == [{"event": "Domain started", "domain": "queue", "live": 3, "log_level": "info"}]
