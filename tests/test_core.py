"""
Tests for settings, logging setup and the error types
"""
import json
import logging
from unittest.mock import patch

import pytest

from reservation_engine.core import config
from reservation_engine.core.errors import ConflictError, NetworkError, ValidationError
from reservation_engine.core.logging import setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def test_optional_int():
    """Missing or blank env values become None"""
    assert config._optional_int(None) is None
    assert config._optional_int("  ") is None
    assert config._optional_int("14") == 14


def test_default_settings():
    """Defaults without environment"""
    settings = config.Settings()
    assert settings.search_debounce_seconds == 0.5
    assert settings.max_guests == 50


def test_console_logging(capsys):
    """Console format writes plain lines"""
    with patch.object(config.settings, "log_format", "console"), \
            patch.object(config.settings, "log_level", "DEBUG"):
        setup_logging()
        logging.getLogger("reservation_engine.test").info("hello")

    out = capsys.readouterr().out
    assert "[INFO] reservation_engine.test: hello" in out
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("apscheduler").level == logging.WARNING


def test_json_logging(capsys):
    """JSON format keeps non-ASCII text"""
    with patch.object(config.settings, "log_format", "json"):
        setup_logging()
        logging.getLogger("reservation_engine.test").warning("Бронь создана")

    line = capsys.readouterr().out.strip().splitlines()[-1]
    record = json.loads(line)
    assert record["message"] == "Бронь создана"
    assert record["levelname"] == "WARNING"
    assert record["service"] == "reservation-engine"


def test_explicit_level_and_format(capsys):
    """Arguments override settings and repeated setup keeps one handler"""
    setup_logging()
    setup_logging(level="warning", log_format="json")

    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.level == logging.WARNING
    assert logging.getLogger("urllib3").level == logging.WARNING

    logging.getLogger("reservation_engine.test").info("hidden")
    logging.getLogger("reservation_engine.test").error("shown")
    lines = capsys.readouterr().out.strip().splitlines()
    assert [json.loads(line)["message"] for line in lines] == ["shown"]


def test_error_payloads():
    """Errors keep their context fields"""
    assert ValidationError("bad", field="guests") == ValidationError("bad", field="guests")
    assert ConflictError("taken", conflicting=("a",)).conflicting == ["a"]
    error = NetworkError("down", status_code=503)
    assert error.retryable and error.status_code == 503
