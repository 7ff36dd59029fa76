from __future__ import annotations

import json
import logging

import pytest

from devctl.config import Settings
from devctl.logging_config import JsonFormatter, setup_logging


@pytest.fixture
def restore_devctl_logger():
    logger = logging.getLogger("devctl")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate


def test_setup_logging_is_idempotent(restore_devctl_logger):
    setup_logging("DEBUG")
    logger = setup_logging("WARNING")

    ours = [h for h in logger.handlers if getattr(h, "_devctl_handler", False)]
    assert len(ours) == 1
    assert logger.level == logging.WARNING


def test_json_formatter():
    record = logging.LogRecord("devctl.devices", logging.INFO, __file__, 1, "plugged %s", ("vif7.0",), None)
    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "devctl.devices"
    assert payload["message"] == "plugged vif7.0"


def test_setup_logging_json(restore_devctl_logger):
    logger = setup_logging("INFO", json_format=True)
    ours = [h for h in logger.handlers if getattr(h, "_devctl_handler", False)]
    assert isinstance(ours[0].formatter, JsonFormatter)


def test_setup_logging_defaults_come_from_settings(restore_devctl_logger):
    logger = setup_logging(settings=Settings(log_level="debug", log_json=True))

    ours = [h for h in logger.handlers if getattr(h, "_devctl_handler", False)]
    assert logger.level == logging.DEBUG
    assert isinstance(ours[0].formatter, JsonFormatter)


def test_setup_logging_arguments_override_settings(restore_devctl_logger):
    logger = setup_logging("ERROR", json_format=False, settings=Settings(log_level="DEBUG", log_json=True))

    ours = [h for h in logger.handlers if getattr(h, "_devctl_handler", False)]
    assert logger.level == logging.ERROR
    assert not isinstance(ours[0].formatter, JsonFormatter)
