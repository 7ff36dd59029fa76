"""Logging setup for the control plane.

Modules log through ``logging.getLogger(__name__)``; this module only wires
handlers and formatters onto the ``devctl`` logger.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from devctl.config import Settings, settings as default_settings

ROOT_LOGGER = "devctl"
TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(
    level: str | None = None,
    json_format: bool | None = None,
    settings: Settings | None = None,
) -> logging.Logger:
    """Configure the devctl logger.

    Calling this again replaces the handler installed by a previous call
    instead of stacking a second one.

    Args:
        level: Log level name (e.g. "DEBUG"); defaults to ``settings.log_level``
        json_format: Emit one JSON object per line instead of plain text;
            defaults to ``settings.log_json``
        settings: Settings to read the defaults from

    Returns:
        The configured devctl logger
    """
    settings = settings or default_settings
    if level is None:
        level = settings.log_level
    if json_format is None:
        json_format = settings.log_json

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.upper())

    for handler in list(logger.handlers):
        if getattr(handler, "_devctl_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler._devctl_handler = True  # type: ignore[attr-defined]
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
