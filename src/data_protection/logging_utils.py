"""
Structured logging for the data protection package.

Library modules log through ``logging.getLogger(__name__)`` and never attach
handlers themselves; applications (and the CLI) call ``configure_logging``.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from typing import Optional, TextIO, Union

LOGGER_NAME = "data_protection"


class JsonFormatter(logging.Formatter):
    """One JSON object per line with UTC timestamps."""

    converter = time.gmtime

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%SZ")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(
    level: Union[int, str] = logging.INFO,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Attach a JSON handler to the package logger.

    Calling it again only updates the level.

    Args:
        level: Logging level (name or number)
        stream: Output stream (stderr by default)

    Returns:
        The ``data_protection`` logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)

    return logger
