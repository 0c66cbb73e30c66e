"""
Logging setup for the command line entry point.

Library modules only call ``logging.getLogger(__name__)``; handlers and
formatters are attached here, once, by the application.
"""

import json
import logging
import sys
from typing import Optional


class JSONLineFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO", json_format: bool = False, stream: Optional[object] = None) -> logging.Logger:
    """
    Configure the ``pitwall`` logger hierarchy.

    Args:
        level: Logging level name
        json_format: Emit JSON lines instead of plain text
        stream: Output stream (defaults to stderr)

    Returns:
        The configured ``pitwall`` logger
    """
    logger = logging.getLogger("pitwall")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Replace handlers from a previous call
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_format:
        handler.setFormatter(JSONLineFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
