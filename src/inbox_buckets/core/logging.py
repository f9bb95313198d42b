"""Logging setup for the CLI and the background sync worker."""

from __future__ import annotations

import logging
import logging.config
from typing import Any

from .config import LoggingSettings

TRANSPORT_LOGGER = "inbox_buckets.transport"

# Thread names distinguish worker, detached task and caller output.
_STRUCTURED_FORMAT = (
    "ts={asctime} level={levelname} logger={name} thread={threadName} msg={message!r}"
)
_PLAIN_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s %(message)s"


def _formatter(structured: bool) -> dict[str, Any]:
    if structured:
        return {"format": _STRUCTURED_FORMAT, "style": "{"}
    return {"format": _PLAIN_FORMAT}


def _logger_levels(settings: LoggingSettings) -> dict[str, str]:
    """Map logger names to levels that differ from the root level."""
    levels = {TRANSPORT_LOGGER: "DEBUG" if settings.imap_debug else settings.level}
    # dotenv warns once per malformed .env line
    levels["dotenv"] = "ERROR"
    return levels


def configure_logging(settings: LoggingSettings) -> None:
    """Install a single console handler and per-logger levels.

    The handler accepts DEBUG records whenever IMAP debugging is enabled so
    the transport logger can be louder than the root logger.
    """
    handler_level = "DEBUG" if settings.imap_debug else settings.level
    loggers = {
        name: {"level": level} for name, level in _logger_levels(settings).items()
    }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"console": _formatter(settings.structured)},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "console",
                    "level": handler_level,
                },
            },
            "loggers": loggers,
            "root": {"handlers": ["console"], "level": settings.level},
        }
    )


__all__ = ["TRANSPORT_LOGGER", "configure_logging"]
