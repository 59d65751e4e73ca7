"""Logging setup and structured log helpers for mpstream."""
import json
import logging
import os
from typing import Optional

# Root of the package logger hierarchy
LOGGER_NAME = "mpstream"

logger = logging.getLogger(LOGGER_NAME)


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data)


class TabFormatter(logging.Formatter):
    """Compact `LEVEL<TAB>message` lines, the client's default console format."""

    def format(self, record):
        message = "%s\t%s" % (record.levelname, record.getMessage())
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def resolve_level(level: Optional[str] = None) -> int:
    """Map a level name (argument, then MPSTREAM_LOG_LEVEL, then INFO) to a number."""
    name = (level or os.getenv("MPSTREAM_LOG_LEVEL") or "INFO").upper()
    return getattr(logging, name, logging.INFO)


def configure_logging(level: Optional[str] = None, json_format: bool = False) -> logging.Logger:
    """
    Attach a single stderr handler to the mpstream logger.

    Calling this again replaces the formatter and level instead of stacking
    handlers.

    Args:
        level: Level name (DEBUG, INFO, ...). Falls back to MPSTREAM_LOG_LEVEL.
        json_format: Emit JSON lines instead of tab-separated text

    Returns:
        logging.Logger: The package logger
    """
    handler = None
    for existing in logger.handlers:
        if getattr(existing, "_mpstream_console", False):
            handler = existing
            break

    if handler is None:
        handler = logging.StreamHandler()
        handler._mpstream_console = True
        logger.addHandler(handler)

    handler.setFormatter(JSONFormatter() if json_format else TabFormatter())
    logger.setLevel(resolve_level(level))
    return logger


def log_reconnect(uri: str, attempt: int, error: Exception):
    """Log a failed reconnect attempt with structured data."""
    logging.getLogger(f"{LOGGER_NAME}.channel").warning(
        f"Reconnect to '{uri}' failed (attempt {attempt}): {error}",
        extra={
            "extra_fields": {
                "uri": uri,
                "attempt": attempt,
                "error_type": type(error).__name__,
                "error_message": str(error)[:500],
            }
        },
    )


def log_channel_closed(uri: str, delivered: int, dropped: int):
    """Log channel shutdown with delivery counters."""
    channel_logger = logging.getLogger(f"{LOGGER_NAME}.channel")
    extra = {
        "extra_fields": {
            "uri": uri,
            "delivered": delivered,
            "dropped": dropped,
        }
    }
    if dropped:
        channel_logger.error(
            f"Channel {uri} closed, {dropped} message(s) could not be delivered",
            extra=extra,
        )
    else:
        channel_logger.info(f"Channel {uri} closed", extra=extra)
