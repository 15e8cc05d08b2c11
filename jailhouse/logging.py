"""Logging configuration for Jailhouse.

A single stderr sink. Structured extras passed as keyword arguments
(``logger.info("Container started", container=cid)``) are rendered as
``key=value`` pairs after the message.
"""

import sys
from typing import TYPE_CHECKING

from loguru import logger


if TYPE_CHECKING:
    from loguru import Record


LEVEL_COLORS = {
    "TRACE": "<dim>",
    "DEBUG": "<cyan>",
    "INFO": "<blue>",
    "SUCCESS": "<green>",
    "WARNING": "<yellow>",
    "ERROR": "<red>",
    "CRITICAL": "<red><bold>",
}


def _log_format(record: "Record") -> str:
    """Build the Loguru format string for one record.

    Args:
        record: Loguru record containing log metadata, message, and level.

    Returns:
        Format string with Loguru color tags.
    """
    color = LEVEL_COLORS.get(record["level"].name, "<white>")
    fmt = (
        "<dim>{time:HH:mm:ss}</dim> "
        f"{color}{{level: <8}}</> "
        "<dim>{name}</dim>: {message}"
    )

    extra = record["extra"]
    if extra:
        extra_str = " ".join(f"{k}={v!r}" for k, v in extra.items())
        # Escape braces to prevent Loguru format string injection
        extra_str = extra_str.replace("{", "{{").replace("}", "}}")
        # Escape tag openers so values are not parsed as color markup
        extra_str = extra_str.replace("<", r"\<")
        fmt += f" <dim>│ {extra_str}</dim>"

    fmt += "\n"
    if record["exception"]:
        fmt += "{exception}\n"
    return fmt


def configure_logging(level: str = "INFO") -> None:
    """Replace Loguru's default handler with the Jailhouse stderr handler.

    Args:
        level: Minimum log level to display (e.g., "DEBUG", "INFO", "WARNING").
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=_log_format,
        colorize=True,
    )
