"""
Structured logging configuration for Research Club.
Provides JSON logging for log shipping and human-readable logging for development.
"""

import json
import os
import sys
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from loguru import logger

# Query parameters that carry credentials and must never reach the logs
SECRET_QUERY_PARAMS = {"apikey", "key"}


def json_formatter(record: dict[str, Any]) -> str:
    """
    Format log records as JSON lines.
    """
    log_entry = {
        "timestamp": record["time"].strftime("%Y-%m-%dT%H:%M:%S.%f%z"),
        "level": record["level"].name,
        "message": record["message"],
        "module": record["name"],
        "function": record["function"],
        "line": record["line"],
    }

    # Add extra fields if present
    for key, value in record["extra"].items():
        if key not in log_entry and key != "serialized":
            log_entry[key] = value

    record["extra"]["serialized"] = json.dumps(log_entry, default=str)
    return "{extra[serialized]}\n"


def human_formatter(record: dict[str, Any]) -> str:
    """
    Format log records for human readability in development.
    """
    return (
        "<green>{time:HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>\n"
    )


def configure_logging(
    level: str = "INFO",
    json_output: Optional[bool] = None,
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Force JSON output. If None, use LOG_FORMAT from the environment.
    """
    # Remove existing handlers
    logger.remove()

    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT") == "json"

    if json_output:
        logger.add(
            sys.stderr,
            format=json_formatter,
            level=level,
            serialize=False,
        )
    else:
        logger.add(
            sys.stderr,
            format=human_formatter,
            level=level,
            colorize=True,
        )

    logger.debug(f"Logging configured: level={level}, json={json_output}")


def redact_url(url: str) -> str:
    """
    Mask credential query parameters in a URL before it is logged.

    Args:
        url: Absolute URL, possibly carrying an API key

    Returns:
        The same URL with secret parameter values replaced by ``***``
    """
    parts = urlsplit(url)
    if not parts.query:
        return url

    query = [
        (name, "***" if name.lower() in SECRET_QUERY_PARAMS else value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(query, safe="*")))
