# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Utility functions."""

import logging
import re
import secrets
import string
from datetime import timedelta
from typing import Union

from mesh_trust.literals import VALID_LOG_LEVELS

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {
    "h": 3600,
    "m": 60,
    "s": 1,
    "ms": 0.001,
}
_NAME_ALPHABET = string.ascii_lowercase + string.digits


def parse_duration(value: Union[str, int, float, timedelta]) -> timedelta:
    """Convert a duration into a timedelta.

    Accepts durations written the way the control plane writes them
    (e.g. "24h", "1h30m", "60s", "250ms"), plain numbers of seconds,
    or an existing timedelta.

    Args:
        value: the duration to convert

    Returns:
        the duration as a timedelta

    Raises:
        ValueError: If the duration format is invalid
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value < 0:
            raise ValueError(f"Invalid duration: {value}")
        return timedelta(seconds=value)

    text = str(value).strip().lower()
    if text.isdigit():
        return timedelta(seconds=int(text))

    pos, seconds = 0, 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        amount, unit = match.groups()
        seconds += float(amount) * _UNIT_SECONDS[unit]
        pos = match.end()
    if not text or pos != len(text):
        raise ValueError(f"Invalid duration format: {value}")
    return timedelta(seconds=seconds)


def format_duration(value: timedelta) -> str:
    """Render a timedelta as whole seconds, e.g. "86400s"."""
    return f"{int(value.total_seconds())}s"


def generate_suffix(length: int = 8) -> str:
    """Return a random lowercase alphanumeric suffix for resource names."""
    return "".join(secrets.choice(_NAME_ALPHABET) for _ in range(length))


def setup_logging(level: str = "info"):
    """Configure the root logger to include logger name and lineno.

    Args:
        level: one of the valid log levels

    Raises:
        ValueError: If the log level is not supported
    """
    if level.lower() not in VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level '{level}', expected one of {VALID_LOG_LEVELS}")
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        root_logger.addHandler(logging.StreamHandler())
    for handler in root_logger.handlers:
        handler.setFormatter(logging.Formatter("%(name)s:%(lineno)d %(message)s"))
    root_logger.setLevel(level.upper())
