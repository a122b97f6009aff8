"""Shared datetime utilities for Conductor.

Features:
    - Timezone-aware timestamps for run reports
    - Human readable elapsed-time formatting for run summaries
    - Duration strings ("30s", "5m", "1h") used for timeouts and backoff

Usage:
    from Conductor.Core.utils.datetime_helpers import now, seconds_to_human

    started = now()
    print(seconds_to_human(3661))  # "1 hours 1 minutes 01 seconds"
    print(parse_duration("5m"))    # 300
"""
import os
import re
from datetime import datetime
from typing import Any, Optional

import pytz

DEFAULT_TIMEZONE = "UTC"


def get_timezone() -> pytz.BaseTzInfo:
    """
    Get the timezone used for report timestamps.

    Configurable with CONDUCTOR_TIMEZONE, defaults to UTC. Unknown zone
    names fall back to the default.
    """
    name = os.environ.get("CONDUCTOR_TIMEZONE", DEFAULT_TIMEZONE)
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        return pytz.timezone(DEFAULT_TIMEZONE)


def now() -> datetime:
    """
    Get the current time in the configured timezone.

    Returns:
        Timezone-aware datetime.
    """
    return datetime.now(get_timezone())


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO 8601 rendering that tolerates None."""
    return value.isoformat() if value else None


def parse_duration(duration: Any) -> int:
    """
    Parse a duration to seconds.

    Supports formats:
    - 30 or "30" or "30s" -> 30 seconds
    - "5m" -> 300 seconds (5 minutes)
    - "1h" -> 3600 seconds (1 hour)

    Args:
        duration: Duration string or integer

    Returns:
        Duration in seconds

    Raises:
        ValueError: If format is invalid
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")

    if isinstance(duration, int):
        if duration < 0:
            raise ValueError("Duration cannot be negative")
        return duration

    duration_str = str(duration if duration is not None else "").strip().lower()
    if not duration_str:
        raise ValueError("Duration cannot be empty")

    match = re.match(r"^(\d+)(s|m|h)?$", duration_str)
    if not match:
        raise ValueError(
            f"Invalid duration format: '{duration_str}'. "
            "Expected number with optional unit (s/m/h)"
        )

    value = int(match.group(1))
    unit = match.group(2) or "s"

    return value * {"s": 1, "m": 60, "h": 3600}[unit]


def seconds_to_human(seconds: float) -> str:
    """
    Render a number of seconds as days, hours, minutes and seconds.

    Leading day and hour segments are omitted when zero, minutes are
    always shown and seconds are zero padded to two digits.

    Examples:
        90061 -> "1 day 1 hours 1 minutes 01 seconds"
        46861 -> "13 hours 1 minutes 01 seconds"
        61    -> "1 minutes 01 seconds"

    Args:
        seconds: Elapsed seconds, fractions are truncated

    Returns:
        Human readable duration
    """
    remaining = max(int(seconds), 0)

    days, remaining = divmod(remaining, 86400)
    hours, remaining = divmod(remaining, 3600)
    minutes, secs = divmod(remaining, 60)

    parts = []
    if days:
        parts.append("%d day" % days)
    if days or hours:
        parts.append("%d hours" % hours)
    parts.append("%d minutes" % minutes)
    parts.append("%02d seconds" % secs)

    return " ".join(parts)
