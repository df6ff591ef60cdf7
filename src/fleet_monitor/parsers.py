"""
Parsers for the value formats devices put in command replies.

Replies carry loosely typed values: counters may arrive as int or str,
booleans as True or "true", durations as "956us" / "10ms452us" / "1s",
intervals as "1m30s" or "00:01:30", and netwatch "since" timestamps in the
device's own "jan/05/2024 10:00:00" format.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, tzinfo
from typing import Any, Optional

logger = logging.getLogger(__name__)


MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_DEVICE_TS_RE = re.compile(
    r"^\s*([A-Za-z]+)/(\d{1,2})(?:/(\d{4}))?\s+(\d{1,2}):(\d{2}):(\d{2})\s*$"
)
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(us|ms|s)")
_BARE_NUMBER_RE = re.compile(r"^\d+(?:\.\d+)?$")
_INTERVAL_PART_RE = re.compile(r"(\d+)([wdhms])")

_INTERVAL_UNITS = {"w": 604800, "d": 86400, "h": 3600, "m": 60, "s": 1}


def to_int(value: Any, default: int = 0) -> int:
    """Coerce a reply value to int."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    try:
        return int(float(str(value).strip()))
    except ValueError:
        return default


def to_optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(str(value).strip()))
    except ValueError:
        return None


def to_optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def to_bool(value: Any) -> bool:
    """Coerce "true"/"yes"/True to bool."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("true", "yes", "1")


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves going up."""
    return math.floor(value + 0.5)


def parse_duration_ms(value: Any) -> Optional[int]:
    """
    Parse a ping duration token into whole milliseconds.

    "956us" -> 1 (floor, minimum 1ms), "10ms" -> 10, "1s" -> 1000,
    "23" -> 23 (bare numbers are milliseconds), "10ms452us" -> 10.
    Everything except pure microsecond tokens rounds halves up ("22.5" -> 23).
    Returns None when the token cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return round_half_up(value)

    token = str(value).strip().lower()
    if not token:
        return None

    if _BARE_NUMBER_RE.match(token):
        return round_half_up(float(token))

    parts = _DURATION_PART_RE.findall(token)
    if not parts or "".join(n + u for n, u in parts) != token:
        return None

    total_ms = 0.0
    units = set()
    for number, unit in parts:
        units.add(unit)
        if unit == "us":
            total_ms += float(number) / 1000
        elif unit == "ms":
            total_ms += float(number)
        else:
            total_ms += float(number) * 1000

    if units == {"us"}:
        return max(1, math.floor(total_ms))
    return round_half_up(total_ms)


def parse_interval_seconds(value: Any, default: int = 10) -> int:
    """Parse "1m30s", "00:01:30", "30" or an int into seconds."""
    if value is None or value == "":
        return default
    if isinstance(value, int) and not isinstance(value, bool):
        return value

    text = str(value).strip().lower()
    if ":" in text:
        try:
            parts = [int(p) for p in text.split(":")]
        except ValueError:
            return default
        if len(parts) == 3:
            return parts[0] * 3600 + parts[1] * 60 + parts[2]
        if len(parts) == 2:
            return parts[0] * 3600 + parts[1] * 60
        return default

    if text.isdigit():
        return int(text)

    total = sum(int(n) * _INTERVAL_UNITS[u] for n, u in _INTERVAL_PART_RE.findall(text))
    return total if total > 0 else default


def parse_uptime_seconds(value: Any) -> Optional[int]:
    """Parse an uptime string such as "1w2d3h4m5s" into seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    parts = _INTERVAL_PART_RE.findall(str(value).strip().lower())
    if not parts:
        return None
    return sum(int(n) * _INTERVAL_UNITS[u] for n, u in parts)


def parse_device_timestamp(
    value: Any,
    tz: Optional[tzinfo] = None,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Parse a device-local timestamp.

    Accepts "jan/05 10:00:00" and "jan/05/2024 10:00:00" (year defaults to
    the current year), falling back to ISO-8601 ("2024-01-05 10:00:00").
    Returns None for anything else; callers drop the timestamp rather than
    the entry.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo or tz is None else value.replace(tzinfo=tz)

    text = str(value).strip()
    if not text:
        return None

    match = _DEVICE_TS_RE.match(text)
    if match:
        month_str, day, year, hour, minute, second = match.groups()
        month = MONTHS.get(month_str.lower())
        if month is not None:
            if year is None:
                reference = now or datetime.now(tz)
                year_value = reference.year
            else:
                year_value = int(year)
            try:
                return datetime(
                    year_value, month, int(day),
                    int(hour), int(minute), int(second),
                    tzinfo=tz,
                )
            except ValueError:
                logger.debug(f"Out-of-range device timestamp: {text!r}")
                return None

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Unparseable device timestamp dropped: {text!r}")
        return None

    if parsed.tzinfo is None and tz is not None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed
