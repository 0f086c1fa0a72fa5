"""
Julian Day conversions and flexible query-time parsing.

Query times arrive either as a Julian Day number or as a UTC timestamp in
any format dateutil understands.
"""

from dateutil import parser
from datetime import datetime, timedelta, timezone
import math
from typing import Optional, Union

JD_UNIX_EPOCH = 2440587.5
SECONDS_PER_DAY = 86400.0
_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def datetime_to_jd(dt: datetime) -> float:
    """
    Convert a datetime to a Julian Day (UT).

    Naive datetimes are taken as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    seconds = (dt - _UNIX_EPOCH).total_seconds()
    return JD_UNIX_EPOCH + seconds / SECONDS_PER_DAY


def jd_to_datetime(jd: float) -> datetime:
    """Convert a Julian Day (UT) to an aware UTC datetime, microsecond precision."""
    if not math.isfinite(jd):
        raise ValueError(f"Julian Day must be finite, got {jd}")
    return _UNIX_EPOCH + timedelta(days=jd - JD_UNIX_EPOCH)


def parse_utc(utc_str: str) -> datetime:
    """
    Parse a UTC timestamp.

    Accepts ISO 8601 with 'Z' or an explicit offset, a trailing 'UTC', or any
    dateutil-readable form; strings without zone information are taken as UTC.

    Raises:
        ValueError: If the string cannot be parsed
    """
    if not utc_str or not utc_str.strip():
        raise ValueError("Empty UTC datetime string")

    utc_str = utc_str.strip()
    if utc_str.upper().endswith("UTC"):
        utc_str = utc_str[:-3].strip()

    try:
        dt = parser.isoparse(utc_str)
    except ValueError:
        try:
            dt = parser.parse(utc_str)
        except (parser.ParserError, OverflowError) as e:
            raise ValueError(f"Unable to parse datetime '{utc_str}': {e}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_query_time(value: Union[str, float, None] = None, utc: Optional[str] = None) -> float:
    """
    Resolve a query time to a Julian Day.

    Args:
        value: Julian Day as a number or numeric string, or a timestamp string
        utc: UTC timestamp; used when value is None

    Raises:
        ValueError: Neither or both given, or the input cannot be parsed
    """
    if (value is None) == (utc is None):
        raise ValueError("Provide exactly one of a Julian Day or a UTC timestamp")

    if utc is not None:
        return datetime_to_jd(parse_utc(utc))

    if isinstance(value, (int, float)):
        jd = float(value)
    else:
        try:
            jd = float(value)
        except ValueError:
            return datetime_to_jd(parse_utc(value))

    if not math.isfinite(jd):
        raise ValueError(f"Julian Day must be finite, got {value}")
    return jd


def format_jd(jd: float) -> Optional[str]:
    """ISO 8601 UTC rendering of a Julian Day, to the second. None outside years 1-9999."""
    try:
        return jd_to_datetime(jd).strftime("%Y-%m-%dT%H:%M:%SZ")
    except (OverflowError, ValueError):
        return None
