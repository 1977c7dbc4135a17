"""Timestamp parsing utilities.

Providers hand us epoch floats (ChatGPT), ISO 8601 strings with or without
a trailing ``Z`` (Claude, Perplexity), or nothing at all. Everything is
normalized to timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime, timezone


def parse_timestamp(value: str | int | float | datetime | None) -> datetime | None:
    """Parse a timestamp from epoch seconds or an ISO string; None if unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)

    try:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(float(value), tz=timezone.utc)

        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
            if value.replace(".", "", 1).isdigit():
                return datetime.fromtimestamp(float(value), tz=timezone.utc)
            try:
                parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
    except (ValueError, OSError, OverflowError):
        # OSError/OverflowError for out-of-range epochs
        return None

    return None


def to_epoch(value: datetime | None) -> float | None:
    if value is None:
        return None
    return value.timestamp()


def from_epoch(value: float | int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def truncate_to_seconds(value: datetime | None) -> int | None:
    """Whole epoch seconds, used to compare timestamps across systems with different precision."""
    if value is None:
        return None
    return int(value.timestamp())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime | None) -> str:
    """ISO 8601 string in UTC (seconds precision); empty string for None."""
    if ts is None:
        return ""
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    else:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat(timespec="seconds")


__all__ = [
    "parse_timestamp",
    "to_epoch",
    "from_epoch",
    "truncate_to_seconds",
    "utcnow",
    "format_timestamp",
]
