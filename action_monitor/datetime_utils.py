"""
DateTime utility functions for the action monitor.

All persisted timestamps are naive UTC.
"""
from datetime import datetime, timezone


def utcnow():
    """Current time as a naive UTC datetime, matching what the database stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso_utc(dt):
    """
    Format a datetime as an ISO-8601 string with a trailing 'Z'.

    Args:
        dt: datetime object, or None

    Returns:
        str: e.g. "2025-10-15T14:30:45.123456Z", or None if dt is None
    """
    if not dt:
        return None

    # If dt is naive (no timezone), assume it's UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def format_datetime_utc(dt):
    """
    Format a datetime object to UTC with readable format.
    Returns format like: "October 15, 2025 02:30:45 PM UTC"

    Args:
        dt: datetime object, ISO string, or None

    Returns:
        str: Formatted datetime string in UTC, or None if dt is None
    """
    if not dt:
        return None

    if isinstance(dt, str):
        try:
            dt = datetime.fromisoformat(dt.replace('Z', '+00:00'))
        except ValueError:
            return str(dt)  # Return as-is if parsing fails

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    utc_dt = dt.astimezone(timezone.utc)

    return utc_dt.strftime("%B %d, %Y %I:%M:%S %p UTC")


def to_naive_utc(dt):
    """Convert an aware datetime to naive UTC; naive values are returned unchanged."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)
