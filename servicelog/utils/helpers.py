"""Shared parsing and time helpers.

parse_date / parse_time:  raise ValueError on bad input (callers turn it into
                          a field-level ValidationError)
utcnow / as_utc:          timezone-aware UTC timestamps; SQLite hands back
                          naive datetimes even for DateTime(timezone=True)
"""
from datetime import date, datetime, time, timedelta, timezone


def parse_date(value):
    """Parse a date from a date object or an ISO string.

    Supports:
    - YYYY-MM-DD
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    Returns None for empty input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValueError("Invalid date. Use YYYY-MM-DD.")
    try:
        return date.fromisoformat(value)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(value).date()
    except ValueError as exc:
        raise ValueError("Invalid date. Use YYYY-MM-DD.") from exc


def parse_time(value):
    """Parse HH:MM (or HH:MM:SS) into a time object. Empty → None."""
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    if not isinstance(value, str):
        raise ValueError("Invalid time. Use HH:MM.")
    try:
        return time.fromisoformat(value)
    except ValueError as exc:
        raise ValueError("Invalid time. Use HH:MM.") from exc


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_timestamp(previous) -> datetime:
    """Return now, nudged past ``previous`` so updated_at never goes backwards."""
    now = utcnow()
    previous = as_utc(previous)
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now
