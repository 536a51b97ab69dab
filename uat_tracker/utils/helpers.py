"""Shared parsing and formatting helpers.

parse_date:        lenient, returns None on bad input (filters, optional fields)
parse_date_input:  strict, raises ValueError (request validation)
parse_timestamp:   strict ISO-8601 timestamp parsing, naive values read as UTC
as_utc / isoformat_utc: normalise DB datetimes (SQLite drops tzinfo)
"""
from datetime import date, datetime, timezone


def as_utc(value):
    """Return ``value`` as an aware UTC datetime. Naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_utc(value):
    """Serialise a datetime as ISO-8601 UTC with microseconds, or None."""
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value):
    """Parse an ISO-8601 timestamp string into an aware UTC datetime.

    Accepts a trailing ``Z``. Raises ValueError on anything unparseable,
    TypeError when ``value`` is not a string or datetime.
    """
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str):
        raise TypeError(f"timestamp must be a string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise ValueError("empty timestamp")
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return parse_timestamp(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input.

    Same as parse_date() but raises ValueError instead of returning None.
    Empty input is a valid "clear the date" value and returns None.
    """
    if value is None or value == "":
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValueError("Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY.")
    return parsed
