"""UTC-everywhere time handling for ledger timestamps."""

from datetime import date, datetime, time, timezone


def now_utc() -> datetime:
    """
    Current time in UTC.

    Use this instead of datetime.now() everywhere.
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC.

    Raises ValueError if datetime is naive (no timezone).
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot convert naive datetime to UTC. Datetime must be timezone-aware."
        )
    return dt.astimezone(timezone.utc)


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 datetime string to UTC datetime.

    Raises ValueError if string has no timezone info.
    """
    dt = datetime.fromisoformat(iso_string)
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot parse naive datetime string. "
            "Include timezone offset (e.g., 'Z' or '+00:00')."
        )
    return to_utc(dt)


def parse_boundary(value: str | date | datetime) -> datetime:
    """
    Parse a period boundary into a UTC datetime.

    Accepts a bare date ("2025-01-01"), which means midnight UTC of that day,
    or a timezone-aware ISO 8601 datetime.

    Raises ValueError for naive datetimes or unparseable strings.
    """
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)

    if len(value) == 10:
        return datetime.combine(date.fromisoformat(value), time.min, tzinfo=timezone.utc)
    return parse_iso(value)
