from __future__ import annotations

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def resolve_timezone(name: str | None) -> ZoneInfo | timezone:
    """Resolve an IANA name, falling back to UTC for unknown or empty names."""
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def as_aware_datetime(value: date | datetime, default_timezone: ZoneInfo | timezone) -> datetime:
    """Coerce an iCalendar DATE/DATE-TIME value to a tz-aware datetime."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=default_timezone)
        return value
    return datetime.combine(value, time.min, tzinfo=default_timezone)


def format_caldav_time(dt: datetime) -> str:
    """Format as basic ISO-8601 UTC without punctuation (YYYYMMDDTHHMMSSZ)."""
    if dt.tzinfo is None:
        raise ValueError("format_caldav_time requires a tz-aware datetime")
    return dt.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def dt_to_db(dt: datetime) -> str:
    """Convert tz-aware datetime to a UTC ISO-8601 string for DB storage."""
    if dt.tzinfo is None:
        raise ValueError("dt_to_db requires a tz-aware datetime")
    return dt.astimezone(UTC).isoformat()


def db_to_dt(s: str) -> datetime:
    """Parse ISO-8601 string from DB into a datetime."""
    return datetime.fromisoformat(s)


def parse_cli_dt(s: str, tz: ZoneInfo | timezone = UTC) -> datetime:
    """Parse 'YYYY-MM-DD HH:MM' or 'YYYY-MM-DD' in the provided timezone. Raises ValueError."""
    for fmt in ("%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M", "%Y-%m-%d"):
        try:
            naive = datetime.strptime(s, fmt)
        except ValueError:
            continue
        return naive.replace(tzinfo=tz)
    raise ValueError(f"Unsupported datetime value: {s}. Expected YYYY-MM-DD or YYYY-MM-DD HH:MM.")
