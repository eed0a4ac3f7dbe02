"""Timestamp handling for snapshot rows: aware UTC in memory, strict text on disk."""

from __future__ import annotations

from datetime import UTC, datetime

import pendulum

# Strict storage format: YYYY-MM-DD HH:MM:SS.ffffff+HHMM
STRICT_FORMAT = "%Y-%m-%d %H:%M:%S.%f%z"


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)


def format_datetime(dt: datetime) -> str:
    """Serialize a datetime for storage, normalised to UTC.

    Naive datetimes are taken to be UTC already.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).strftime(STRICT_FORMAT)


def parse_datetime(value: str | datetime) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime.

    Accepts the strict storage format as well as ISO 8601 variants, so rows
    written by other tools (or by PostgreSQL's text cast) still load.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    parsed = pendulum.parse(value.strip(), tz="UTC", strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz="UTC"  # type: ignore[union-attr]
        )
    utc = parsed.in_timezone("UTC")
    return datetime(
        utc.year,
        utc.month,
        utc.day,
        utc.hour,
        utc.minute,
        utc.second,
        utc.microsecond,
        tzinfo=UTC,
    )


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON output."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.isoformat()
