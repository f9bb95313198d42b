"""Datetime helpers shared across the application."""

from __future__ import annotations

from datetime import UTC, date, datetime, time

__all__ = [
    "cutoff_from_date",
    "ensure_utc",
    "imap_date",
    "parse_datetime",
    "serialize_datetime",
    "utc_now",
]

_MONTHS = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` converted to UTC, treating naive values as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def serialize_datetime(value: datetime | None) -> str | None:
    """Serialise ``value`` to ISO 8601 in UTC so stored values sort lexically."""
    normalized = ensure_utc(value)
    if normalized is None:
        return None
    return normalized.isoformat()


def parse_datetime(value: str | None, *, assume_utc: bool = True) -> datetime | None:
    """Parse an ISO 8601 string into a ``datetime`` instance."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None and assume_utc:
        return parsed.replace(tzinfo=UTC)
    return parsed


def cutoff_from_date(value: date) -> datetime:
    """Return midnight UTC on ``value``."""
    return datetime.combine(value, time.min, tzinfo=UTC)


def imap_date(value: date) -> str:
    """Format ``value`` for IMAP SEARCH criteria (``01-Jun-2025``)."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"
