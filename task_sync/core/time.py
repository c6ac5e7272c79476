"""Time helpers shared by models and services."""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime for DB columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def parse_timestamp(raw: str) -> datetime | None:
    """Parse an ISO-8601 timestamp into naive UTC, returning None when blank or invalid."""
    value = raw.strip()
    if not value:
        return None
    if value.endswith("Z"):
        value = f"{value[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed
