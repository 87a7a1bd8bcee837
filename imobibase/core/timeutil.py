"""UTC helpers.

SQLite hands timestamps back without tzinfo, PostgreSQL with it. Compare
only values passed through ensure_utc().
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def isoformat(value: datetime | None) -> str | None:
    normalized = ensure_utc(value)
    return normalized.isoformat() if normalized is not None else None


def epoch_ms(value: datetime | None = None) -> int:
    return int((value or utcnow()).timestamp() * 1000)
