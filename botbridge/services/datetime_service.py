"""Datetime helpers for timestamps stored in state and sent to vendors."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pendulum


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def parse_datetime(value: str, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string into a timezone-aware datetime.

    Date-only strings resolve to midnight in ``default_tz``.
    """
    parsed = pendulum.parse(value.strip(), tz=default_tz, strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz=default_tz  # type: ignore[union-attr]
        )
    return parsed  # type: ignore[return-value]


def expiry_in(days: int) -> datetime:
    """Return the UTC instant ``days`` from now (webhook subscription expiry)."""
    return now_utc() + timedelta(days=days)


def now_millis() -> int:
    """Return the current UTC time as epoch milliseconds."""
    return int(now_utc().timestamp() * 1000)
