"""Time helpers."""

from __future__ import annotations

from datetime import datetime, timezone


def local_now() -> datetime:
    """Current local wall-clock time, naive, truncated to milliseconds."""
    now = datetime.now()
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def format_local_timestamp(value: datetime) -> str:
    """Storage form of an audit timestamp: ``YYYY-MM-DDTHH:MM:SS.mmm``."""
    return value.isoformat(timespec="milliseconds")


def parse_local_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def format_iso_millis(value: datetime) -> str:
    """ISO-8601 with milliseconds and an explicit offset.

    Naive values are interpreted as local time.
    """
    if value.tzinfo is None:
        value = value.astimezone()
    return value.isoformat(timespec="milliseconds")


def parse_iso_datetime(value: str) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix accepted); ``None`` if malformed."""
    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def format_utc_seconds(value: datetime) -> str:
    """``YYYY-MM-DDTHH:MM:SSZ`` in UTC, the date form Airflow accepts on writes."""
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
