"""Time utilities. All timestamps are timezone-aware UTC."""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hours_ago(hours: float) -> datetime:
    return utc_now() - timedelta(hours=hours)


def seconds_ago(seconds: float) -> datetime:
    return utc_now() - timedelta(seconds=seconds)


def epoch_seconds(value: datetime | None = None) -> int:
    """Unix timestamp in seconds, as WhatsApp ``messageTimestamp`` expects."""
    return int((value or utc_now()).timestamp())
