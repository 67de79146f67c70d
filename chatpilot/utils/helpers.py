"""Utility functions for chatpilot."""

from datetime import datetime, timezone
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the chatpilot data directory (~/.chatpilot)."""
    return ensure_dir(Path.home() / ".chatpilot")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_date_str(value: datetime | None = None) -> str:
    """UTC calendar date (YYYY-MM-DD) used to partition log files."""
    return as_utc(value or utc_now()).strftime("%Y-%m-%d")
