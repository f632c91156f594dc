"""Timestamps for stored rows."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the convention for every stored row."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
