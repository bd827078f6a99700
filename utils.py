"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import logging
from datetime import timezone
from typing import Optional

logger = logging.getLogger(__name__)

DAY = datetime.timedelta(days=1)


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_epoch(raw) -> Optional[datetime.datetime]:
    """Convert provider epoch seconds to an aware datetime."""
    if raw is None or raw == "":
        return None
    try:
        return datetime.datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (ValueError, TypeError, OverflowError, OSError):
        logger.warning("Could not parse epoch timestamp: %r", raw)
        return None


def isoformat(value: Optional[datetime.datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default
