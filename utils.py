"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import logging
import math
from datetime import timezone
from typing import Optional

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def from_timestamp(raw) -> Optional[datetime.datetime]:
    """Convert epoch seconds (as sent by Stripe) to an aware UTC datetime."""
    if raw in (None, "", 0):
        return None
    try:
        return datetime.datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (ValueError, TypeError, OverflowError, OSError):
        logger.warning("Could not parse timestamp: %r", raw)
        return None


def isoformat(value: Optional[datetime.datetime]) -> Optional[str]:
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


def safe_float(value, default: float = 0.0) -> float:
    """Safely convert *value* to ``float``, returning *default* on failure."""
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        result = float(value)
    except (ValueError, TypeError, OverflowError):
        logger.warning("Could not convert %r to float, using default %s", value, default)
        return default
    if not math.isfinite(result):
        logger.warning("Non-finite value %r, using default %s", value, default)
        return default
    return result


def bytes_to_mb(size_bytes) -> float:
    return safe_float(size_bytes) / BYTES_PER_MB


def file_extension(file_name: Optional[str]) -> str:
    """Return the lower-cased extension of *file_name* without the dot."""
    if not file_name or "." not in file_name:
        return ""
    return file_name.rsplit(".", 1)[1].lower()
