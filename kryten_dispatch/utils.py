"""Shared utility helpers for kryten-dispatch."""

from __future__ import annotations

import math
import string
import time
from datetime import datetime, timezone

_ASCII_FOLD = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)

SECONDS_PER_DAY = 86400


def ascii_fold(value: str) -> str:
    """Lowercase ASCII letters only; other characters pass through unchanged."""
    return value.translate(_ASCII_FOLD)


def parse_timestamp(ts: str | None) -> datetime | None:
    """Parse SQLite TIMESTAMP string to timezone-aware datetime, or None."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts)
        # SQLite stores naive timestamps as UTC
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError):
        return None


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def epoch_now() -> float:
    """Wall-clock seconds; cooldown state is persisted in this unit."""
    return time.time()


def remaining_seconds(remaining: float) -> int:
    """Round a remaining wait up to whole seconds (never below 1)."""
    return max(1, math.ceil(remaining))


def format_days(days: float) -> str:
    """Render a window length like ``1`` or ``0.5`` without trailing zeros."""
    if float(days).is_integer():
        return str(int(days))
    return f"{days:g}"
