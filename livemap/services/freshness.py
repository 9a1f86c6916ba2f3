from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from livemap.core.map_config import FRESHNESS_MAX_AGE_MS


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Best-effort conversion to an aware UTC datetime.

    Accepts datetimes and ISO-8601 strings (with or without a trailing "Z").
    Naive values are taken as UTC. Anything else yields None.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None

    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _now(now: Any) -> datetime:
    ts = parse_timestamp(now)
    return ts if ts is not None else datetime.now(timezone.utc)


def is_fresh(updated_at: Any, max_age_ms: int = FRESHNESS_MAX_AGE_MS, now: Optional[datetime] = None) -> bool:
    ts = parse_timestamp(updated_at)
    if ts is None:
        return False
    return _now(now) - ts <= timedelta(milliseconds=max_age_ms)


def relative_age(updated_at: Any, now: Optional[datetime] = None) -> str:
    ts = parse_timestamp(updated_at)
    if ts is None:
        return "unknown"

    seconds = max(0, int((_now(now) - ts).total_seconds()))
    if seconds < 60:
        return f"{seconds}s ago"

    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"

    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"

    return f"{hours // 24}d ago"
