"""Lenient coercion of upstream record fields.

Record payloads come from several app generations, so any field may be
missing, a placeholder string, or the wrong type.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

# Placeholder strings upstream payloads use for "not available".
_SENTINELS = frozenset({"", "--", "NaN", "nan", "null"})


def safe_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if value in _SENTINELS:
            return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def normalize_timestamp_seconds(value: Any) -> float | None:
    """Epoch seconds for a record timestamp in any of its upstream shapes.

    Accepts epoch seconds or milliseconds (values above ``1e11`` are taken
    as ms), document-store ``{"seconds": ...}`` objects, ISO-8601 strings
    and datetimes.  Missing, unparseable and non-positive values give
    ``None``.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.timestamp()
    if isinstance(value, dict):
        return normalize_timestamp_seconds(value.get("seconds", value.get("_seconds")))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            pass
        else:
            return normalize_timestamp_seconds(parsed)
    ts = safe_float(value)
    if ts is None or ts <= 0:
        return None
    if ts > 1e11:
        ts /= 1000.0
    return ts


def to_utc_datetime(value: Any) -> datetime | None:
    ts = normalize_timestamp_seconds(value)
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=UTC)


def is_meaningful(value: Any) -> bool:
    """Whether *value* carries information worth writing into a cached item."""
    if value is None:
        return False
    if isinstance(value, str) and value.strip() in _SENTINELS:
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    return not (isinstance(value, (dict, list)) and not value)


def prune_patch(data: Any) -> Any:
    """Strip placeholder values from an item patch, depth first.

    Nested dicts and lists are cleaned before their parent decides whether
    to keep them, so ``{"meta": {"note": ""}}`` prunes to ``{}``.  Anything
    that is neither a dict nor a list passes through untouched.
    """
    if isinstance(data, list):
        return [cleaned for cleaned in map(prune_patch, data) if is_meaningful(cleaned)]
    if not isinstance(data, dict):
        return data
    cleaned = {key: prune_patch(value) for key, value in data.items()}
    return {key: value for key, value in cleaned.items() if is_meaningful(value)}


def first_present(values: dict[str, Any], *keys: str) -> Any:
    """Return the first meaningful value among *keys* (dotted paths allowed)."""
    for key in keys:
        current: Any = values
        for part in key.split("."):
            if not isinstance(current, dict):
                current = None
                break
            current = current.get(part)
        if is_meaningful(current):
            return current
    return None
