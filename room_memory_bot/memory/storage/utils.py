from __future__ import annotations

import json
import math
import os
import time
from typing import Any, Iterable

IMPORTANCE_MIN = 1
IMPORTANCE_MAX = 10
DEFAULT_IMPORTANCE = 5

LIST_LIMIT_MAX = 100
DIGEST_ITEMS_PER_USER_MAX = 200


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _now_ts(now: int | float | None = None) -> int:
    if now is None:
        return int(time.time())
    return int(now)


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _finite_number(value: Any) -> float | None:
    if isinstance(value, str):
        value = value.strip()
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("MEMORY_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


def clamp_importance(value: int) -> int:
    return int(_clamp(int(value), IMPORTANCE_MIN, IMPORTANCE_MAX))


def coerce_importance(value: Any, default: int = DEFAULT_IMPORTANCE) -> int:
    """Floor and clamp ``value`` into [1, 10]; non-numeric input falls back to ``default``."""
    number = _finite_number(value)
    if number is None:
        return clamp_importance(default)
    return clamp_importance(math.floor(number))


def coerce_ttl_days(value: Any, default: int | None = None) -> int | None:
    if value is None:
        return default
    number = _finite_number(value)
    if number is None:
        return default
    return max(1, math.floor(number))


def coerce_limit(value: Any, default: int, maximum: int) -> int:
    number = _finite_number(value)
    if number is None:
        return max(1, min(maximum, int(default)))
    return int(_clamp(math.floor(number), 1, maximum))


def normalize_tags(tags: Iterable[Any] | None) -> list[str]:
    if tags is None or isinstance(tags, (str, bytes)):
        return []
    seen: set[str] = set()
    result: list[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            continue
        cleaned = tag.strip()
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        result.append(cleaned)
    return result


def parse_tags_json(raw: Any) -> list[str]:
    if not isinstance(raw, str):
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return normalize_tags(parsed)


def coerce_embedding(embedding: Iterable[Any] | None) -> list[float] | None:
    """Return a finite float list, ``None`` for a missing/empty embedding; raise on junk."""
    if embedding is None:
        return None
    if isinstance(embedding, (str, bytes)):
        raise ValueError("embedding must be a sequence of numbers")
    values: list[float] = []
    for item in embedding:
        if isinstance(item, bool):
            raise ValueError("embedding must contain only numbers")
        number = _finite_number(item)
        if number is None:
            raise ValueError("embedding must contain only finite numbers")
        values.append(number)
    return values or None


def load_json_object(raw: Any) -> dict[str, Any] | None:
    """Decode a stored JSON object column; anything malformed reads as absent."""
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
