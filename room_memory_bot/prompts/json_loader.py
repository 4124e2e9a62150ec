from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger("room_memory_bot.prompts")


@dataclass(slots=True)
class _CachedPrompt:
    mtime_ns: int | None
    payload: dict[str, Any]


_CACHE: dict[Path, _CachedPrompt] = {}


def _data_dir() -> Path:
    override = os.getenv("ROOM_MEMORY_PROMPTS_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(__file__).with_name("data")


def _mtime_ns(path: Path) -> int | None:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def _overlay(base: Any, override: Any) -> Any:
    if not (isinstance(base, dict) and isinstance(override, dict)):
        return copy.deepcopy(override)
    merged = copy.deepcopy(base)
    for key, value in override.items():
        merged[key] = _overlay(merged[key], value) if key in merged else copy.deepcopy(value)
    return merged


def _read_overrides(path: Path, mtime_ns: int | None) -> dict[str, Any] | None:
    if mtime_ns is None:
        logger.debug("[prompts] %s not found, using built-in defaults", path)
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as exc:
        logger.warning("[prompts] failed to parse %s (%s), using built-in defaults", path, exc)
        return None
    if not isinstance(payload, dict):
        logger.warning("[prompts] %s must hold a JSON object, using built-in defaults", path)
        return None
    return payload


def load_prompt_json(filename: str, defaults: dict[str, Any], data_dir: Path | None = None) -> dict[str, Any]:
    """``defaults`` deep-merged with ``<data_dir>/<filename>``; re-read whenever the file's mtime changes."""
    path = ((data_dir or _data_dir()) / filename).resolve()
    mtime_ns = _mtime_ns(path)
    cached = _CACHE.get(path)
    if cached is None or cached.mtime_ns != mtime_ns:
        overrides = _read_overrides(path, mtime_ns)
        payload = _overlay(defaults, overrides) if overrides else copy.deepcopy(defaults)
        cached = _CachedPrompt(mtime_ns=mtime_ns, payload=payload)
        _CACHE[path] = cached
    return copy.deepcopy(cached.payload)
