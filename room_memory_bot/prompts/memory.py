from __future__ import annotations

import json
from typing import Any, Iterable, Mapping

from .json_loader import load_prompt_json

_DEFAULTS = {
    "digest_schema_hint_object": {
        "highlights": ["one-sentence high-value fact"],
        "ongoing_threads": [{"topic": "topic", "status": "status", "note": "note"}],
        "stable_preferences": ["long-term preference or taboo"],
    },
    "digest_system_prompt": (
        "You are a strict JSON generator and memory summarizer. "
        "Output JSON only, with no explanation. "
        "Never invent anything the user did not say."
    ),
    "digest_user_prompt_template": (
        "Compress this user's memory history into a reusable digest.\n\n"
        "User id:\n{trip_code}\n\n"
        "Raw memories:\n{memories_json}\n\n"
        "Rules:\n"
        "1. highlights keeps only high-value facts, no repeats.\n"
        "2. ongoing_threads lists only items that are still in progress.\n"
        "3. stable_preferences lists only stable preferences or things to avoid.\n"
        "4. Any field may be an empty array.\n"
        "Write the digest in the language the memories use."
    ),
    "profile_schema_hint_object": {
        "common_name": "",
        "language": "",
        "location": "",
        "identity": "",
        "likes": [],
        "dislikes": [],
    },
    "profile_system_prompt": (
        "You are a strict JSON generator. "
        "Extract personal profile information from the user's text. "
        "Output JSON only, with no explanation. "
        "Do not add anything the user did not state explicitly. "
        "Use null or an empty array for fields that are not mentioned. "
        "Never put pronouns, @mentions or forms of address into likes/dislikes."
    ),
    "profile_user_prompt_template": (
        "Extract the user's profile from the text below.\n\n"
        "Fields: common_name (usual name), language, location (where they live), identity (who they are), "
        "likes (array), dislikes (array).\n\n"
        "Text:\n\"{content}\""
    ),
}


def _cfg() -> dict[str, Any]:
    return load_prompt_json("memory.json", _DEFAULTS)


def _schema_hint(key: str) -> str:
    value = _cfg().get(key, _DEFAULTS[key])
    if not isinstance(value, dict):
        value = _DEFAULTS[key]
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _text(key: str) -> str:
    return str(_cfg().get(key, _DEFAULTS[key]))


def digest_schema_hint() -> str:
    return _schema_hint("digest_schema_hint_object")


def profile_schema_hint() -> str:
    return _schema_hint("profile_schema_hint_object")


def build_digest_messages(trip_code: str, memory_items: Iterable[Mapping[str, Any]]) -> list[dict[str, str]]:
    payload = [
        {
            "text": item.get("text"),
            "importance": item.get("importance"),
            "tags": list(item.get("tags") or []),
            "created_at": item.get("created_at"),
            "last_used_at": item.get("last_used_at"),
        }
        for item in memory_items
    ]
    user_prompt = _text("digest_user_prompt_template").format(
        trip_code=trip_code,
        memories_json=json.dumps(payload, ensure_ascii=False, indent=2),
    )
    return [
        {"role": "system", "content": _text("digest_system_prompt")},
        {"role": "user", "content": user_prompt},
    ]


def build_profile_messages(content: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": _text("profile_system_prompt")},
        {"role": "user", "content": _text("profile_user_prompt_template").format(content=content)},
    ]
