from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from .models import PROFILE_SCALAR_FIELDS, ProfileFragment, UserProfile, _nullable_str

_PRONOUNS = frozenset({"你", "我", "他", "她", "它", "you", "me", "him", "her", "them"})
_ADDRESSED_MENTION_RE = re.compile(r"^你[@#].+")
_BARE_MENTION_RE = re.compile(r"^@\S+$")

DEFAULT_PROFILE_COMMAND = "setprofile"


@dataclass(slots=True)
class SetProfileCommand:
    matched: bool
    content: str = ""


def is_pronoun_noise(text: str) -> bool:
    """True for bare pronouns and mentions that say nothing about the user."""
    if text.lower() in _PRONOUNS:
        return True
    if _ADDRESSED_MENTION_RE.match(text):
        return True
    return bool(_BARE_MENTION_RE.match(text))


def normalize_string_list(
    values: Any,
    *,
    source_text: str = "",
    strict_from_source: bool = False,
) -> list[str]:
    if not isinstance(values, (list, tuple)):
        return []
    source_key = source_text.lower()
    seen: set[str] = set()
    result: list[str] = []
    for item in values:
        if not isinstance(item, str):
            continue
        trimmed = item.strip()
        if not trimmed or is_pronoun_noise(trimmed):
            continue
        if strict_from_source and source_text and trimmed.lower() not in source_key:
            continue
        key = trimmed.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(trimmed)
    return result


def normalize_extracted_profile(raw: Any, source_text: str) -> ProfileFragment:
    """Validate extractor output; list items must literally occur in ``source_text``."""
    if not isinstance(raw, Mapping):
        raise ValueError("profile JSON must be an object")
    return ProfileFragment(
        common_name=_nullable_str(raw.get("common_name")),
        language=_nullable_str(raw.get("language")),
        location=_nullable_str(raw.get("location")),
        identity=_nullable_str(raw.get("identity")),
        likes=normalize_string_list(raw.get("likes"), source_text=source_text, strict_from_source=True),
        dislikes=normalize_string_list(raw.get("dislikes"), source_text=source_text, strict_from_source=True),
    )


def _as_mapping(value: Any) -> Mapping[str, Any]:
    if isinstance(value, (UserProfile, ProfileFragment)):
        return {
            **{key: getattr(value, key) for key in PROFILE_SCALAR_FIELDS},
            "likes": list(value.likes),
            "dislikes": list(value.dislikes),
        }
    if isinstance(value, Mapping):
        return value
    return {}


def merge_profile(
    old: UserProfile | Mapping[str, Any] | None,
    fragment: ProfileFragment | Mapping[str, Any],
    display_name: str | None,
    now: int,
) -> UserProfile:
    """Overlay ``fragment`` on ``old``: nulls never erase, lists union case-insensitively."""
    safe_old = _as_mapping(old)
    incoming = _as_mapping(fragment)

    merged = UserProfile(
        **{key: _nullable_str(safe_old.get(key)) for key in PROFILE_SCALAR_FIELDS},
    )
    for key in PROFILE_SCALAR_FIELDS:
        value = _nullable_str(incoming.get(key))
        if value is not None:
            setattr(merged, key, value)

    merged.likes = normalize_string_list(
        [*normalize_string_list(safe_old.get("likes")), *_iter_list(incoming.get("likes"))]
    )
    merged.dislikes = normalize_string_list(
        [*normalize_string_list(safe_old.get("dislikes")), *_iter_list(incoming.get("dislikes"))]
    )
    merged.updated_at = int(now)
    merged.display_name = _nullable_str(display_name)
    return merged


def _iter_list(value: Any) -> Iterable[Any]:
    if isinstance(value, (list, tuple)):
        return value
    return ()


def parse_setprofile_command(message_text: str | None, command: str = DEFAULT_PROFILE_COMMAND) -> SetProfileCommand:
    keyword = str(command or DEFAULT_PROFILE_COMMAND).strip()
    # ASCII-only word boundary, so "setprofile我是..." still counts as the command.
    pattern = re.compile(rf"^\s*{re.escape(keyword)}(?![A-Za-z0-9_])[:：]?\s*", re.IGNORECASE)
    text = str(message_text or "")
    match = pattern.match(text)
    if match is None:
        return SetProfileCommand(matched=False, content="")
    return SetProfileCommand(matched=True, content=text[match.end():].strip())
