from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Mapping

from .storage.utils import DEFAULT_IMPORTANCE, _finite_number, _optional_int, coerce_importance, parse_tags_json

DIGEST_HIGHLIGHTS_MAX = 12
DIGEST_PREFERENCES_MAX = 12
DIGEST_THREADS_MAX = 10
EXTRACTED_TAGS_MAX = 8

PROFILE_SCALAR_FIELDS = ("common_name", "language", "location", "identity")
PROFILE_LIST_FIELDS = ("likes", "dislikes")


def _clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _nullable_str(value: Any) -> str | None:
    cleaned = _clean_str(value)
    return cleaned or None


def dedupe_strings(values: Any, limit: int | None = None) -> list[str]:
    """Trimmed, case-insensitively unique strings; first occurrence keeps its casing."""
    if not isinstance(values, (list, tuple)):
        return []
    seen: set[str] = set()
    result: list[str] = []
    for item in values:
        cleaned = _clean_str(item)
        if not cleaned:
            continue
        key = cleaned.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(cleaned)
        if limit is not None and len(result) >= limit:
            break
    return result


@dataclass(slots=True)
class NewMemory:
    text: str
    room_id: str | None = None
    trip_code: str | None = None
    display_name: str = ""
    tags: list[str] = field(default_factory=list)
    importance: Any = None
    ttl_days: Any = None
    memory_id: str | None = None
    created_at: int | None = None


def _extracted_items(raw: Any) -> list[Any]:
    safe: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    memory = safe.get("memory")
    container: Mapping[str, Any] = memory if isinstance(memory, Mapping) else safe
    items = container.get("items")
    return items if isinstance(items, list) else []


def normalize_memory_items(
    raw: Any,
    *,
    default_importance: int = DEFAULT_IMPORTANCE,
    min_importance: int | None = None,
) -> list[NewMemory]:
    """Memory items from a model reply, either ``{"memory": {"items": [...]}}`` or ``{"items": [...]}``.

    Non-object items and items without text are dropped. With ``min_importance`` set, an item also
    needs a numeric raw importance at or above it.
    """
    result: list[NewMemory] = []
    for item in _extracted_items(raw):
        if not isinstance(item, Mapping):
            continue
        text = _clean_str(item.get("text"))
        if not text:
            continue
        if min_importance is not None:
            score = _finite_number(item.get("importance"))
            if score is None or score < min_importance:
                continue
        result.append(
            NewMemory(
                text=text,
                tags=dedupe_strings(item.get("tags"), EXTRACTED_TAGS_MAX),
                importance=coerce_importance(item.get("importance"), default_importance),
            )
        )
    return result


@dataclass(slots=True)
class MemoryRecord:
    memory_id: str
    room_id: str | None
    trip_code: str | None
    text: str
    tags: list[str]
    importance: int
    ttl_days: int | None
    created_at: int
    last_used_at: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MemoryRecord":
        return cls(
            memory_id=str(row["memory_id"]),
            room_id=row["room_id"],
            trip_code=row["trip_code"],
            text=str(row["text"]),
            tags=parse_tags_json(row["tags_json"]),
            importance=int(row["importance"]),
            ttl_days=_optional_int(row["ttl_days"]),
            created_at=int(row["created_at"]),
            last_used_at=int(row["last_used_at"]),
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SimilarMemory:
    memory: MemoryRecord
    distance: float

    def as_dict(self) -> dict[str, Any]:
        payload = self.memory.as_dict()
        payload["distance"] = self.distance
        return payload


@dataclass(slots=True)
class CleanupResult:
    removed_memories: int = 0
    removed_vectors: int = 0


@dataclass(slots=True)
class OngoingThread:
    topic: str = ""
    status: str = ""
    note: str = ""


@dataclass(slots=True)
class MemoryDigest:
    highlights: list[str] = field(default_factory=list)
    ongoing_threads: list[OngoingThread] = field(default_factory=list)
    stable_preferences: list[str] = field(default_factory=list)
    updated_at: int | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.highlights or self.ongoing_threads or self.stable_preferences)

    def as_dict(self) -> dict[str, Any]:
        return {
            "highlights": list(self.highlights),
            "ongoing_threads": [asdict(thread) for thread in self.ongoing_threads],
            "stable_preferences": list(self.stable_preferences),
            "updated_at": self.updated_at,
        }


def normalize_ongoing_threads(value: Any, limit: int = DIGEST_THREADS_MAX) -> list[OngoingThread]:
    if not isinstance(value, (list, tuple)):
        return []
    threads: list[OngoingThread] = []
    for item in value:
        if not isinstance(item, Mapping):
            continue
        topic = _clean_str(item.get("topic"))
        status = _clean_str(item.get("status"))
        note = _clean_str(item.get("note"))
        if not topic and not note:
            continue
        threads.append(OngoingThread(topic=topic, status=status, note=note))
        if len(threads) >= limit:
            break
    return threads


def normalize_digest(raw: Any, updated_at: int | None) -> MemoryDigest:
    """Coerce any summarizer/stored payload into a capped, deduplicated digest."""
    safe: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    return MemoryDigest(
        highlights=dedupe_strings(safe.get("highlights"), DIGEST_HIGHLIGHTS_MAX),
        ongoing_threads=normalize_ongoing_threads(safe.get("ongoing_threads")),
        stable_preferences=dedupe_strings(safe.get("stable_preferences"), DIGEST_PREFERENCES_MAX),
        updated_at=updated_at,
    )


@dataclass(slots=True)
class ProfileFragment:
    common_name: str | None = None
    language: str | None = None
    location: str | None = None
    identity: str | None = None
    likes: list[str] = field(default_factory=list)
    dislikes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class UserProfile:
    common_name: str | None = None
    language: str | None = None
    location: str | None = None
    identity: str | None = None
    likes: list[str] = field(default_factory=list)
    dislikes: list[str] = field(default_factory=list)
    updated_at: int | None = None
    display_name: str | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> "UserProfile":
        safe: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
        return cls(
            common_name=_nullable_str(safe.get("common_name")),
            language=_nullable_str(safe.get("language")),
            location=_nullable_str(safe.get("location")),
            identity=_nullable_str(safe.get("identity")),
            likes=dedupe_strings(safe.get("likes")),
            dislikes=dedupe_strings(safe.get("dislikes")),
            updated_at=_optional_int(safe.get("updated_at")),
            display_name=_nullable_str(safe.get("display_name")),
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def profile_context_lines(profile: UserProfile | None) -> list[str]:
    """Render non-empty profile fields as ``- key: value`` prompt lines."""
    if profile is None:
        return []
    lines: list[str] = []
    for key, value in profile.as_dict().items():
        if key == "updated_at" or value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        if isinstance(value, list):
            if not value:
                continue
            value = ", ".join(value)
        lines.append(f"- {key}: {value}")
    return lines


def digest_context_lines(digest: MemoryDigest | None) -> list[str]:
    if digest is None:
        return []
    lines: list[str] = []
    if digest.highlights:
        lines.append("Memory highlights:")
        lines.extend(f"- {item}" for item in digest.highlights)
    if digest.ongoing_threads:
        lines.append("Ongoing threads:")
        for thread in digest.ongoing_threads:
            parts = [
                f"topic={thread.topic}" if thread.topic else "",
                f"status={thread.status}" if thread.status else "",
                f"note={thread.note}" if thread.note else "",
            ]
            lines.append("- " + ", ".join(part for part in parts if part))
    if digest.stable_preferences:
        lines.append("Stable preferences:")
        lines.extend(f"- {item}" for item in digest.stable_preferences)
    return lines


def memory_prompt_items(memories: Iterable[MemoryRecord]) -> list[dict[str, Any]]:
    return [
        {
            "user_trip": item.trip_code,
            "text": item.text,
            "importance": item.importance,
            "tags": list(item.tags),
            "source_room": item.room_id,
            "created_at": item.created_at,
        }
        for item in memories
    ]
