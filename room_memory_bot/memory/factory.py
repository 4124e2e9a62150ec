from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..config import Settings
from .models import (
    CleanupResult,
    MemoryRecord,
    ProfileFragment,
    UserProfile,
    digest_context_lines,
    memory_prompt_items,
    normalize_memory_items,
    profile_context_lines,
)
from .profile_merge import DEFAULT_PROFILE_COMMAND, merge_profile, parse_setprofile_command
from .storage import DatabaseInfo, MemoryDatabase
from .storage.identity import IdentityRepository
from .storage.memories import MemoryRepository
from .storage.utils import _now_ts

logger = logging.getLogger("room_memory_bot.memory")


class _ProfileExtractor(Protocol):
    async def extract(self, content: str) -> ProfileFragment: ...


@dataclass(slots=True)
class UserContext:
    trip_code: str
    profile_context: str = ""
    memories: list[MemoryRecord] = field(default_factory=list)

    def memory_items(self) -> list[dict[str, Any]]:
        return memory_prompt_items(self.memories)


@dataclass(slots=True)
class MemoryStore:
    database: MemoryDatabase
    memories: MemoryRepository
    identities: IdentityRepository
    prompt_min_importance: int = 1
    prompt_max_items: int = 10
    profile_command: str = DEFAULT_PROFILE_COMMAND
    store_enabled: bool = True
    store_min_importance: int = 1

    async def open(self, *, startup_cleanup: bool = True) -> DatabaseInfo:
        info = await self.database.init()
        if startup_cleanup:
            result: CleanupResult = await self.memories.cleanup_expired_and_orphans()
            logger.info(
                "[memory.cleanup] startup: removed_memories=%s removed_vectors=%s",
                result.removed_memories,
                result.removed_vectors,
            )
        return info

    async def close(self) -> None:
        await self.database.close()

    async def user_context(self, trip_code: str, *, now: int | None = None) -> UserContext:
        """Profile + digest text block and the top memories for a reply prompt.

        Returned memories get ``last_used_at`` refreshed.
        """
        profile = await self.identities.get_profile(trip_code)
        digest = await self.identities.get_memory_digest(trip_code)
        blocks = ["\n".join(lines) for lines in (profile_context_lines(profile), digest_context_lines(digest)) if lines]
        memories = await self.memories.list_by_user(
            trip_code,
            self.prompt_min_importance,
            self.prompt_max_items,
            now=now,
        )
        if memories:
            await self.memories.touch([item.memory_id for item in memories], now=now)
        return UserContext(trip_code=trip_code, profile_context="\n\n".join(blocks), memories=memories)

    async def store_extracted_memories(
        self,
        room_id: str | None,
        trip_code: str | None,
        display_name: str,
        raw_output: Any,
        *,
        now: int | None = None,
    ) -> list[str]:
        """Persist the memory items a reply model extracted for ``trip_code``; returns the new ids."""
        trip = str(trip_code or "").strip()
        if not self.store_enabled or not trip:
            return []
        items = normalize_memory_items(
            raw_output,
            default_importance=self.memories.default_importance,
            min_importance=self.store_min_importance,
        )
        stored: list[str] = []
        for item in items:
            item.room_id = room_id
            item.trip_code = trip
            item.display_name = display_name or ""
            stored.append(await self.memories.insert(item, now=now))
        if stored:
            logger.info("[memory] stored %s extracted memories for trip=%s", len(stored), trip)
        return stored

    async def apply_profile_command(
        self,
        trip_code: str,
        display_name: str,
        message_text: str,
        extractor: _ProfileExtractor | Any,
        *,
        now: int | None = None,
    ) -> UserProfile | None:
        """Handle a ``setprofile`` chat message; ``None`` when the message is not the command."""
        command = parse_setprofile_command(message_text, self.profile_command)
        if not command.matched:
            return None
        if not command.content:
            raise ValueError("profile content is empty")
        fragment = await extractor.extract(command.content)
        ts = _now_ts(now)
        old = await self.identities.get_profile(trip_code)
        merged = merge_profile(old, fragment, display_name, ts)
        await self.identities.upsert_user(trip_code, display_name, ts)
        await self.identities.upsert_profile(trip_code, merged, ts)
        logger.info("[memory.profile] updated profile for trip=%s", trip_code)
        return merged


def build_memory_store(settings: Settings) -> MemoryStore:
    database = MemoryDatabase(
        settings.sqlite_path,
        vector_extension_path=settings.sqlite_vector_extension_path or None,
        embedding_dim=settings.embedding_dim,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    return MemoryStore(
        database=database,
        memories=MemoryRepository(
            database,
            default_importance=settings.memory_default_importance,
            default_ttl_days=settings.memory_default_ttl_days,
        ),
        identities=IdentityRepository(database),
        prompt_min_importance=settings.memory_prompt_min_importance,
        prompt_max_items=settings.memory_prompt_max_items,
        profile_command=settings.profile_command,
        store_enabled=settings.memory_store_enabled,
        store_min_importance=settings.memory_store_min_importance,
    )
