from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Sequence

from ..models import CleanupResult, MemoryRecord, NewMemory, SimilarMemory
from .database import MemoryDatabase
from .identity import upsert_room_row, upsert_user_row
from .utils import (
    DEFAULT_IMPORTANCE,
    DIGEST_ITEMS_PER_USER_MAX,
    IMPORTANCE_MIN,
    LIST_LIMIT_MAX,
    _now_ts,
    coerce_embedding,
    coerce_importance,
    coerce_limit,
    coerce_ttl_days,
    dump_json,
    normalize_tags,
)

logger = logging.getLogger("room_memory_bot.memory.repository")

_MEMORY_COLUMNS = """
    memory_id,
    room_id,
    trip_code,
    text,
    tags_json,
    importance,
    ttl_days,
    created_at,
    last_used_at
"""

_NOT_EXPIRED_SQL = "(ttl_days IS NULL OR created_at >= (? - ttl_days * 86400))"


class MemoryRepository:
    """Memory rows plus their embeddings in whichever vector index ``init()`` picked."""

    def __init__(
        self,
        database: MemoryDatabase,
        *,
        default_importance: int = DEFAULT_IMPORTANCE,
        default_ttl_days: int | None = None,
    ) -> None:
        self.database = database
        self.default_importance = coerce_importance(default_importance)
        self.default_ttl_days = coerce_ttl_days(default_ttl_days)

    async def insert(
        self,
        memory: NewMemory,
        embedding: Iterable[Any] | None = None,
        *,
        now: int | None = None,
    ) -> str:
        text = str(memory.text or "").strip()
        if not text:
            raise ValueError("memory text is required")
        room_id = str(memory.room_id or "").strip() or None
        trip_code = str(memory.trip_code or "").strip() or None
        importance = coerce_importance(memory.importance, self.default_importance)
        ttl_days = coerce_ttl_days(memory.ttl_days, self.default_ttl_days)
        tags = normalize_tags(memory.tags)
        vector = coerce_embedding(embedding)
        memory_id = str(memory.memory_id or "").strip() or str(uuid.uuid4())
        ts = _now_ts(memory.created_at if memory.created_at is not None else now)

        await self.database.init()
        vectors = self.database.vectors
        if vector is not None:
            vectors.validate(vector)

        async with self.database.transaction() as db:
            if room_id:
                await upsert_room_row(db, room_id, ts)
            if trip_code:
                await upsert_user_row(db, trip_code, memory.display_name, ts)
            await db.execute(
                f"""
                INSERT INTO memories ({_MEMORY_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (memory_id, room_id, trip_code, text, dump_json(tags), importance, ttl_days, ts, ts),
            )
            if vector is not None:
                await vectors.upsert(db, memory_id, vector)
        logger.debug(
            "[memory] stored id=%s room=%s trip=%s importance=%s vector=%s",
            memory_id,
            room_id,
            trip_code,
            importance,
            vector is not None,
        )
        return memory_id

    async def list_by_user(
        self,
        trip_code: str,
        min_importance: Any = IMPORTANCE_MIN,
        limit: Any = 10,
        *,
        now: int | None = None,
    ) -> List[MemoryRecord]:
        trip = str(trip_code or "").strip()
        if not trip:
            return []
        floor = coerce_importance(min_importance, IMPORTANCE_MIN)
        bounded_limit = coerce_limit(limit, 10, LIST_LIMIT_MAX)
        async with self.database.read() as db:
            async with db.execute(
                f"""
                SELECT {_MEMORY_COLUMNS}
                FROM memories
                WHERE trip_code = ?
                  AND importance >= ?
                  AND {_NOT_EXPIRED_SQL}
                ORDER BY importance DESC, last_used_at DESC, created_at DESC
                LIMIT ?
                """,
                (trip, floor, _now_ts(now), bounded_limit),
            ) as cursor:
                rows = await cursor.fetchall()
        return [MemoryRecord.from_row(row) for row in rows]

    async def list_grouped_for_digest(
        self,
        min_importance: Any = IMPORTANCE_MIN,
        max_items_per_user: Any = 60,
        *,
        now: int | None = None,
    ) -> Dict[str, List[MemoryRecord]]:
        floor = coerce_importance(min_importance, IMPORTANCE_MIN)
        cap = coerce_limit(max_items_per_user, 60, DIGEST_ITEMS_PER_USER_MAX)
        async with self.database.read() as db:
            async with db.execute(
                f"""
                SELECT {_MEMORY_COLUMNS}
                FROM memories
                WHERE trip_code IS NOT NULL
                  AND importance >= ?
                  AND {_NOT_EXPIRED_SQL}
                ORDER BY trip_code ASC, importance DESC, last_used_at DESC, created_at DESC
                """,
                (floor, _now_ts(now)),
            ) as cursor:
                rows = await cursor.fetchall()

        grouped: Dict[str, List[MemoryRecord]] = {}
        for row in rows:
            trip = row["trip_code"]
            if not trip:
                continue
            bucket = grouped.setdefault(str(trip), [])
            if len(bucket) >= cap:
                continue
            bucket.append(MemoryRecord.from_row(row))
        return grouped

    async def search_by_similarity(
        self,
        room_id: str,
        trip_code: str | None,
        query_embedding: Sequence[Any] | None,
        top_k: Any = 20,
    ) -> List[SimilarMemory] | None:
        """Nearest memories visible in ``room_id``; ``None`` when search is unavailable."""
        await self.database.init()
        if not self.database.is_search_enabled():
            return None
        vector = coerce_embedding(query_embedding)
        if vector is None:
            return []
        vectors = self.database.vectors
        vectors.validate(vector)
        bounded_top_k = coerce_limit(top_k, 20, LIST_LIMIT_MAX)

        async with self.database.read() as db:
            hits = await vectors.nearest(db, vector, bounded_top_k)
            if not hits:
                return []
            ids = [memory_id for memory_id, _ in hits]
            placeholders = ", ".join("?" for _ in ids)
            args: list[Any] = [str(room_id)]
            trip_filter = "AND trip_code IS NULL"
            trip = str(trip_code or "").strip()
            if trip:
                trip_filter = "AND (trip_code IS NULL OR trip_code = ?)"
                args.append(trip)
            async with db.execute(
                f"""
                SELECT {_MEMORY_COLUMNS}
                FROM memories
                WHERE room_id = ?
                  {trip_filter}
                  AND memory_id IN ({placeholders})
                """,
                (*args, *ids),
            ) as cursor:
                rows = await cursor.fetchall()

        by_id = {str(row["memory_id"]): MemoryRecord.from_row(row) for row in rows}
        # Orphan vectors not yet swept simply drop out here.
        return [
            SimilarMemory(memory=by_id[memory_id], distance=distance)
            for memory_id, distance in hits
            if memory_id in by_id
        ]

    async def cleanup_expired_and_orphans(self, *, now: int | None = None) -> CleanupResult:
        async with self.database.transaction() as db:
            cursor = await db.execute(
                """
                DELETE FROM memories
                WHERE ttl_days IS NOT NULL
                  AND created_at < (? - ttl_days * 86400)
                """,
                (_now_ts(now),),
            )
            removed_memories = max(0, int(cursor.rowcount or 0))
            removed_vectors = await self.database.vectors.delete_orphans(db)
        result = CleanupResult(removed_memories=removed_memories, removed_vectors=removed_vectors)
        if removed_memories or removed_vectors:
            logger.info(
                "[memory.cleanup] removed expired memories=%s orphan vectors=%s",
                removed_memories,
                removed_vectors,
            )
        return result

    async def prune_below_importance(self, min_keep_importance: Any) -> CleanupResult:
        floor = coerce_importance(min_keep_importance, IMPORTANCE_MIN)
        async with self.database.transaction() as db:
            cursor = await db.execute(
                """
                DELETE FROM memories
                WHERE trip_code IS NOT NULL
                  AND importance < ?
                """,
                (floor,),
            )
            removed_memories = max(0, int(cursor.rowcount or 0))
            removed_vectors = await self.database.vectors.delete_orphans(db)
        logger.info(
            "[memory.prune] importance<%s removed memories=%s orphan vectors=%s",
            floor,
            removed_memories,
            removed_vectors,
        )
        return CleanupResult(removed_memories=removed_memories, removed_vectors=removed_vectors)

    async def touch(self, memory_ids: Iterable[str], *, now: int | None = None) -> int:
        ids = [str(item).strip() for item in memory_ids if str(item or "").strip()]
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        async with self.database.transaction() as db:
            cursor = await db.execute(
                f"UPDATE memories SET last_used_at = ? WHERE memory_id IN ({placeholders})",
                (_now_ts(now), *ids),
            )
            return max(0, int(cursor.rowcount or 0))

    async def count(self, trip_code: str | None = None) -> int:
        query = "SELECT COUNT(*) FROM memories"
        args: tuple[Any, ...] = ()
        if trip_code:
            query += " WHERE trip_code = ?"
            args = (str(trip_code),)
        async with self.database.read() as db:
            async with db.execute(query, args) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
