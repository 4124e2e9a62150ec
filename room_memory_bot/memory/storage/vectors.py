from __future__ import annotations

import enum
import json
import logging
from abc import ABC, abstractmethod
from typing import Sequence

import aiosqlite

logger = logging.getLogger("room_memory_bot.memory.vectors")

VECTOR_TABLE = "memory_vec"


class VectorMode(str, enum.Enum):
    ACCELERATED = "vec0"
    FALLBACK = "json_fallback"


async def negotiate_vector_mode(db: aiosqlite.Connection, extension_path: str | None) -> VectorMode:
    """Load the similarity-search extension if configured; any failure selects the fallback mode."""
    path = str(extension_path or "").strip()
    if not path:
        return VectorMode.FALLBACK
    try:
        await db.enable_load_extension(True)
        try:
            await db.load_extension(path)
        finally:
            await db.enable_load_extension(False)
    except Exception as exc:
        logger.warning("[db] failed to load vector extension %s, falling back to JSON vectors: %s", path, exc)
        return VectorMode.FALLBACK
    logger.info("[db] loaded vector extension: %s", path)
    return VectorMode.ACCELERATED


async def existing_vector_table_sql(db: aiosqlite.Connection) -> str | None:
    async with db.execute(
        "SELECT sql FROM sqlite_master WHERE name = ? AND type = 'table'",
        (VECTOR_TABLE,),
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        return None
    return str(row[0] or "")


def is_virtual_vec0_sql(table_sql: str) -> bool:
    normalized = " ".join(table_sql.upper().split())
    return normalized.startswith("CREATE VIRTUAL TABLE") and "USING VEC0" in normalized


class VectorIndex(ABC):
    """One physical representation of the memory_id -> embedding mapping."""

    mode: VectorMode
    writes_enabled = True

    def __init__(self, embedding_dim: int) -> None:
        self.embedding_dim = int(embedding_dim)

    @property
    def search_enabled(self) -> bool:
        return self.mode is VectorMode.ACCELERATED

    @abstractmethod
    async def create_table(self, db: aiosqlite.Connection) -> None: ...

    @abstractmethod
    async def upsert(self, db: aiosqlite.Connection, memory_id: str, embedding: Sequence[float]) -> None: ...

    @abstractmethod
    async def nearest(
        self,
        db: aiosqlite.Connection,
        query_embedding: Sequence[float],
        top_k: int,
    ) -> list[tuple[str, float]]: ...

    def validate(self, embedding: Sequence[float]) -> None:
        return None

    async def delete_orphans(self, db: aiosqlite.Connection) -> int:
        cursor = await db.execute(
            f"""
            DELETE FROM {VECTOR_TABLE}
            WHERE memory_id NOT IN (SELECT memory_id FROM memories)
            """
        )
        return max(0, int(cursor.rowcount or 0))


class Vec0VectorIndex(VectorIndex):
    mode = VectorMode.ACCELERATED

    async def create_table(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS {VECTOR_TABLE}
            USING vec0(
                memory_id TEXT PRIMARY KEY,
                embedding FLOAT[{self.embedding_dim}]
            )
            """
        )

    def validate(self, embedding: Sequence[float]) -> None:
        if len(embedding) != self.embedding_dim:
            raise ValueError(
                f"embedding has {len(embedding)} dimensions, vector index expects {self.embedding_dim}"
            )

    async def upsert(self, db: aiosqlite.Connection, memory_id: str, embedding: Sequence[float]) -> None:
        # vec0 has no UPSERT support.
        await db.execute(f"DELETE FROM {VECTOR_TABLE} WHERE memory_id = ?", (memory_id,))
        await db.execute(
            f"INSERT INTO {VECTOR_TABLE} (memory_id, embedding) VALUES (?, ?)",
            (memory_id, json.dumps(list(embedding))),
        )

    async def nearest(
        self,
        db: aiosqlite.Connection,
        query_embedding: Sequence[float],
        top_k: int,
    ) -> list[tuple[str, float]]:
        async with db.execute(
            f"""
            SELECT memory_id, distance
            FROM {VECTOR_TABLE}
            WHERE embedding MATCH ?
              AND k = ?
            ORDER BY distance
            """,
            (json.dumps(list(query_embedding)), int(top_k)),
        ) as cursor:
            rows = await cursor.fetchall()
        return [(str(row[0]), float(row[1])) for row in rows]


class JsonVectorIndex(VectorIndex):
    mode = VectorMode.FALLBACK

    async def create_table(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {VECTOR_TABLE} (
                memory_id TEXT PRIMARY KEY,
                embedding_json TEXT NOT NULL,
                FOREIGN KEY(memory_id) REFERENCES memories(memory_id) ON DELETE CASCADE
            )
            """
        )

    async def upsert(self, db: aiosqlite.Connection, memory_id: str, embedding: Sequence[float]) -> None:
        await db.execute(
            f"""
            INSERT INTO {VECTOR_TABLE} (memory_id, embedding_json)
            VALUES (?, ?)
            ON CONFLICT(memory_id) DO UPDATE SET
                embedding_json = excluded.embedding_json
            """,
            (memory_id, json.dumps(list(embedding))),
        )

    async def nearest(
        self,
        db: aiosqlite.Connection,
        query_embedding: Sequence[float],
        top_k: int,
    ) -> list[tuple[str, float]]:
        # Embeddings are persisted for a later index rebuild; there is no brute-force search.
        raise NotImplementedError("similarity search requires the vec0 extension")


class DetachedVec0Index(VectorIndex):
    """Stand-in for an existing vec0 table whose extension could not be loaded.

    The table is left untouched: new embeddings are dropped and search stays disabled.
    """

    mode = VectorMode.FALLBACK
    writes_enabled = False

    async def create_table(self, db: aiosqlite.Connection) -> None:
        return None

    async def upsert(self, db: aiosqlite.Connection, memory_id: str, embedding: Sequence[float]) -> None:
        logger.debug("[db] vec0 extension not loaded, dropping embedding for memory_id=%s", memory_id)

    async def nearest(
        self,
        db: aiosqlite.Connection,
        query_embedding: Sequence[float],
        top_k: int,
    ) -> list[tuple[str, float]]:
        raise NotImplementedError("similarity search requires the vec0 extension")

    async def delete_orphans(self, db: aiosqlite.Connection) -> int:
        return 0


def build_vector_index(mode: VectorMode, embedding_dim: int) -> VectorIndex:
    if mode is VectorMode.ACCELERATED:
        return Vec0VectorIndex(embedding_dim)
    return JsonVectorIndex(embedding_dim)
