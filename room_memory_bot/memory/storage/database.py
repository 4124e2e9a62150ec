from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from .schema import MemorySchemaMixin
from .utils import sqlite_busy_timeout_ms
from .vectors import (
    DetachedVec0Index,
    VectorIndex,
    VectorMode,
    build_vector_index,
    existing_vector_table_sql,
    is_virtual_vec0_sql,
    negotiate_vector_mode,
)

logger = logging.getLogger("room_memory_bot.memory.db")


@dataclass(frozen=True, slots=True)
class DatabaseInfo:
    db_path: str
    vector_mode: str
    embedding_dim: int
    initialized: bool


class MemoryDatabase(MemorySchemaMixin):
    """Single SQLite connection shared by the repositories.

    ``init()`` is idempotent: the first caller opens the connection, negotiates the
    vector mode and applies schema/migrations; everyone else gets the same info back.
    Writes are serialized through ``transaction()``.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        vector_extension_path: str | None = None,
        embedding_dim: int = 1536,
        busy_timeout_ms: int | None = None,
    ) -> None:
        self.db_path = Path(db_path)
        self.vector_extension_path = vector_extension_path
        self.embedding_dim = max(1, int(embedding_dim))
        self.busy_timeout_ms = sqlite_busy_timeout_ms() if busy_timeout_ms is None else max(0, int(busy_timeout_ms))
        self._conn: aiosqlite.Connection | None = None
        self._vectors: VectorIndex | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    async def __aenter__(self) -> "MemoryDatabase":
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def vector_mode(self) -> VectorMode:
        if self._vectors is None:
            return VectorMode.FALLBACK
        return self._vectors.mode

    @property
    def vectors(self) -> VectorIndex:
        if self._vectors is None:
            raise RuntimeError("MemoryDatabase.init() has not completed")
        return self._vectors

    def is_search_enabled(self) -> bool:
        return self._vectors is not None and self._vectors.search_enabled

    def info(self) -> DatabaseInfo:
        return DatabaseInfo(
            db_path=str(self.db_path),
            vector_mode=self.vector_mode.value,
            embedding_dim=self.embedding_dim,
            initialized=self._initialized,
        )

    async def _open_connection(self) -> aiosqlite.Connection:
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit; every multi-statement write opens its own BEGIN IMMEDIATE.
        db = await aiosqlite.connect(self.db_path, isolation_level=None)
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA foreign_keys=ON")
        if self.busy_timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")
        return db

    async def init(self) -> DatabaseInfo:
        if self._initialized:
            return self.info()
        async with self._init_lock:
            if self._initialized:
                return self.info()
            db = await self._open_connection()
            try:
                mode = await negotiate_vector_mode(db, self.vector_extension_path)
                await self._create_schema(db)
                vectors = await self._create_vector_table(db, mode)
                await self._migrate_user_profile_digest_column(db)
                await self._migrate_memories_table(db, vectors)
            except BaseException:
                await db.close()
                raise
            self._conn = db
            self._vectors = vectors
            self._initialized = True
            logger.info(
                "[db] ready: path=%s vector_mode=%s embedding_dim=%s",
                self.db_path,
                vectors.mode.value,
                self.embedding_dim,
            )
            return self.info()

    async def _create_vector_table(self, db: aiosqlite.Connection, mode: VectorMode) -> VectorIndex:
        existing_sql = await existing_vector_table_sql(db)
        if existing_sql is not None:
            existing_is_vec0 = is_virtual_vec0_sql(existing_sql)
            if existing_is_vec0 and mode is not VectorMode.ACCELERATED:
                logger.error(
                    "[db] memory_vec is a vec0 table but the vector extension is not loaded (tried %r); "
                    "search and vector writes are disabled until SQLITE_VECTOR_EXTENSION_PATH points at it",
                    self.vector_extension_path or "",
                )
                return DetachedVec0Index(self.embedding_dim)
            if not existing_is_vec0 and mode is VectorMode.ACCELERATED:
                logger.warning("[db] memory_vec already holds JSON vectors, keeping the fallback mode")
                mode = VectorMode.FALLBACK

        if mode is VectorMode.ACCELERATED:
            vectors = build_vector_index(mode, self.embedding_dim)
            try:
                await vectors.create_table(db)
                return vectors
            except Exception as exc:
                logger.warning("[db] vec0 table init failed, falling back to JSON vectors: %s", exc)

        vectors = build_vector_index(VectorMode.FALLBACK, self.embedding_dim)
        await vectors.create_table(db)
        return vectors

    async def _connection(self) -> aiosqlite.Connection:
        if not self._initialized:
            await self.init()
        assert self._conn is not None
        return self._conn

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        yield await self._connection()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        db = await self._connection()
        async with self._write_lock:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    async def ping(self) -> None:
        async with self.read() as db:
            await db.execute("SELECT 1")

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
        self._conn = None
        self._vectors = None
        self._initialized = False
