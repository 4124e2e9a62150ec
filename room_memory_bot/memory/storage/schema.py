from __future__ import annotations

import logging

import aiosqlite

from .utils import IMPORTANCE_MAX, IMPORTANCE_MIN
from .vectors import VECTOR_TABLE, JsonVectorIndex, VectorIndex

logger = logging.getLogger("room_memory_bot.memory.schema")

_UNIX_NOW = "(CAST(strftime('%s', 'now') AS INTEGER))"

MEMORIES_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS memories (
    memory_id     TEXT PRIMARY KEY,
    room_id       TEXT,
    trip_code     TEXT,
    text          TEXT NOT NULL,
    tags_json     TEXT NOT NULL DEFAULT '[]',
    importance    INTEGER NOT NULL DEFAULT 3 CHECK(importance BETWEEN {IMPORTANCE_MIN} AND {IMPORTANCE_MAX}),
    ttl_days      INTEGER,
    created_at    INTEGER NOT NULL DEFAULT {_UNIX_NOW},
    last_used_at  INTEGER NOT NULL DEFAULT {_UNIX_NOW},
    FOREIGN KEY(trip_code) REFERENCES users(trip_code),
    FOREIGN KEY(room_id) REFERENCES rooms(room_id)
)
"""

MEMORIES_INDEX_SQL = (
    """
    CREATE INDEX IF NOT EXISTS idx_memories_room_trip_created
    ON memories(room_id, trip_code, created_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_memories_room_created
    ON memories(room_id, created_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_memories_trip_importance
    ON memories(trip_code, importance DESC, last_used_at DESC)
    """,
)

_IMPORTANCE_CHECK_MARKER = f"CHECK(IMPORTANCEBETWEEN{IMPORTANCE_MIN}AND{IMPORTANCE_MAX})"


def _compact_sql(sql: str) -> str:
    return "".join(sql.upper().split())


class MemorySchemaMixin:
    """Idempotent schema creation plus structurally-detected migrations."""

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            f"""
            CREATE TABLE IF NOT EXISTS rooms (
                room_id       TEXT PRIMARY KEY,
                created_at    INTEGER NOT NULL DEFAULT {_UNIX_NOW},
                last_seen_at  INTEGER NOT NULL DEFAULT {_UNIX_NOW},
                room_summary  TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS users (
                trip_code         TEXT PRIMARY KEY,
                last_display_name TEXT NOT NULL DEFAULT '',
                created_at        INTEGER NOT NULL DEFAULT {_UNIX_NOW},
                last_seen_at      INTEGER NOT NULL DEFAULT {_UNIX_NOW}
            );

            CREATE TABLE IF NOT EXISTS user_profile (
                trip_code          TEXT PRIMARY KEY,
                profile_json       TEXT NOT NULL DEFAULT '{{}}',
                memory_digest_json TEXT NOT NULL DEFAULT '{{}}',
                updated_at         INTEGER NOT NULL DEFAULT {_UNIX_NOW},
                FOREIGN KEY(trip_code) REFERENCES users(trip_code)
            );

            {MEMORIES_TABLE_SQL};
            """
        )
        await self._create_memory_indexes(db)

    async def _create_memory_indexes(self, db: aiosqlite.Connection) -> None:
        for statement in MEMORIES_INDEX_SQL:
            await db.execute(statement)

    async def _table_columns(self, db: aiosqlite.Connection, table_name: str) -> dict[str, int]:
        """Column name -> notnull flag, from live table metadata."""
        cols: dict[str, int] = {}
        async with db.execute(f"PRAGMA table_info({table_name})") as cursor:
            rows = await cursor.fetchall()
        for row in rows:
            cols[str(row[1])] = int(row[3])
        return cols

    async def _table_sql(self, db: aiosqlite.Connection, table_name: str) -> str:
        async with db.execute(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table_name,),
        ) as cursor:
            row = await cursor.fetchone()
        return str(row[0] or "") if row else ""

    async def _add_column_if_missing(self, db: aiosqlite.Connection, table_name: str, column_sql: str) -> bool:
        column_name = str(column_sql.split()[0]).strip()
        if not column_name:
            return False
        cols = await self._table_columns(db, table_name)
        if column_name in cols:
            return False
        await db.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_sql}")
        logger.info("[db] migration: added %s.%s", table_name, column_name)
        return True

    async def _migrate_user_profile_digest_column(self, db: aiosqlite.Connection) -> bool:
        return await self._add_column_if_missing(
            db,
            "user_profile",
            "memory_digest_json TEXT NOT NULL DEFAULT '{}'",
        )

    async def _memories_needs_rebuild(self, db: aiosqlite.Connection) -> bool:
        cols = await self._table_columns(db, "memories")
        if "room_id" not in cols:
            return False
        room_nullable = cols["room_id"] == 0
        has_range_check = _IMPORTANCE_CHECK_MARKER in _compact_sql(await self._table_sql(db, "memories"))
        return not (room_nullable and has_range_check)

    async def _foreign_keys_enabled(self, db: aiosqlite.Connection) -> bool:
        async with db.execute("PRAGMA foreign_keys") as cursor:
            row = await cursor.fetchone()
        return bool(row and int(row[0]))

    async def _migrate_memories_table(self, db: aiosqlite.Connection, vectors: VectorIndex) -> bool:
        """Rebuild ``memories`` to allow a null room and enforce importance in [1, 10]."""
        if not await self._memories_needs_rebuild(db):
            return False

        # Only JSON vectors carry a foreign key that has to follow the rebuilt table.
        json_vectors = isinstance(vectors, JsonVectorIndex)
        statements: list[str] = []
        if json_vectors:
            statements += [
                """
                CREATE TABLE IF NOT EXISTS memory_vec_backup (
                    memory_id      TEXT PRIMARY KEY,
                    embedding_json TEXT NOT NULL
                )
                """,
                "DELETE FROM memory_vec_backup",
                f"""
                INSERT INTO memory_vec_backup (memory_id, embedding_json)
                SELECT memory_id, embedding_json FROM {VECTOR_TABLE}
                """,
                f"DROP TABLE IF EXISTS {VECTOR_TABLE}",
            ]
        statements += [
            "DROP INDEX IF EXISTS idx_memories_room_trip_created",
            "DROP INDEX IF EXISTS idx_memories_room_created",
            "DROP INDEX IF EXISTS idx_memories_trip_importance",
            "ALTER TABLE memories RENAME TO memories_legacy",
            MEMORIES_TABLE_SQL,
            f"""
            INSERT INTO memories (
                memory_id, room_id, trip_code, text, tags_json, importance, ttl_days, created_at, last_used_at
            )
            SELECT
                memory_id,
                room_id,
                trip_code,
                text,
                COALESCE(tags_json, '[]'),
                CASE
                    WHEN importance IS NULL THEN 3
                    WHEN importance < {IMPORTANCE_MIN} THEN {IMPORTANCE_MIN}
                    WHEN importance > {IMPORTANCE_MAX} THEN {IMPORTANCE_MAX}
                    ELSE CAST(importance AS INTEGER)
                END,
                ttl_days,
                created_at,
                last_used_at
            FROM memories_legacy
            """,
            "DROP TABLE memories_legacy",
            *MEMORIES_INDEX_SQL,
        ]
        if json_vectors:
            statements += [
                f"""
                CREATE TABLE IF NOT EXISTS {VECTOR_TABLE} (
                    memory_id      TEXT PRIMARY KEY,
                    embedding_json TEXT NOT NULL,
                    FOREIGN KEY(memory_id) REFERENCES memories(memory_id) ON DELETE CASCADE
                )
                """,
                f"""
                INSERT INTO {VECTOR_TABLE} (memory_id, embedding_json)
                SELECT b.memory_id, b.embedding_json
                FROM memory_vec_backup AS b
                INNER JOIN memories AS m ON m.memory_id = b.memory_id
                WHERE 1 = 1
                ON CONFLICT(memory_id) DO UPDATE SET
                    embedding_json = excluded.embedding_json
                """,
                "DROP TABLE IF EXISTS memory_vec_backup",
            ]

        # PRAGMA foreign_keys is a no-op inside a transaction, so toggle it around one.
        fk_enabled = await self._foreign_keys_enabled(db)
        await db.execute("PRAGMA foreign_keys = OFF")
        try:
            await db.execute("BEGIN IMMEDIATE")
            try:
                for statement in statements:
                    await db.execute(statement)
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")
        finally:
            await db.execute(f"PRAGMA foreign_keys = {'ON' if fk_enabled else 'OFF'}")

        logger.info("[db] migration: rebuilt memories table (nullable room_id, importance %s..%s)", IMPORTANCE_MIN, IMPORTANCE_MAX)
        return True
