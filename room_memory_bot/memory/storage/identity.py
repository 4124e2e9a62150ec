from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import aiosqlite

from ..models import MemoryDigest, UserProfile, normalize_digest
from .database import MemoryDatabase
from .utils import _now_ts, _optional_int, dump_json, load_json_object

logger = logging.getLogger("room_memory_bot.memory.identity")


def _require(value: Any, name: str) -> str:
    cleaned = str(value or "").strip()
    if not cleaned:
        raise ValueError(f"{name} is required")
    return cleaned


async def upsert_room_row(db: aiosqlite.Connection, room_id: str, seen_at: int) -> None:
    await db.execute(
        """
        INSERT INTO rooms (room_id, created_at, last_seen_at)
        VALUES (?, ?, ?)
        ON CONFLICT(room_id) DO UPDATE SET
            last_seen_at = excluded.last_seen_at
        """,
        (room_id, seen_at, seen_at),
    )


async def upsert_user_row(db: aiosqlite.Connection, trip_code: str, display_name: str, seen_at: int) -> None:
    # A blank name is a heartbeat without a nickname; keep the one we already know.
    await db.execute(
        """
        INSERT INTO users (trip_code, last_display_name, created_at, last_seen_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(trip_code) DO UPDATE SET
            last_display_name = CASE
                WHEN excluded.last_display_name = '' THEN users.last_display_name
                ELSE excluded.last_display_name
            END,
            last_seen_at = excluded.last_seen_at
        """,
        (trip_code, str(display_name or "").strip(), seen_at, seen_at),
    )


class IdentityRepository:
    """Rooms, users and the per-user profile/digest documents."""

    def __init__(self, database: MemoryDatabase) -> None:
        self.database = database

    async def ingest_identity(
        self,
        room_id: str,
        trip_code: str,
        display_name: str,
        seen_at: int | None = None,
    ) -> None:
        room = _require(room_id, "room_id")
        trip = _require(trip_code, "trip_code")
        name = _require(display_name, "display_name")
        ts = _now_ts(seen_at)
        async with self.database.transaction() as db:
            await upsert_room_row(db, room, ts)
            await upsert_user_row(db, trip, name, ts)

    async def upsert_room(self, room_id: str, last_seen_at: int | None = None) -> None:
        room = _require(room_id, "room_id")
        async with self.database.transaction() as db:
            await upsert_room_row(db, room, _now_ts(last_seen_at))

    async def upsert_user(self, trip_code: str, display_name: str = "", last_seen_at: int | None = None) -> None:
        trip = _require(trip_code, "trip_code")
        async with self.database.transaction() as db:
            await upsert_user_row(db, trip, display_name, _now_ts(last_seen_at))

    async def set_room_summary(self, room_id: str, summary: str, *, now: int | None = None) -> None:
        room = _require(room_id, "room_id")
        ts = _now_ts(now)
        async with self.database.transaction() as db:
            await upsert_room_row(db, room, ts)
            await db.execute(
                "UPDATE rooms SET room_summary = ? WHERE room_id = ?",
                (str(summary or "").strip(), room),
            )

    async def get_room(self, room_id: str) -> Optional[Dict[str, Any]]:
        async with self.database.read() as db:
            async with db.execute(
                """
                SELECT room_id, created_at, last_seen_at, room_summary
                FROM rooms
                WHERE room_id = ?
                """,
                (str(room_id),),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "room_id": str(row["room_id"]),
            "created_at": int(row["created_at"]),
            "last_seen_at": int(row["last_seen_at"]),
            "room_summary": str(row["room_summary"] or ""),
        }

    async def get_user(self, trip_code: str) -> Optional[Dict[str, Any]]:
        async with self.database.read() as db:
            async with db.execute(
                """
                SELECT trip_code, last_display_name, created_at, last_seen_at
                FROM users
                WHERE trip_code = ?
                """,
                (str(trip_code),),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "trip_code": str(row["trip_code"]),
            "last_display_name": str(row["last_display_name"] or ""),
            "created_at": int(row["created_at"]),
            "last_seen_at": int(row["last_seen_at"]),
        }

    async def upsert_profile(
        self,
        trip_code: str,
        profile: UserProfile | Mapping[str, Any],
        updated_at: int | None = None,
    ) -> None:
        trip = _require(trip_code, "trip_code")
        ts = _now_ts(updated_at)
        if not isinstance(profile, UserProfile):
            profile = UserProfile.from_dict(profile)
        async with self.database.transaction() as db:
            await upsert_user_row(db, trip, "", ts)
            await db.execute(
                """
                INSERT INTO user_profile (trip_code, profile_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(trip_code) DO UPDATE SET
                    profile_json = excluded.profile_json,
                    updated_at = excluded.updated_at
                """,
                (trip, dump_json(profile.as_dict()), ts),
            )

    async def upsert_memory_digest(
        self,
        trip_code: str,
        digest: MemoryDigest | Mapping[str, Any],
        updated_at: int | None = None,
    ) -> None:
        trip = _require(trip_code, "trip_code")
        ts = _now_ts(updated_at)
        if not isinstance(digest, MemoryDigest):
            digest = normalize_digest(digest, ts)
        payload = digest.as_dict()
        payload["updated_at"] = ts
        async with self.database.transaction() as db:
            await upsert_user_row(db, trip, "", ts)
            await db.execute(
                """
                INSERT INTO user_profile (trip_code, memory_digest_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(trip_code) DO UPDATE SET
                    memory_digest_json = excluded.memory_digest_json,
                    updated_at = excluded.updated_at
                """,
                (trip, dump_json(payload), ts),
            )

    async def _profile_row(self, trip_code: str) -> aiosqlite.Row | None:
        async with self.database.read() as db:
            async with db.execute(
                """
                SELECT profile_json, memory_digest_json
                FROM user_profile
                WHERE trip_code = ?
                """,
                (str(trip_code),),
            ) as cursor:
                return await cursor.fetchone()

    async def get_profile(self, trip_code: str) -> UserProfile | None:
        row = await self._profile_row(trip_code)
        if row is None:
            return None
        raw = load_json_object(row["profile_json"])
        if not raw:
            if raw is None:
                logger.debug("[db] unreadable profile_json for trip=%s", trip_code)
            return None
        return UserProfile.from_dict(raw)

    async def get_memory_digest(self, trip_code: str) -> MemoryDigest | None:
        row = await self._profile_row(trip_code)
        if row is None:
            return None
        raw = load_json_object(row["memory_digest_json"])
        if raw is None:
            logger.debug("[db] unreadable memory_digest_json for trip=%s", trip_code)
            return None
        digest = normalize_digest(raw, _optional_int(raw.get("updated_at")))
        if digest.is_empty:
            return None
        return digest
