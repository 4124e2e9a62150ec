from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from room_memory_bot.memory import IdentityRepository, MemoryDatabase  # noqa: E402
from room_memory_bot.memory.models import UserProfile  # noqa: E402


def test_identity_heartbeat_refreshes_last_seen(tmp_path: Path) -> None:
    async def scenario() -> None:
        async with MemoryDatabase(tmp_path / "memory.db") as db:
            repo = IdentityRepository(db)
            await repo.ingest_identity("r1", "u1", "Alice", seen_at=100)
            await repo.ingest_identity("r1", "u1", "Alicia", seen_at=200)

            user = await repo.get_user("u1")
            room = await repo.get_room("r1")
            assert user == {"trip_code": "u1", "last_display_name": "Alicia", "created_at": 100, "last_seen_at": 200}
            assert room is not None
            assert (room["created_at"], room["last_seen_at"], room["room_summary"]) == (100, 200, "")

    asyncio.run(scenario())


def test_blank_display_name_keeps_known_name(tmp_path: Path) -> None:
    async def scenario() -> None:
        async with MemoryDatabase(tmp_path / "memory.db") as db:
            repo = IdentityRepository(db)
            await repo.upsert_user("u1", "Alice", 100)
            await repo.upsert_user("u1", "   ", 300)

            user = await repo.get_user("u1")
            assert user is not None
            assert user["last_display_name"] == "Alice"
            assert user["last_seen_at"] == 300

    asyncio.run(scenario())


def test_ingest_identity_requires_all_fields(tmp_path: Path) -> None:
    async def scenario() -> None:
        async with MemoryDatabase(tmp_path / "memory.db") as db:
            repo = IdentityRepository(db)
            with pytest.raises(ValueError):
                await repo.ingest_identity("r1", "u1", "")
            with pytest.raises(ValueError):
                await repo.ingest_identity("", "u1", "Alice")
            assert await repo.get_room("r1") is None
            assert await repo.get_user("u1") is None

    asyncio.run(scenario())


def test_profile_round_trip_and_corrupted_json(tmp_path: Path) -> None:
    async def scenario() -> None:
        async with MemoryDatabase(tmp_path / "memory.db") as db:
            repo = IdentityRepository(db)
            assert await repo.get_profile("u1") is None

            await repo.upsert_profile(
                "u1",
                UserProfile(common_name="Liam", likes=["coffee"], display_name="liam_x"),
                updated_at=500,
            )
            profile = await repo.get_profile("u1")
            assert profile is not None
            assert profile.common_name == "Liam"
            assert profile.likes == ["coffee"]
            assert profile.display_name == "liam_x"
            # The owning user row is created alongside the profile.
            assert await repo.get_user("u1") is not None

            async with db.read() as conn:
                await conn.execute("UPDATE user_profile SET profile_json = '{not json' WHERE trip_code = 'u1'")
            assert await repo.get_profile("u1") is None

    asyncio.run(scenario())


def test_memory_digest_round_trip_is_normalized(tmp_path: Path) -> None:
    async def scenario() -> None:
        async with MemoryDatabase(tmp_path / "memory.db") as db:
            repo = IdentityRepository(db)
            await repo.upsert_memory_digest(
                "u1",
                {
                    "highlights": ["plays chess", "Plays Chess", " ", "moved to Osaka"],
                    "ongoing_threads": [
                        {"topic": "exam", "status": "preparing", "note": ""},
                        {"status": "orphan status only"},
                        "not an object",
                    ],
                    "stable_preferences": ["no spoilers"],
                },
                updated_at=700,
            )

            digest = await repo.get_memory_digest("u1")
            assert digest is not None
            assert digest.highlights == ["plays chess", "moved to Osaka"]
            assert [thread.topic for thread in digest.ongoing_threads] == ["exam"]
            assert digest.stable_preferences == ["no spoilers"]
            assert digest.updated_at == 700

            # Writing the digest must not clobber the profile document and vice versa.
            await repo.upsert_profile("u1", {"common_name": "Kai"}, updated_at=800)
            assert (await repo.get_memory_digest("u1")) is not None
            profile = await repo.get_profile("u1")
            assert profile is not None and profile.common_name == "Kai"

            async with db.read() as conn:
                await conn.execute("UPDATE user_profile SET memory_digest_json = '[1, 2]' WHERE trip_code = 'u1'")
            assert await repo.get_memory_digest("u1") is None

    asyncio.run(scenario())


def test_room_summary_is_writable(tmp_path: Path) -> None:
    async def scenario() -> None:
        async with MemoryDatabase(tmp_path / "memory.db") as db:
            repo = IdentityRepository(db)
            await repo.set_room_summary("r1", "  weekly book club  ", now=42)
            room = await repo.get_room("r1")
            assert room is not None
            assert room["room_summary"] == "weekly book club"
            assert room["last_seen_at"] == 42

    asyncio.run(scenario())


def test_room_upsert_keeps_creation_time(tmp_path: Path) -> None:
    async def scenario() -> None:
        async with MemoryDatabase(tmp_path / "memory.db") as db:
            repo = IdentityRepository(db)
            await repo.upsert_room("lobby", 10)
            await repo.upsert_room("lobby", 20)
            room = await repo.get_room("lobby")
            assert room is not None
            assert (room["created_at"], room["last_seen_at"]) == (10, 20)
            with pytest.raises(ValueError):
                await repo.upsert_room("  ")

    asyncio.run(scenario())
