from __future__ import annotations

import asyncio
import sys
from dataclasses import replace
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from room_memory_bot.config import Settings  # noqa: E402
from room_memory_bot.memory.factory import build_memory_store  # noqa: E402
from room_memory_bot.memory.models import NewMemory, ProfileFragment, normalize_memory_items  # noqa: E402

NOW = 1_700_000_000


class _FakeExtractor:
    def __init__(self, fragment: ProfileFragment) -> None:
        self.fragment = fragment
        self.calls: list[str] = []

    async def extract(self, content: str) -> ProfileFragment:
        self.calls.append(content)
        return self.fragment


def _settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, **env: str) -> Settings:
    monkeypatch.setenv("SQLITE_PATH", str(tmp_path / "store.sqlite3"))
    monkeypatch.delenv("SQLITE_VECTOR_EXTENSION_PATH", raising=False)
    monkeypatch.delenv("MEMORY_DEFAULT_TTL_DAYS", raising=False)
    monkeypatch.delenv("PROFILE_COMMAND", raising=False)
    monkeypatch.delenv("MEMORY_STARTUP_CLEANUP", raising=False)
    monkeypatch.delenv("MEMORY_STORE_ENABLED", raising=False)
    monkeypatch.delenv("MEMORY_STORE_MIN_IMPORTANCE", raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return Settings.from_env()


def test_user_context_combines_profile_digest_and_memories(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    settings = _settings(monkeypatch, tmp_path, MEMORY_PROMPT_MAX_ITEMS="2")

    async def scenario() -> None:
        store = build_memory_store(settings)
        try:
            info = await store.open()
            assert info.vector_mode == "json_fallback"

            await store.identities.upsert_profile("u1", {"common_name": "Liam", "likes": ["tea", "go"]}, updated_at=NOW)
            await store.identities.upsert_memory_digest("u1", {"highlights": ["moved to Osaka"]}, updated_at=NOW)
            for importance in (3, 9, 6):
                await store.memories.insert(
                    NewMemory(text=f"fact {importance}", room_id="r1", trip_code="u1", importance=importance),
                    now=NOW,
                )

            context = await store.user_context("u1", now=NOW + 100)
            assert "- common_name: Liam" in context.profile_context
            assert "- likes: tea, go" in context.profile_context
            assert "\n\nMemory highlights:\n- moved to Osaka" in context.profile_context
            assert [item.importance for item in context.memories] == [9, 6]
            assert [item["text"] for item in context.memory_items()] == ["fact 9", "fact 6"]

            refreshed = await store.memories.list_by_user("u1", now=NOW + 100)
            last_used = {item.text: item.last_used_at for item in refreshed}
            assert last_used == {"fact 9": NOW + 100, "fact 6": NOW + 100, "fact 3": NOW}
        finally:
            await store.close()

    asyncio.run(scenario())


def test_user_context_for_unknown_user_is_empty(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    settings = _settings(monkeypatch, tmp_path)

    async def scenario() -> None:
        store = build_memory_store(settings)
        try:
            await store.open(startup_cleanup=False)
            context = await store.user_context("nobody", now=NOW)
            assert context.profile_context == ""
            assert context.memories == []
        finally:
            await store.close()

    asyncio.run(scenario())


def test_startup_cleanup_removes_expired_rows(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    settings = _settings(monkeypatch, tmp_path)

    async def scenario() -> None:
        store = build_memory_store(settings)
        try:
            await store.open(startup_cleanup=False)
            await store.memories.insert(
                NewMemory(text="stale", trip_code="u1", ttl_days=1, created_at=NOW - 5 * 86400)
            )
        finally:
            await store.close()

        reopened = build_memory_store(settings)
        try:
            await reopened.open()
            assert await reopened.memories.count() == 0
        finally:
            await reopened.close()

    asyncio.run(scenario())


def test_apply_profile_command_merges_and_persists(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    settings = _settings(monkeypatch, tmp_path)

    async def scenario() -> None:
        store = build_memory_store(settings)
        try:
            await store.open()
            extractor = _FakeExtractor(ProfileFragment(common_name="Liam", likes=["coffee"]))

            assert await store.apply_profile_command("u1", "liam_x", "hello there", extractor) is None
            assert extractor.calls == []

            with pytest.raises(ValueError):
                await store.apply_profile_command("u1", "liam_x", "setprofile:   ", extractor)

            await store.identities.upsert_profile("u1", {"location": "Berlin", "likes": ["tea"]}, updated_at=NOW)
            merged = await store.apply_profile_command(
                "u1", "liam_x", "setprofile: call me Liam, I like coffee", extractor, now=NOW + 1
            )
            assert merged is not None
            assert extractor.calls == ["call me Liam, I like coffee"]

            stored = await store.identities.get_profile("u1")
            assert stored is not None
            assert stored.common_name == "Liam"
            assert stored.location == "Berlin"
            assert stored.likes == ["tea", "coffee"]
            assert stored.display_name == "liam_x"
            assert stored.updated_at == NOW + 1

            user = await store.identities.get_user("u1")
            assert user is not None and user["last_display_name"] == "liam_x"
        finally:
            await store.close()

    asyncio.run(scenario())


def test_settings_read_env_and_validate(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    settings = _settings(
        monkeypatch,
        tmp_path,
        MEMORY_DEFAULT_TTL_DAYS="none",
        MEMORY_PROMPT_MAX_ITEMS="not-a-number",
        PROFILE_COMMAND="  !me  ",
        MEMORY_STARTUP_CLEANUP="off",
    )
    assert settings.sqlite_path == tmp_path / "store.sqlite3"
    assert settings.memory_default_ttl_days is None
    assert settings.memory_prompt_max_items == 10
    assert settings.profile_command == "!me"
    assert settings.memory_startup_cleanup is False
    settings.validate()

    with pytest.raises(ValueError, match="MEMORY_DEFAULT_IMPORTANCE"):
        replace(settings, memory_default_importance=11).validate()
    with pytest.raises(ValueError, match="EMBEDDING_DIM"):
        replace(settings, embedding_dim=0).validate()
    with pytest.raises(ValueError, match="MEMORY_DEFAULT_TTL_DAYS"):
        replace(settings, memory_default_ttl_days=0).validate()
    with pytest.raises(ValueError, match="DEEPSEEK_API_KEY"):
        replace(settings, deepseek_api_key="").validate(require_llm=True)
    with pytest.raises(ValueError, match="MEMORY_STORE_MIN_IMPORTANCE"):
        replace(settings, memory_store_min_importance=0).validate()


def test_normalize_memory_items_accepts_both_shapes() -> None:
    nested = {
        "reply": "sure",
        "memory": {
            "items": [
                {"text": "  plays go on weekends ", "importance": "7.9", "tags": ["Games", "games", " ", 3, "go"]},
                {"text": "   ", "importance": 9},
                "not an object",
                ["also", "not"],
                {"text": "no score given"},
                {"text": "way too important", "importance": 99, "tags": [f"t{index}" for index in range(12)]},
            ]
        },
    }
    items = normalize_memory_items(nested, default_importance=4)
    assert [item.text for item in items] == ["plays go on weekends", "no score given", "way too important"]
    assert [item.importance for item in items] == [7, 4, 10]
    assert items[0].tags == ["Games", "go"]
    assert items[2].tags == [f"t{index}" for index in range(8)]

    flat = normalize_memory_items({"items": [{"text": "flat shape", "importance": 2}]})
    assert [(item.text, item.importance) for item in flat] == [("flat shape", 2)]

    assert normalize_memory_items({"memory": "junk", "items": [{"text": "top level", "importance": 3}]})[0].text == "top level"
    assert normalize_memory_items(None) == []
    assert normalize_memory_items({"memory": {"items": "nope"}}) == []

    gated = normalize_memory_items(nested, min_importance=5)
    assert [item.text for item in gated] == ["plays go on weekends", "way too important"]


def test_store_extracted_memories_writes_with_default_ttl(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    settings = _settings(
        monkeypatch,
        tmp_path,
        MEMORY_DEFAULT_TTL_DAYS="30",
        MEMORY_STORE_MIN_IMPORTANCE="4",
    )
    raw_output = {
        "memory": {
            "items": [
                {"text": "moved to Osaka", "importance": 8, "tags": ["Life", "life", "city"]},
                {"text": "said hello", "importance": 2},
                {"text": "odd score", "importance": "high"},
            ]
        }
    }

    async def scenario() -> None:
        store = build_memory_store(settings)
        try:
            await store.open(startup_cleanup=False)
            assert await store.store_extracted_memories("r1", "", "Liam", raw_output, now=NOW) == []
            assert await store.store_extracted_memories("r1", None, "Liam", raw_output, now=NOW) == []

            stored = await store.store_extracted_memories("r1", "u1", "Liam", raw_output, now=NOW)
            assert len(stored) == 1
            [record] = await store.memories.list_by_user("u1", now=NOW)
            assert record.memory_id == stored[0]
            assert record.text == "moved to Osaka"
            assert record.room_id == "r1"
            assert record.importance == 8
            assert record.tags == ["Life", "city"]
            assert record.ttl_days == 30
            assert record.created_at == NOW

            user = await store.identities.get_user("u1")
            assert user is not None and user["last_display_name"] == "Liam"
        finally:
            await store.close()

    asyncio.run(scenario())


def test_store_extracted_memories_can_be_switched_off(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    settings = _settings(monkeypatch, tmp_path, MEMORY_STORE_ENABLED="false")
    assert settings.memory_store_enabled is False

    async def scenario() -> None:
        store = build_memory_store(settings)
        try:
            await store.open(startup_cleanup=False)
            raw_output = {"items": [{"text": "likes tea", "importance": 9}]}
            assert await store.store_extracted_memories("r1", "u1", "Liam", raw_output, now=NOW) == []
            assert await store.memories.count() == 0
        finally:
            await store.close()

    asyncio.run(scenario())
