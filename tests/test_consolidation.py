from __future__ import annotations

import asyncio
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from room_memory_bot.memory import (  # noqa: E402
    ConsolidationError,
    IdentityRepository,
    MemoryConsolidator,
    MemoryDatabase,
    MemoryRepository,
)
from room_memory_bot.memory.models import MemoryDigest, NewMemory, normalize_digest  # noqa: E402
from room_memory_bot.services.chat_client import ChatCompletionsClient  # noqa: E402
from room_memory_bot.services.memory_digest import MemoryDigestSummarizer  # noqa: E402

NOW = 1_700_000_000


class _FlakySummarizer:
    def __init__(self, failing: set[str]) -> None:
        self.failing = failing
        self.calls: list[tuple[str, int]] = []

    async def summarize(self, trip_code, memories, now):  # type: ignore[no-untyped-def]
        self.calls.append((trip_code, len(memories)))
        if trip_code in self.failing:
            raise RuntimeError("upstream timeout")
        return normalize_digest({"highlights": [item.text for item in memories]}, now)


class _FakeLLM:
    def __init__(self, payload: dict | None) -> None:
        self.payload = payload
        self.calls: list[dict[str, object]] = []

    async def json_chat(self, messages, schema_hint, **kwargs):  # type: ignore[no-untyped-def]
        self.calls.append({"messages": messages, "schema_hint": schema_hint, "kwargs": kwargs})
        return self.payload


async def _seed(repo: MemoryRepository) -> None:
    await repo.insert(NewMemory(text="u1 likes jazz", room_id="r1", trip_code="u1", importance=8), now=NOW)
    await repo.insert(NewMemory(text="u2 learns piano", room_id="r1", trip_code="u2", importance=8), now=NOW)
    await repo.insert(NewMemory(text="u2 said hi", room_id="r1", trip_code="u2", importance=2), now=NOW)
    await repo.insert(NewMemory(text="room rule", room_id="r1", importance=1), now=NOW)


def test_one_failing_user_does_not_stop_the_pass(tmp_path: Path) -> None:
    async def scenario() -> None:
        async with MemoryDatabase(tmp_path / "memory.db") as db:
            memories = MemoryRepository(db)
            identities = IdentityRepository(db)
            await _seed(memories)
            summarizer = _FlakySummarizer(failing={"u1"})

            report = await MemoryConsolidator(
                memories,
                identities,
                summarizer,
                source_min_importance=1,
                source_max_items_per_user=60,
                prune_below_importance=3,
            ).run(now=NOW + 60)

            assert [call[0] for call in summarizer.calls] == ["u1", "u2"]
            assert report.processed_users == 2
            assert report.updated_users == 1
            assert report.skipped_users == 1
            assert report.errors == [ConsolidationError(trip_code="u1", error="upstream timeout")]
            assert report.pruned_memories == 1
            assert report.prune_below_importance == 3

            assert await identities.get_memory_digest("u1") is None
            digest = await identities.get_memory_digest("u2")
            assert digest is not None
            assert digest.highlights == ["u2 learns piano", "u2 said hi"]
            assert digest.updated_at == NOW + 60

            # Ownerless memories are never pruned by importance.
            assert await memories.count() == 3
            payload = report.as_dict()
            assert payload["errors"] == [{"trip_code": "u1", "error": "upstream timeout"}]

    asyncio.run(scenario())


def test_report_echoes_clamped_parameters(tmp_path: Path) -> None:
    async def scenario() -> None:
        async with MemoryDatabase(tmp_path / "memory.db") as db:
            consolidator = MemoryConsolidator(
                MemoryRepository(db),
                IdentityRepository(db),
                _FlakySummarizer(set()),
                source_min_importance=0,
                source_max_items_per_user=5000,
                prune_below_importance="junk",
            )
            report = await consolidator.run(now=NOW)
            assert (report.source_min_importance, report.source_max_items_per_user) == (1, 200)
            assert report.prune_below_importance == 1
            assert report.processed_users == 0
            assert report.pruned_memories == 0

    asyncio.run(scenario())


def test_summarizer_output_is_capped_before_storing(tmp_path: Path) -> None:
    async def scenario() -> None:
        async with MemoryDatabase(tmp_path / "memory.db") as db:
            memories = MemoryRepository(db)
            identities = IdentityRepository(db)
            await memories.insert(NewMemory(text="busy person", trip_code="u1", importance=9), now=NOW)
            llm = _FakeLLM(
                {
                    "highlights": [f"fact {index}" for index in range(20)],
                    "ongoing_threads": [{"topic": f"topic {index}"} for index in range(15)],
                    "stable_preferences": [f"pref {index}" for index in range(13)] + ["PREF 0"],
                }
            )

            report = await MemoryConsolidator(
                memories,
                identities,
                MemoryDigestSummarizer(llm),
                prune_below_importance=1,
            ).run(now=NOW)

            assert report.updated_users == 1
            digest = await identities.get_memory_digest("u1")
            assert isinstance(digest, MemoryDigest)
            assert len(digest.highlights) == 12
            assert len(digest.ongoing_threads) == 10
            assert len(digest.stable_preferences) == 12
            assert len(llm.calls) == 1

    asyncio.run(scenario())


def test_empty_model_reply_stores_an_empty_digest(tmp_path: Path) -> None:
    client = ChatCompletionsClient(api_key="sk-test", model="deepseek-chat")

    async def empty_reply(payload, retries=3):  # type: ignore[no-untyped-def]
        return {"choices": [{"message": {"content": ""}, "finish_reason": "stop"}]}

    client._request = empty_reply  # type: ignore[method-assign]

    async def scenario() -> None:
        async with MemoryDatabase(tmp_path / "memory.db") as db:
            memories = MemoryRepository(db)
            identities = IdentityRepository(db)
            await memories.insert(NewMemory(text="u1 likes jazz", trip_code="u1", importance=8), now=NOW)
            await identities.upsert_memory_digest("u1", {"highlights": ["old news"]}, updated_at=NOW - 10)

            report = await MemoryConsolidator(
                memories,
                identities,
                MemoryDigestSummarizer(client),
                prune_below_importance=1,
            ).run(now=NOW)

            assert (report.updated_users, report.skipped_users, report.errors) == (1, 0, [])
            # The stale digest is replaced; an empty digest reads back as absent.
            assert await identities.get_memory_digest("u1") is None

    asyncio.run(scenario())
