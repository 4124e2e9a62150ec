from __future__ import annotations

import logging
from typing import Any, Sequence

from ..memory.models import MemoryDigest, MemoryRecord, memory_prompt_items, normalize_digest
from ..prompts.memory import build_digest_messages, digest_schema_hint
from .chat_client import JsonChatBackend

logger = logging.getLogger("room_memory_bot.services.digest")


class MemoryDigestSummarizer:
    """Compresses one user's memories into a ``MemoryDigest`` through a JSON chat backend."""

    def __init__(
        self,
        llm: JsonChatBackend | Any,
        *,
        temperature: float = 0.7,
        max_output_tokens: int = 1200,
    ) -> None:
        self.llm = llm
        self.temperature = float(temperature)
        self.max_output_tokens = int(max_output_tokens)

    async def summarize(self, trip_code: str, memories: Sequence[MemoryRecord], now: int) -> MemoryDigest:
        if not memories:
            return normalize_digest({}, now)
        items = memory_prompt_items(memories)
        for item, record in zip(items, memories):
            item["last_used_at"] = record.last_used_at
        raw = await self.llm.json_chat(
            build_digest_messages(trip_code, items),
            digest_schema_hint(),
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )
        if raw is None:
            logger.warning("[memory.digest] empty or non-JSON summary for trip=%s, storing empty digest", trip_code)
        return normalize_digest(raw or {}, now)
