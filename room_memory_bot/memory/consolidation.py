from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol, Sequence

from .models import MemoryDigest, MemoryRecord, normalize_digest
from .storage.identity import IdentityRepository
from .storage.memories import MemoryRepository
from .storage.utils import (
    DIGEST_ITEMS_PER_USER_MAX,
    IMPORTANCE_MIN,
    _now_ts,
    coerce_importance,
    coerce_limit,
)

logger = logging.getLogger("room_memory_bot.memory.consolidation")


class _DigestSummarizer(Protocol):
    async def summarize(self, trip_code: str, memories: Sequence[MemoryRecord], now: int) -> MemoryDigest: ...


@dataclass(slots=True)
class ConsolidationError:
    trip_code: str
    error: str


@dataclass(slots=True)
class ConsolidationReport:
    source_min_importance: int
    source_max_items_per_user: int
    prune_below_importance: int
    processed_users: int = 0
    updated_users: int = 0
    skipped_users: int = 0
    pruned_memories: int = 0
    pruned_vectors: int = 0
    errors: list[ConsolidationError] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class MemoryConsolidator:
    """Summarize every user's memories into a digest, then prune the low-importance raw rows.

    Users are handled one at a time. A failing user is recorded in the report and the pass
    moves on; pruning runs exactly once at the end regardless of per-user failures.
    """

    def __init__(
        self,
        memories: MemoryRepository,
        identities: IdentityRepository,
        summarizer: _DigestSummarizer | Any,
        *,
        source_min_importance: Any = IMPORTANCE_MIN,
        source_max_items_per_user: Any = 60,
        prune_below_importance: Any = 3,
    ) -> None:
        self.memories = memories
        self.identities = identities
        self.summarizer = summarizer
        self.source_min_importance = coerce_importance(source_min_importance, IMPORTANCE_MIN)
        self.source_max_items_per_user = coerce_limit(source_max_items_per_user, 60, DIGEST_ITEMS_PER_USER_MAX)
        self.prune_below_importance = coerce_importance(prune_below_importance, IMPORTANCE_MIN)

    async def run(self, now: int | None = None) -> ConsolidationReport:
        ts = _now_ts(now)
        report = ConsolidationReport(
            source_min_importance=self.source_min_importance,
            source_max_items_per_user=self.source_max_items_per_user,
            prune_below_importance=self.prune_below_importance,
        )
        grouped = await self.memories.list_grouped_for_digest(
            self.source_min_importance,
            self.source_max_items_per_user,
            now=ts,
        )

        for trip_code, items in grouped.items():
            report.processed_users += 1
            try:
                raw_digest = await self.summarizer.summarize(trip_code, items, ts)
                digest = normalize_digest(
                    raw_digest.as_dict() if isinstance(raw_digest, MemoryDigest) else raw_digest,
                    ts,
                )
                await self.identities.upsert_memory_digest(trip_code, digest, ts)
            except Exception as exc:
                report.skipped_users += 1
                report.errors.append(ConsolidationError(trip_code=trip_code, error=str(exc) or type(exc).__name__))
                logger.exception("[memory.digest] consolidation failed for trip=%s", trip_code)
                continue
            report.updated_users += 1

        pruned = await self.memories.prune_below_importance(self.prune_below_importance)
        report.pruned_memories = pruned.removed_memories
        report.pruned_vectors = pruned.removed_vectors
        logger.info(
            "[memory.digest] consolidation done: processed=%s updated=%s skipped=%s pruned=%s",
            report.processed_users,
            report.updated_users,
            report.skipped_users,
            report.pruned_memories,
        )
        return report
