"""Retention housekeeping: prune, merge and cap a character's memories.

Three passes over the memory set, then one apply step:

1. delete low-importance memories that are both old and inactive;
2. optionally merge near-duplicates, keeping the more important one;
3. enforce ``max_memories`` by dropping the lowest-scoring memories.

Protected memories (importance >= 0.7, MANUAL, or accessed within the
last three months) are never removed by any pass.  A month is 30 days.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime

from keepsake.audit import AuditEvent
from keepsake.audit import AuditEventType
from keepsake.audit import AuditLogger
from keepsake.config import HousekeepingPolicy
from keepsake.engine.duplicates import DuplicateDetector
from keepsake.engine.memories import MemoryService
from keepsake.engine.schemas import HousekeepingAction
from keepsake.engine.schemas import HousekeepingDetail
from keepsake.engine.schemas import HousekeepingResult
from keepsake.engine.schemas import MergePair
from keepsake.index.vector import VectorIndexError
from keepsake.locks import KeyedLocks
from keepsake.memory.schemas import Memory
from keepsake.memory.schemas import MemorySource
from keepsake.memory.schemas import utcnow
from keepsake.observability import record_degradation
from keepsake.observability import track_latency
from keepsake.providers.base import ProviderError

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400
DAYS_PER_MONTH = 30

PROTECTED_IMPORTANCE = 0.7
PROTECTED_ACCESS_MONTHS = 3
# needs_housekeeping() fires at this share of max_memories
CAPACITY_WARNING_RATIO = 0.8


class HousekeepingError(Exception):
    """Raised when a character's memories cannot be read for housekeeping."""


# ---------------------------------------------------------------------------
# Policy helpers
# ---------------------------------------------------------------------------


def days_since(moment: datetime, now: datetime) -> float:
    return (now - moment).total_seconds() / SECONDS_PER_DAY


def months_since(moment: datetime, now: datetime) -> float:
    return days_since(moment, now) / DAYS_PER_MONTH


def is_protected(memory: Memory, now: datetime) -> bool:
    """True for memories housekeeping must never remove."""
    if memory.importance >= PROTECTED_IMPORTANCE:
        return True
    if memory.source == MemorySource.MANUAL:
        return True
    if memory.last_accessed_at is not None:
        return months_since(memory.last_accessed_at, now) < PROTECTED_ACCESS_MONTHS
    return False


def deletion_reason(
    memory: Memory, now: datetime, policy: HousekeepingPolicy
) -> str | None:
    """Why pass 1 deletes *memory*, or None to keep it.

    Callers skip protected memories before asking.
    """
    if memory.importance >= policy.min_importance:
        return None
    age = months_since(memory.created_at, now)
    if age < policy.max_age_months:
        return None
    importance = f"{memory.importance * 100:.0f}%"
    if memory.last_accessed_at is None:
        return f"Low importance ({importance}) and old ({age:.1f} months)"
    inactive = months_since(memory.last_accessed_at, now)
    if inactive < policy.max_inactive_months:
        return None
    return (
        f"Low importance ({importance}), old ({age:.1f} months), "
        f"and inactive ({inactive:.1f} months)"
    )


def retention_score(memory: Memory, now: datetime) -> float:
    """Keep-worthiness used by the capacity pass; lower goes first."""
    recency = max(0.1, 1 - months_since(memory.created_at, now) / 12)
    if memory.last_accessed_at is None:
        access = 0.5
    else:
        access = max(0.1, 1 - days_since(memory.last_accessed_at, now) / 90)
    return memory.importance * 0.5 + recency * 0.25 + access * 0.25


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class HousekeepingScheduler:
    """Applies a ``HousekeepingPolicy`` to one character at a time.

    Runs for the same character are serialized through ``KeyedLocks``;
    the extraction pipeline shares those locks for its commit step.
    """

    def __init__(
        self,
        memories: MemoryService,
        detector: DuplicateDetector | None = None,
        locks: KeyedLocks | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._memories = memories
        self._repository = memories.repository
        self._detector = detector
        self._locks = locks or KeyedLocks()
        self._audit = audit_logger
        self._clock = clock

    async def run(
        self, character_id: str, policy: HousekeepingPolicy | None = None
    ) -> HousekeepingResult:
        """Run all passes; delete unless ``policy.dry_run``."""
        policy = policy or HousekeepingPolicy()
        operation = "housekeeping.preview" if policy.dry_run else "housekeeping.run"
        async with self._locks.hold(character_id):
            with track_latency(operation):
                return await self._run_locked(character_id, policy)

    async def preview(
        self, character_id: str, policy: HousekeepingPolicy | None = None
    ) -> HousekeepingResult:
        """Same passes as ``run`` without touching anything."""
        return await self.run(
            character_id, replace(policy or HousekeepingPolicy(), dry_run=True)
        )

    async def needs_housekeeping(
        self, character_id: str, policy: HousekeepingPolicy | None = None
    ) -> bool:
        """Near capacity, or a preview would remove something."""
        policy = policy or HousekeepingPolicy()
        count = await self._repository.count_by_character_id(character_id)
        if count >= policy.max_memories * CAPACITY_WARNING_RATIO:
            return True
        if count > 0:
            preview = await self.preview(character_id, policy)
            return bool(preview.removed_ids)
        return False

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def _run_locked(
        self, character_id: str, policy: HousekeepingPolicy
    ) -> HousekeepingResult:
        now = self._clock()
        try:
            memories = await self._repository.find_by_character_id(character_id)
        except Exception as exc:
            raise HousekeepingError(
                f"cannot read memories of character {character_id}"
            ) from exc

        result = HousekeepingResult(
            character_id=character_id,
            dry_run=policy.dry_run,
            total_before=len(memories),
        )
        if not memories:
            return result

        # Most important first; newest first among equals
        ordered = sorted(
            memories, key=lambda m: (m.importance, m.created_at), reverse=True
        )
        protected = {m.id for m in memories if is_protected(m, now)}
        removed: set[str] = set()

        for memory in ordered:
            if memory.id in protected:
                continue
            reason = deletion_reason(memory, now, policy)
            if reason is not None:
                removed.add(memory.id)
                result.deleted_ids.append(memory.id)
                result.details.append(
                    HousekeepingDetail(
                        memory_id=memory.id,
                        action=HousekeepingAction.DELETED,
                        reason=reason,
                    )
                )

        if policy.merge_similar:
            await self._merge_pass(
                character_id, ordered, protected, removed, policy, result
            )

        self._capacity_pass(memories, protected, removed, policy, now, result)

        if not policy.dry_run and removed:
            await self._apply(character_id, result)

        logger.info(
            "Housekeeping %s for %s: before=%d deleted=%d merged=%d",
            "preview" if policy.dry_run else "run",
            character_id,
            result.total_before,
            result.deleted_count,
            result.merged_count,
        )
        return result

    async def _merge_pass(
        self,
        character_id: str,
        ordered: list[Memory],
        protected: set[str],
        removed: set[str],
        policy: HousekeepingPolicy,
        result: HousekeepingResult,
    ) -> None:
        if self._detector is None:
            logger.warning("merge_similar requested without a duplicate detector")
            return
        by_id = {m.id: m for m in ordered}

        for memory in ordered:
            if memory.id in removed:
                continue
            try:
                similar = await self._detector.find_similar(
                    character_id,
                    memory.embedding_text,
                    policy.merge_threshold,
                    vector=memory.embedding or None,
                    memories=by_id,
                )
            except (ProviderError, VectorIndexError) as exc:
                logger.warning(
                    "Failed to check similarity for memory %s: %s", memory.id, exc
                )
                record_degradation("housekeeping.merge_similarity_failed")
                continue

            for match in similar:
                other = match.memory
                if other.id == memory.id or other.id in removed:
                    continue
                keep_current = memory.importance > other.importance or (
                    memory.importance == other.importance
                    and memory.created_at > other.created_at
                )
                kept, merged = (memory, other) if keep_current else (other, memory)
                if merged.id in protected:
                    if kept.id in protected:
                        continue
                    kept, merged = merged, kept

                removed.add(merged.id)
                result.merged_ids.append(merged.id)
                result.merges.append(
                    MergePair(
                        kept_id=kept.id,
                        merged_id=merged.id,
                        similarity=match.similarity,
                    )
                )
                result.details.append(
                    HousekeepingDetail(
                        memory_id=merged.id,
                        action=HousekeepingAction.MERGED,
                        reason=(
                            f"Similar to memory {kept.id} "
                            f"({match.similarity * 100:.0f}% similarity)"
                        ),
                        merged_into=kept.id,
                    )
                )
                if merged is memory:
                    break

    @staticmethod
    def _capacity_pass(
        memories: list[Memory],
        protected: set[str],
        removed: set[str],
        policy: HousekeepingPolicy,
        now: datetime,
        result: HousekeepingResult,
    ) -> None:
        survivors = [m for m in memories if m.id not in removed]
        excess = len(survivors) - policy.max_memories
        if excess <= 0:
            return
        candidates = sorted(
            (m for m in survivors if m.id not in protected),
            key=lambda m: retention_score(m, now),
        )
        for memory in candidates[:excess]:
            removed.add(memory.id)
            result.deleted_ids.append(memory.id)
            result.details.append(
                HousekeepingDetail(
                    memory_id=memory.id,
                    action=HousekeepingAction.DELETED,
                    reason=f"Exceeded memory limit ({policy.max_memories})",
                )
            )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def _apply(self, character_id: str, result: HousekeepingResult) -> None:
        removed = result.removed_ids
        deleted = await self._repository.bulk_delete(character_id, removed)
        if deleted != len(removed):
            logger.warning(
                "Housekeeping for %s removed %d of %d memories",
                character_id,
                deleted,
                len(removed),
            )
        try:
            await self._memories.remove_from_index(character_id, removed)
        except Exception:
            logger.exception(
                "Failed to clean up vector index for %s after housekeeping",
                character_id,
            )
            record_degradation("housekeeping.index_cleanup_failed")

        if self._audit is None:
            return
        reasons = {d.memory_id: d.reason for d in result.details}
        events: list[AuditEvent] = []
        if result.deleted_ids:
            events.append(
                AuditEvent(
                    event_type=AuditEventType.MEMORY_DELETED,
                    character_id=character_id,
                    payload={
                        "memory_ids": list(result.deleted_ids),
                        "reasons": {i: reasons[i] for i in result.deleted_ids},
                    },
                )
            )
        events.extend(
            AuditEvent(
                event_type=AuditEventType.MEMORY_MERGED,
                character_id=character_id,
                payload=pair.model_dump(),
            )
            for pair in result.merges
        )
        events.append(
            AuditEvent(
                event_type=AuditEventType.HOUSEKEEPING_RUN,
                character_id=character_id,
                payload={
                    "total_before": result.total_before,
                    "total_after": result.total_after,
                    "deleted": result.deleted_count,
                    "merged": result.merged_count,
                },
            )
        )
        await self._audit.log_many(events)
