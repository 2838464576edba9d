"""Memory lifecycle with embedding and vector index upkeep.

The repository is always written first; the embedding and the index entry
follow on a best-effort basis.  A memory that could not be embedded is
still stored and can be back-filled by ``generate_missing_embeddings``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from collections.abc import Sequence
from typing import Any

from keepsake.audit import AuditEvent
from keepsake.audit import AuditEventType
from keepsake.audit import AuditLogger
from keepsake.config import EmbeddingConfig
from keepsake.engine.schemas import EmbeddingBackfillResult
from keepsake.engine.schemas import IndexConsistencyReport
from keepsake.engine.schemas import IndexRebuildResult
from keepsake.index.manager import VectorIndexManager
from keepsake.index.vector import VectorIndexError
from keepsake.locks import KeyedLocks
from keepsake.memory.repository import MemoryRepository
from keepsake.memory.schemas import Memory
from keepsake.observability import record_degradation
from keepsake.observability import track_latency
from keepsake.providers.base import EmbeddingProvider
from keepsake.providers.base import ProviderError

logger = logging.getLogger(__name__)

# Changing either field invalidates the stored embedding
_EMBEDDED_FIELDS = ("content", "summary")


def index_metadata(memory: Memory) -> dict[str, Any]:
    return {"character_id": memory.character_id, "summary": memory.summary}


class MemoryService:
    """Create, update and delete memories while keeping the index in step.

    Backfills and rebuilds take the character's lock from the shared
    ``KeyedLocks``, so housekeeping never deletes underneath them.
    """

    def __init__(
        self,
        repository: MemoryRepository,
        indexes: VectorIndexManager,
        embedder: EmbeddingProvider | None = None,
        embedding_config: EmbeddingConfig | None = None,
        audit_logger: AuditLogger | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.repository = repository
        self.indexes = indexes
        self._locks = locks or KeyedLocks()
        self._embedder = embedder
        self._timeout = (embedding_config or EmbeddingConfig()).timeout_seconds
        self._audit = audit_logger

    # ------------------------------------------------------------------
    # Embedding helpers
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        """Embed *text*; raises ``ProviderError`` when unavailable."""
        if self._embedder is None:
            raise ProviderError("no embedding provider configured")
        return await self._embedder.embed(text, timeout_seconds=self._timeout)

    async def _store_embedding(
        self, memory: Memory, vector: Sequence[float], *, save: bool = True
    ) -> Memory:
        """Persist *vector* on the record, then add or replace the index entry."""
        updated = await self.repository.update_for_character(
            memory.character_id, memory.id, {"embedding": list(vector)}
        )
        index = await self.indexes.get_index(memory.character_id)
        if index.has(memory.id):
            await index.update(memory.id, vector)
        else:
            await index.add(memory.id, vector, index_metadata(memory))
        if save:
            await index.save()
        return updated or memory

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_memory(
        self,
        memory: Memory,
        *,
        vector: Sequence[float] | None = None,
        embed: bool = True,
    ) -> Memory:
        """Store *memory*, then embed and index it.

        A precomputed *vector* skips the embedding call.  Embedding and
        index failures are logged; the stored record is returned as is.
        """
        created = await self.repository.create(memory)
        await self._log_event(
            AuditEventType.MEMORY_CREATED,
            created.character_id,
            {"memory_id": created.id, "source": created.source.value},
        )
        if vector is None and not embed:
            return created

        try:
            if vector is None:
                vector = await self.embed(created.embedding_text)
            return await self._store_embedding(created, vector)
        except (ProviderError, VectorIndexError) as exc:
            logger.warning("Embedding failed for memory %s: %s", created.id, exc)
            record_degradation("memory.embedding_failed")
            return created

    async def update_memory(
        self,
        character_id: str,
        memory_id: str,
        changes: Mapping[str, Any],
        *,
        embed: bool = True,
    ) -> Memory | None:
        """Apply *changes*; re-embed when content or summary changed.

        If re-embedding fails the previous embedding and index entry stay.
        """
        existing = await self.repository.find_by_id_for_character(
            character_id, memory_id
        )
        if existing is None:
            return None
        changed_text = any(
            field in changes and changes[field] != getattr(existing, field)
            for field in _EMBEDDED_FIELDS
        )
        updated = await self.repository.update_for_character(
            character_id, memory_id, changes
        )
        if updated is None or not changed_text or not embed:
            return updated

        try:
            vector = await self.embed(updated.embedding_text)
            return await self._store_embedding(updated, vector)
        except (ProviderError, VectorIndexError) as exc:
            logger.warning(
                "Re-embedding failed for memory %s, keeping previous vector: %s",
                memory_id,
                exc,
            )
            record_degradation("memory.embedding_failed")
            return updated

    async def delete_memory(self, character_id: str, memory_id: str) -> bool:
        """Delete from the repository, then drop the index entry."""
        deleted = await self.repository.delete_for_character(character_id, memory_id)
        if not deleted:
            return False
        await self._log_event(
            AuditEventType.MEMORY_DELETED,
            character_id,
            {"memory_ids": [memory_id], "reason": "deleted"},
        )
        index = await self.indexes.get_index(character_id)
        if await index.remove(memory_id):
            await index.save()
        return True

    async def remove_from_index(
        self, character_id: str, memory_ids: Sequence[str]
    ) -> int:
        """Drop several index entries and persist once; return how many existed."""
        index = await self.indexes.get_index(character_id)
        removed = 0
        for memory_id in memory_ids:
            if await index.remove(memory_id):
                removed += 1
        await index.save()
        return removed

    # ------------------------------------------------------------------
    # Index maintenance
    # ------------------------------------------------------------------

    async def generate_missing_embeddings(
        self, character_id: str, batch_size: int = 10
    ) -> EmbeddingBackfillResult:
        """Embed every memory that has no embedding yet.

        The index is saved every *batch_size* successes and once at the end.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        async with self._locks.hold(character_id):
            result = await self._backfill_locked(character_id, batch_size)
        logger.info(
            "Backfilled embeddings for %s: processed=%d failed=%d",
            character_id,
            result.processed,
            result.failed,
        )
        return result

    async def rebuild_vector_index(
        self, character_id: str, *, regenerate_missing: bool = False
    ) -> IndexRebuildResult:
        """Discard the character's index and rebuild it from stored embeddings.

        With *regenerate_missing*, memories that were never embedded are
        embedded and indexed as well.
        """
        async with self._locks.hold(character_id):
            with track_latency("index.rebuild"):
                result = await self._rebuild_locked(character_id, regenerate_missing)
        logger.info(
            "Rebuilt vector index for %s: indexed=%d failed=%d regenerated=%d",
            character_id,
            result.indexed,
            result.failed,
            result.regenerated,
        )
        await self._log_event(
            AuditEventType.INDEX_REBUILT, character_id, result.model_dump()
        )
        return result

    async def _backfill_locked(
        self, character_id: str, batch_size: int
    ) -> EmbeddingBackfillResult:
        result = EmbeddingBackfillResult()
        memories = await self.repository.find_by_character_id(character_id)
        pending = [m for m in memories if not m.has_embedding]
        index = await self.indexes.get_index(character_id)

        for memory in pending:
            try:
                vector = await self.embed(memory.embedding_text)
                await self._store_embedding(memory, vector, save=False)
            except (ProviderError, VectorIndexError) as exc:
                logger.warning(
                    "Failed to generate embedding for memory %s: %s", memory.id, exc
                )
                result.failed += 1
                continue
            result.processed += 1
            if result.processed % batch_size == 0:
                await index.save()

        await index.save()
        return result

    async def _rebuild_locked(
        self, character_id: str, regenerate_missing: bool
    ) -> IndexRebuildResult:
        result = IndexRebuildResult()
        await self.indexes.delete(character_id)
        index = await self.indexes.get_index(character_id)
        memories = await self.repository.find_by_character_id(character_id)

        for memory in memories:
            try:
                if memory.embedding:
                    await index.add(memory.id, memory.embedding, index_metadata(memory))
                    result.indexed += 1
                elif regenerate_missing:
                    vector = await self.embed(memory.embedding_text)
                    await self._store_embedding(memory, vector, save=False)
                    result.indexed += 1
                    result.regenerated += 1
            except (ProviderError, VectorIndexError) as exc:
                logger.warning("Failed to index memory %s: %s", memory.id, exc)
                result.failed += 1

        await index.save()
        return result

    async def check_index_consistency(self, character_id: str) -> IndexConsistencyReport:
        """Compare stored embeddings with the index without changing either."""
        memories = await self.repository.find_by_character_id(character_id)
        index = await self.indexes.get_index(character_id)
        indexed = index.memory_ids()
        stored = {m.id for m in memories}
        return IndexConsistencyReport(
            character_id=character_id,
            missing_from_index=[
                m.id for m in memories if m.has_embedding and m.id not in indexed
            ],
            orphaned_entries=sorted(indexed - stored),
            without_embedding=[m.id for m in memories if not m.has_embedding],
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def _log_event(
        self,
        event_type: AuditEventType,
        character_id: str,
        payload: dict[str, Any],
    ) -> None:
        if self._audit is None:
            return
        await self._audit.log(
            AuditEvent(
                event_type=event_type, character_id=character_id, payload=payload
            )
        )
