"""Duplicate detection at memory creation time.

Identical content first, then vector similarity; a keyword/prefix
heuristic when the embedding or the index lookup fails.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from collections.abc import Sequence
from dataclasses import dataclass

from keepsake.config import DuplicateConfig
from keepsake.config import EmbeddingConfig
from keepsake.index.manager import VectorIndexManager
from keepsake.index.vector import VectorIndexError
from keepsake.memory.repository import MemoryRepository
from keepsake.memory.schemas import Memory
from keepsake.memory.schemas import MemoryCandidate
from keepsake.observability import record_degradation
from keepsake.providers.base import EmbeddingProvider
from keepsake.providers.base import ProviderError

logger = logging.getLogger(__name__)


def _normalise(text: str | None) -> str:
    return " ".join((text or "").lower().split())


@dataclass(frozen=True)
class DuplicateCheck:
    """Verdict plus the candidate's embedding, when one was produced."""

    duplicate: bool
    vector: list[float] | None = None
    match_id: str | None = None
    similarity: float | None = None
    used_embedding: bool = False


@dataclass(frozen=True)
class SimilarMemory:
    memory: Memory
    similarity: float


class DuplicateDetector:
    """Decides whether a candidate already exists for a character."""

    def __init__(
        self,
        repository: MemoryRepository,
        indexes: VectorIndexManager,
        embedder: EmbeddingProvider | None = None,
        config: DuplicateConfig | None = None,
        embedding_config: EmbeddingConfig | None = None,
    ) -> None:
        self._repository = repository
        self._indexes = indexes
        self._embedder = embedder
        self._config = config or DuplicateConfig()
        self._timeout = (embedding_config or EmbeddingConfig()).timeout_seconds

    async def embed(self, text: str) -> list[float]:
        """Embed *text*; raises ``ProviderError`` when unavailable."""
        if self._embedder is None:
            raise ProviderError("no embedding provider configured")
        return await self._embedder.embed(text, timeout_seconds=self._timeout)

    async def is_duplicate(
        self, character_id: str, candidate: MemoryCandidate
    ) -> DuplicateCheck:
        """Check *candidate* against the character's existing memories.

        Identical text is always a duplicate, whichever path runs after it.
        """
        match_id = await self._exact_duplicate(character_id, candidate)
        if match_id is not None:
            return DuplicateCheck(duplicate=True, match_id=match_id, similarity=1.0)

        vector: list[float] | None = None
        try:
            vector = await self.embed(candidate.embedding_text)
            index = await self._indexes.get_index(character_id)
            hits = index.search(vector, k=1)
        except (ProviderError, VectorIndexError) as exc:
            logger.warning(
                "Vector duplicate check failed for %s, using keyword fallback: %s",
                character_id,
                exc,
            )
            record_degradation("duplicates.keyword_fallback")
            match_id = await self._keyword_duplicate(character_id, candidate)
            return DuplicateCheck(
                duplicate=match_id is not None, vector=vector, match_id=match_id
            )

        if hits and hits[0].score >= self._config.similarity_threshold:
            return DuplicateCheck(
                duplicate=True,
                vector=vector,
                match_id=hits[0].memory_id,
                similarity=hits[0].score,
                used_embedding=True,
            )
        return DuplicateCheck(
            duplicate=False,
            vector=vector,
            similarity=hits[0].score if hits else None,
            used_embedding=True,
        )

    async def _exact_duplicate(
        self, character_id: str, candidate: MemoryCandidate
    ) -> str | None:
        content = _normalise(candidate.content)
        if not content:
            return None
        for memory in await self._repository.find_by_character_id(character_id):
            if _normalise(memory.content) == content:
                return memory.id
        return None

    async def _keyword_duplicate(
        self, character_id: str, candidate: MemoryCandidate
    ) -> str | None:
        """Return the id of an existing memory the heuristic calls a duplicate."""
        keywords = candidate.keywords
        if not keywords:
            return None
        existing = await self._repository.find_by_keywords(character_id, keywords)
        content = (candidate.content or "").lower()
        for memory in existing:
            if self._looks_like(content, keywords, memory.content.lower()):
                return memory.id
        return None

    def _looks_like(
        self, content: str, keywords: Sequence[str], existing: str
    ) -> bool:
        matching = sum(1 for kw in keywords if kw.lower() in existing)
        if matching >= len(keywords) * self._config.keyword_overlap_ratio:
            return True
        if not content or not existing:
            return False
        n = self._config.prefix_chars
        return content[:n] in existing or existing[:n] in content

    async def find_similar(
        self,
        character_id: str,
        text: str,
        threshold: float,
        vector: Sequence[float] | None = None,
        memories: Mapping[str, Memory] | None = None,
    ) -> list[SimilarMemory]:
        """Memories whose vector similarity to *text* is at least *threshold*.

        *vector* skips the embedding call; *memories* supplies already
        loaded records for hydration.  Raises ``ProviderError`` or
        ``VectorIndexError`` when the lookup itself fails.
        """
        query = list(vector) if vector is not None else await self.embed(text)
        index = await self._indexes.get_index(character_id)
        hits = [
            hit
            for hit in index.search(query, k=self._config.neighbour_count)
            if hit.score >= threshold
        ]
        if not hits:
            return []
        if memories is None:
            loaded = await self._repository.find_by_character_id(character_id)
            memories = {m.id: m for m in loaded}
        return [
            SimilarMemory(memory=memories[hit.memory_id], similarity=hit.score)
            for hit in hits
            if hit.memory_id in memories
        ]
