"""Semantic memory search with a lexical fallback."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from keepsake.config import EmbeddingConfig
from keepsake.config import SearchConfig
from keepsake.engine.schemas import SearchFilters
from keepsake.engine.schemas import SearchResult
from keepsake.index.manager import VectorIndexManager
from keepsake.index.vector import VectorIndexError
from keepsake.memory.repository import MemoryRepository
from keepsake.memory.schemas import Memory
from keepsake.memory.schemas import utcnow
from keepsake.observability import record_degradation
from keepsake.observability import track_latency
from keepsake.providers.base import EmbeddingProvider
from keepsake.providers.base import ProviderError

logger = logging.getLogger(__name__)

# Lexical score weights
_SUMMARY_WEIGHT = 0.5
_CONTENT_WEIGHT = 0.3
_KEYWORD_WEIGHT = 0.2


def lexical_score(memory: Memory, query: str) -> float:
    """Heuristic relevance of *memory* to *query*, in [0, 1].

    0.5 when the whole query occurs in the summary, 0.3 when it occurs
    in the content, plus 0.2 times the fraction of query words found
    inside a keyword.
    """
    needle = query.strip().lower()
    if not needle:
        return 0.0
    score = 0.0
    if needle in memory.summary.lower():
        score += _SUMMARY_WEIGHT
    if needle in memory.content.lower():
        score += _CONTENT_WEIGHT
    words = needle.split()
    keywords = [k.lower() for k in memory.keywords]
    if words and keywords:
        matching = sum(1 for w in words if any(w in k for k in keywords))
        score += _KEYWORD_WEIGHT * matching / len(words)
    return min(score, 1.0)


def _importance_label(importance: float) -> str:
    if importance >= 0.7:
        return "High"
    if importance >= 0.4:
        return "Medium"
    return "Low"


def format_search_results(results: Sequence[SearchResult]) -> str:
    """Render results as a block suitable for prompt injection."""
    if not results:
        return "No relevant memories found."
    blocks = [
        f"[Memory {i}] (Importance: {_importance_label(r.memory.importance)}, "
        f"Relevance: {r.score * 100:.0f}%)\n"
        f"Summary: {r.memory.summary}\n"
        f"Details: {r.memory.content}"
        for i, r in enumerate(results, start=1)
    ]
    return f"Found {len(results)} relevant memories:\n\n" + "\n\n".join(blocks)


class SemanticSearchService:
    """Ranks a character's memories against a free-text query."""

    def __init__(
        self,
        repository: MemoryRepository,
        indexes: VectorIndexManager,
        embedder: EmbeddingProvider | None = None,
        config: SearchConfig | None = None,
        embedding_config: EmbeddingConfig | None = None,
    ) -> None:
        self._repository = repository
        self._indexes = indexes
        self._embedder = embedder
        self._config = config or SearchConfig()
        self._timeout = (embedding_config or EmbeddingConfig()).timeout_seconds

    async def search(
        self,
        character_id: str,
        query: str,
        filters: SearchFilters | None = None,
        limit: int | None = None,
    ) -> list[SearchResult]:
        """Return up to *limit* results, best first.

        Vector similarity when the query can be embedded and the index has
        neighbours; lexical scoring otherwise.  Surfaced memories get their
        access time refreshed.
        """
        filters = filters or SearchFilters()
        if limit is None:
            limit = self._config.default_limit
        if not query.strip() or limit <= 0:
            return []

        with track_latency("search"):
            results = await self._vector_search(character_id, query, filters, limit)
            if results is None:
                record_degradation("search.lexical_fallback")
                results = await self._lexical_search(
                    character_id, query, filters, limit
                )
            return await self._touch(character_id, results)

    async def _vector_search(
        self,
        character_id: str,
        query: str,
        filters: SearchFilters,
        limit: int,
    ) -> list[SearchResult] | None:
        """Vector path; ``None`` means "fall back to lexical search"."""
        if self._embedder is None:
            return None
        try:
            vector = await self._embedder.embed(query, timeout_seconds=self._timeout)
            index = await self._indexes.get_index(character_id)
            hits = index.search(vector, k=limit * self._config.overfetch_factor)
        except (ProviderError, VectorIndexError) as exc:
            logger.warning(
                "Semantic search failed for %s, falling back to text search: %s",
                character_id,
                exc,
            )
            return None
        if not hits:
            return None

        memories = {
            m.id: m for m in await self._repository.find_by_character_id(character_id)
        }
        results: list[SearchResult] = []
        for hit in hits:
            if hit.score < filters.min_score:
                continue
            memory = memories.get(hit.memory_id)
            if memory is None or not filters.accepts(memory):
                continue
            results.append(
                SearchResult(memory=memory, score=hit.score, used_embedding=True)
            )
        return results[:limit]

    async def _lexical_search(
        self,
        character_id: str,
        query: str,
        filters: SearchFilters,
        limit: int,
    ) -> list[SearchResult]:
        matches = await self._repository.search_by_content(character_id, query)
        results = [
            SearchResult(
                memory=memory,
                score=lexical_score(memory, query),
                used_embedding=False,
            )
            for memory in matches
            if filters.accepts(memory)
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    async def _touch(
        self, character_id: str, results: list[SearchResult]
    ) -> list[SearchResult]:
        """Refresh ``last_accessed_at`` of surfaced memories (best effort)."""
        if not results:
            return results
        now = utcnow()
        outcomes = await asyncio.gather(
            *(
                self._repository.update_access_time(character_id, r.memory.id)
                for r in results
            ),
            return_exceptions=True,
        )
        touched: list[SearchResult] = []
        for result, outcome in zip(results, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(
                    "Failed to update access time of %s: %s",
                    result.memory.id,
                    outcome,
                )
            elif outcome:
                result = result.model_copy(
                    update={
                        "memory": result.memory.model_copy(
                            update={"last_accessed_at": now}
                        )
                    }
                )
            touched.append(result)
        return touched
