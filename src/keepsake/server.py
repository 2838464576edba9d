"""Keepsake: FastMCP v2 server exposing memory search and maintenance tools.

Tools delegate to the engine services wired by ``configure()``.  Memory
CRUD is deliberately absent: memories are created by extraction and
removed by housekeeping.
"""

from __future__ import annotations

from dataclasses import dataclass
from time import perf_counter

from fastmcp import FastMCP
from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]

from keepsake.audit import AuditLogger
from keepsake.config import AuditConfig
from keepsake.config import DuplicateConfig
from keepsake.config import EmbeddingConfig
from keepsake.config import ExtractionConfig
from keepsake.config import LLMConfig
from keepsake.config import RedisConfig
from keepsake.config import SearchConfig
from keepsake.engine import DuplicateDetector
from keepsake.engine import ExtractionContext
from keepsake.engine import ExtractionPipeline
from keepsake.engine import format_search_results
from keepsake.engine import HousekeepingError
from keepsake.engine import HousekeepingScheduler
from keepsake.engine import MemoryClassifier
from keepsake.engine import MemoryService
from keepsake.engine import SearchFilters
from keepsake.engine import SemanticSearchService
from keepsake.index import IndexPersistence
from keepsake.index import RedisIndexPersistence
from keepsake.index import VectorIndexManager
from keepsake.locks import KeyedLocks
from keepsake.memory import Exchange
from keepsake.memory import MemoryRepository
from keepsake.memory import RedisMemoryRepository
from keepsake.models.schemas import ExtractExchangeInput
from keepsake.models.schemas import ExtractExchangeResult
from keepsake.models.schemas import HousekeepingPolicyInput
from keepsake.models.schemas import HousekeepingReport
from keepsake.models.schemas import MemoryHit
from keepsake.models.schemas import NeedsHousekeepingResult
from keepsake.models.schemas import RebuildIndexResult
from keepsake.models.schemas import SearchMemoriesInput
from keepsake.models.schemas import SearchMemoriesResult
from keepsake.observability import record_latency
from keepsake.providers import build_classification_provider
from keepsake.providers import build_embedding_provider
from keepsake.providers import ClassificationProvider
from keepsake.providers import EmbeddingProvider
from keepsake.providers import NoopClassifier
from keepsake.providers import NoopEmbeddingProvider

mcp = FastMCP("Keepsake")

# ---------------------------------------------------------------------------
# Service wiring (set via configure())
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Services:
    memories: MemoryService
    pipeline: ExtractionPipeline
    search: SemanticSearchService
    housekeeping: HousekeepingScheduler


_services: _Services | None = None
_redis: Redis | None = None


async def configure(
    redis_url: str | None = None,
    *,
    redis_config: RedisConfig | None = None,
    repository: MemoryRepository | None = None,
    index_persistence: IndexPersistence | None = None,
    llm_config: LLMConfig | None = None,
    classifier: ClassificationProvider | None = None,
    embedding_config: EmbeddingConfig | None = None,
    embedder: EmbeddingProvider | None = None,
    extraction_config: ExtractionConfig | None = None,
    duplicate_config: DuplicateConfig | None = None,
    search_config: SearchConfig | None = None,
    audit_config: AuditConfig | None = None,
) -> None:
    """Initialize storage backends and engine services.

    Must be called before the MCP tools can function.  Injected
    ``repository``/``index_persistence`` replace the Redis backends;
    without a provider or its config the Noop adapters are used.
    """
    global _services, _redis
    await shutdown()

    redis_cfg = redis_config or RedisConfig()
    if repository is None or index_persistence is None:
        _redis = Redis.from_url(redis_url or redis_cfg.url)
    if repository is None:
        repository = RedisMemoryRepository(_redis, key_prefix=redis_cfg.key_prefix)
    if index_persistence is None:
        index_persistence = RedisIndexPersistence(
            _redis, key_prefix=redis_cfg.key_prefix
        )

    if classifier is None:
        classifier = (
            build_classification_provider(llm_config)
            if llm_config is not None
            else NoopClassifier()
        )
    if embedder is None:
        embedder = (
            build_embedding_provider(embedding_config)
            if embedding_config is not None
            else NoopEmbeddingProvider()
        )

    audit_logger = AuditLogger(audit_config or AuditConfig())
    indexes = VectorIndexManager(index_persistence)
    locks = KeyedLocks()
    memories = MemoryService(
        repository,
        indexes,
        embedder,
        embedding_config=embedding_config,
        audit_logger=audit_logger,
        locks=locks,
    )
    detector = DuplicateDetector(
        repository,
        indexes,
        embedder,
        config=duplicate_config,
        embedding_config=embedding_config,
    )
    _services = _Services(
        memories=memories,
        pipeline=ExtractionPipeline(
            MemoryClassifier(classifier, llm_config),
            detector,
            memories,
            locks=locks,
            config=extraction_config,
        ),
        search=SemanticSearchService(
            repository,
            indexes,
            embedder,
            config=search_config,
            embedding_config=embedding_config,
        ),
        housekeeping=HousekeepingScheduler(
            memories,
            detector,
            locks=locks,
            audit_logger=audit_logger,
        ),
    )


async def shutdown() -> None:
    """Finish background extractions, persist indexes and close clients."""
    global _services, _redis
    if _services is not None:
        await _services.pipeline.drain()
        await _services.memories.indexes.save_all()
        _services = None
    if _redis is not None:
        try:
            await _redis.aclose()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass
        _redis = None


def _get_services() -> _Services:
    """Return the configured services or raise."""
    if _services is None:
        raise RuntimeError("Keepsake not configured. Call configure() first.")
    return _services


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(part) for part in err.get("loc", ()))
    msg = str(err.get("msg", "Invalid input"))
    return f"{loc}: {msg}" if loc else msg


def _record(operation: str, start: float, ok: bool) -> None:
    record_latency(
        operation=f"mcp.{operation}",
        duration_ms=(perf_counter() - start) * 1000,
        ok=ok,
    )


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool
async def search_memories(
    character_id: str,
    query: str,
    limit: int = 20,
    min_score: float = 0.0,
    min_importance: float | None = None,
    source: str | None = None,
) -> SearchMemoriesResult:
    """Search a character's memories by meaning, falling back to text match.

    Args:
        character_id: Character whose memories are searched.
        query: Free-text query.
        limit: Max memories returned.
        min_score: Minimum cosine similarity for vector results.
        min_importance: Only memories at or above this importance.
        source: Only AUTO or MANUAL memories.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        try:
            validated = SearchMemoriesInput.model_validate(
                {
                    "character_id": character_id,
                    "query": query,
                    "limit": limit,
                    "min_score": min_score,
                    "min_importance": min_importance,
                    "source": source,
                }
            )
        except ValidationError as exc:
            return SearchMemoriesResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
                query=query,
            )

        results = await services.search.search(
            validated.character_id,
            validated.query,
            SearchFilters(
                min_score=validated.min_score,
                min_importance=validated.min_importance,
                source=validated.source,
            ),
            limit=validated.limit,
        )
        ok = True
        return SearchMemoriesResult(
            query=validated.query,
            used_embedding=bool(results) and results[0].used_embedding,
            memories=[MemoryHit.from_result(r) for r in results],
            formatted=format_search_results(results),
        )
    finally:
        _record("search_memories", start, ok)


@mcp.tool
async def extract_exchange(
    character_id: str,
    character_name: str,
    user_message: str,
    assistant_message: str,
    persona_name: str | None = None,
    chat_id: str | None = None,
    persona_id: str | None = None,
    user_message_id: str | None = None,
    assistant_message_id: str | None = None,
) -> ExtractExchangeResult:
    """Queue one user/assistant exchange for background memory extraction.

    Returns immediately; memories appear once classification finishes.

    Args:
        character_id: Character the memories belong to.
        character_name: Display name used in the classification prompt.
        user_message: The user's message.
        assistant_message: The character's reply.
        persona_name: Optional user persona name.
        chat_id: Source chat, stored on created memories.
        persona_id: Persona id, stored on created memories.
        user_message_id: Id of the user message.
        assistant_message_id: Id of the reply; becomes source_message_id.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        try:
            validated = ExtractExchangeInput.model_validate(
                {
                    "character_id": character_id,
                    "character_name": character_name,
                    "user_message": user_message,
                    "assistant_message": assistant_message,
                    "persona_name": persona_name,
                    "chat_id": chat_id,
                    "persona_id": persona_id,
                    "user_message_id": user_message_id,
                    "assistant_message_id": assistant_message_id,
                }
            )
        except ValidationError as exc:
            return ExtractExchangeResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        services.pipeline.submit(
            Exchange(
                user_message=validated.user_message,
                assistant_message=validated.assistant_message,
                user_message_id=validated.user_message_id,
                assistant_message_id=validated.assistant_message_id,
            ),
            ExtractionContext(
                character_id=validated.character_id,
                character_name=validated.character_name,
                persona_name=validated.persona_name,
                chat_id=validated.chat_id,
                persona_id=validated.persona_id,
            ),
        )
        ok = True
        return ExtractExchangeResult()
    finally:
        _record("extract_exchange", start, ok)


async def _housekeeping(
    operation: str,
    character_id: str,
    policy_args: dict,
    *,
    dry_run: bool,
) -> HousekeepingReport:
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        try:
            policy = HousekeepingPolicyInput.model_validate(policy_args).to_policy(
                dry_run=dry_run
            )
        except ValidationError as exc:
            return HousekeepingReport(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
                character_id=character_id,
                dry_run=dry_run,
            )
        try:
            result = await services.housekeeping.run(character_id, policy)
        except HousekeepingError as exc:
            return HousekeepingReport(
                status="error",
                error_code="housekeeping_failed",
                message=str(exc),
                character_id=character_id,
                dry_run=dry_run,
            )
        ok = True
        return HousekeepingReport.from_result(result)
    finally:
        _record(operation, start, ok)


@mcp.tool
async def housekeeping_preview(
    character_id: str,
    max_memories: int = 1000,
    max_age_months: float = 6,
    max_inactive_months: float = 6,
    min_importance: float = 0.3,
    merge_similar: bool = False,
    merge_threshold: float = 0.9,
) -> HousekeepingReport:
    """Show what housekeeping would delete or merge, without changing anything.

    Args:
        character_id: Character to inspect.
        max_memories: Hard cap on memories kept.
        max_age_months: Low-importance memories older than this may go.
        max_inactive_months: ...and not accessed for this long.
        min_importance: Importance below which memories are low value.
        merge_similar: Also merge near-duplicate memories.
        merge_threshold: Similarity at which memories count as duplicates.
    """
    return await _housekeeping(
        "housekeeping_preview",
        character_id,
        {
            "max_memories": max_memories,
            "max_age_months": max_age_months,
            "max_inactive_months": max_inactive_months,
            "min_importance": min_importance,
            "merge_similar": merge_similar,
            "merge_threshold": merge_threshold,
        },
        dry_run=True,
    )


@mcp.tool
async def run_housekeeping(
    character_id: str,
    max_memories: int = 1000,
    max_age_months: float = 6,
    max_inactive_months: float = 6,
    min_importance: float = 0.3,
    merge_similar: bool = False,
    merge_threshold: float = 0.9,
) -> HousekeepingReport:
    """Delete stale memories, merge near-duplicates and enforce the cap.

    Protected memories (high importance, manual, recently accessed) are
    never removed.

    Args:
        character_id: Character to clean up.
        max_memories: Hard cap on memories kept.
        max_age_months: Low-importance memories older than this may go.
        max_inactive_months: ...and not accessed for this long.
        min_importance: Importance below which memories are low value.
        merge_similar: Also merge near-duplicate memories.
        merge_threshold: Similarity at which memories count as duplicates.
    """
    return await _housekeeping(
        "run_housekeeping",
        character_id,
        {
            "max_memories": max_memories,
            "max_age_months": max_age_months,
            "max_inactive_months": max_inactive_months,
            "min_importance": min_importance,
            "merge_similar": merge_similar,
            "merge_threshold": merge_threshold,
        },
        dry_run=False,
    )


@mcp.tool
async def needs_housekeeping(
    character_id: str,
    max_memories: int = 1000,
) -> NeedsHousekeepingResult:
    """Tell whether a character is near its memory cap or has stale memories.

    Args:
        character_id: Character to inspect.
        max_memories: Hard cap used for the capacity check.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        try:
            policy = HousekeepingPolicyInput.model_validate(
                {"max_memories": max_memories}
            ).to_policy(dry_run=True)
        except ValidationError as exc:
            return NeedsHousekeepingResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
                character_id=character_id,
            )
        try:
            needed = await services.housekeeping.needs_housekeeping(
                character_id, policy
            )
        except HousekeepingError as exc:
            return NeedsHousekeepingResult(
                status="error",
                error_code="housekeeping_failed",
                message=str(exc),
                character_id=character_id,
            )
        ok = True
        return NeedsHousekeepingResult(character_id=character_id, needed=needed)
    finally:
        _record("needs_housekeeping", start, ok)


@mcp.tool
async def rebuild_vector_index(
    character_id: str,
    regenerate_missing: bool = False,
) -> RebuildIndexResult:
    """Discard a character's vector index and rebuild it from stored embeddings.

    Args:
        character_id: Character whose index is rebuilt.
        regenerate_missing: Also embed memories that never got an embedding.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        result = await services.memories.rebuild_vector_index(
            character_id, regenerate_missing=regenerate_missing
        )
        ok = True
        return RebuildIndexResult(
            character_id=character_id,
            indexed=result.indexed,
            failed=result.failed,
            regenerated=result.regenerated,
        )
    finally:
        _record("rebuild_vector_index", start, ok)
