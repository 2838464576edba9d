"""Engine-level data models shared by extraction, search and housekeeping."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel
from pydantic import Field

from keepsake.memory.schemas import Memory
from keepsake.memory.schemas import MemorySource

# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


class Perspective(str, Enum):
    """Whose facts a classification pass looks for."""

    USER = "user"
    CHARACTER = "character"


class ExtractionContext(BaseModel):
    """Who is talking, and where the exchange came from."""

    character_id: str
    character_name: str
    persona_name: str | None = None
    chat_id: str | None = None
    persona_id: str | None = None


class PerspectiveOutcome(BaseModel):
    """What one classification pass produced."""

    perspective: Perspective
    significant: bool = False
    duplicate: bool = False
    memory_id: str | None = None
    error: str | None = Field(
        default=None,
        description="Provider or storage failure; None when the pass ran cleanly.",
    )

    @property
    def created(self) -> bool:
        return self.memory_id is not None


class ExtractionOutcome(BaseModel):
    """Result of processing one exchange; never carries an exception."""

    user: PerspectiveOutcome = Field(
        default_factory=lambda: PerspectiveOutcome(perspective=Perspective.USER)
    )
    character: PerspectiveOutcome = Field(
        default_factory=lambda: PerspectiveOutcome(perspective=Perspective.CHARACTER)
    )

    @property
    def memory_ids(self) -> list[str]:
        return [o.memory_id for o in (self.user, self.character) if o.memory_id]

    @property
    def memory_created(self) -> bool:
        return bool(self.memory_ids)

    @property
    def success(self) -> bool:
        return self.user.error is None and self.character.error is None


class BatchExtractionResult(BaseModel):
    """Result of one batched classification call."""

    candidates: int = 0
    memory_ids: list[str] = Field(default_factory=list)
    duplicates: int = 0
    error: str | None = None


class HistoryResult(BaseModel):
    """Totals for a chat-history back-fill."""

    processed: int = 0
    memories_created: int = 0
    errors: int = 0


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class SearchFilters(BaseModel):
    """Optional constraints applied to search results."""

    min_score: float = Field(
        default=0.0,
        description="Minimum cosine similarity; only applies to vector results.",
    )
    min_importance: float | None = None
    source: MemorySource | None = None

    def accepts(self, memory: Memory) -> bool:
        if self.min_importance is not None and memory.importance < self.min_importance:
            return False
        if self.source is not None and memory.source != self.source:
            return False
        return True


class SearchResult(BaseModel):
    """One ranked memory."""

    memory: Memory
    score: float
    used_embedding: bool


# ---------------------------------------------------------------------------
# Housekeeping
# ---------------------------------------------------------------------------


class HousekeepingAction(str, Enum):
    DELETED = "deleted"
    MERGED = "merged"


class HousekeepingDetail(BaseModel):
    """Why one memory was removed."""

    memory_id: str
    action: HousekeepingAction
    reason: str
    merged_into: str | None = None


class MergePair(BaseModel):
    kept_id: str
    merged_id: str
    similarity: float


class HousekeepingResult(BaseModel):
    """Outcome of a housekeeping run or preview."""

    character_id: str
    dry_run: bool
    total_before: int
    deleted_ids: list[str] = Field(default_factory=list)
    merged_ids: list[str] = Field(default_factory=list)
    merges: list[MergePair] = Field(default_factory=list)
    details: list[HousekeepingDetail] = Field(default_factory=list)

    @property
    def removed_ids(self) -> list[str]:
        return [*self.deleted_ids, *self.merged_ids]

    @property
    def deleted_count(self) -> int:
        return len(self.deleted_ids)

    @property
    def merged_count(self) -> int:
        return len(self.merged_ids)

    @property
    def total_after(self) -> int:
        return self.total_before - len(self.removed_ids)


# ---------------------------------------------------------------------------
# Index maintenance
# ---------------------------------------------------------------------------


class EmbeddingBackfillResult(BaseModel):
    """Totals for ``generate_missing_embeddings``."""

    processed: int = 0
    failed: int = 0


class IndexRebuildResult(BaseModel):
    """Totals for ``rebuild_vector_index``."""

    indexed: int = 0
    failed: int = 0
    regenerated: int = 0


class IndexConsistencyReport(BaseModel):
    """Differences between stored embeddings and the vector index."""

    character_id: str
    missing_from_index: list[str] = Field(
        default_factory=list,
        description="Memories with a stored embedding but no index entry.",
    )
    orphaned_entries: list[str] = Field(
        default_factory=list,
        description="Index entries whose memory no longer exists.",
    )
    without_embedding: list[str] = Field(
        default_factory=list,
        description="Memories that were never embedded.",
    )

    @property
    def consistent(self) -> bool:
        return not self.missing_from_index and not self.orphaned_entries
