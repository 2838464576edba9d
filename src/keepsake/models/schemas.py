"""Pydantic models for the MCP interface.

Input models validate tool arguments; output models shape responses.
FastMCP v2 serializes Pydantic models automatically.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel
from pydantic import Field

from keepsake.config import HousekeepingPolicy
from keepsake.engine.schemas import HousekeepingDetail
from keepsake.engine.schemas import HousekeepingResult
from keepsake.engine.schemas import MergePair
from keepsake.engine.schemas import SearchResult
from keepsake.memory.schemas import MemorySource

Status = Literal["ok", "accepted", "error", "rejected"]

_DEFAULT_POLICY = HousekeepingPolicy()

# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


class SearchMemoriesInput(BaseModel):
    """Input for search_memories tool."""

    character_id: str = Field(min_length=1, description="Character to search.")
    query: str = Field(min_length=1, description="Free-text query.")
    limit: int = Field(default=20, ge=1, le=200, description="Max results.")
    min_score: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Minimum cosine similarity (vector results only).",
    )
    min_importance: float | None = Field(default=None, ge=0.0, le=1.0)
    source: MemorySource | None = Field(
        default=None, description="Restrict to AUTO or MANUAL memories."
    )


class ExtractExchangeInput(BaseModel):
    """Input for extract_exchange tool."""

    character_id: str = Field(min_length=1)
    character_name: str = Field(min_length=1)
    user_message: str = Field(min_length=1)
    assistant_message: str = Field(min_length=1)
    persona_name: str | None = None
    chat_id: str | None = None
    persona_id: str | None = None
    user_message_id: str | None = None
    assistant_message_id: str | None = None


class HousekeepingPolicyInput(BaseModel):
    """Retention policy arguments shared by the housekeeping tools."""

    max_memories: int = Field(default=_DEFAULT_POLICY.max_memories, ge=1)
    max_age_months: float = Field(default=_DEFAULT_POLICY.max_age_months, ge=0)
    max_inactive_months: float = Field(
        default=_DEFAULT_POLICY.max_inactive_months, ge=0
    )
    min_importance: float = Field(
        default=_DEFAULT_POLICY.min_importance, ge=0.0, le=1.0
    )
    merge_similar: bool = _DEFAULT_POLICY.merge_similar
    merge_threshold: float = Field(
        default=_DEFAULT_POLICY.merge_threshold, ge=0.0, le=1.0
    )

    def to_policy(self, *, dry_run: bool) -> HousekeepingPolicy:
        return HousekeepingPolicy(**self.model_dump(), dry_run=dry_run)


# ---------------------------------------------------------------------------
# Output models
# ---------------------------------------------------------------------------


class MemoryHit(BaseModel):
    """One search result as returned to MCP clients."""

    id: str
    summary: str
    content: str
    importance: float
    source: MemorySource
    score: float = Field(description="Cosine similarity or lexical score.")
    created_at: datetime

    @classmethod
    def from_result(cls, result: SearchResult) -> MemoryHit:
        memory = result.memory
        return cls(
            id=memory.id,
            summary=memory.summary,
            content=memory.content,
            importance=memory.importance,
            source=memory.source,
            score=round(result.score, 4),
            created_at=memory.created_at,
        )


class SearchMemoriesResult(BaseModel):
    """Output of search_memories tool."""

    status: Status = "ok"
    error_code: str | None = None
    message: str | None = None
    query: str
    used_embedding: bool = False
    memories: list[MemoryHit] = Field(default_factory=list)
    formatted: str = Field(
        default="",
        description="Results rendered for prompt injection.",
    )


class ExtractExchangeResult(BaseModel):
    """Output of extract_exchange tool."""

    status: Status = "accepted"
    error_code: str | None = None
    message: str | None = None


class HousekeepingReport(BaseModel):
    """Output of housekeeping_preview and run_housekeeping tools."""

    status: Status = "ok"
    error_code: str | None = None
    message: str | None = None
    character_id: str
    dry_run: bool = True
    total_before: int = 0
    total_after: int = 0
    deleted_ids: list[str] = Field(default_factory=list)
    merged_ids: list[str] = Field(default_factory=list)
    merges: list[MergePair] = Field(default_factory=list)
    details: list[HousekeepingDetail] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: HousekeepingResult) -> HousekeepingReport:
        return cls(
            character_id=result.character_id,
            dry_run=result.dry_run,
            total_before=result.total_before,
            total_after=result.total_after,
            deleted_ids=result.deleted_ids,
            merged_ids=result.merged_ids,
            merges=result.merges,
            details=result.details,
        )


class NeedsHousekeepingResult(BaseModel):
    """Output of needs_housekeeping tool."""

    status: Status = "ok"
    error_code: str | None = None
    message: str | None = None
    character_id: str
    needed: bool = False


class RebuildIndexResult(BaseModel):
    """Output of rebuild_vector_index tool."""

    status: Status = "ok"
    error_code: str | None = None
    message: str | None = None
    character_id: str
    indexed: int = 0
    failed: int = 0
    regenerated: int = 0
