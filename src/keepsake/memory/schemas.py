"""Memory domain data models."""

from __future__ import annotations

import uuid
from datetime import datetime
from datetime import timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

DEFAULT_IMPORTANCE = 0.5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_importance(value: Any) -> float:
    """Clamp *value* to [0, 1]; anything non-numeric becomes 0.5."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_IMPORTANCE
    if value != value:  # NaN
        return DEFAULT_IMPORTANCE
    return min(max(float(value), 0.0), 1.0)


def coerce_keywords(value: Any) -> list[str]:
    """Keep non-empty string keywords, dropping duplicates case-insensitively."""
    if not isinstance(value, (list, tuple, set)):
        return []
    seen: set[str] = set()
    keywords: list[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        word = item.strip()
        if word and word.lower() not in seen:
            seen.add(word.lower())
            keywords.append(word)
    return keywords


class MemorySource(str, Enum):
    """How a memory came to exist."""

    AUTO = "AUTO"
    MANUAL = "MANUAL"


class Memory(BaseModel):
    """A durable fact about a user or character, scoped to one character."""

    id: str = Field(
        default_factory=lambda: f"mem_{uuid.uuid4().hex}",
        description="Unique identifier, auto-generated as mem_{uuid4_hex}.",
    )
    character_id: str = Field(
        description="Owning character; every operation is partitioned by it.",
    )
    chat_id: str | None = Field(default=None, description="Source chat, passthrough.")
    persona_id: str | None = Field(default=None, description="Persona, passthrough.")
    source_message_id: str | None = Field(
        default=None,
        description="Message the memory was extracted from, passthrough.",
    )
    content: str = Field(description="Full free-text memory body.")
    summary: str = Field(
        default="",
        description="One-sentence compression used for display and search.",
    )
    keywords: list[str] = Field(
        default_factory=list,
        description="Short strings for lexical search and deduplication.",
    )
    importance: float = Field(
        default=DEFAULT_IMPORTANCE,
        description="Durability score in [0, 1].",
    )
    source: MemorySource = Field(
        default=MemorySource.MANUAL,
        description="AUTO for extracted memories, MANUAL for user-authored ones.",
    )
    embedding: list[float] | None = Field(
        default=None,
        description="Embedding of summary + content, once generated.",
    )
    tags: list[str] = Field(default_factory=list, description="Opaque tag ids.")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_accessed_at: datetime | None = Field(
        default=None,
        description="Last time search surfaced this memory.",
    )

    @field_validator("importance", mode="before")
    @classmethod
    def clamp_importance(cls, value: Any) -> float:
        return coerce_importance(value)

    @field_validator("keywords", mode="before")
    @classmethod
    def clean_keywords(cls, value: Any) -> list[str]:
        return coerce_keywords(value)

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    @property
    def embedding_text(self) -> str:
        """Text that gets embedded for this memory."""
        return embedding_text(self.summary, self.content)


class MemoryCandidate(BaseModel):
    """Transient classifier output; never persisted as-is."""

    significant: bool = False
    content: str | None = None
    summary: str | None = None
    keywords: list[str] = Field(default_factory=list)
    importance: float = DEFAULT_IMPORTANCE

    @field_validator("significant", mode="before")
    @classmethod
    def strict_significant(cls, value: Any) -> bool:
        # Only a literal JSON true counts
        return value is True

    @field_validator("content", "summary", mode="before")
    @classmethod
    def text_or_none(cls, value: Any) -> str | None:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    @field_validator("importance", mode="before")
    @classmethod
    def clamp_importance(cls, value: Any) -> float:
        return coerce_importance(value)

    @field_validator("keywords", mode="before")
    @classmethod
    def clean_keywords(cls, value: Any) -> list[str]:
        return coerce_keywords(value)

    @property
    def embedding_text(self) -> str:
        return embedding_text(self.summary or "", self.content or "")


def embedding_text(summary: str, content: str) -> str:
    """Join summary and content the way every embedding call does."""
    return f"{summary}\n\n{content}".strip()
