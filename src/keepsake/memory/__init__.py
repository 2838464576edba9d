"""Memory domain: records, repositories and chat transcripts."""

from __future__ import annotations

from collections.abc import Iterable

from keepsake.memory.repository import InMemoryMemoryRepository
from keepsake.memory.repository import MemoryRepository
from keepsake.memory.schemas import Memory
from keepsake.memory.schemas import MemoryCandidate
from keepsake.memory.schemas import MemorySource
from keepsake.memory.store import RedisMemoryRepository
from keepsake.memory.transcript import Exchange
from keepsake.memory.transcript import pair_exchanges
from keepsake.memory.transcript import TranscriptMessage
from keepsake.memory.transcript import TranscriptSource

__all__ = [
    "Exchange",
    "InMemoryMemoryRepository",
    "Memory",
    "MemoryCandidate",
    "MemoryRepository",
    "MemorySource",
    "RedisMemoryRepository",
    "TranscriptMessage",
    "TranscriptSource",
    "create_memory",
    "pair_exchanges",
]


def create_memory(
    character_id: str,
    content: str,
    *,
    summary: str | None = None,
    keywords: Iterable[str] = (),
    importance: float | None = None,
    source: MemorySource = MemorySource.MANUAL,
    chat_id: str | None = None,
    persona_id: str | None = None,
    source_message_id: str | None = None,
    tags: Iterable[str] = (),
) -> Memory:
    """Factory for a new Memory with all domain defaults applied.

    A missing summary falls back to the content; a missing importance
    becomes the neutral 0.5.
    """
    return Memory(
        character_id=character_id,
        content=content,
        summary=summary if summary else content,
        keywords=list(keywords),
        importance=importance,
        source=source,
        chat_id=chat_id,
        persona_id=persona_id,
        source_message_id=source_message_id,
        tags=list(tags),
    )
