"""Memory repository contract and the in-process implementation.

Every operation is scoped by ``character_id``; a memory id that belongs to
another character behaves exactly like a missing id.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable
from collections.abc import Mapping
from typing import Any
from typing import Protocol
from typing import runtime_checkable

from keepsake.memory.schemas import Memory
from keepsake.memory.schemas import utcnow

# Fields callers may never rewrite through ``update_for_character``
_IMMUTABLE_FIELDS = frozenset({"id", "character_id", "created_at"})

# ---------------------------------------------------------------------------
# Text matching shared by every backend
# ---------------------------------------------------------------------------

_WORD_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> list[str]:
    """Extract lowercase alphanumeric tokens from *text*, in order."""
    return _WORD_RE.findall(text.lower())


def shares_keyword(memory: Memory, keywords: Iterable[str]) -> bool:
    """True when any of *keywords* occurs inside one of the memory's keywords."""
    wanted = [k.lower() for k in keywords if k.strip()]
    own = [k.lower() for k in memory.keywords]
    return any(w in mk for w in wanted for mk in own)


def matches_query(memory: Memory, query: str) -> bool:
    """Substring match on content/summary/keywords, or a query word hitting a keyword."""
    needle = query.strip().lower()
    if not needle:
        return False
    if needle in memory.content.lower() or needle in memory.summary.lower():
        return True
    if any(needle in k.lower() for k in memory.keywords):
        return True
    return shares_keyword(memory, tokenize(needle))


def apply_changes(memory: Memory, changes: Mapping[str, Any]) -> Memory:
    """Return a validated copy of *memory* with *changes* applied."""
    data = memory.model_dump()
    allowed = {k: v for k, v in changes.items() if k not in _IMMUTABLE_FIELDS}
    data.update(allowed)
    # Being read is not an edit
    if set(allowed) - {"last_accessed_at"}:
        data["updated_at"] = utcnow()
    return Memory.model_validate(data)


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


@runtime_checkable
class MemoryRepository(Protocol):
    """Durable CRUD store for memories, partitioned by character."""

    async def create(self, memory: Memory) -> Memory: ...

    async def find_by_character_id(self, character_id: str) -> list[Memory]: ...

    async def find_by_id_for_character(
        self, character_id: str, memory_id: str
    ) -> Memory | None: ...

    async def update_for_character(
        self, character_id: str, memory_id: str, changes: Mapping[str, Any]
    ) -> Memory | None: ...

    async def delete_for_character(self, character_id: str, memory_id: str) -> bool: ...

    async def bulk_delete(self, character_id: str, memory_ids: Iterable[str]) -> int: ...

    async def count_by_character_id(self, character_id: str) -> int: ...

    async def find_by_keywords(
        self, character_id: str, keywords: Iterable[str]
    ) -> list[Memory]: ...

    async def search_by_content(self, character_id: str, query: str) -> list[Memory]: ...

    async def update_access_time(self, character_id: str, memory_id: str) -> bool: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryMemoryRepository:
    """Dict-backed repository; used in tests and single-process deployments."""

    def __init__(self) -> None:
        self._by_character: dict[str, dict[str, Memory]] = {}
        self._lock = asyncio.Lock()

    async def create(self, memory: Memory) -> Memory:
        async with self._lock:
            bucket = self._by_character.setdefault(memory.character_id, {})
            if memory.id in bucket:
                raise ValueError(f"memory {memory.id} already exists")
            bucket[memory.id] = memory
        return memory

    async def find_by_character_id(self, character_id: str) -> list[Memory]:
        bucket = self._by_character.get(character_id, {})
        return sorted(bucket.values(), key=lambda m: m.created_at)

    async def find_by_id_for_character(
        self, character_id: str, memory_id: str
    ) -> Memory | None:
        return self._by_character.get(character_id, {}).get(memory_id)

    async def update_for_character(
        self, character_id: str, memory_id: str, changes: Mapping[str, Any]
    ) -> Memory | None:
        async with self._lock:
            bucket = self._by_character.get(character_id, {})
            existing = bucket.get(memory_id)
            if existing is None:
                return None
            updated = apply_changes(existing, changes)
            bucket[memory_id] = updated
        return updated

    async def delete_for_character(self, character_id: str, memory_id: str) -> bool:
        async with self._lock:
            return self._by_character.get(character_id, {}).pop(memory_id, None) is not None

    async def bulk_delete(self, character_id: str, memory_ids: Iterable[str]) -> int:
        async with self._lock:
            bucket = self._by_character.get(character_id, {})
            return sum(1 for mid in set(memory_ids) if bucket.pop(mid, None) is not None)

    async def count_by_character_id(self, character_id: str) -> int:
        return len(self._by_character.get(character_id, {}))

    async def find_by_keywords(
        self, character_id: str, keywords: Iterable[str]
    ) -> list[Memory]:
        keywords = list(keywords)
        if not keywords:
            return []
        memories = await self.find_by_character_id(character_id)
        return [m for m in memories if shares_keyword(m, keywords)]

    async def search_by_content(self, character_id: str, query: str) -> list[Memory]:
        memories = await self.find_by_character_id(character_id)
        return [m for m in memories if matches_query(m, query)]

    async def update_access_time(self, character_id: str, memory_id: str) -> bool:
        updated = await self.update_for_character(
            character_id, memory_id, {"last_accessed_at": utcnow()}
        )
        return updated is not None
