"""Storage backends for vector index snapshots.

Snapshots are opaque JSON strings; parsing and validation belong to
``CharacterVectorIndex``.
"""

from __future__ import annotations

from typing import Protocol
from typing import runtime_checkable

from redis.asyncio import Redis  # type: ignore[import-untyped]


@runtime_checkable
class IndexPersistence(Protocol):
    """Load, save and delete one serialized index per character."""

    async def load(self, character_id: str) -> str | None: ...

    async def save(self, character_id: str, payload: str) -> None: ...

    async def delete(self, character_id: str) -> bool: ...


class InMemoryIndexPersistence:
    """Dict-backed snapshots; used in tests and single-process deployments."""

    def __init__(self) -> None:
        self.snapshots: dict[str, str] = {}

    async def load(self, character_id: str) -> str | None:
        return self.snapshots.get(character_id)

    async def save(self, character_id: str, payload: str) -> None:
        self.snapshots[character_id] = payload

    async def delete(self, character_id: str) -> bool:
        return self.snapshots.pop(character_id, None) is not None


class RedisIndexPersistence:
    """Snapshots stored under ``{prefix}:{character_id}:vector_index``."""

    def __init__(self, redis: Redis, *, key_prefix: str = "keepsake") -> None:
        self._redis = redis
        self._prefix = key_prefix

    def _key(self, character_id: str) -> str:
        return f"{self._prefix}:{character_id}:vector_index"

    async def load(self, character_id: str) -> str | None:
        raw = await self._redis.get(self._key(character_id))
        if raw is None:
            return None
        return raw.decode() if isinstance(raw, bytes) else raw

    async def save(self, character_id: str, payload: str) -> None:
        await self._redis.set(self._key(character_id), payload)

    async def delete(self, character_id: str) -> bool:
        return bool(await self._redis.delete(self._key(character_id)))
