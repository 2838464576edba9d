"""Redis-backed memory repository.

Memories are stored as JSON strings keyed by
``{prefix}:{character_id}:memory:{id}``.  A per-character sorted set
``{prefix}:{character_id}:memories`` tracks creation order
(score = ``created_at`` epoch) and doubles as the membership index used
for counting and bulk reads.  Nothing expires: memories are durable and
only housekeeping removes them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from collections.abc import Mapping
from typing import Any

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import WatchError

from keepsake.memory.repository import apply_changes
from keepsake.memory.repository import matches_query
from keepsake.memory.repository import shares_keyword
from keepsake.memory.schemas import Memory
from keepsake.memory.schemas import utcnow

logger = logging.getLogger(__name__)

_DELETE_BATCH_SIZE = 100


def _decode(raw: bytes | str) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


class RedisMemoryRepository:
    """``MemoryRepository`` implementation on top of ``redis.asyncio``."""

    def __init__(self, redis: Redis, *, key_prefix: str = "keepsake") -> None:
        self._redis = redis
        self._prefix = key_prefix

    # -- keys --

    def _memory_key(self, character_id: str, memory_id: str) -> str:
        return f"{self._prefix}:{character_id}:memory:{memory_id}"

    def _order_key(self, character_id: str) -> str:
        return f"{self._prefix}:{character_id}:memories"

    # -- write --

    async def create(self, memory: Memory) -> Memory:
        key = self._memory_key(memory.character_id, memory.id)
        created = await self._redis.set(key, memory.model_dump_json(), nx=True)
        if not created:
            raise ValueError(f"memory {memory.id} already exists")
        await self._redis.zadd(
            self._order_key(memory.character_id),
            {memory.id: memory.created_at.timestamp()},
        )
        return memory

    async def update_for_character(
        self, character_id: str, memory_id: str, changes: Mapping[str, Any]
    ) -> Memory | None:
        """Read-modify-write under WATCH; retried when the key changes meanwhile.

        A key deleted between the read and the write is never recreated.
        """
        key = self._memory_key(character_id, memory_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        return None
                    updated = apply_changes(Memory.model_validate_json(raw), changes)
                    pipe.multi()
                    pipe.set(key, updated.model_dump_json(), xx=True)
                    await pipe.execute()
                    return updated
                except WatchError:
                    logger.debug("Memory %s changed during update; retrying", memory_id)

    async def update_access_time(self, character_id: str, memory_id: str) -> bool:
        updated = await self.update_for_character(
            character_id, memory_id, {"last_accessed_at": utcnow()}
        )
        return updated is not None

    async def delete_for_character(self, character_id: str, memory_id: str) -> bool:
        return await self.bulk_delete(character_id, [memory_id]) == 1

    async def bulk_delete(self, character_id: str, memory_ids: Iterable[str]) -> int:
        """Delete *memory_ids* in pipelined batches; return how many existed."""
        ids = list(dict.fromkeys(memory_ids))
        deleted = 0
        for start in range(0, len(ids), _DELETE_BATCH_SIZE):
            batch = ids[start : start + _DELETE_BATCH_SIZE]
            pipe = self._redis.pipeline()
            for mid in batch:
                pipe.delete(self._memory_key(character_id, mid))
            pipe.zrem(self._order_key(character_id), *batch)
            results = await pipe.execute()
            deleted += sum(int(r) for r in results[:-1])
        return deleted

    # -- read --

    async def find_by_id_for_character(
        self, character_id: str, memory_id: str
    ) -> Memory | None:
        data = await self._redis.get(self._memory_key(character_id, memory_id))
        if data is None:
            return None
        return Memory.model_validate_json(data)

    async def find_by_character_id(self, character_id: str) -> list[Memory]:
        """Return every memory of the character, oldest first."""
        raw_ids = await self._redis.zrange(self._order_key(character_id), 0, -1)
        ids = [_decode(i) for i in raw_ids]
        if not ids:
            return []

        pipe = self._redis.pipeline()
        for mid in ids:
            pipe.get(self._memory_key(character_id, mid))
        raw_results = await pipe.execute()

        stale_ids: list[str] = []
        memories: list[Memory] = []
        for mid, raw in zip(ids, raw_results):
            if raw is None:
                stale_ids.append(mid)
            else:
                memories.append(Memory.model_validate_json(raw))

        if stale_ids:
            logger.warning(
                "Pruning %d stale ids from %s",
                len(stale_ids),
                self._order_key(character_id),
            )
            await self._redis.zrem(self._order_key(character_id), *stale_ids)
        return memories

    async def count_by_character_id(self, character_id: str) -> int:
        return await self._redis.zcard(self._order_key(character_id))

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

    async def clear(self, character_id: str) -> None:
        """Remove every memory of one character."""
        raw_ids = await self._redis.zrange(self._order_key(character_id), 0, -1)
        ids = [_decode(i) for i in raw_ids]
        await self.bulk_delete(character_id, ids)
        await self._redis.delete(self._order_key(character_id))

    async def close(self) -> None:
        await self._redis.aclose()
