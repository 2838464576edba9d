"""Cache of per-character vector indexes."""

from __future__ import annotations

import asyncio
import logging

from keepsake.index.persistence import IndexPersistence
from keepsake.index.persistence import InMemoryIndexPersistence
from keepsake.index.vector import CharacterVectorIndex

logger = logging.getLogger(__name__)


class VectorIndexManager:
    """Loads each character's index once and hands out the cached instance."""

    def __init__(self, persistence: IndexPersistence | None = None) -> None:
        self._persistence = persistence or InMemoryIndexPersistence()
        self._indexes: dict[str, CharacterVectorIndex] = {}
        self._load_lock = asyncio.Lock()

    async def get_index(self, character_id: str) -> CharacterVectorIndex:
        index = self._indexes.get(character_id)
        if index is not None:
            return index
        async with self._load_lock:
            index = self._indexes.get(character_id)
            if index is None:
                index = CharacterVectorIndex(character_id, self._persistence)
                await index.load()
                self._indexes[character_id] = index
        return index

    async def save(self, character_id: str) -> None:
        index = self._indexes.get(character_id)
        if index is not None:
            await index.save()

    async def save_all(self) -> None:
        await asyncio.gather(*(index.save() for index in self._indexes.values()))

    def unload(self, character_id: str) -> bool:
        """Drop the cached index without touching persisted state."""
        return self._indexes.pop(character_id, None) is not None

    async def delete(self, character_id: str) -> bool:
        """Discard a character's index, cached and persisted."""
        self._indexes.pop(character_id, None)
        deleted = await self._persistence.delete(character_id)
        logger.info("Deleted vector index for %s", character_id)
        return deleted

    def stats(self) -> dict[str, int]:
        return {
            "loaded_indexes": len(self._indexes),
            "total_vectors": sum(i.size for i in self._indexes.values()),
        }
