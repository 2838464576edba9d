"""Unit tests for the per-character vector index and its manager."""

from __future__ import annotations

import json

import pytest

from keepsake.index import CharacterVectorIndex
from keepsake.index import cosine_similarity
from keepsake.index import InMemoryIndexPersistence
from keepsake.index import IndexPersistence
from keepsake.index import VectorIndexError
from keepsake.index import VectorIndexManager
from keepsake.observability import degradation_snapshot


class TestCosineSimilarity:
    def test_known_values(self):
        assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0, 0], [1, 0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(VectorIndexError):
            cosine_similarity([1, 0], [1, 0, 0])


class TestCharacterVectorIndex:
    async def test_search_ranks_by_similarity(self):
        index = CharacterVectorIndex("char-1")
        await index.add("north", [0, 1])
        await index.add("east", [1, 0])
        await index.add("north-east", [1, 1])

        hits = index.search([0.1, 1.0], k=2)
        assert [h.memory_id for h in hits] == ["north", "north-east"]
        assert hits[0].score > hits[1].score

    async def test_search_filter_and_limits(self):
        index = CharacterVectorIndex("char-1")
        await index.add("a", [1, 0], {"kind": "keep"})
        await index.add("b", [1, 0.1], {"kind": "skip"})

        hits = index.search([1, 0], filter=lambda meta: meta.get("kind") == "keep")
        assert [h.memory_id for h in hits] == ["a"]
        assert index.search([1, 0], k=0) == []
        assert CharacterVectorIndex("empty").search([1, 0]) == []

    async def test_dimensions_are_fixed_by_first_vector(self):
        index = CharacterVectorIndex("char-1")
        await index.add("a", [1, 0, 0])
        assert index.dimensions == 3
        with pytest.raises(VectorIndexError):
            await index.add("b", [1, 0])
        with pytest.raises(VectorIndexError):
            index.search([1, 0])

    async def test_invalid_vectors_rejected(self):
        index = CharacterVectorIndex("char-1")
        with pytest.raises(VectorIndexError):
            await index.add("a", [])
        with pytest.raises(VectorIndexError):
            await index.add("a", [float("nan"), 1.0])

    async def test_add_replaces_and_update_requires_entry(self):
        index = CharacterVectorIndex("char-1")
        await index.add("a", [1, 0])
        await index.add("a", [0, 1])
        assert index.size == 1
        assert index.search([0, 1])[0].score == pytest.approx(1.0)

        assert await index.update("a", [1, 0]) is True
        assert index.search([1, 0])[0].score == pytest.approx(1.0)
        assert await index.update("missing", [1, 0]) is False

    async def test_remove_and_clear(self):
        index = CharacterVectorIndex("char-1")
        await index.add("a", [1, 0])
        await index.add("b", [0, 1])

        assert await index.remove("a") is True
        assert await index.remove("a") is False
        assert index.memory_ids() == {"b"}
        await index.clear()
        assert index.size == 0
        assert index.dimensions is None

    async def test_save_and_load_roundtrip(self):
        persistence = InMemoryIndexPersistence()
        index = CharacterVectorIndex("char-1", persistence)
        await index.add("a", [1, 0], {"summary": "A"})
        assert index.dirty
        await index.save()
        assert not index.dirty

        restored = CharacterVectorIndex("char-1", persistence)
        await restored.load()
        assert restored.memory_ids() == {"a"}
        assert restored.dimensions == 2
        assert restored.entries()[0].metadata == {"summary": "A"}

        snapshot = json.loads(persistence.snapshots["char-1"])
        assert snapshot["version"] == 1
        assert snapshot["character_id"] == "char-1"

    async def test_save_skips_clean_index(self):
        persistence = InMemoryIndexPersistence()
        index = CharacterVectorIndex("char-1", persistence)
        await index.save()
        assert persistence.snapshots == {}

    async def test_corrupt_snapshot_starts_empty(self):
        persistence = InMemoryIndexPersistence()
        persistence.snapshots["char-1"] = '{"entries": "nope"}'
        index = CharacterVectorIndex("char-1", persistence)
        await index.load()
        assert index.size == 0
        assert degradation_snapshot()["index.corrupt"] == 1


class TestVectorIndexManager:
    def test_in_memory_persistence_satisfies_protocol(self):
        assert isinstance(InMemoryIndexPersistence(), IndexPersistence)

    async def test_get_index_is_cached(self):
        manager = VectorIndexManager()
        first = await manager.get_index("char-1")
        assert await manager.get_index("char-1") is first
        assert await manager.get_index("char-2") is not first

    async def test_indexes_are_isolated_per_character(self):
        manager = VectorIndexManager()
        a = await manager.get_index("a")
        await a.add("mem-a", [1, 0])
        b = await manager.get_index("b")
        assert b.search([1, 0]) == []

    async def test_save_all_unload_and_reload(self):
        persistence = InMemoryIndexPersistence()
        manager = VectorIndexManager(persistence)
        index = await manager.get_index("char-1")
        await index.add("a", [1, 0])
        await manager.save_all()

        assert manager.unload("char-1") is True
        reloaded = await manager.get_index("char-1")
        assert reloaded is not index
        assert reloaded.memory_ids() == {"a"}
        assert manager.stats() == {"loaded_indexes": 1, "total_vectors": 1}

    async def test_delete_drops_persisted_snapshot(self):
        persistence = InMemoryIndexPersistence()
        manager = VectorIndexManager(persistence)
        index = await manager.get_index("char-1")
        await index.add("a", [1, 0])
        await manager.save("char-1")

        assert await manager.delete("char-1") is True
        assert "char-1" not in persistence.snapshots
        assert (await manager.get_index("char-1")).size == 0
