"""Unit tests for the in-memory repository and shared text matching."""

from __future__ import annotations

import pytest

from keepsake.memory import InMemoryMemoryRepository
from keepsake.memory import MemoryRepository
from keepsake.memory.repository import matches_query
from keepsake.memory.repository import tokenize
from tests.helpers.fakes import make_memory
from tests.helpers.fakes import months_ago


class TestTextMatching:
    def test_tokenize(self):
        assert tokenize("Alice, likes TEA!") == ["alice", "likes", "tea"]

    def test_matches_whole_query_in_content_or_summary(self):
        memory = make_memory("User drinks green tea", summary="Tea drinker")
        assert matches_query(memory, "green tea")
        assert matches_query(memory, "TEA DRINKER")
        assert not matches_query(memory, "coffee")

    def test_matches_query_word_inside_keyword(self):
        memory = make_memory("Something else", keywords=["beverages"])
        assert matches_query(memory, "favourite beverage")

    def test_blank_query_matches_nothing(self):
        assert not matches_query(make_memory("x"), "   ")


class TestInMemoryRepository:
    def test_satisfies_protocol(self):
        assert isinstance(InMemoryMemoryRepository(), MemoryRepository)

    async def test_create_and_find(self, repository):
        older = await repository.create(make_memory("old", created_at=months_ago(2)))
        newer = await repository.create(make_memory("new"))

        found = await repository.find_by_character_id("char-1")
        assert [m.id for m in found] == [older.id, newer.id]
        assert await repository.count_by_character_id("char-1") == 2
        assert await repository.find_by_id_for_character("char-1", newer.id) == newer

    async def test_duplicate_id_rejected(self, repository):
        memory = await repository.create(make_memory("x"))
        with pytest.raises(ValueError):
            await repository.create(memory)

    async def test_other_character_sees_nothing(self, repository):
        memory = await repository.create(make_memory("secret", character_id="a"))

        assert await repository.find_by_id_for_character("b", memory.id) is None
        assert await repository.update_for_character("b", memory.id, {"content": "x"}) is None
        assert await repository.delete_for_character("b", memory.id) is False
        assert await repository.bulk_delete("b", [memory.id]) == 0
        assert await repository.update_access_time("b", memory.id) is False
        assert await repository.find_by_character_id("b") == []
        assert await repository.count_by_character_id("a") == 1

    async def test_update_protects_identity_fields(self, repository):
        memory = await repository.create(make_memory("x", created_at=months_ago(1)))
        updated = await repository.update_for_character(
            "char-1",
            memory.id,
            {"id": "other", "character_id": "evil", "content": "y"},
        )
        assert updated is not None
        assert updated.id == memory.id
        assert updated.character_id == "char-1"
        assert updated.content == "y"
        assert updated.created_at == memory.created_at
        assert updated.updated_at > memory.updated_at

    async def test_access_time_does_not_bump_updated_at(self, repository):
        memory = await repository.create(make_memory("x", created_at=months_ago(1)))
        assert await repository.update_access_time("char-1", memory.id) is True

        stored = await repository.find_by_id_for_character("char-1", memory.id)
        assert stored.last_accessed_at is not None
        assert stored.updated_at == memory.updated_at

    async def test_bulk_delete_counts_existing(self, repository):
        a = await repository.create(make_memory("a"))
        b = await repository.create(make_memory("b"))
        await repository.create(make_memory("c"))

        assert await repository.bulk_delete("char-1", [a.id, b.id, "missing", a.id]) == 2
        assert await repository.count_by_character_id("char-1") == 1

    async def test_find_by_keywords_is_substring_and_case_insensitive(self, repository):
        hit = await repository.create(make_memory("x", keywords=["Lisbon trip"]))
        await repository.create(make_memory("y", keywords=["Paris"]))

        found = await repository.find_by_keywords("char-1", ["lisbon"])
        assert [m.id for m in found] == [hit.id]
        assert await repository.find_by_keywords("char-1", []) == []

    async def test_search_by_content(self, repository):
        hit = await repository.create(make_memory("Alice likes tea"))
        await repository.create(make_memory("Bob likes coffee"))

        found = await repository.search_by_content("char-1", "likes tea")
        assert [m.id for m in found] == [hit.id]
