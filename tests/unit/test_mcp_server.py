"""Unit tests for the MCP tool layer, run against in-memory backends."""

from __future__ import annotations

import json
from dataclasses import dataclass

import pytest
from fastmcp import Client

from keepsake.config import AuditConfig
from keepsake.index import InMemoryIndexPersistence
from keepsake.memory import InMemoryMemoryRepository
from keepsake.observability import latency_metrics_snapshot
from keepsake.server import _get_services
from keepsake.server import configure
from keepsake.server import mcp
from keepsake.server import shutdown
from tests.helpers.fakes import HashingEmbedder
from tests.helpers.fakes import make_memory
from tests.helpers.fakes import months_ago
from tests.helpers.fakes import ScriptedClassifier

USER_LISBON = json.dumps(
    {
        "significant": True,
        "content": "The user recently moved to Lisbon.",
        "summary": "Moved to Lisbon",
        "keywords": ["Lisbon"],
        "importance": 0.8,
    }
)


@dataclass
class _Backends:
    repository: InMemoryMemoryRepository
    persistence: InMemoryIndexPersistence


@pytest.fixture()
async def backends(tmp_path):
    wired = _Backends(InMemoryMemoryRepository(), InMemoryIndexPersistence())
    await configure(
        repository=wired.repository,
        index_persistence=wired.persistence,
        classifier=ScriptedClassifier(user=USER_LISBON),
        embedder=HashingEmbedder(),
        audit_config=AuditConfig(file_path=str(tmp_path / "audit.jsonl")),
    )
    yield wired
    await shutdown()


@pytest.fixture()
async def mcp_client(backends):
    """Yield a FastMCP Client wired to the Keepsake server."""
    async with Client(mcp) as client:
        yield client


def _parse(result) -> dict:
    return json.loads(result.content[0].text)


class TestToolRegistration:
    async def test_list_tools(self, mcp_client):
        tools = await mcp_client.list_tools()
        assert {t.name for t in tools} == {
            "search_memories",
            "extract_exchange",
            "housekeeping_preview",
            "run_housekeeping",
            "needs_housekeeping",
            "rebuild_vector_index",
        }


class TestExtractThenSearch:
    async def test_roundtrip(self, mcp_client, backends):
        accepted = _parse(
            await mcp_client.call_tool(
                "extract_exchange",
                {
                    "character_id": "char-1",
                    "character_name": "Aria",
                    "user_message": "I just moved to Lisbon!",
                    "assistant_message": "How exciting!",
                    "chat_id": "chat-1",
                    "assistant_message_id": "msg-a1",
                },
            )
        )
        assert accepted["status"] == "accepted"

        await _get_services().pipeline.drain()
        stored = await backends.repository.find_by_character_id("char-1")
        assert [m.summary for m in stored] == ["Moved to Lisbon"]
        assert stored[0].source_message_id == "msg-a1"

        found = _parse(
            await mcp_client.call_tool(
                "search_memories",
                {"character_id": "char-1", "query": "Moved to Lisbon"},
            )
        )
        assert found["status"] == "ok"
        assert found["used_embedding"] is True
        assert [m["id"] for m in found["memories"]] == [stored[0].id]
        assert found["formatted"].startswith("Found 1 relevant memories")
        assert latency_metrics_snapshot()["mcp.search_memories"]["count"] == 1

    async def test_empty_search(self, mcp_client):
        found = _parse(
            await mcp_client.call_tool(
                "search_memories", {"character_id": "char-1", "query": "anything"}
            )
        )
        assert found["memories"] == []
        assert found["formatted"] == "No relevant memories found."


class TestValidation:
    @pytest.mark.parametrize(
        "arguments",
        [
            {"character_id": "char-1", "query": ""},
            {"character_id": "char-1", "query": "tea", "limit": 0},
            {"character_id": "char-1", "query": "tea", "source": "IMPORTED"},
        ],
    )
    async def test_search_rejects_bad_input(self, mcp_client, arguments):
        data = _parse(await mcp_client.call_tool("search_memories", arguments))
        assert data["status"] == "rejected"
        assert data["error_code"] == "validation_error"

    async def test_extract_rejects_empty_message(self, mcp_client):
        data = _parse(
            await mcp_client.call_tool(
                "extract_exchange",
                {
                    "character_id": "char-1",
                    "character_name": "Aria",
                    "user_message": "",
                    "assistant_message": "Hi",
                },
            )
        )
        assert data["status"] == "rejected"
        assert data["message"].startswith("user_message")

    async def test_housekeeping_rejects_bad_policy(self, mcp_client):
        data = _parse(
            await mcp_client.call_tool(
                "run_housekeeping", {"character_id": "char-1", "min_importance": 2}
            )
        )
        assert data["status"] == "rejected"


class TestHousekeepingTools:
    async def test_preview_then_run(self, mcp_client, backends):
        stale = await backends.repository.create(
            make_memory("stale", importance=0.1, created_at=months_ago(9))
        )
        await backends.repository.create(make_memory("fresh", importance=0.9))

        needed = _parse(
            await mcp_client.call_tool("needs_housekeeping", {"character_id": "char-1"})
        )
        assert needed["needed"] is True

        preview = _parse(
            await mcp_client.call_tool(
                "housekeeping_preview", {"character_id": "char-1"}
            )
        )
        assert preview["dry_run"] is True
        assert preview["deleted_ids"] == [stale.id]
        assert await backends.repository.count_by_character_id("char-1") == 2

        report = _parse(
            await mcp_client.call_tool("run_housekeeping", {"character_id": "char-1"})
        )
        assert report["dry_run"] is False
        assert report["deleted_ids"] == [stale.id]
        assert report["total_after"] == 1
        assert report["details"][0]["action"] == "deleted"
        assert await backends.repository.count_by_character_id("char-1") == 1

    async def test_rebuild_index(self, mcp_client, backends):
        await backends.repository.create(make_memory("a", embedding=[1.0, 0.0]))
        await backends.repository.create(make_memory("b"))

        data = _parse(
            await mcp_client.call_tool(
                "rebuild_vector_index",
                {"character_id": "char-1", "regenerate_missing": False},
            )
        )
        assert (data["indexed"], data["failed"], data["regenerated"]) == (1, 0, 0)


class TestLifecycle:
    async def test_tools_fail_when_not_configured(self):
        await shutdown()
        with pytest.raises(RuntimeError, match="not configured"):
            _get_services()
        async with Client(mcp) as client:
            with pytest.raises(Exception):
                await client.call_tool(
                    "search_memories", {"character_id": "c", "query": "q"}
                )

    async def test_shutdown_persists_indexes(self, tmp_path):
        persistence = InMemoryIndexPersistence()
        await configure(
            repository=InMemoryMemoryRepository(),
            index_persistence=persistence,
            embedder=HashingEmbedder(),
            audit_config=AuditConfig(enabled=False),
        )
        index = await _get_services().memories.indexes.get_index("char-1")
        await index.add("mem_1", [1.0, 0.0])

        await shutdown()
        assert "char-1" in persistence.snapshots
