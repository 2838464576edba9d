"""Unit tests for the memory extraction pipeline."""

from __future__ import annotations

import asyncio
import json

import pytest

from keepsake.config import ExtractionConfig
from keepsake.engine import DuplicateDetector
from keepsake.engine import ExtractionContext
from keepsake.engine import ExtractionPipeline
from keepsake.engine import MemoryClassifier
from keepsake.engine import MemoryService
from keepsake.memory import Exchange
from keepsake.memory import MemorySource
from keepsake.memory import TranscriptMessage
from keepsake.observability import degradation_snapshot
from keepsake.observability import latency_metrics_snapshot
from keepsake.providers import ClassificationError
from keepsake.providers import ProviderCapabilities
from tests.helpers.fakes import FailingEmbedder
from tests.helpers.fakes import ScriptedClassifier

CONTEXT = ExtractionContext(
    character_id="char-1",
    character_name="Aria",
    persona_name="Sam",
    chat_id="chat-1",
    persona_id="persona-1",
)
LISBON = Exchange(
    user_message="I just moved to Lisbon last month!",
    assistant_message="Oh, how wonderful! Do you like it there?",
    user_message_id="msg-u1",
    assistant_message_id="msg-a1",
)


def _significant(content: str, summary: str, keywords=(), importance=0.7) -> str:
    return json.dumps(
        {
            "significant": True,
            "content": content,
            "summary": summary,
            "keywords": list(keywords),
            "importance": importance,
        }
    )


USER_LISBON = _significant(
    "The user recently moved to Lisbon.", "Moved to Lisbon", ["Lisbon", "move"], 0.8
)
CHARACTER_VIOLIN = _significant(
    "Aria plays the violin every evening.", "Plays violin", ["violin"], 0.6
)


@pytest.fixture()
def build_pipeline(memory_service, detector):
    def _build(classifier: ScriptedClassifier) -> ExtractionPipeline:
        return ExtractionPipeline(
            MemoryClassifier(classifier, capabilities=ProviderCapabilities()),
            detector,
            memory_service,
            config=ExtractionConfig(batch_delay_seconds=0),
        )

    return _build


class _Transcript:
    def __init__(self, messages: list[TranscriptMessage]) -> None:
        self._messages = messages
        self.requested: list[str] = []

    async def get_messages(self, chat_id: str) -> list[TranscriptMessage]:
        self.requested.append(chat_id)
        return self._messages


# ---------------------------------------------------------------------------
# Single exchange
# ---------------------------------------------------------------------------


class TestProcessExchange:
    async def test_user_fact_becomes_auto_memory(self, build_pipeline, repository):
        pipeline = build_pipeline(ScriptedClassifier(user=USER_LISBON))

        outcome = await pipeline.process_exchange(LISBON, CONTEXT)

        assert outcome.success
        assert outcome.user.created and not outcome.character.created
        assert outcome.character.significant is False
        memories = await repository.find_by_character_id("char-1")
        assert len(memories) == 1
        memory = memories[0]
        assert memory.id == outcome.user.memory_id
        assert memory.source == MemorySource.AUTO
        assert memory.summary == "Moved to Lisbon"
        assert memory.keywords == ["Lisbon", "move"]
        assert memory.importance == 0.8
        assert memory.chat_id == "chat-1"
        assert memory.persona_id == "persona-1"
        assert memory.source_message_id == "msg-a1"
        assert memory.has_embedding
        assert "extraction.exchange" in latency_metrics_snapshot()

    async def test_grew_up_in_lisbon(self, build_pipeline, repository):
        reply = _significant(
            "User grew up in Lisbon and misses the ocean",
            "User is from Lisbon",
            ["Lisbon", "ocean"],
            0.6,
        )
        pipeline = build_pipeline(ScriptedClassifier(user=reply))
        exchange = Exchange(
            user_message="I grew up in Lisbon and miss the ocean",
            assistant_message="That sounds lovely",
        )

        outcome = await pipeline.process_exchange(exchange, CONTEXT)

        assert len(outcome.memory_ids) == 1
        memories = await repository.find_by_character_id("char-1")
        assert len(memories) == 1
        memory = memories[0]
        assert memory.content == "User grew up in Lisbon and misses the ocean"
        assert memory.summary == "User is from Lisbon"
        assert memory.keywords == ["Lisbon", "ocean"]
        assert memory.importance == 0.6
        assert memory.source == MemorySource.AUTO

    async def test_both_perspectives(self, build_pipeline, repository):
        pipeline = build_pipeline(
            ScriptedClassifier(user=USER_LISBON, character=CHARACTER_VIOLIN)
        )

        outcome = await pipeline.process_exchange(LISBON, CONTEXT)

        assert len(outcome.memory_ids) == 2
        assert await repository.count_by_character_id("char-1") == 2

    async def test_reprocessing_is_deduplicated(self, build_pipeline, repository):
        pipeline = build_pipeline(ScriptedClassifier(user=USER_LISBON))

        await pipeline.process_exchange(LISBON, CONTEXT)
        again = await pipeline.process_exchange(LISBON, CONTEXT)

        assert again.user.duplicate is True
        assert again.user.memory_id is None
        assert again.memory_created is False
        assert await repository.count_by_character_id("char-1") == 1

    async def test_reprocessing_without_embeddings_is_deduplicated(
        self, repository, indexes
    ):
        embedder = FailingEmbedder()
        reply = _significant("User likes tea", "User likes tea", ["beverage"])
        pipeline = ExtractionPipeline(
            MemoryClassifier(
                ScriptedClassifier(user=reply), capabilities=ProviderCapabilities()
            ),
            DuplicateDetector(repository, indexes, embedder),
            MemoryService(repository, indexes, embedder),
            config=ExtractionConfig(batch_delay_seconds=0),
        )

        first = await pipeline.process_exchange(LISBON, CONTEXT)
        again = await pipeline.process_exchange(LISBON, CONTEXT)

        assert first.user.created
        assert again.user.duplicate is True
        assert await repository.count_by_character_id("char-1") == 1

    async def test_concurrent_identical_exchanges_store_once(
        self, build_pipeline, repository
    ):
        pipeline = build_pipeline(ScriptedClassifier(user=USER_LISBON))

        await asyncio.gather(
            *(pipeline.process_exchange(LISBON, CONTEXT) for _ in range(3))
        )
        assert await repository.count_by_character_id("char-1") == 1

    async def test_one_failing_side_keeps_the_other(self, build_pipeline, repository):
        pipeline = build_pipeline(
            ScriptedClassifier(
                user=ClassificationError("provider HTTP 500: overloaded"),
                character=CHARACTER_VIOLIN,
            )
        )

        outcome = await pipeline.process_exchange(LISBON, CONTEXT)

        assert outcome.success is False
        assert "HTTP 500" in outcome.user.error
        assert outcome.character.created
        assert await repository.count_by_character_id("char-1") == 1
        assert degradation_snapshot()["extraction.provider_error"] == 1

    async def test_unparseable_reply_is_not_an_error(self, build_pipeline, repository):
        pipeline = build_pipeline(ScriptedClassifier(user="Sure! Here's the JSON:"))

        outcome = await pipeline.process_exchange(LISBON, CONTEXT)

        assert outcome.success
        assert outcome.user.significant is False
        assert await repository.count_by_character_id("char-1") == 0


# ---------------------------------------------------------------------------
# Fire-and-forget
# ---------------------------------------------------------------------------


class TestSubmit:
    async def test_submit_returns_before_commit(self, build_pipeline, repository):
        pipeline = build_pipeline(ScriptedClassifier(user=USER_LISBON))

        task = pipeline.submit(LISBON, CONTEXT)
        assert pipeline.pending == 1
        assert await repository.count_by_character_id("char-1") == 0

        await pipeline.drain()
        assert task.done()
        assert pipeline.pending == 0
        assert task.result().memory_created
        assert await repository.count_by_character_id("char-1") == 1

    async def test_drain_with_nothing_pending(self, build_pipeline):
        pipeline = build_pipeline(ScriptedClassifier())
        await pipeline.drain()
        assert pipeline.pending == 0


# ---------------------------------------------------------------------------
# Batches and history
# ---------------------------------------------------------------------------


class TestBatchExtract:
    async def test_commits_significant_candidates(self, build_pipeline, repository):
        batch = f'[{USER_LISBON}, {{"significant": false}}, {CHARACTER_VIOLIN}]'
        pipeline = build_pipeline(ScriptedClassifier(batch=batch))
        exchanges = [LISBON, LISBON, LISBON]

        result = await pipeline.batch_extract(exchanges, CONTEXT)

        assert result.error is None
        assert result.candidates == 3
        assert len(result.memory_ids) == 2
        assert await repository.count_by_character_id("char-1") == 2

    async def test_unparseable_batch_reports_error(self, build_pipeline):
        pipeline = build_pipeline(ScriptedClassifier(batch='{"significant": true}'))

        result = await pipeline.batch_extract([LISBON], CONTEXT)

        assert result.error == "expected a JSON array"
        assert result.memory_ids == []

    async def test_empty_batch_makes_no_call(self, build_pipeline):
        classifier = ScriptedClassifier()
        pipeline = build_pipeline(classifier)
        result = await pipeline.batch_extract([], CONTEXT)
        assert result.candidates == 0
        assert classifier.calls == []


class TestProcessChatHistory:
    async def test_backfills_pairs(self, build_pipeline, repository):
        def user_reply(text: str) -> str:
            return USER_LISBON if "Lisbon" in text else '{"significant": false}'

        pipeline = build_pipeline(ScriptedClassifier(user=user_reply))
        transcript = _Transcript(
            [
                TranscriptMessage(role="system", content="Be kind."),
                TranscriptMessage(role="user", content="Hi!", id="u0"),
                TranscriptMessage(role="assistant", content="Hello.", id="a0"),
                TranscriptMessage(role="user", content="I live in Lisbon.", id="u1"),
                TranscriptMessage(role="assistant", content="Lovely city.", id="a1"),
            ]
        )
        context = CONTEXT.model_copy(update={"chat_id": None})

        result = await pipeline.process_chat_history("chat-7", context, transcript)

        assert transcript.requested == ["chat-7"]
        assert (result.processed, result.memories_created, result.errors) == (2, 1, 0)
        memories = await repository.find_by_character_id("char-1")
        assert memories[0].chat_id == "chat-7"
        assert memories[0].source_message_id == "a1"

    async def test_max_pairs_limits_work(self, build_pipeline):
        classifier = ScriptedClassifier()
        pipeline = build_pipeline(classifier)
        messages = []
        for i in range(5):
            messages += [
                TranscriptMessage(role="user", content=f"u{i}"),
                TranscriptMessage(role="assistant", content=f"a{i}"),
            ]

        result = await pipeline.process_chat_history(
            "chat-1", CONTEXT, _Transcript(messages), max_pairs=2
        )

        assert result.processed == 2
        # Two perspectives per pair
        assert len(classifier.calls) == 4

    async def test_errors_are_counted(self, build_pipeline):
        pipeline = build_pipeline(
            ScriptedClassifier(user=ClassificationError("timeout"))
        )
        transcript = _Transcript(
            [
                TranscriptMessage(role="user", content="hi"),
                TranscriptMessage(role="assistant", content="hello"),
            ]
        )
        result = await pipeline.process_chat_history("chat-1", CONTEXT, transcript)
        assert result.errors == 1
