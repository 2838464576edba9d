"""Memory extraction pipeline.

Turns a user/assistant exchange into at most two new memories: one about
the user, one about the character.  Both classifications run
concurrently; each side is deduplicated and committed on its own, so a
failure on one side never undoes the other.  Provider failures are
reported in the returned outcome and never raised.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime

from keepsake.config import ExtractionConfig
from keepsake.engine.classification import MemoryClassifier
from keepsake.engine.classification import ParseFailure
from keepsake.engine.duplicates import DuplicateDetector
from keepsake.engine.memories import MemoryService
from keepsake.engine.schemas import BatchExtractionResult
from keepsake.engine.schemas import ExtractionContext
from keepsake.engine.schemas import ExtractionOutcome
from keepsake.engine.schemas import HistoryResult
from keepsake.engine.schemas import Perspective
from keepsake.engine.schemas import PerspectiveOutcome
from keepsake.locks import KeyedLocks
from keepsake.memory import create_memory
from keepsake.memory.schemas import Memory
from keepsake.memory.schemas import MemoryCandidate
from keepsake.memory.schemas import MemorySource
from keepsake.memory.transcript import Exchange
from keepsake.memory.transcript import pair_exchanges
from keepsake.memory.transcript import TranscriptSource
from keepsake.observability import record_degradation
from keepsake.observability import track_latency
from keepsake.providers.base import ProviderError

logger = logging.getLogger(__name__)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


class ExtractionPipeline:
    """Classify exchanges, drop duplicates, commit the rest as AUTO memories."""

    def __init__(
        self,
        classifier: MemoryClassifier,
        detector: DuplicateDetector,
        memories: MemoryService,
        locks: KeyedLocks | None = None,
        config: ExtractionConfig | None = None,
    ) -> None:
        self._classifier = classifier
        self._detector = detector
        self._memories = memories
        self._locks = locks or KeyedLocks()
        self._config = config or ExtractionConfig()
        self._pending: set[asyncio.Task[ExtractionOutcome]] = set()

    # ------------------------------------------------------------------
    # Single exchange
    # ------------------------------------------------------------------

    async def process_exchange(
        self, exchange: Exchange, context: ExtractionContext
    ) -> ExtractionOutcome:
        """Run both perspectives concurrently and commit what they find."""
        with track_latency("extraction.exchange"):
            results = await asyncio.gather(
                self._process_perspective(exchange, context, Perspective.USER),
                self._process_perspective(exchange, context, Perspective.CHARACTER),
                return_exceptions=True,
            )

        outcomes: list[PerspectiveOutcome] = []
        for perspective, result in zip(
            (Perspective.USER, Perspective.CHARACTER), results
        ):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(
                    "%s memory commit failed for %s",
                    perspective.value.upper(),
                    context.character_name,
                    exc_info=result,
                )
                result = PerspectiveOutcome(
                    perspective=perspective, significant=True, error=str(result)
                )
            outcomes.append(result)
        return ExtractionOutcome(user=outcomes[0], character=outcomes[1])

    async def _process_perspective(
        self,
        exchange: Exchange,
        context: ExtractionContext,
        perspective: Perspective,
    ) -> PerspectiveOutcome:
        outcome = PerspectiveOutcome(perspective=perspective)
        try:
            candidate = await self._classifier.classify(exchange, context, perspective)
        except ProviderError as exc:
            message = (
                exchange.user_message
                if perspective is Perspective.USER
                else exchange.assistant_message
            )
            logger.error(
                "%s memory extraction failed for %s: %s (message: %s)",
                perspective.value.upper(),
                context.character_name,
                exc,
                _truncate(message, self._config.max_log_chars),
            )
            record_degradation("extraction.provider_error")
            outcome.error = str(exc)
            return outcome

        if isinstance(candidate, ParseFailure):
            logger.info(
                "Unparseable %s classification for %s: %s",
                perspective.value,
                context.character_name,
                candidate.reason,
            )
            return outcome
        if not candidate.significant:
            return outcome

        outcome.significant = True
        memory = await self._commit(
            candidate, context, source_message_id=exchange.assistant_message_id
        )
        if memory is None:
            outcome.duplicate = True
        else:
            outcome.memory_id = memory.id
            logger.debug(
                "Created %s memory %s for %s: %s",
                perspective.value.upper(),
                memory.id,
                context.character_name,
                memory.summary,
            )
        return outcome

    async def _commit(
        self,
        candidate: MemoryCandidate,
        context: ExtractionContext,
        *,
        source_message_id: str | None,
    ) -> Memory | None:
        """Dedupe and store under the character lock; None for a duplicate."""
        async with self._locks.hold(context.character_id):
            check = await self._detector.is_duplicate(context.character_id, candidate)
            if check.duplicate:
                logger.debug(
                    "Skipping duplicate of %s for %s",
                    check.match_id,
                    context.character_id,
                )
                return None
            memory = create_memory(
                context.character_id,
                candidate.content or "",
                summary=candidate.summary,
                keywords=candidate.keywords,
                importance=candidate.importance,
                source=MemorySource.AUTO,
                chat_id=context.chat_id,
                persona_id=context.persona_id,
                source_message_id=source_message_id,
            )
            return await self._memories.create_memory(memory, vector=check.vector)

    # ------------------------------------------------------------------
    # Fire-and-forget
    # ------------------------------------------------------------------

    def submit(
        self, exchange: Exchange, context: ExtractionContext
    ) -> asyncio.Task[ExtractionOutcome]:
        """Schedule ``process_exchange`` in the background and return at once."""
        task = asyncio.create_task(self.process_exchange(exchange, context))
        self._pending.add(task)

        def _on_done(done: asyncio.Task[ExtractionOutcome]) -> None:
            self._pending.discard(done)
            if done.cancelled():
                logger.debug("Extraction for %s cancelled", context.character_id)
                return
            exc = done.exception()
            if exc is not None:
                logger.error(
                    "Background extraction failed for %s",
                    context.character_id,
                    exc_info=exc,
                )
                return
            outcome = done.result()
            if outcome.memory_created:
                logger.info(
                    "Created memories %s for character %s",
                    ", ".join(outcome.memory_ids),
                    context.character_id,
                )
            elif not outcome.success:
                logger.warning(
                    "Extraction for %s finished with errors", context.character_id
                )

        task.add_done_callback(_on_done)
        return task

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every background extraction (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def batch_extract(
        self, exchanges: Sequence[Exchange], context: ExtractionContext
    ) -> BatchExtractionResult:
        """Classify several exchanges with one call, then commit each candidate."""
        result = BatchExtractionResult()
        if not exchanges:
            return result
        with track_latency("extraction.batch"):
            try:
                candidates = await self._classifier.classify_batch(exchanges, context)
            except ProviderError as exc:
                logger.error(
                    "Batch extraction failed for %s: %s", context.character_name, exc
                )
                record_degradation("extraction.provider_error")
                result.error = str(exc)
                return result
            if isinstance(candidates, ParseFailure):
                logger.warning(
                    "Unparseable batch classification for %s: %s",
                    context.character_name,
                    candidates.reason,
                )
                result.error = candidates.reason
                return result

            result.candidates = len(candidates)
            for exchange, candidate in zip(exchanges, candidates):
                if not candidate.significant:
                    continue
                memory = await self._commit(
                    candidate,
                    context,
                    source_message_id=exchange.assistant_message_id,
                )
                if memory is None:
                    result.duplicates += 1
                else:
                    result.memory_ids.append(memory.id)
        return result

    async def process_chat_history(
        self,
        chat_id: str,
        context: ExtractionContext,
        transcript: TranscriptSource,
        *,
        after: datetime | None = None,
        max_pairs: int | None = None,
    ) -> HistoryResult:
        """Back-fill memories from a chat's user -> assistant pairs, one by one."""
        if context.chat_id is None:
            context = context.model_copy(update={"chat_id": chat_id})
        messages = await transcript.get_messages(chat_id)
        pairs = pair_exchanges(messages, after=after, max_pairs=max_pairs)

        result = HistoryResult()
        for position, exchange in enumerate(pairs, start=1):
            outcome = await self.process_exchange(exchange, context)
            result.processed += 1
            result.memories_created += len(outcome.memory_ids)
            if not outcome.success:
                result.errors += 1
            if position < len(pairs):
                await asyncio.sleep(self._config.batch_delay_seconds)

        logger.info(
            "Processed %d pairs of chat %s: %d memories, %d errors",
            result.processed,
            chat_id,
            result.memories_created,
            result.errors,
        )
        return result
