"""Memory classification: prompt a cheap LLM and parse its judgement.

Parsing never raises: malformed output becomes a ``ParseFailure`` value
that callers treat as "nothing significant".  Provider failures do raise
(``ProviderError``); the extraction pipeline decides what they mean.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from keepsake.config import LLMConfig
from keepsake.engine.prompts import BATCH_MEMORY_PROMPT
from keepsake.engine.prompts import build_batch_text
from keepsake.engine.prompts import build_exchange_text
from keepsake.engine.prompts import system_prompt_for
from keepsake.engine.schemas import ExtractionContext
from keepsake.engine.schemas import Perspective
from keepsake.memory.schemas import MemoryCandidate
from keepsake.memory.transcript import Exchange
from keepsake.providers.base import ClassificationProvider
from keepsake.providers.base import ProviderError
from keepsake.providers.capabilities import DEFAULT_CAPABILITIES
from keepsake.providers.capabilities import ProviderCapabilities
from keepsake.providers.capabilities import rejects_temperature

logger = logging.getLogger(__name__)

# Regex to strip Markdown code fences wrapping JSON output
_CODE_FENCE_RE = re.compile(
    r"^\s*```(?:json)?\s*\n?(.*?)\n?\s*```\s*$",
    re.DOTALL,
)


@dataclass(frozen=True)
class ParseFailure:
    """Classifier output that could not be turned into a candidate."""

    reason: str
    raw: str


def strip_code_fence(raw: str) -> str:
    match = _CODE_FENCE_RE.match(raw)
    return match.group(1).strip() if match else raw.strip()


def _candidate_from(data: dict[str, Any]) -> MemoryCandidate:
    candidate = MemoryCandidate.model_validate(data)
    if candidate.significant and candidate.content is None:
        # A summary alone still describes the fact
        candidate = candidate.model_copy(update={"content": candidate.summary})
    return candidate


def parse_candidate(raw: str) -> MemoryCandidate | ParseFailure:
    """Parse one classifier reply into a ``MemoryCandidate``.

    A reply flagged significant but carrying neither content nor summary
    is a failure: there is nothing to remember.
    """
    try:
        data = json.loads(strip_code_fence(raw))
    except ValueError as exc:
        return ParseFailure(f"invalid JSON: {exc}", raw)
    if not isinstance(data, dict):
        return ParseFailure("expected a JSON object", raw)
    try:
        candidate = _candidate_from(data)
    except ValidationError as exc:
        return ParseFailure(f"invalid candidate: {exc.error_count()} errors", raw)
    if candidate.significant and candidate.content is None:
        return ParseFailure("significant candidate without content", raw)
    return candidate


def parse_candidate_batch(raw: str) -> list[MemoryCandidate] | ParseFailure:
    """Parse a batched reply: a JSON array, one element per exchange.

    Elements that are not usable objects become non-significant
    candidates so positions stay aligned with the exchanges.
    """
    try:
        data = json.loads(strip_code_fence(raw))
    except ValueError as exc:
        return ParseFailure(f"invalid JSON: {exc}", raw)
    if not isinstance(data, list):
        return ParseFailure("expected a JSON array", raw)

    candidates: list[MemoryCandidate] = []
    for item in data:
        candidate = MemoryCandidate()
        if isinstance(item, dict):
            try:
                candidate = _candidate_from(item)
            except ValidationError:
                logger.debug("Skipping invalid batch element: %r", item)
        if candidate.significant and candidate.content is None:
            candidate = MemoryCandidate()
        candidates.append(candidate)
    return candidates


class MemoryClassifier:
    """Runs classification calls with the configured sampling settings.

    Models that reject a custom temperature are remembered in
    ``ProviderCapabilities``; later calls to them omit the parameter.
    """

    def __init__(
        self,
        provider: ClassificationProvider,
        llm_config: LLMConfig | None = None,
        capabilities: ProviderCapabilities | None = None,
    ) -> None:
        self._provider = provider
        self._config = llm_config or LLMConfig()
        self._capabilities = capabilities or DEFAULT_CAPABILITIES

    @property
    def provider_key(self) -> str:
        return self._provider.key

    async def complete(self, system_prompt: str, text: str) -> str:
        """Send one classification request; raises ``ProviderError``."""
        key = self._provider.key
        if not self._capabilities.supports_temperature(key):
            return await self._send(system_prompt, text, temperature=None)
        try:
            return await self._send(
                system_prompt, text, temperature=self._config.temperature
            )
        except ProviderError as exc:
            if not rejects_temperature(exc):
                raise
            self._capabilities.mark_no_temperature(key)
            return await self._send(system_prompt, text, temperature=None)

    async def _send(
        self, system_prompt: str, text: str, *, temperature: float | None
    ) -> str:
        return await self._provider.classify(
            system_prompt,
            text,
            temperature=temperature,
            max_tokens=self._config.max_tokens,
            timeout_seconds=self._config.timeout_seconds,
        )

    async def classify(
        self,
        exchange: Exchange,
        context: ExtractionContext,
        perspective: Perspective,
    ) -> MemoryCandidate | ParseFailure:
        raw = await self.complete(
            system_prompt_for(perspective),
            build_exchange_text(exchange, context, perspective),
        )
        return parse_candidate(raw)

    async def classify_batch(
        self,
        exchanges: Sequence[Exchange],
        context: ExtractionContext,
    ) -> list[MemoryCandidate] | ParseFailure:
        raw = await self.complete(
            BATCH_MEMORY_PROMPT, build_batch_text(exchanges, context)
        )
        return parse_candidate_batch(raw)
