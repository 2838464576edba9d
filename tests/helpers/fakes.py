"""Deterministic provider fakes shared by the unit and integration suites."""

from __future__ import annotations

import hashlib
import re
from collections.abc import Callable
from collections.abc import Mapping
from collections.abc import Sequence
from datetime import datetime
from datetime import timedelta
from datetime import timezone

from keepsake.engine.prompts import BATCH_MEMORY_PROMPT
from keepsake.engine.prompts import CHARACTER_MEMORY_PROMPT
from keepsake.engine.prompts import USER_MEMORY_PROMPT
from keepsake.memory import Memory
from keepsake.memory import MemorySource
from keepsake.providers import ClassificationError
from keepsake.providers import EmbeddingError

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def months_ago(months: float, now: datetime = NOW) -> datetime:
    return now - timedelta(days=30 * months)


def make_memory(
    content: str,
    *,
    character_id: str = "char-1",
    summary: str | None = None,
    keywords: Sequence[str] = (),
    importance: float = 0.5,
    source: MemorySource = MemorySource.AUTO,
    created_at: datetime = NOW,
    last_accessed_at: datetime | None = None,
    embedding: list[float] | None = None,
) -> Memory:
    return Memory(
        character_id=character_id,
        content=content,
        summary=summary if summary is not None else content,
        keywords=list(keywords),
        importance=importance,
        source=source,
        created_at=created_at,
        updated_at=created_at,
        last_accessed_at=last_accessed_at,
        embedding=embedding,
    )


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------


class HashingEmbedder:
    """Bag-of-words vectors: identical texts embed identically."""

    def __init__(self, dimensions: int = 64) -> None:
        self.dimensions = dimensions
        self.calls: list[str] = []

    async def embed(self, text: str, *, timeout_seconds: float = 30.0) -> list[float]:
        self.calls.append(text)
        vector = [0.0] * self.dimensions
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "big") % self.dimensions] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector


class MappedEmbedder:
    """Returns the vector of the first registered phrase found in the text."""

    def __init__(
        self,
        vectors: Mapping[str, list[float]],
        default: list[float] | None = None,
    ) -> None:
        self._vectors = dict(vectors)
        self._default = default
        self.calls: list[str] = []

    async def embed(self, text: str, *, timeout_seconds: float = 30.0) -> list[float]:
        self.calls.append(text)
        for phrase, vector in self._vectors.items():
            if phrase in text:
                return list(vector)
        if self._default is None:
            raise EmbeddingError(f"no vector registered for {text!r}")
        return list(self._default)


class FailingEmbedder:
    """Every call fails, as with an unreachable provider."""

    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, text: str, *, timeout_seconds: float = 30.0) -> list[float]:
        self.calls += 1
        raise EmbeddingError("embedding service unavailable")


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class ScriptedClassifier:
    """Answers per prompt kind with a canned reply, or raises a canned error."""

    def __init__(
        self,
        *,
        user: str | Exception | Callable[[str], str] = '{"significant": false}',
        character: str | Exception | Callable[[str], str] = '{"significant": false}',
        batch: str | Exception | Callable[[str], str] = "[]",
        key: str = "fake:scripted",
    ) -> None:
        self.key = key
        self._replies = {
            USER_MEMORY_PROMPT: user,
            CHARACTER_MEMORY_PROMPT: character,
            BATCH_MEMORY_PROMPT: batch,
        }
        self.calls: list[dict] = []

    async def classify(
        self,
        system_prompt: str,
        exchange_text: str,
        *,
        temperature: float | None = None,
        max_tokens: int = 1000,
        timeout_seconds: float = 30.0,
    ) -> str:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "text": exchange_text,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        reply = self._replies[system_prompt]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(exchange_text)
        return reply


class TemperatureRejectingClassifier:
    """Refuses any request carrying a temperature, like some reasoning models."""

    def __init__(self, reply: str, key: str = "fake:no-temperature") -> None:
        self.key = key
        self._reply = reply
        self.temperatures: list[float | None] = []

    async def classify(
        self,
        system_prompt: str,
        exchange_text: str,
        *,
        temperature: float | None = None,
        max_tokens: int = 1000,
        timeout_seconds: float = 30.0,
    ) -> str:
        self.temperatures.append(temperature)
        if temperature is not None:
            raise ClassificationError(
                "provider HTTP 400: Unsupported parameter: 'temperature' "
                "does not support 0.3 with this model"
            )
        return self._reply
