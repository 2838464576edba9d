"""Provider contracts for classification and embedding calls."""

from __future__ import annotations

from typing import Protocol
from typing import runtime_checkable


class ProviderError(Exception):
    """Raised by provider adapters when a call fails."""


class ClassificationError(ProviderError):
    """Raised when a classification ("cheap LLM") call fails."""


class EmbeddingError(ProviderError):
    """Raised when an embedding call fails or returns an unusable vector."""


@runtime_checkable
class ClassificationProvider(Protocol):
    """Text in, short structured judgement out.

    ``key`` identifies the provider/model pair (``"openai:gpt-4o-mini"``)
    and is used to remember per-model capabilities.  A ``temperature`` of
    ``None`` means "let the provider use its default".
    """

    key: str

    async def classify(
        self,
        system_prompt: str,
        exchange_text: str,
        *,
        temperature: float | None = None,
        max_tokens: int = 1000,
        timeout_seconds: float = 30.0,
    ) -> str: ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Text in, fixed-length float vector out."""

    async def embed(self, text: str, *, timeout_seconds: float = 30.0) -> list[float]: ...
