"""Concrete provider adapters and factory helpers."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from keepsake.config import EmbeddingConfig
from keepsake.config import LLMConfig
from keepsake.providers.base import ClassificationError
from keepsake.providers.base import ClassificationProvider
from keepsake.providers.base import EmbeddingError
from keepsake.providers.base import EmbeddingProvider
from keepsake.providers.base import ProviderError

OPENAI_BASE_URL = "https://api.openai.com/v1"
OLLAMA_BASE_URL = "http://localhost:11434"


def _post_json(
    url: str,
    payload: dict[str, Any],
    *,
    headers: dict[str, str],
    timeout_seconds: float,
    error_cls: type[ProviderError],
) -> Any:
    """POST *payload* and decode the JSON body, mapping failures to *error_cls*."""
    request = Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            raw = response.read().decode("utf-8")
    except HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise error_cls(f"provider HTTP {exc.code}: {detail[:200]}") from exc
    except URLError as exc:
        raise error_cls(f"provider network error: {exc.reason}") from exc
    except OSError as exc:
        raise error_cls(f"provider IO error: {exc}") from exc

    try:
        return json.loads(raw)
    except ValueError as exc:
        raise error_cls("provider returned invalid JSON") from exc


def _as_vector(value: Any) -> list[float]:
    if not isinstance(value, list) or not value:
        raise EmbeddingError("provider returned an empty embedding")
    if not all(
        isinstance(x, (int, float)) and not isinstance(x, bool) for x in value
    ):
        raise EmbeddingError("provider embedding must contain only numbers")
    return [float(x) for x in value]


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class NoopClassifier(ClassificationProvider):
    """Deterministic classifier that never finds anything significant."""

    key = "noop:noop"

    async def classify(
        self,
        system_prompt: str,
        exchange_text: str,
        *,
        temperature: float | None = None,
        max_tokens: int = 1000,
        timeout_seconds: float = 30.0,
    ) -> str:
        del system_prompt, exchange_text, temperature, max_tokens, timeout_seconds
        return '{"significant": false}'


class OpenAICompatibleClassifier(ClassificationProvider):
    """OpenAI-compatible chat-completions classifier (OpenAI, Ollama /v1, ...)."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None,
        base_url: str = OPENAI_BASE_URL,
        provider: str = "openai",
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self.key = f"{provider}:{model}"

    async def classify(
        self,
        system_prompt: str,
        exchange_text: str,
        *,
        temperature: float | None = None,
        max_tokens: int = 1000,
        timeout_seconds: float = 30.0,
    ) -> str:
        return await asyncio.to_thread(
            self._classify_sync,
            system_prompt,
            exchange_text,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
        )

    def _classify_sync(
        self,
        system_prompt: str,
        exchange_text: str,
        *,
        temperature: float | None,
        max_tokens: int,
        timeout_seconds: float,
    ) -> str:
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": exchange_text},
            ],
            "max_tokens": max_tokens,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        data = _post_json(
            f"{self._base_url}/chat/completions",
            payload,
            headers=headers,
            timeout_seconds=timeout_seconds,
            error_cls=ClassificationError,
        )

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ClassificationError(
                "provider response missing choices[0].message.content"
            ) from exc

        if isinstance(content, str):
            return content
        raise ClassificationError("provider response content must be a string")


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------


class NoopEmbeddingProvider(EmbeddingProvider):
    """Embedding provider for deployments without one: every call fails.

    Callers then take their lexical fallbacks.
    """

    async def embed(self, text: str, *, timeout_seconds: float = 30.0) -> list[float]:
        del text, timeout_seconds
        raise EmbeddingError("no embedding provider configured")


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI-compatible ``/embeddings`` adapter."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = OPENAI_BASE_URL,
        dimensions: int | None = None,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._dimensions = dimensions

    async def embed(self, text: str, *, timeout_seconds: float = 30.0) -> list[float]:
        return await asyncio.to_thread(self._embed_sync, text, timeout_seconds)

    def _embed_sync(self, text: str, timeout_seconds: float) -> list[float]:
        payload: dict[str, Any] = {"model": self._model, "input": text}
        if self._dimensions:
            payload["dimensions"] = self._dimensions
        data = _post_json(
            f"{self._base_url}/embeddings",
            payload,
            headers={"Authorization": f"Bearer {self._api_key}"},
            timeout_seconds=timeout_seconds,
            error_cls=EmbeddingError,
        )
        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise EmbeddingError(
                "provider response missing data[0].embedding"
            ) from exc
        return _as_vector(vector)


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Ollama ``/api/embeddings`` adapter (no API key)."""

    def __init__(self, *, model: str, base_url: str = OLLAMA_BASE_URL) -> None:
        self._model = model
        self._base_url = base_url.rstrip("/")

    async def embed(self, text: str, *, timeout_seconds: float = 30.0) -> list[float]:
        return await asyncio.to_thread(self._embed_sync, text, timeout_seconds)

    def _embed_sync(self, text: str, timeout_seconds: float) -> list[float]:
        data = _post_json(
            f"{self._base_url}/api/embeddings",
            {"model": self._model, "prompt": text},
            headers={},
            timeout_seconds=timeout_seconds,
            error_cls=EmbeddingError,
        )
        if not isinstance(data, dict):
            raise EmbeddingError("provider response missing embedding")
        return _as_vector(data.get("embedding"))


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def build_classification_provider(config: LLMConfig) -> ClassificationProvider:
    """Create a concrete classifier from ``LLMConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError("llm_config.api_key is required when provider='openai'")
        return OpenAICompatibleClassifier(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
        )
    if provider == "ollama":
        base_url = config.base_url
        if base_url == OPENAI_BASE_URL:
            base_url = f"{OLLAMA_BASE_URL}/v1"
        return OpenAICompatibleClassifier(
            model=config.model,
            api_key=config.api_key,
            base_url=base_url,
            provider="ollama",
        )
    if provider == "noop":
        return NoopClassifier()
    raise ValueError(
        f"Unsupported llm_config.provider '{config.provider}'. "
        "Supported providers: openai, ollama, noop."
    )


def build_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Create a concrete embedding adapter from ``EmbeddingConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError(
                "embedding_config.api_key is required when provider='openai'"
            )
        return OpenAIEmbeddingProvider(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url or OPENAI_BASE_URL,
            dimensions=config.dimensions,
        )
    if provider == "ollama":
        return OllamaEmbeddingProvider(
            model=config.model,
            base_url=config.base_url or OLLAMA_BASE_URL,
        )
    if provider == "noop":
        return NoopEmbeddingProvider()
    raise ValueError(
        f"Unsupported embedding_config.provider '{config.provider}'. "
        "Supported providers: openai, ollama, noop."
    )
