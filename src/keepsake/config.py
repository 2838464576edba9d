"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.
No env-var loading or YAML parsing; plain defaults that can
be overridden at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class LLMConfig:
    """Classification ("cheap LLM") provider settings."""

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.3
    max_tokens: int = 1000
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class EmbeddingConfig:
    """Embedding provider settings."""

    provider: str = "openai"
    model: str = "text-embedding-3-small"
    api_key: str | None = None
    base_url: str | None = None
    dimensions: int | None = None
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class ExtractionConfig:
    """Tuneable parameters for the extraction pipeline."""

    # Throttle between pairs when back-filling a chat history
    batch_delay_seconds: float = 0.1
    # Truncation used when logging failed exchanges
    max_log_chars: int = 200


@dataclass(frozen=True)
class DuplicateConfig:
    """Thresholds for duplicate detection at memory creation time."""

    similarity_threshold: float = 0.85
    neighbour_count: int = 10
    # Lexical fallback
    keyword_overlap_ratio: float = 0.7
    prefix_chars: int = 50


@dataclass(frozen=True)
class SearchConfig:
    """Semantic search defaults."""

    default_limit: int = 20
    overfetch_factor: int = 2


@dataclass(frozen=True)
class RedisConfig:
    """Redis connection used by the repository and index persistence."""

    url: str = "redis://localhost:6379"
    key_prefix: str = "keepsake"


@dataclass(frozen=True)
class AuditConfig:
    """Settings for the JSONL audit logger."""

    file_path: str = "keepsake_audit.jsonl"
    enabled: bool = True


@dataclass(frozen=True)
class HousekeepingPolicy:
    """Retention policy applied by the housekeeping scheduler.

    Ages are measured in 30-day months.
    """

    max_memories: int = 1000
    max_age_months: float = 6
    max_inactive_months: float = 6
    min_importance: float = 0.3
    merge_similar: bool = False
    merge_threshold: float = 0.9
    dry_run: bool = False
