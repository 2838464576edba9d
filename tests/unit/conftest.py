"""Unit test fixtures: in-memory backends and deterministic providers."""

from __future__ import annotations

import pytest

from keepsake.audit import AuditLogger
from keepsake.config import AuditConfig
from keepsake.engine import DuplicateDetector
from keepsake.engine import MemoryService
from keepsake.index import InMemoryIndexPersistence
from keepsake.index import VectorIndexManager
from keepsake.memory import InMemoryMemoryRepository
from keepsake.observability import reset_latency_metrics
from tests.helpers.fakes import HashingEmbedder


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_latency_metrics()
    yield
    reset_latency_metrics()


@pytest.fixture()
def repository() -> InMemoryMemoryRepository:
    return InMemoryMemoryRepository()


@pytest.fixture()
def index_persistence() -> InMemoryIndexPersistence:
    return InMemoryIndexPersistence()


@pytest.fixture()
def indexes(index_persistence) -> VectorIndexManager:
    return VectorIndexManager(index_persistence)


@pytest.fixture()
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture()
def audit_logger(tmp_path) -> AuditLogger:
    return AuditLogger(AuditConfig(file_path=str(tmp_path / "audit.jsonl")))


@pytest.fixture()
def memory_service(repository, indexes, embedder, audit_logger) -> MemoryService:
    return MemoryService(repository, indexes, embedder, audit_logger=audit_logger)


@pytest.fixture()
def detector(repository, indexes, embedder) -> DuplicateDetector:
    return DuplicateDetector(repository, indexes, embedder)
