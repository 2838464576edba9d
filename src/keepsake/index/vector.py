"""Per-character in-memory vector index with brute-force cosine search.

Entries live in a dict keyed by memory id; a normalised numpy matrix is
built lazily for search and dropped on every mutation.  Snapshots are
written through an ``IndexPersistence`` backend as JSON.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from typing import Any
from typing import TYPE_CHECKING

import numpy as np
from pydantic import BaseModel
from pydantic import Field
from pydantic import ValidationError

from keepsake.memory.schemas import utcnow
from keepsake.observability import record_degradation

if TYPE_CHECKING:
    from keepsake.index.persistence import IndexPersistence

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

MetadataFilter = Callable[[dict[str, Any]], bool]


class VectorIndexError(Exception):
    """Raised on invalid vectors (empty, non-finite, wrong dimensions)."""


class VectorIndexEntry(BaseModel):
    """One indexed memory embedding."""

    memory_id: str
    embedding: list[float]
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class IndexSnapshot(BaseModel):
    """Persisted form of a character's index."""

    character_id: str
    version: int = SNAPSHOT_VERSION
    dimensions: int | None = None
    entries: list[VectorIndexEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


@dataclass(frozen=True)
class VectorHit:
    """A single search hit."""

    memory_id: str
    score: float  # cosine similarity
    metadata: dict[str, Any] = field(default_factory=dict)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise VectorIndexError(
            f"Vector dimension mismatch: {va.shape[0]} vs {vb.shape[0]}"
        )
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def _as_array(vector: Sequence[float]) -> np.ndarray:
    arr = np.asarray(vector, dtype=np.float64)
    if arr.ndim != 1 or arr.size == 0:
        raise VectorIndexError("Vector must be a non-empty flat sequence")
    if not np.all(np.isfinite(arr)):
        raise VectorIndexError("Vector contains non-finite values")
    return arr


class CharacterVectorIndex:
    """Vector index for one character.

    Mutations and ``save()`` are serialized by an ``asyncio.Lock``.
    ``search()`` is synchronous and never awaits, so on the event loop it
    always sees a consistent set of entries.
    """

    def __init__(
        self,
        character_id: str,
        persistence: IndexPersistence | None = None,
    ) -> None:
        self.character_id = character_id
        self._persistence = persistence
        self._entries: dict[str, VectorIndexEntry] = {}
        self._dimensions: int | None = None
        self._dirty = False
        self._created_at = utcnow()
        self._lock = asyncio.Lock()
        # Search cache, rebuilt lazily after mutations
        self._ids: list[str] = []
        self._matrix: np.ndarray | None = None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Replace in-memory entries with the persisted snapshot, if any.

        A snapshot that cannot be parsed is logged and treated as empty.
        """
        if self._persistence is None:
            return
        raw = await self._persistence.load(self.character_id)
        async with self._lock:
            self._entries.clear()
            self._dimensions = None
            self._dirty = False
            self._invalidate()
            if raw is None:
                return
            try:
                snapshot = IndexSnapshot.model_validate_json(raw)
            except ValidationError:
                logger.exception(
                    "Corrupt vector index for character %s; starting empty",
                    self.character_id,
                )
                record_degradation("index.corrupt")
                return
            for entry in snapshot.entries:
                self._entries[entry.memory_id] = entry
            self._dimensions = snapshot.dimensions or None
            self._created_at = snapshot.created_at
        logger.debug(
            "Loaded vector index for %s (%d entries)",
            self.character_id,
            len(self._entries),
        )

    async def save(self) -> None:
        """Persist the index when it changed since the last load/save."""
        if self._persistence is None:
            return
        async with self._lock:
            if not self._dirty:
                return
            snapshot = IndexSnapshot(
                character_id=self.character_id,
                dimensions=self._dimensions,
                entries=list(self._entries.values()),
                created_at=self._created_at,
            )
            await self._persistence.save(
                self.character_id, snapshot.model_dump_json()
            )
            self._dirty = False

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add(
        self,
        memory_id: str,
        vector: Sequence[float],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Insert or replace the entry for *memory_id*."""
        arr = _as_array(vector)
        async with self._lock:
            self._check_dimensions(arr)
            if self._dimensions is None:
                self._dimensions = int(arr.size)
            self._entries[memory_id] = VectorIndexEntry(
                memory_id=memory_id,
                embedding=arr.tolist(),
                metadata=dict(metadata or {}),
            )
            self._mark_changed()

    async def update(self, memory_id: str, vector: Sequence[float]) -> bool:
        """Replace the vector of an existing entry; False when absent."""
        arr = _as_array(vector)
        async with self._lock:
            entry = self._entries.get(memory_id)
            if entry is None:
                return False
            self._check_dimensions(arr)
            self._entries[memory_id] = entry.model_copy(
                update={"embedding": arr.tolist()}
            )
            self._mark_changed()
            return True

    async def remove(self, memory_id: str) -> bool:
        async with self._lock:
            if self._entries.pop(memory_id, None) is None:
                return False
            self._mark_changed()
            return True

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._dimensions = None
            self._mark_changed()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has(self, memory_id: str) -> bool:
        return memory_id in self._entries

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def dimensions(self) -> int | None:
        return self._dimensions

    @property
    def dirty(self) -> bool:
        return self._dirty

    def entries(self) -> list[VectorIndexEntry]:
        return list(self._entries.values())

    def memory_ids(self) -> set[str]:
        return set(self._entries)

    def search(
        self,
        query_vector: Sequence[float],
        k: int = 10,
        filter: MetadataFilter | None = None,
    ) -> list[VectorHit]:
        """Return up to *k* hits ranked by cosine similarity, descending."""
        if not self._entries or k <= 0:
            return []
        query = _as_array(query_vector)
        self._check_dimensions(query)

        matrix = self._search_matrix()
        query_norm = float(np.linalg.norm(query))
        if query_norm == 0.0:
            scores = np.zeros(len(self._ids))
        else:
            scores = matrix @ (query / query_norm)

        hits: list[VectorHit] = []
        for idx in np.argsort(-scores, kind="stable"):
            entry = self._entries[self._ids[idx]]
            if filter is not None and not filter(entry.metadata):
                continue
            hits.append(
                VectorHit(
                    memory_id=entry.memory_id,
                    score=float(scores[idx]),
                    metadata=entry.metadata,
                )
            )
            if len(hits) >= k:
                break
        return hits

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_dimensions(self, arr: np.ndarray) -> None:
        if self._dimensions is not None and arr.size != self._dimensions:
            raise VectorIndexError(
                f"Vector dimension mismatch: expected {self._dimensions}, "
                f"got {arr.size}"
            )

    def _mark_changed(self) -> None:
        self._dirty = True
        self._invalidate()

    def _invalidate(self) -> None:
        self._ids = []
        self._matrix = None

    def _search_matrix(self) -> np.ndarray:
        if self._matrix is None:
            self._ids = list(self._entries)
            matrix = np.asarray(
                [self._entries[mid].embedding for mid in self._ids],
                dtype=np.float64,
            )
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            norms[norms == 0.0] = 1.0
            self._matrix = matrix / norms
        return self._matrix
