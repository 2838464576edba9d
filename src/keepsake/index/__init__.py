"""Index domain: per-character vector indexes and their persistence."""

from keepsake.index.manager import VectorIndexManager
from keepsake.index.persistence import IndexPersistence
from keepsake.index.persistence import InMemoryIndexPersistence
from keepsake.index.persistence import RedisIndexPersistence
from keepsake.index.vector import CharacterVectorIndex
from keepsake.index.vector import cosine_similarity
from keepsake.index.vector import IndexSnapshot
from keepsake.index.vector import VectorHit
from keepsake.index.vector import VectorIndexEntry
from keepsake.index.vector import VectorIndexError

__all__ = [
    "CharacterVectorIndex",
    "IndexPersistence",
    "IndexSnapshot",
    "InMemoryIndexPersistence",
    "RedisIndexPersistence",
    "VectorHit",
    "VectorIndexEntry",
    "VectorIndexError",
    "VectorIndexManager",
    "cosine_similarity",
]
