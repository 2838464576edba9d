"""Engine domain: extraction, deduplication, search and housekeeping."""

from keepsake.engine.classification import MemoryClassifier
from keepsake.engine.classification import parse_candidate
from keepsake.engine.classification import parse_candidate_batch
from keepsake.engine.classification import ParseFailure
from keepsake.engine.duplicates import DuplicateCheck
from keepsake.engine.duplicates import DuplicateDetector
from keepsake.engine.duplicates import SimilarMemory
from keepsake.engine.extraction import ExtractionPipeline
from keepsake.engine.housekeeping import HousekeepingError
from keepsake.engine.housekeeping import HousekeepingScheduler
from keepsake.engine.housekeeping import is_protected
from keepsake.engine.memories import MemoryService
from keepsake.engine.schemas import BatchExtractionResult
from keepsake.engine.schemas import EmbeddingBackfillResult
from keepsake.engine.schemas import ExtractionContext
from keepsake.engine.schemas import ExtractionOutcome
from keepsake.engine.schemas import HistoryResult
from keepsake.engine.schemas import HousekeepingAction
from keepsake.engine.schemas import HousekeepingDetail
from keepsake.engine.schemas import HousekeepingResult
from keepsake.engine.schemas import IndexConsistencyReport
from keepsake.engine.schemas import IndexRebuildResult
from keepsake.engine.schemas import MergePair
from keepsake.engine.schemas import Perspective
from keepsake.engine.schemas import PerspectiveOutcome
from keepsake.engine.schemas import SearchFilters
from keepsake.engine.schemas import SearchResult
from keepsake.engine.search import format_search_results
from keepsake.engine.search import lexical_score
from keepsake.engine.search import SemanticSearchService

__all__ = [
    "BatchExtractionResult",
    "DuplicateCheck",
    "DuplicateDetector",
    "EmbeddingBackfillResult",
    "ExtractionContext",
    "ExtractionOutcome",
    "ExtractionPipeline",
    "HistoryResult",
    "HousekeepingAction",
    "HousekeepingDetail",
    "HousekeepingError",
    "HousekeepingResult",
    "HousekeepingScheduler",
    "IndexConsistencyReport",
    "IndexRebuildResult",
    "MemoryClassifier",
    "MemoryService",
    "MergePair",
    "ParseFailure",
    "Perspective",
    "PerspectiveOutcome",
    "SearchFilters",
    "SearchResult",
    "SemanticSearchService",
    "SimilarMemory",
    "format_search_results",
    "is_protected",
    "lexical_score",
    "parse_candidate",
    "parse_candidate_batch",
]
