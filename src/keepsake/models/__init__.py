"""Models domain: MCP tool input and output contracts."""

from keepsake.models.schemas import ExtractExchangeInput
from keepsake.models.schemas import ExtractExchangeResult
from keepsake.models.schemas import HousekeepingPolicyInput
from keepsake.models.schemas import HousekeepingReport
from keepsake.models.schemas import MemoryHit
from keepsake.models.schemas import NeedsHousekeepingResult
from keepsake.models.schemas import RebuildIndexResult
from keepsake.models.schemas import SearchMemoriesInput
from keepsake.models.schemas import SearchMemoriesResult

__all__ = [
    "ExtractExchangeInput",
    "ExtractExchangeResult",
    "HousekeepingPolicyInput",
    "HousekeepingReport",
    "MemoryHit",
    "NeedsHousekeepingResult",
    "RebuildIndexResult",
    "SearchMemoriesInput",
    "SearchMemoriesResult",
]
