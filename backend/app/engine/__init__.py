"""Multi-source NFT state aggregation engine."""

from .bus import NotificationBus
from .cache import CacheWindow
from .ledger import OptimisticMutationLedger, UnknownMutationError
from .merger import EntityMerger, MergeResult, StakeIndex
from .orchestrator import NftStateEngine

__all__ = [
    "CacheWindow",
    "EntityMerger",
    "MergeResult",
    "NftStateEngine",
    "NotificationBus",
    "OptimisticMutationLedger",
    "StakeIndex",
    "UnknownMutationError",
]
