"""Domain models representing the unified NFT collection."""

from .models import (
    OFFCHAIN_SOURCE,
    ClaimingStatus,
    Collection,
    CollectionView,
    Entity,
    LifecycleState,
    LoadingProgress,
    LoadState,
    MutationHandle,
    MutationKind,
    OriginMetadata,
    OwnershipState,
    PendingMutation,
    SourceSnapshot,
    StakingSource,
)
from .rewards import daily_reward_for_rarity

__all__ = [
    "OFFCHAIN_SOURCE",
    "ClaimingStatus",
    "Collection",
    "CollectionView",
    "Entity",
    "LifecycleState",
    "LoadingProgress",
    "LoadState",
    "MutationHandle",
    "MutationKind",
    "OriginMetadata",
    "OwnershipState",
    "PendingMutation",
    "SourceSnapshot",
    "StakingSource",
    "daily_reward_for_rarity",
]
