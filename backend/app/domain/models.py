"""Typed domain representations shared by sources, the engine and the API."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable


OFFCHAIN_SOURCE = "offchain"


class LifecycleState(str, Enum):
    OFFCHAIN = "offchain"
    ONCHAIN = "onchain"


class OwnershipState(str, Enum):
    FREE = "free"
    STAKED = "staked"


class StakingSource(str, Enum):
    NONE = "none"
    OFFCHAIN = "offchain"
    ONCHAIN = "onchain"


class ClaimingStatus(str, Enum):
    CLAIMING = "claiming"
    COMPLETED = "completed"
    FAILED = "failed"


class MutationKind(str, Enum):
    STAKE = "stake"
    UNSTAKE = "unstake"
    BURN = "burn"
    CLAIM_START = "claim_start"
    CLAIM_COMPLETE = "claim_complete"
    UPDATE = "update"


class LoadState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PARTIALLY_LOADED = "partially_loaded"
    LOADED = "loaded"
    STALE = "stale"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class OriginMetadata:
    """Presentation fields captured when an asset is first merged from its authority."""

    name: str
    image: str
    rarity: str
    token_id: str | None = None
    contract_address: str | None = None
    metadata_uri: str | None = None


@dataclass(slots=True)
class Entity:
    """One ownable asset, unified across the off-chain ledger and every chain."""

    id: str
    origin_source: str
    lifecycle_state: LifecycleState
    name: str
    image: str
    rarity: str
    description: str | None = None
    attributes: list[dict[str, Any]] = field(default_factory=list)
    ownership_state: OwnershipState = OwnershipState.FREE
    staking_source: StakingSource = StakingSource.NONE
    staked_at: datetime | None = None
    claiming_status: ClaimingStatus | None = None
    preserved_origin_metadata: OriginMetadata | None = None
    daily_reward: float = 0.0
    token_id: str | None = None
    contract_address: str | None = None
    metadata_uri: str | None = None
    blockchain: str | None = None
    chain_id: int | None = None
    chain_name: str | None = None
    chain_icon_url: str | None = None
    assigned_chain: str | None = None
    last_updated: datetime | None = None
    optimistic: bool = False
    raw_data: dict[str, Any] | None = None

    @property
    def is_staked(self) -> bool:
        return self.ownership_state is OwnershipState.STAKED

    @property
    def stake_key(self) -> str:
        """Canonical key linking this asset to entries of a staked list."""

        if self.lifecycle_state is LifecycleState.ONCHAIN and self.token_id and self.blockchain:
            return stake_key_for(self.blockchain, self.token_id)
        return self.id

    def legacy_stake_keys(self) -> set[str]:
        keys = {self.id}
        if self.token_id:
            keys.add(f"onchain_{self.token_id}")
            keys.add(f"staked_{self.token_id}")
        return keys

    def evolve(self, **changes: Any) -> Entity:
        return replace(self, **changes)


def stake_key_for(network: str, token_id: str | int) -> str:
    return f"{network}:{token_id}"


Collection = dict[str, Entity]


@dataclass(slots=True)
class SourceSnapshot:
    """Raw result of one adapter fetch, handed to the merger as-is."""

    source: str
    owner_key: str
    records: list[dict[str, Any]]
    success: bool
    fetched_at: datetime = field(default_factory=utcnow)
    error: str | None = None

    @classmethod
    def ok(cls, source: str, owner_key: str, records: Iterable[dict[str, Any]]) -> SourceSnapshot:
        return cls(source=source, owner_key=owner_key, records=list(records), success=True)

    @classmethod
    def failed(cls, source: str, owner_key: str, error: BaseException | str) -> SourceSnapshot:
        message = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
        return cls(source=source, owner_key=owner_key, records=[], success=False, error=message)


@dataclass(slots=True, frozen=True)
class MutationHandle:
    mutation_id: str
    owner_key: str
    kind: MutationKind
    target_ids: frozenset[str]


@dataclass(slots=True)
class PendingMutation:
    """A locally applied edit awaiting confirmation.

    The merged base collection is never modified by a pending mutation, so it
    doubles as the backup a revert restores.
    """

    handle: MutationHandle
    patch: dict[str, Any] = field(default_factory=dict)
    removes: frozenset[str] = frozenset()
    inserts: tuple[Entity, ...] = ()
    per_target: dict[str, dict[str, Any]] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def kind(self) -> MutationKind:
        return self.handle.kind

    @property
    def target_ids(self) -> frozenset[str]:
        return self.handle.target_ids


@dataclass(slots=True)
class LoadingProgress:
    per_source: dict[str, bool] = field(default_factory=dict)
    failed_sources: list[str] = field(default_factory=list)
    completed: int = 0
    total: int = 0

    @classmethod
    def start(cls, sources: Iterable[str]) -> LoadingProgress:
        per_source = {name: False for name in sources}
        return cls(per_source=per_source, total=len(per_source))

    def mark_done(self, source: str, *, success: bool) -> None:
        if self.per_source.get(source):
            return
        self.per_source[source] = True
        self.completed += 1
        if not success and source not in self.failed_sources:
            self.failed_sources.append(source)

    @property
    def done(self) -> bool:
        return self.total > 0 and self.completed >= self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "per_source": dict(self.per_source),
            "failed_sources": list(self.failed_sources),
            "completed": self.completed,
            "total": self.total,
        }


@dataclass(slots=True, frozen=True)
class CollectionView:
    """Immutable merged+optimistic view delivered to readers and subscribers."""

    owner_key: str | None
    entities: tuple[Entity, ...]
    state: LoadState
    progress: LoadingProgress
    has_optimistic_mutations: bool = False
    error: str | None = None
    last_updated: datetime | None = None

    def _select(self, predicate: Callable[[Entity], bool]) -> list[Entity]:
        return [entity for entity in self.entities if predicate(entity)]

    def available(self) -> list[Entity]:
        return self._select(lambda entity: not entity.is_staked)

    stakable = available

    def staked(self) -> list[Entity]:
        return self._select(lambda entity: entity.is_staked)

    def offchain(self) -> list[Entity]:
        return self._select(lambda entity: entity.lifecycle_state is LifecycleState.OFFCHAIN)

    def onchain(self) -> list[Entity]:
        return self._select(lambda entity: entity.lifecycle_state is LifecycleState.ONCHAIN)

    def get(self, entity_id: str) -> Entity | None:
        return next((entity for entity in self.entities if entity.id == entity_id), None)
