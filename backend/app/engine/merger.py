"""Entity Merger: folds source snapshots into the canonical collection."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from loguru import logger

from app.core.config import Settings, settings as default_settings
from app.domain.models import (
    OFFCHAIN_SOURCE,
    Collection,
    Entity,
    OwnershipState,
    SourceSnapshot,
    StakingSource,
    stake_key_for,
    utcnow,
)
from app.domain.rewards import daily_reward_for_rarity
from sources.normalize import DEFAULT_GATEWAY, normalize_record, parse_datetime


BOOKKEEPING_STATUS = "reward_tracking"

# Fields filled from a later record only when the current copy lacks them.
FILL_IF_MISSING = (
    "description",
    "token_id",
    "contract_address",
    "metadata_uri",
    "blockchain",
    "chain_id",
    "chain_name",
    "chain_icon_url",
    "assigned_chain",
)

_LEGACY_KEY = re.compile(r"^(onchain|staked)_(\d+)$")


@dataclass(slots=True)
class MergeResult:
    collection: Collection
    merged_ids: list[str] = field(default_factory=list)
    added: int = 0
    updated: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated)


@dataclass(slots=True)
class StakeMatch:
    source: StakingSource
    staked_at: datetime | None
    legacy: bool = False


class StakeIndex:
    """Membership index over the staked lists of every source.

    ``<network>:<tokenId>`` (on-chain) or the entity id (off-chain) is the
    canonical key. ``onchain_<id>`` / ``staked_<id>`` entries are only accepted
    through :meth:`lookup`'s legacy path.
    """

    def __init__(self) -> None:
        self.canonical: dict[str, StakeMatch] = {}
        self.legacy: dict[str, StakeMatch] = {}

    @classmethod
    def from_snapshots(cls, snapshots: Iterable[SourceSnapshot]) -> StakeIndex:
        index = cls()
        for snapshot in snapshots:
            if not snapshot.success:
                continue
            default_source = (
                StakingSource.OFFCHAIN if snapshot.source == OFFCHAIN_SOURCE else StakingSource.ONCHAIN
            )
            for record in snapshot.records:
                index.add(record, default_source)
        return index

    def add(self, record: Mapping[str, Any], default_source: StakingSource) -> None:
        raw_source = record.get("staking_source")
        source = (
            StakingSource(raw_source)
            if raw_source in (StakingSource.OFFCHAIN.value, StakingSource.ONCHAIN.value)
            else default_source
        )
        match = StakeMatch(source=source, staked_at=parse_datetime(record.get("staked_at")))
        token_id = record.get("token_id")
        network = record.get("blockchain") or record.get("network")
        if token_id is not None and network:
            self.canonical[stake_key_for(str(network), str(token_id))] = match
        raw_id = record.get("nft_id") or record.get("id")
        if raw_id:
            raw_id = str(raw_id)
            if _LEGACY_KEY.match(raw_id):
                self.legacy[raw_id] = match
            else:
                self.canonical[raw_id] = match

    def lookup(self, entity: Entity) -> StakeMatch | None:
        match = self.canonical.get(entity.stake_key)
        if match is not None:
            return match
        for key in entity.legacy_stake_keys():
            match = self.legacy.get(key) or self.canonical.get(key)
            if match is not None:
                logger.debug("Matched staked entity {} through legacy key {}", entity.id, key)
                return StakeMatch(source=match.source, staked_at=match.staked_at, legacy=True)
        return None

    def __len__(self) -> int:
        return len(self.canonical) + len(self.legacy)


class EntityMerger:
    def __init__(
        self,
        *,
        bookkeeping_prefixes: Sequence[str] = ("onchain_reward_",),
        reward_table: Mapping[str, float] | None = None,
        default_reward: float = 0.1,
        gateway: str = DEFAULT_GATEWAY,
    ) -> None:
        self.bookkeeping_prefixes = tuple(bookkeeping_prefixes)
        self.reward_table = dict(reward_table) if reward_table is not None else None
        self.default_reward = default_reward
        self.gateway = gateway

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> EntityMerger:
        config = config or default_settings
        return cls(
            bookkeeping_prefixes=config.bookkeeping_id_prefixes,
            reward_table=config.rarity_daily_rewards,
            default_reward=config.default_daily_reward,
            gateway=config.ipfs_gateway_url,
        )

    def is_bookkeeping(self, entity_id: str, raw: Mapping[str, Any] | None = None) -> bool:
        if any(entity_id.startswith(prefix) for prefix in self.bookkeeping_prefixes):
            return True
        return bool(raw) and raw.get("status") == BOOKKEEPING_STATUS

    def reward_for(self, rarity: str | None) -> float:
        return daily_reward_for_rarity(rarity, self.reward_table, default=self.default_reward)

    def normalize_one(self, raw: Mapping[str, Any], source: str, *, fetched_at: datetime | None = None) -> Entity:
        return normalize_record(
            raw,
            source,
            fetched_at=fetched_at,
            reward_table=self.reward_table,
            default_reward=self.default_reward,
            gateway=self.gateway,
        )

    def normalize_records(self, snapshot: SourceSnapshot) -> list[Entity]:
        """Normalize one snapshot, dropping bookkeeping rows and in-snapshot duplicates."""

        entities: list[Entity] = []
        seen: set[str] = set()
        for raw in snapshot.records:
            try:
                entity = self.normalize_one(raw, snapshot.source, fetched_at=snapshot.fetched_at)
            except ValueError as exc:
                logger.warning("Skipping malformed record from {}: {}", snapshot.source, exc)
                continue
            if self.is_bookkeeping(entity.id, raw):
                continue
            if entity.id in seen:
                logger.warning(
                    "Duplicate id {} within {} snapshot; keeping first occurrence",
                    entity.id,
                    snapshot.source,
                )
                continue
            seen.add(entity.id)
            entities.append(entity)
        return entities

    def resolve(self, existing: Entity, incoming: Entity, *, fetched_at: datetime) -> Entity:
        """Combine two copies of the same id.

        Ownership and staking fields follow ``incoming``; presentation fields and
        ``preserved_origin_metadata`` stay with ``existing`` once set.
        """

        changes: dict[str, Any] = {
            "ownership_state": incoming.ownership_state,
            "staking_source": incoming.staking_source,
            "staked_at": incoming.staked_at,
            "claiming_status": incoming.claiming_status,
            "preserved_origin_metadata": existing.preserved_origin_metadata
            or incoming.preserved_origin_metadata,
            "attributes": existing.attributes or incoming.attributes,
        }
        for name in FILL_IF_MISSING:
            if getattr(existing, name) in (None, ""):
                changes[name] = getattr(incoming, name)
        resolved = replace(existing, **changes)
        resolved.daily_reward = self.reward_for(resolved.rarity)
        if resolved == existing:
            return existing
        resolved.raw_data = incoming.raw_data
        resolved.last_updated = fetched_at
        return resolved

    def _carry_prior(self, incoming: Entity, prior: Entity | None) -> Entity:
        if prior is None or prior.preserved_origin_metadata is None:
            return incoming
        carried = replace(
            incoming,
            name=prior.name,
            image=prior.image,
            rarity=prior.rarity,
            preserved_origin_metadata=prior.preserved_origin_metadata,
        )
        carried.daily_reward = self.reward_for(carried.rarity)
        return carried

    def merge(
        self,
        collection: Collection,
        snapshot: SourceSnapshot,
        *,
        prior: Collection | None = None,
    ) -> MergeResult:
        """Return a new collection with ``snapshot`` folded in; ``collection`` is untouched."""

        if not snapshot.success:
            return MergeResult(collection=collection)

        merged = dict(collection)
        result = MergeResult(collection=merged)
        for incoming in self.normalize_records(snapshot):
            result.merged_ids.append(incoming.id)
            existing = merged.get(incoming.id)
            if existing is None:
                merged[incoming.id] = self._carry_prior(incoming, (prior or {}).get(incoming.id))
                result.added += 1
                continue
            resolved = self.resolve(existing, incoming, fetched_at=snapshot.fetched_at)
            if resolved is not existing:
                merged[incoming.id] = resolved
                result.updated += 1
        if not result.changed:
            result.collection = collection
        return result

    def fragment(self, snapshots: Iterable[SourceSnapshot]) -> Collection:
        """Authoritative copies of specific ids, keyed by id."""

        fragment: Collection = {}
        for snapshot in snapshots:
            if not snapshot.success:
                continue
            for entity in self.normalize_records(snapshot):
                fragment.setdefault(entity.id, entity)
        return fragment

    def fragment_from_records(self, records: Iterable[Entity | Mapping[str, Any]]) -> Collection:
        fragment: Collection = {}
        fetched_at = utcnow()
        for record in records:
            if isinstance(record, Entity):
                fragment[record.id] = record
                continue
            source = record.get("blockchain") or record.get("network") or record.get("source") or OFFCHAIN_SOURCE
            entity = self.normalize_one(record, str(source), fetched_at=fetched_at)
            fragment[entity.id] = entity
        return fragment

    def apply_authoritative(
        self,
        base: Collection,
        fragment: Collection,
        *,
        removes: Iterable[str] = (),
        seeds: Iterable[Entity] = (),
    ) -> Collection:
        """Write confirmed authoritative state into ``base``, returning a new collection.

        ``seeds`` are locally built copies (e.g. the on-chain entity inserted by a
        claim) whose preserved metadata outranks the authoritative record.
        """

        updated = dict(base)
        for entity_id in removes:
            updated.pop(entity_id, None)
        seeded = {entity.id: entity for entity in seeds}
        fetched_at = utcnow()
        for entity_id, incoming in fragment.items():
            existing = updated.get(entity_id) or seeded.get(entity_id)
            if existing is not None:
                existing = replace(existing, optimistic=False)
                updated[entity_id] = self.resolve(existing, incoming, fetched_at=fetched_at)
            else:
                updated[entity_id] = incoming
        return updated

    def apply_staking_status(
        self,
        base: Collection,
        index: StakeIndex,
        *,
        skip_ids: Iterable[str] = (),
        allow_downgrade: bool = True,
    ) -> tuple[Collection, int]:
        skip = set(skip_ids)
        updated = dict(base)
        fetched_at = utcnow()
        changed = 0
        for entity_id, entity in base.items():
            if entity_id in skip:
                continue
            match = index.lookup(entity)
            if match is not None:
                if entity.is_staked and entity.staking_source is match.source:
                    continue
                updated[entity_id] = replace(
                    entity,
                    ownership_state=OwnershipState.STAKED,
                    staking_source=match.source,
                    staked_at=match.staked_at or entity.staked_at or fetched_at,
                    last_updated=fetched_at,
                )
                changed += 1
            elif entity.is_staked and allow_downgrade:
                updated[entity_id] = replace(
                    entity,
                    ownership_state=OwnershipState.FREE,
                    staking_source=StakingSource.NONE,
                    staked_at=None,
                    last_updated=fetched_at,
                )
                changed += 1
        return (updated if changed else base), changed
