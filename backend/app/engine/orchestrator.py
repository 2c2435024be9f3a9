"""Load Orchestrator and the public :class:`NftStateEngine`.

All state changes run synchronously between awaits on a single event loop, so
a merge is never observed half-applied. A generation counter ties every
in-flight load to the identity that started it; results from an older
generation are dropped.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from typing import Any, Callable, Protocol

from loguru import logger

from app.core.config import Settings, get_settings
from app.domain.models import (
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
    OwnershipState,
    PendingMutation,
    SourceSnapshot,
    StakingSource,
    utcnow,
)

from .bus import NotificationBus, Subscriber
from .cache import CacheWindow
from .ledger import OptimisticMutationLedger, UnknownMutationError
from .merger import EntityMerger, StakeIndex


OFFCHAIN_ERROR_MESSAGE = "Failed to load NFT data"


class SourceAdapter(Protocol):
    name: str

    async def fetch(self, owner_key: str) -> SourceSnapshot: ...

    async def fetch_staked(self, owner_key: str) -> SourceSnapshot: ...


class IdLookup(Protocol):
    async def fetch_by_ids(self, owner_key: str, ids: Iterable[str]) -> list[SourceSnapshot]: ...


class IdentityProvider(Protocol):
    def current_owner_key(self) -> str | None: ...

    def is_authenticated(self) -> bool: ...


class CountReporter(Protocol):
    async def report(self, owner_key: str, counts: dict[str, int]) -> None: ...


def short_key(owner_key: str | None) -> str:
    if not owner_key:
        return "<none>"
    if len(owner_key) <= 12:
        return owner_key
    return f"{owner_key[:6]}…{owner_key[-4:]}"


class NftStateEngine:
    """Unified, eventually-consistent NFT collection for one active wallet."""

    def __init__(
        self,
        offchain: SourceAdapter,
        onchain: Sequence[SourceAdapter] = (),
        *,
        lookup: IdLookup | None = None,
        identity: IdentityProvider | None = None,
        count_reporter: CountReporter | None = None,
        merger: EntityMerger | None = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
        config: Settings | None = None,
    ) -> None:
        self._config = config or get_settings()
        self._adapters: list[SourceAdapter] = [offchain, *onchain]
        self._lookup = lookup
        self._identity = identity
        self._count_reporter = count_reporter
        self._merger = merger or EntityMerger.from_settings(self._config)
        self._ledger = OptimisticMutationLedger(reward_for=self._merger.reward_for)
        self._bus = NotificationBus()
        self._ttl = ttl_seconds or self._config.nft_cache_ttl_seconds
        self._clock = clock

        self._owner_key: str | None = None
        self._generation = 0
        self._cache: CacheWindow | None = None
        self._source_ids: dict[str, set[str]] = {}
        self._progress = LoadingProgress()
        self._state = LoadState.IDLE
        self._error: str | None = None
        self._load_task: asyncio.Task[CollectionView] | None = None
        self._count_task: asyncio.Task[None] | None = None
        self._view = self._build_view()

    # -- read side ---------------------------------------------------------

    @property
    def owner_key(self) -> str | None:
        return self._owner_key

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def source_names(self) -> list[str]:
        return [adapter.name for adapter in self._adapters]

    @property
    def _base(self) -> Collection:
        return self._cache.collection if self._cache else {}

    def snapshot(self) -> CollectionView:
        return self._view

    def get_collection(self) -> Collection:
        return {entity.id: entity for entity in self._view.entities}

    def get_loading_progress(self) -> LoadingProgress:
        return self._view.progress

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        unsubscribe = self._bus.subscribe(callback)
        callback(self._view)
        if _running_loop() is not None:
            self.observe()
        return unsubscribe

    def _build_view(self) -> CollectionView:
        visible = self._ledger.overlay(self._base)
        entities = tuple(visible.values())
        stamps = [entity.last_updated for entity in entities if entity.last_updated]
        progress = LoadingProgress(
            per_source=dict(self._progress.per_source),
            failed_sources=list(self._progress.failed_sources),
            completed=self._progress.completed,
            total=self._progress.total,
        )
        return CollectionView(
            owner_key=self._owner_key,
            entities=entities,
            state=self._state,
            progress=progress,
            has_optimistic_mutations=bool(self._ledger),
            error=self._error,
            last_updated=max(stamps) if stamps else None,
        )

    def _publish(self) -> None:
        if self._cache is not None:
            self._cache.has_optimistic_mutations = bool(self._ledger)
        self._view = self._build_view()
        self._bus.publish(self._view)

    # -- reload policy -----------------------------------------------------

    def _load_in_flight(self, owner_key: str) -> bool:
        return (
            self._load_task is not None
            and not self._load_task.done()
            and owner_key == self._owner_key
        )

    def needs_reload(self, owner_key: str | None = None) -> bool:
        owner_key = owner_key or self._owner_key
        if owner_key is None:
            return False
        if owner_key != self._owner_key:
            return True
        if self._load_in_flight(owner_key):
            return False
        return self._cache is None or not self._cache.is_valid(owner_key)

    def observe(self) -> CollectionView:
        """Evaluate the reload policy and return the current view without blocking.

        A stale collection is still returned while its reload runs.
        """

        owner_key = self._owner_key
        if self._identity is not None:
            if not self._identity.is_authenticated():
                if self._state is not LoadState.IDLE or self._owner_key is not None:
                    logger.info("Identity signed out; clearing NFT state")
                    self.clear()
                return self._view
            owner_key = self._identity.current_owner_key()
        if owner_key is None:
            return self._view
        if owner_key != self._owner_key:
            self.on_identity_changed(owner_key)
        elif self.needs_reload(owner_key) and _running_loop() is not None:
            if self._state is LoadState.LOADED:
                self._state = LoadState.STALE
            self._start_load(owner_key)
        return self._view

    async def ensure_loaded(self) -> CollectionView:
        self.observe()
        task = self._load_task
        if task is not None and not task.done():
            await task
        return self._view

    # -- loading -----------------------------------------------------------

    def _reset_state(self) -> None:
        self._generation += 1
        if self._count_task is not None and not self._count_task.done():
            self._count_task.cancel()
        self._count_task = None
        self._load_task = None
        self._cache = None
        self._source_ids = {}
        self._ledger.clear()
        self._progress = LoadingProgress()
        self._error = None
        self._state = LoadState.IDLE

    def clear(self) -> None:
        """Drop every trace of the current identity."""

        self._reset_state()
        self._owner_key = None
        self._publish()

    def on_identity_changed(self, new_key: str | None) -> None:
        if new_key == self._owner_key:
            return
        logger.info("Wallet changed {} -> {}; clearing NFT state", short_key(self._owner_key), short_key(new_key))
        self._reset_state()
        self._owner_key = new_key
        self._publish()
        if new_key and _running_loop() is not None:
            self._start_load(new_key)

    def _start_load(self, owner_key: str) -> asyncio.Task[CollectionView]:
        if self._load_in_flight(owner_key):
            assert self._load_task is not None
            return self._load_task
        if self._cache is None or self._cache.wallet_key != owner_key:
            self._cache = CacheWindow(owner_key, self._ttl, clock=self._clock)
        self._progress = LoadingProgress.start(self.source_names)
        self._error = None
        self._state = LoadState.LOADING
        self._publish()
        task = asyncio.get_running_loop().create_task(self._run_load(owner_key, self._generation))
        self._load_task = task
        return task

    async def load_all(self, owner_key: str) -> CollectionView:
        if owner_key != self._owner_key:
            self._reset_state()
            self._owner_key = owner_key
            logger.info("Switching NFT state to {}", short_key(owner_key))
        view = await self._start_load(owner_key)
        if owner_key != self._owner_key:
            # The identity moved on while loading; never hand out its view.
            return CollectionView(owner_key=owner_key, entities=(), state=LoadState.IDLE, progress=LoadingProgress())
        return view

    async def refresh(self) -> CollectionView:
        if self._owner_key is None:
            return self._view
        if self._cache is not None:
            self._cache.invalidate()
        if not self._load_in_flight(self._owner_key):
            self._state = LoadState.STALE
        return await self.load_all(self._owner_key)

    async def force_reload(self) -> CollectionView:
        owner_key = self._owner_key
        if owner_key is None:
            return self._view
        self._reset_state()
        self._owner_key = owner_key
        self._publish()
        return await self.load_all(owner_key)

    async def _fetch(self, adapter: SourceAdapter, owner_key: str) -> SourceSnapshot:
        try:
            return await adapter.fetch(owner_key)
        except Exception as exc:
            logger.exception("Adapter {} raised instead of returning a failed snapshot", adapter.name)
            return SourceSnapshot.failed(adapter.name, owner_key, exc)

    async def _run_load(self, owner_key: str, generation: int) -> CollectionView:
        started = time.monotonic()
        logger.info("Loading NFTs for {} from {} sources", short_key(owner_key), len(self._adapters))
        pending = [asyncio.create_task(self._fetch(adapter, owner_key)) for adapter in self._adapters]
        try:
            for next_done in asyncio.as_completed(pending):
                snapshot = await next_done
                if generation != self._generation or snapshot.owner_key != owner_key:
                    logger.info("Discarding {} result for stale wallet {}", snapshot.source, short_key(snapshot.owner_key))
                    continue
                self._apply_snapshot(snapshot)
        finally:
            for task in pending:
                if not task.done():
                    task.cancel()

        if generation != self._generation:
            return self._view
        assert self._cache is not None
        offchain_failed = OFFCHAIN_SOURCE in self._progress.failed_sources
        if offchain_failed:
            # Not a successful load; the next observation retries.
            self._cache.invalidate()
        else:
            self._cache.mark_loaded()
        self._state = LoadState.LOADED
        self._publish()
        logger.info(
            "Loaded {} NFTs for {} in {:.2f}s (failed sources: {})",
            len(self._view.entities),
            short_key(owner_key),
            time.monotonic() - started,
            ", ".join(self._progress.failed_sources) or "none",
        )
        if not offchain_failed:
            self._schedule_count_report(owner_key, generation)
        return self._view

    def _apply_snapshot(self, snapshot: SourceSnapshot) -> None:
        assert self._cache is not None
        base = self._cache.collection
        previous_ids = self._source_ids.pop(snapshot.source, set())
        still_claimed = set().union(*self._source_ids.values()) if self._source_ids else set()
        pruned = {
            entity_id: entity
            for entity_id, entity in base.items()
            if entity_id not in previous_ids or entity_id in still_claimed
        }

        if snapshot.success:
            result = self._merger.merge(pruned, snapshot, prior=base)
            self._source_ids[snapshot.source] = set(result.merged_ids)
            self._cache.store(result.collection)
            logger.info(
                "Merged {} NFTs from {} ({} new, {} updated)",
                len(result.merged_ids),
                snapshot.source,
                result.added,
                result.updated,
            )
        else:
            self._cache.store(pruned)
            if snapshot.source == OFFCHAIN_SOURCE:
                self._error = OFFCHAIN_ERROR_MESSAGE
            logger.warning("Source {} failed: {}", snapshot.source, snapshot.error)

        self._progress.mark_done(snapshot.source, success=snapshot.success)
        if not self._progress.done:
            self._state = LoadState.PARTIALLY_LOADED
        self._publish()

    def _schedule_count_report(self, owner_key: str, generation: int) -> None:
        if self._count_reporter is None or not self._config.count_sync_enabled:
            return
        self._count_task = asyncio.get_running_loop().create_task(
            self._report_counts(owner_key, generation)
        )

    def counts(self) -> dict[str, int]:
        view = self._view
        return {
            "total": len(view.entities),
            "offchain": len(view.offchain()),
            "onchain": len(view.onchain()),
            "staked": len(view.staked()),
        }

    async def _report_counts(self, owner_key: str, generation: int) -> None:
        await asyncio.sleep(self._config.count_sync_delay_seconds)
        if generation != self._generation or self._count_reporter is None:
            return
        try:
            await self._count_reporter.report(owner_key, self.counts())
        except Exception as exc:
            logger.warning("NFT count sync failed for {}: {}", short_key(owner_key), exc)

    # -- optimistic mutations ------------------------------------------------

    def apply_optimistic(
        self,
        kind: MutationKind | str,
        target_ids: Iterable[str],
        patch: Mapping[str, Any] | None = None,
        *,
        insert: Iterable[Entity] | None = None,
        per_target: Mapping[str, Mapping[str, Any]] | None = None,
        owner_key: str | None = None,
    ) -> MutationHandle | None:
        """Show a local edit immediately; returns ``None`` for a stale identity.

        Raises ``ValueError`` for an unknown kind, no targets or unsupported
        patch fields, or for patch values that do not fit their field type.
        """

        kind = MutationKind(kind)
        if self._owner_key is None or (owner_key is not None and owner_key != self._owner_key):
            logger.warning(
                "Ignoring {} for stale wallet {} (active: {})",
                kind.value,
                short_key(owner_key),
                short_key(self._owner_key),
            )
            return None
        targets = frozenset(target_ids)
        if not targets:
            raise ValueError("at least one target id is required")
        visible = self._ledger.overlay(self._base)
        missing = sorted(targets - set(visible))
        if missing:
            logger.warning("{} targets unknown ids: {}", kind.value, ", ".join(missing))

        removes = targets if kind in (MutationKind.BURN, MutationKind.CLAIM_COMPLETE) else frozenset()
        handle = MutationHandle(
            mutation_id=uuid.uuid4().hex,
            owner_key=self._owner_key,
            kind=kind,
            target_ids=targets,
        )
        self._ledger.record(
            handle,
            patch=patch,
            per_target=per_target,
            removes=removes,
            inserts=tuple(insert or ()),
        )
        logger.info("Applied optimistic {} to {} NFTs ({})", kind.value, len(targets), handle.mutation_id)
        self._publish()
        return handle

    def stake(self, entity_ids: Iterable[str], *, owner_key: str | None = None) -> MutationHandle | None:
        ids = list(entity_ids)
        visible = self.get_collection()
        now = utcnow()
        per_target = {
            entity_id: {
                "staking_source": StakingSource.ONCHAIN
                if entity_id in visible and visible[entity_id].lifecycle_state is LifecycleState.ONCHAIN
                else StakingSource.OFFCHAIN
            }
            for entity_id in ids
        }
        return self.apply_optimistic(
            MutationKind.STAKE,
            ids,
            {"ownership_state": OwnershipState.STAKED, "staked_at": now},
            per_target=per_target,
            owner_key=owner_key,
        )

    def unstake(self, entity_ids: Iterable[str], *, owner_key: str | None = None) -> MutationHandle | None:
        return self.apply_optimistic(
            MutationKind.UNSTAKE,
            entity_ids,
            {
                "ownership_state": OwnershipState.FREE,
                "staking_source": StakingSource.NONE,
                "staked_at": None,
            },
            owner_key=owner_key,
        )

    def burn(self, entity_ids: Iterable[str], *, owner_key: str | None = None) -> MutationHandle | None:
        return self.apply_optimistic(MutationKind.BURN, entity_ids, owner_key=owner_key)

    def start_claim(self, entity_id: str, *, owner_key: str | None = None) -> MutationHandle | None:
        return self.apply_optimistic(
            MutationKind.CLAIM_START,
            [entity_id],
            {"claiming_status": ClaimingStatus.CLAIMING},
            owner_key=owner_key,
        )

    def complete_claim(
        self,
        entity_id: str,
        onchain: Entity | Mapping[str, Any],
        *,
        owner_key: str | None = None,
    ) -> MutationHandle | None:
        """Replace the off-chain ``entity_id`` with its freshly minted on-chain copy."""

        if self._owner_key is None or (owner_key is not None and owner_key != self._owner_key):
            logger.warning("Ignoring claim completion for stale wallet {}", short_key(owner_key))
            return None
        source_entity = self.get_collection().get(entity_id)
        if isinstance(onchain, Entity):
            claimed = onchain
        else:
            network = onchain.get("blockchain") or onchain.get("network")
            if not network:
                raise ValueError("claimed record needs a blockchain network")
            claimed = self._merger.normalize_one(onchain, str(network), fetched_at=utcnow())

        if source_entity is not None:
            preserved = source_entity.preserved_origin_metadata
            if preserved is not None:
                preserved = replace(
                    preserved,
                    token_id=claimed.token_id,
                    contract_address=claimed.contract_address,
                    metadata_uri=claimed.metadata_uri,
                )
            claimed = claimed.evolve(
                name=source_entity.name,
                image=source_entity.image,
                rarity=source_entity.rarity,
                description=claimed.description or source_entity.description,
                attributes=claimed.attributes or source_entity.attributes,
                assigned_chain=claimed.assigned_chain or source_entity.assigned_chain,
                preserved_origin_metadata=preserved or claimed.preserved_origin_metadata,
                claiming_status=ClaimingStatus.COMPLETED,
                daily_reward=self._merger.reward_for(source_entity.rarity),
            )

        pending_start = self._ledger.find(entity_id, MutationKind.CLAIM_START)
        if pending_start is not None:
            self._ledger.discard(pending_start.handle)
        return self.apply_optimistic(
            MutationKind.CLAIM_COMPLETE,
            [entity_id],
            insert=[claimed],
            owner_key=owner_key,
        )

    def update(
        self, entity_id: str, changes: Mapping[str, Any], *, owner_key: str | None = None
    ) -> MutationHandle | None:
        return self.batch_update([(entity_id, changes)], owner_key=owner_key)

    def batch_update(
        self,
        updates: Iterable[tuple[str, Mapping[str, Any]]],
        *,
        owner_key: str | None = None,
    ) -> MutationHandle | None:
        per_target = {entity_id: dict(changes) for entity_id, changes in updates}
        return self.apply_optimistic(
            MutationKind.UPDATE,
            per_target,
            per_target=per_target,
            owner_key=owner_key,
        )

    async def confirm(
        self,
        handle: MutationHandle,
        authoritative: Iterable[Entity | Mapping[str, Any]] | None = None,
    ) -> bool:
        """Check a pending mutation against authoritative data.

        A mismatch keeps the optimistic state in place; only :meth:`revert`
        rolls it back.
        """

        try:
            mutation = self._ledger.get(handle)
        except UnknownMutationError:
            logger.warning("Confirm ignored: mutation {} is not pending", handle.mutation_id)
            return False
        if handle.owner_key != self._owner_key:
            logger.warning("Confirm ignored: mutation {} belongs to a previous wallet", handle.mutation_id)
            return False
        if mutation.kind is MutationKind.CLAIM_START:
            logger.info("Claim start {} settles through complete_claim or revert", handle.mutation_id)
            return False

        generation = self._generation
        if authoritative is not None:
            fragment = self._merger.fragment_from_records(authoritative)
        else:
            if self._lookup is None:
                logger.warning("Confirm of {} needs authoritative data but no lookup is configured", handle.mutation_id)
                return False
            ids = set(mutation.target_ids) | {entity.id for entity in mutation.inserts}
            snapshots = await self._lookup.fetch_by_ids(handle.owner_key, ids)
            if generation != self._generation:
                return False
            failed = [snapshot.source for snapshot in snapshots if not snapshot.success]
            if failed:
                logger.warning("Confirm of {} deferred: lookup failed for {}", handle.mutation_id, ", ".join(failed))
                return False
            fragment = self._merger.fragment(snapshots)

        try:
            mutation = self._ledger.get(handle)
        except UnknownMutationError:
            return False
        if not self._ledger.is_confirmed(mutation, fragment):
            logger.warning(
                "Mutation {} ({}) not yet reflected by sources; keeping optimistic state",
                handle.mutation_id,
                mutation.kind.value,
            )
            return False

        new_base = self._merger.apply_authoritative(
            self._base,
            {entity_id: entity for entity_id, entity in fragment.items() if entity_id not in mutation.removes},
            removes=mutation.removes,
            seeds=mutation.inserts,
        )
        if mutation.kind in (MutationKind.STAKE, MutationKind.UNSTAKE, MutationKind.UPDATE):
            new_base = self._promote_patch(new_base, mutation, fragment)
        for entity_id in mutation.removes:
            for ids in self._source_ids.values():
                ids.discard(entity_id)
        for entity in mutation.inserts:
            self._source_ids.setdefault(entity.origin_source, set()).add(entity.id)
        if self._cache is not None:
            self._cache.store(new_base)
        self._ledger.settle(handle)
        logger.info("Confirmed {} mutation {}", mutation.kind.value, handle.mutation_id)
        self._publish()
        return True

    def _promote_patch(
        self, base: Collection, mutation: PendingMutation, fragment: Collection
    ) -> Collection:
        """Copy the confirmed fields from the authoritative records into ``base``."""

        for entity_id in mutation.target_ids:
            current = base.get(entity_id)
            authoritative = fragment.get(entity_id)
            if current is None or authoritative is None:
                continue
            names = set(mutation.patch) | set(mutation.per_target.get(entity_id, {}))
            promoted = replace(current, **{name: getattr(authoritative, name) for name in names})
            promoted.daily_reward = self._merger.reward_for(promoted.rarity)
            base[entity_id] = promoted
        return base

    def revert(self, handle: MutationHandle) -> bool:
        """Roll back to the last fully-confirmed state, discarding every pending mutation."""

        try:
            self._ledger.revert(handle)
        except UnknownMutationError:
            logger.warning("Revert ignored: mutation {} is not pending", handle.mutation_id)
            return False
        logger.info("Reverted optimistic {} ({})", handle.kind.value, handle.mutation_id)
        self._publish()
        return True

    def find_mutation(self, mutation_id: str) -> MutationHandle | None:
        try:
            return self._ledger.get(mutation_id).handle
        except UnknownMutationError:
            return None

    # -- staking sync --------------------------------------------------------

    async def _fetch_staked(self, adapter: SourceAdapter, owner_key: str) -> SourceSnapshot:
        try:
            return await adapter.fetch_staked(owner_key)
        except Exception as exc:
            logger.exception("Adapter {} raised while listing staked NFTs", adapter.name)
            return SourceSnapshot.failed(adapter.name, owner_key, exc)

    async def sync_staking_status(self, force: bool = False) -> int:
        """Re-derive staking state from every source's staked list.

        Entities under an optimistic mutation are left alone unless ``force``,
        which discards pending mutations first. Downgrades to ``free`` only
        happen when every staked list loaded.
        """

        owner_key = self._owner_key
        if owner_key is None or self._cache is None:
            return 0
        generation = self._generation
        if force and self._ledger:
            logger.info("Forced staking sync discards {} pending mutations", len(self._ledger))
            self._ledger.clear()
            self._publish()

        snapshots = await asyncio.gather(
            *(self._fetch_staked(adapter, owner_key) for adapter in self._adapters)
        )
        if generation != self._generation:
            return 0
        failed = [snapshot.source for snapshot in snapshots if not snapshot.success]
        index = StakeIndex.from_snapshots(snapshots)
        skip = set() if force else self._ledger.optimistic_ids()
        new_base, changed = self._merger.apply_staking_status(
            self._base,
            index,
            skip_ids=skip,
            allow_downgrade=not failed,
        )
        if changed:
            self._cache.store(new_base)
            self._publish()
        logger.info(
            "Staking sync for {}: {} changed, {} skipped, failed lists: {}",
            short_key(owner_key),
            changed,
            len(skip),
            ", ".join(failed) or "none",
        )
        return changed

    async def aclose(self) -> None:
        tasks = [task for task in (self._load_task, self._count_task) if task is not None and not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
