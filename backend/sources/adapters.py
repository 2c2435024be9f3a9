"""Source adapters: one per authority, each returning a :class:`SourceSnapshot`.

Adapters never raise. Any transport, RPC or payload error turns into a failed
snapshot so one broken chain cannot block the others.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from typing import Protocol

import httpx
from loguru import logger
from web3.exceptions import Web3Exception

from app.core.config import Settings, settings as default_settings
from app.domain.models import OFFCHAIN_SOURCE, SourceSnapshot

from .chains import ChainConfig, resolve_chains
from .client import ChainNftClient, SupabaseClient
from .normalize import entity_id_for


ADAPTER_ERRORS = (
    httpx.HTTPError,
    Web3Exception,
    asyncio.TimeoutError,
    OSError,
    RuntimeError,
    ValueError,
    KeyError,
    TypeError,
)


class SourceAdapter(Protocol):
    name: str

    async def fetch(self, owner_key: str) -> SourceSnapshot: ...

    async def fetch_staked(self, owner_key: str) -> SourceSnapshot: ...


class OffchainSourceAdapter:
    name = OFFCHAIN_SOURCE

    def __init__(self, client: SupabaseClient, *, timeout: float | None = None) -> None:
        self.client = client
        self.timeout = timeout or default_settings.offchain_fetch_timeout_seconds

    async def fetch(self, owner_key: str) -> SourceSnapshot:
        try:
            records = await asyncio.wait_for(
                self.client.fetch_offchain_entities(owner_key), timeout=self.timeout
            )
        except ADAPTER_ERRORS as exc:
            logger.warning("Off-chain NFT fetch failed for {}: {}", owner_key, exc)
            return SourceSnapshot.failed(self.name, owner_key, exc)
        return SourceSnapshot.ok(self.name, owner_key, records)

    async def fetch_staked(self, owner_key: str) -> SourceSnapshot:
        try:
            rows = await asyncio.wait_for(
                self.client.fetch_offchain_staked(owner_key), timeout=self.timeout
            )
        except ADAPTER_ERRORS as exc:
            logger.warning("Off-chain staked list failed for {}: {}", owner_key, exc)
            return SourceSnapshot.failed(self.name, owner_key, exc)
        return SourceSnapshot.ok(self.name, owner_key, rows)


class OnchainSourceAdapter:
    def __init__(
        self, chain: ChainConfig, client: ChainNftClient, *, timeout: float | None = None
    ) -> None:
        self.chain = chain
        self.name = chain.network
        self.client = client
        self.timeout = timeout or default_settings.onchain_fetch_timeout_seconds

    async def fetch(self, owner_key: str) -> SourceSnapshot:
        try:
            records = await asyncio.wait_for(self.client.fetch_all(owner_key), timeout=self.timeout)
        except ADAPTER_ERRORS as exc:
            logger.warning("Failed to load NFTs from {}: {}", self.chain.name, exc)
            return SourceSnapshot.failed(self.name, owner_key, exc)
        return SourceSnapshot.ok(self.name, owner_key, records)

    async def fetch_staked(self, owner_key: str) -> SourceSnapshot:
        try:
            token_ids = await asyncio.wait_for(
                self.client.fetch_staked_token_ids(owner_key), timeout=self.timeout
            )
        except ADAPTER_ERRORS as exc:
            logger.warning("Failed to load staked tokens from {}: {}", self.chain.name, exc)
            return SourceSnapshot.failed(self.name, owner_key, exc)
        records = [
            {"token_id": str(token_id), "blockchain": self.name, "staking_source": "onchain"}
            for token_id in token_ids
        ]
        return SourceSnapshot.ok(self.name, owner_key, records)


class CompositeLookup:
    """Authoritative re-check of specific ids, used to confirm optimistic mutations."""

    def __init__(self, adapters: Sequence[SourceAdapter]) -> None:
        self.adapters = list(adapters)

    def _adapters_for(self, ids: set[str]) -> list[SourceAdapter]:
        chains = [adapter for adapter in self.adapters if adapter.name != OFFCHAIN_SOURCE]
        selected = [
            adapter
            for adapter in chains
            if any(entity_id.startswith(f"{adapter.name}_") for entity_id in ids)
        ]
        unmatched = [
            entity_id
            for entity_id in ids
            if not any(entity_id.startswith(f"{adapter.name}_") for adapter in chains)
        ]
        if unmatched:
            selected.extend(adapter for adapter in self.adapters if adapter.name == OFFCHAIN_SOURCE)
        return selected

    async def fetch_by_ids(self, owner_key: str, ids: Iterable[str]) -> list[SourceSnapshot]:
        wanted = set(ids)
        adapters = self._adapters_for(wanted)
        snapshots = await asyncio.gather(*(adapter.fetch(owner_key) for adapter in adapters))
        filtered: list[SourceSnapshot] = []
        for snapshot in snapshots:
            if not snapshot.success:
                filtered.append(snapshot)
                continue
            records = []
            for record in snapshot.records:
                try:
                    if entity_id_for(record, snapshot.source) in wanted:
                        records.append(record)
                except ValueError:
                    continue
            filtered.append(
                SourceSnapshot(
                    source=snapshot.source,
                    owner_key=owner_key,
                    records=records,
                    success=True,
                    fetched_at=snapshot.fetched_at,
                )
            )
        return filtered


class SupabaseCountReporter:
    def __init__(self, client: SupabaseClient) -> None:
        self.client = client

    async def report(self, owner_key: str, counts: dict[str, int]) -> None:
        await self.client.upsert_counts(owner_key, counts)
        logger.info("Synced NFT counts for {}: {}", owner_key, counts)


def build_adapters(
    config: Settings | None = None,
    *,
    supabase: SupabaseClient | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> tuple[OffchainSourceAdapter, list[OnchainSourceAdapter]]:
    """Wire the off-chain adapter plus one adapter per enabled chain."""

    config = config or default_settings
    supabase = supabase or SupabaseClient(
        rest_url=config.supabase_rest_url,
        api_key=config.supabase_anon_key,
        timeout=config.offchain_fetch_timeout_seconds,
    )
    offchain = OffchainSourceAdapter(supabase, timeout=config.offchain_fetch_timeout_seconds)
    onchain = [
        OnchainSourceAdapter(
            chain,
            ChainNftClient(
                chain,
                gateway=config.ipfs_gateway_url,
                metadata_timeout=config.metadata_fetch_timeout_seconds,
                http_client=http_client,
            ),
            timeout=config.onchain_fetch_timeout_seconds,
        )
        for chain in resolve_chains(config)
    ]
    return offchain, onchain
