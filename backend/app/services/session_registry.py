"""One :class:`NftStateEngine` per wallet for the HTTP surface."""

from __future__ import annotations

import asyncio
from typing import Callable

import httpx
from loguru import logger

from app.core.config import Settings, get_settings
from app.engine import NftStateEngine
from sources.adapters import CompositeLookup, SupabaseCountReporter, build_adapters
from sources.client import SupabaseClient


class StaticIdentity:
    """Identity pinned to one wallet; the HTTP caller names the wallet per request."""

    def __init__(self, owner_key: str) -> None:
        self.owner_key = owner_key
        self.authenticated = True

    def current_owner_key(self) -> str | None:
        return self.owner_key if self.authenticated else None

    def is_authenticated(self) -> bool:
        return self.authenticated


EngineFactory = Callable[[str], NftStateEngine]


def normalize_wallet(owner_key: str) -> str:
    return owner_key.strip().lower()


class EngineRegistry:
    def __init__(self, factory: EngineFactory | None = None, *, config: Settings | None = None) -> None:
        self._config = config or get_settings()
        self._factory = factory or self._default_factory
        self._engines: dict[str, NftStateEngine] = {}
        self._supabase: SupabaseClient | None = None
        self._http: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()

    def _default_factory(self, owner_key: str) -> NftStateEngine:
        if self._supabase is None:
            self._supabase = SupabaseClient(
                rest_url=self._config.supabase_rest_url,
                api_key=self._config.supabase_anon_key,
                timeout=self._config.offchain_fetch_timeout_seconds,
            )
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self._config.metadata_fetch_timeout_seconds, follow_redirects=True
            )
        offchain, onchain = build_adapters(
            self._config, supabase=self._supabase, http_client=self._http
        )
        return NftStateEngine(
            offchain,
            onchain,
            lookup=CompositeLookup([offchain, *onchain]),
            identity=StaticIdentity(owner_key),
            count_reporter=SupabaseCountReporter(self._supabase),
            config=self._config,
        )

    def get(self, owner_key: str) -> NftStateEngine | None:
        return self._engines.get(normalize_wallet(owner_key))

    async def get_or_create(self, owner_key: str) -> NftStateEngine:
        wallet = normalize_wallet(owner_key)
        async with self._lock:
            engine = self._engines.get(wallet)
            if engine is None:
                logger.info("Creating NFT session for {}", wallet)
                engine = self._factory(wallet)
                self._engines[wallet] = engine
        return engine

    async def drop(self, owner_key: str) -> bool:
        engine = self._engines.pop(normalize_wallet(owner_key), None)
        if engine is None:
            return False
        engine.clear()
        await engine.aclose()
        return True

    async def aclose(self) -> None:
        for wallet in list(self._engines):
            await self.drop(wallet)
        if self._supabase is not None:
            await self._supabase.aclose()
            self._supabase = None
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def __len__(self) -> int:
        return len(self._engines)
