from __future__ import annotations

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app.core.config import Settings
from app.engine import NftStateEngine
from sources.adapters import CompositeLookup

from fakes import WALLET, FakeAdapter, FakeClock

DATA_DIR = Path(__file__).parent / "data"


@pytest.fixture
def offchain_records() -> list[dict[str, object]]:
    return json.loads((DATA_DIR / "offchain_nfts.json").read_text(encoding="utf-8"))


@pytest.fixture
def onchain_records() -> dict[str, list[dict[str, object]]]:
    return json.loads((DATA_DIR / "onchain_nfts.json").read_text(encoding="utf-8"))


@pytest.fixture
def test_settings(monkeypatch) -> Settings:
    settings = Settings(
        supabase_url="https://db.example",
        supabase_anon_key="anon-key",
        nft_cache_ttl_seconds=120,
        count_sync_delay_seconds=0,
        enabled_networks=[],
        chain_overrides={},
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def offchain_adapter(offchain_records) -> FakeAdapter:
    return FakeAdapter("offchain", offchain_records)


@pytest.fixture
def chain_adapters(onchain_records) -> dict[str, FakeAdapter]:
    adapters = {network: FakeAdapter(network, records) for network, records in onchain_records.items()}
    adapters["polygon-amoy"].staked = [
        {"token_id": "3", "blockchain": "polygon-amoy", "staking_source": "onchain"}
    ]
    return adapters


@pytest.fixture
def engine(test_settings, clock, offchain_adapter, chain_adapters) -> NftStateEngine:
    onchain = list(chain_adapters.values())
    return NftStateEngine(
        offchain_adapter,
        onchain,
        lookup=CompositeLookup([offchain_adapter, *onchain]),
        clock=clock,
        config=test_settings,
    )
