from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.domain import daily_reward_for_rarity
from app.domain.models import ClaimingStatus, LifecycleState, OwnershipState, StakingSource
from sources.normalize import entity_id_for, extract_rarity, normalize_record, resolve_ipfs


FETCHED_AT = datetime(2025, 1, 12, tzinfo=timezone.utc)


def test_normalize_offchain_record(offchain_records):
    entity = normalize_record(offchain_records[0], "offchain", fetched_at=FETCHED_AT)

    assert entity.id == "nft-001"
    assert entity.origin_source == "offchain"
    assert entity.lifecycle_state is LifecycleState.OFFCHAIN
    assert entity.name == "NEFTIT Common NFT"
    assert entity.rarity == "common"
    assert entity.image == "https://gateway.pinata.cloud/ipfs/bafycommon001"
    assert entity.metadata_uri == "ipfs://bafymeta001"
    assert entity.assigned_chain == "sepolia"
    assert entity.ownership_state is OwnershipState.FREE
    assert entity.staking_source is StakingSource.NONE
    assert entity.daily_reward == pytest.approx(0.1)
    assert entity.last_updated == FETCHED_AT
    assert entity.preserved_origin_metadata is not None
    assert entity.preserved_origin_metadata.name == entity.name
    assert entity.preserved_origin_metadata.image == entity.image


def test_normalize_staked_offchain_record_resolves_ipfs(offchain_records):
    entity = normalize_record(offchain_records[1], "offchain")

    assert entity.rarity == "legendary"
    assert entity.image == "https://ipfs.io/ipfs/bafylegend002"
    assert entity.name == "NEFTIT Legendary NFT"
    assert entity.is_staked
    assert entity.staking_source is StakingSource.OFFCHAIN
    assert entity.staked_at == datetime(2025, 1, 11, 8, 30, tzinfo=timezone.utc)
    assert entity.daily_reward == pytest.approx(1.0)


def test_normalize_falls_back_to_cid_image(offchain_records):
    entity = normalize_record(offchain_records[2], "offchain", gateway="https://gw.example/ipfs")

    assert entity.image == "https://gw.example/ipfs/bafygold003"
    assert entity.name == "NEFTIT Gold NFT"
    assert entity.daily_reward == pytest.approx(30.0)


def test_normalize_onchain_record_reads_rarity_attribute(onchain_records):
    entity = normalize_record(onchain_records["polygon-amoy"][0], "polygon-amoy")

    assert entity.lifecycle_state is LifecycleState.ONCHAIN
    assert entity.rarity == "platinum"
    assert entity.blockchain == "polygon-amoy"
    assert entity.chain_id == 80002
    assert entity.token_id == "3"
    assert entity.staking_source is StakingSource.ONCHAIN
    assert entity.stake_key == "polygon-amoy:3"


def test_normalize_derives_id_from_network_and_token():
    entity = normalize_record({"token_id": 9}, "sepolia")

    assert entity.id == "sepolia_9"
    assert entity.blockchain == "sepolia"
    assert entity.name == "NFT #9"
    assert entity.rarity == "common"


def test_entity_id_requires_identifier():
    with pytest.raises(ValueError):
        entity_id_for({"rarity": "rare"}, "offchain")


def test_extract_rarity_decodes_json_attributes():
    raw = {"attributes": '[{"trait_type": "Rarity", "value": "Legend"}]'}
    assert extract_rarity(raw) == "legendary"
    assert extract_rarity({}) == "common"


def test_claiming_status_from_status_column():
    entity = normalize_record({"id": "nft-9", "status": "claiming"}, "offchain")
    assert entity.claiming_status is ClaimingStatus.CLAIMING


@pytest.mark.parametrize(
    ("uri", "gateway", "expected"),
    [
        ("ipfs://bafyabc", "https://ipfs.io/ipfs/", "https://ipfs.io/ipfs/bafyabc"),
        ("ipfs://ipfs/bafyabc", "https://ipfs.io/ipfs/", "https://ipfs.io/ipfs/bafyabc"),
        ("ipfs://bafyabc", "https://gw.example/ipfs", "https://gw.example/ipfs/bafyabc"),
        ("https://cdn.example/a.png", "https://ipfs.io/ipfs/", "https://cdn.example/a.png"),
        (None, "https://ipfs.io/ipfs/", ""),
    ],
)
def test_resolve_ipfs(uri, gateway, expected):
    assert resolve_ipfs(uri, gateway) == expected


def test_daily_reward_for_rarity():
    assert daily_reward_for_rarity("Gold") == pytest.approx(30.0)
    assert daily_reward_for_rarity("legend") == pytest.approx(1.0)
    assert daily_reward_for_rarity("mythic") == pytest.approx(0.1)
    assert daily_reward_for_rarity(None, default=0.5) == pytest.approx(0.5)
    assert daily_reward_for_rarity("rare", {"rare": 2.0}) == pytest.approx(2.0)
