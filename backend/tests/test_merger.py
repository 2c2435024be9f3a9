from __future__ import annotations

from app.domain.models import OwnershipState, SourceSnapshot, StakingSource
from app.engine import EntityMerger, StakeIndex

from fakes import WALLET


def _snapshot(source, records):
    return SourceSnapshot.ok(source, WALLET, records)


def test_merge_skips_bookkeeping_rows(offchain_records):
    merger = EntityMerger()
    result = merger.merge({}, _snapshot("offchain", offchain_records))

    assert set(result.collection) == {"nft-001", "nft-002", "nft-003"}
    assert result.added == 3
    assert "onchain_reward_sepolia_7" not in result.merged_ids


def test_bookkeeping_detected_by_status_or_prefix():
    merger = EntityMerger(bookkeeping_prefixes=["reward_"])
    assert merger.is_bookkeeping("reward_1")
    assert merger.is_bookkeeping("nft-1", {"status": "reward_tracking"})
    assert not merger.is_bookkeeping("nft-1", {"status": "distributed"})


def test_merge_is_idempotent(offchain_records):
    merger = EntityMerger()
    snapshot = _snapshot("offchain", offchain_records)
    first = merger.merge({}, snapshot)
    second = merger.merge(first.collection, snapshot)

    assert not second.changed
    assert second.collection is first.collection


def test_merge_does_not_mutate_input(onchain_records):
    merger = EntityMerger()
    base = merger.merge({}, _snapshot("sepolia", onchain_records["sepolia"])).collection
    before = dict(base)

    merger.merge(base, _snapshot("base-sepolia", onchain_records["base-sepolia"]))

    assert base == before


def test_merge_keeps_first_duplicate_within_snapshot():
    merger = EntityMerger()
    result = merger.merge(
        {},
        _snapshot("offchain", [{"id": "nft-1", "name": "first"}, {"id": "nft-1", "name": "second"}]),
    )

    assert len(result.collection) == 1
    assert result.collection["nft-1"].name == "first"


def test_merge_skips_records_without_id():
    merger = EntityMerger()
    result = merger.merge({}, _snapshot("offchain", [{"rarity": "rare"}, {"id": "nft-1"}]))
    assert list(result.collection) == ["nft-1"]


def test_failed_snapshot_leaves_collection_untouched(offchain_records):
    merger = EntityMerger()
    base = merger.merge({}, _snapshot("offchain", offchain_records)).collection

    result = merger.merge(base, SourceSnapshot.failed("offchain", WALLET, "timeout"))

    assert result.collection is base
    assert not result.changed


def test_resolve_preserves_presentation_and_takes_staking(onchain_records):
    merger = EntityMerger()
    record = onchain_records["sepolia"][0]
    base = merger.merge({}, _snapshot("sepolia", [record])).collection

    changed = dict(record, name="Renamed upstream", image="ipfs://other", is_staked=True)
    result = merger.merge(base, _snapshot("sepolia", [changed]))
    entity = result.collection["sepolia_7"]

    assert result.updated == 1
    assert entity.name == "NEFTIT Rare NFT"
    assert entity.image == "https://ipfs.io/ipfs/bafyrare7"
    assert entity.preserved_origin_metadata.name == "NEFTIT Rare NFT"
    assert entity.ownership_state is OwnershipState.STAKED
    assert entity.staking_source is StakingSource.ONCHAIN


def test_resolve_fills_missing_fields():
    merger = EntityMerger()
    base = merger.merge({}, _snapshot("offchain", [{"id": "nft-1", "rarity": "rare"}])).collection

    result = merger.merge(
        base,
        _snapshot("offchain", [{"id": "nft-1", "rarity": "rare", "description": "Later", "assigned_chain": "sepolia"}]),
    )

    assert result.collection["nft-1"].description == "Later"
    assert result.collection["nft-1"].assigned_chain == "sepolia"


def test_prior_copy_keeps_preserved_metadata(onchain_records):
    merger = EntityMerger()
    record = onchain_records["sepolia"][0]
    prior = merger.merge({}, _snapshot("sepolia", [record])).collection

    result = merger.merge({}, _snapshot("sepolia", [dict(record, name="Other")]), prior=prior)

    assert result.collection["sepolia_7"].name == "NEFTIT Rare NFT"


def test_stake_index_canonical_and_legacy_keys(offchain_records, onchain_records):
    merger = EntityMerger()
    collection = merger.merge({}, _snapshot("offchain", offchain_records)).collection
    collection = merger.merge(collection, _snapshot("sepolia", onchain_records["sepolia"])).collection
    collection = merger.merge(
        collection, _snapshot("polygon-amoy", onchain_records["polygon-amoy"])
    ).collection

    index = StakeIndex.from_snapshots(
        [
            _snapshot("offchain", [{"nft_id": "staked_7", "staking_source": "onchain"}]),
            _snapshot("polygon-amoy", [{"token_id": "3", "blockchain": "polygon-amoy"}]),
            SourceSnapshot.failed("bsc-testnet", WALLET, "down"),
        ]
    )

    amoy = index.lookup(collection["polygon-amoy_3"])
    legacy = index.lookup(collection["sepolia_7"])

    assert amoy is not None and not amoy.legacy
    assert amoy.source is StakingSource.ONCHAIN
    assert legacy is not None and legacy.legacy
    assert index.lookup(collection["nft-001"]) is None


def test_apply_staking_status_upgrades_and_downgrades(offchain_records):
    merger = EntityMerger()
    collection = merger.merge({}, _snapshot("offchain", offchain_records)).collection
    index = StakeIndex.from_snapshots(
        [_snapshot("offchain", [{"nft_id": "nft-001", "staked_at": "2025-02-01T00:00:00Z"}])]
    )

    updated, changed = merger.apply_staking_status(collection, index)

    assert changed == 2
    assert updated["nft-001"].is_staked
    assert updated["nft-001"].staking_source is StakingSource.OFFCHAIN
    assert not updated["nft-002"].is_staked
    assert collection["nft-002"].is_staked


def test_apply_staking_status_respects_skip_and_downgrade_guard(offchain_records):
    merger = EntityMerger()
    collection = merger.merge({}, _snapshot("offchain", offchain_records)).collection
    index = StakeIndex.from_snapshots([_snapshot("offchain", [{"nft_id": "nft-001"}])])

    updated, changed = merger.apply_staking_status(
        collection, index, skip_ids={"nft-001"}, allow_downgrade=False
    )

    assert changed == 0
    assert updated is collection
