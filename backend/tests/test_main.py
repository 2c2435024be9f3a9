from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app.engine import NftStateEngine
from app.main import _registry, app
from app.services.session_registry import EngineRegistry, StaticIdentity
from sources.adapters import CompositeLookup

from fakes import WALLET, FakeAdapter


@pytest.fixture
def registry(test_settings, offchain_records, onchain_records):
    def factory(owner_key: str) -> NftStateEngine:
        offchain = FakeAdapter("offchain", offchain_records)
        chains = [FakeAdapter(network, records) for network, records in onchain_records.items()]
        return NftStateEngine(
            offchain,
            chains,
            lookup=CompositeLookup([offchain, *chains]),
            identity=StaticIdentity(owner_key),
            config=test_settings,
        )

    return EngineRegistry(factory, config=test_settings)


@pytest.fixture
def client(registry):
    """Test client wired to an in-memory registry; overrides are cleared afterwards."""
    app.dependency_overrides[_registry] = lambda: registry
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _load(client) -> dict:
    response = client.get(f"/wallets/{WALLET}/nfts")
    assert response.status_code == 200
    return response.json()


def _item(payload: dict, nft_id: str) -> dict:
    return next(item for item in payload["items"] if item["id"] == nft_id)


def test_healthcheck(client):
    """Verify the healthcheck endpoint returns a successful response."""
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_list_nfts_loads_every_source(client, registry):
    """The first read creates the wallet session and waits for the load."""
    response = client.get(f"/wallets/{WALLET.upper().replace('0X', '0x')}/nfts")

    assert response.status_code == 200
    payload = response.json()
    assert payload["owner_key"] == WALLET
    assert payload["state"] == "loaded"
    assert payload["total"] == 8
    assert payload["progress"]["completed"] == payload["progress"]["total"] == 6
    assert len(registry) == 1
    nft = _item(payload, "nft-002")
    assert nft["ownership_state"] == "staked"
    assert nft["preserved_origin_metadata"]["rarity"] == "legendary"
    assert nft["daily_reward"] == pytest.approx(1.0)


def test_list_nfts_view_filter(client):
    """Verify the staked view only returns staked NFTs."""
    response = client.get(f"/wallets/{WALLET}/nfts", params={"view": "staked"})

    assert response.status_code == 200
    assert {item["id"] for item in response.json()["items"]} == {"nft-002", "polygon-amoy_3"}
    assert client.get(f"/wallets/{WALLET}/nfts", params={"view": "bogus"}).status_code == 422


def test_progress_requires_session(client):
    """Verify progress returns 404 before the wallet was read."""
    assert client.get(f"/wallets/{WALLET}/progress").status_code == 404

    _load(client)
    response = client.get(f"/wallets/{WALLET}/progress")
    assert response.status_code == 200
    assert response.json()["failed_sources"] == []


def test_stake_and_revert(client):
    _load(client)

    response = client.post(
        f"/wallets/{WALLET}/mutations", json={"kind": "stake", "target_ids": ["nft-001"]}
    )
    assert response.status_code == 201
    handle = response.json()
    assert handle["kind"] == "stake"
    assert handle["target_ids"] == ["nft-001"]

    payload = _load(client)
    assert payload["has_optimistic_mutations"] is True
    assert _item(payload, "nft-001")["ownership_state"] == "staked"
    assert _item(payload, "nft-001")["optimistic"] is True

    response = client.post(f"/wallets/{WALLET}/mutations/{handle['mutation_id']}/revert")
    assert response.status_code == 200
    assert response.json()["reverted"] is True
    assert response.json()["has_optimistic_mutations"] is False
    assert _item(_load(client), "nft-001")["ownership_state"] == "free"


def test_confirm_with_authoritative_records(client):
    _load(client)
    handle = client.post(
        f"/wallets/{WALLET}/mutations", json={"kind": "stake", "target_ids": ["nft-001"]}
    ).json()

    response = client.post(
        f"/wallets/{WALLET}/mutations/{handle['mutation_id']}/confirm",
        json={"authoritative": [{"id": "nft-001", "is_staked": True, "staking_source": "offchain"}]},
    )

    assert response.status_code == 200
    assert response.json()["confirmed"] is True
    nft = _item(_load(client), "nft-001")
    assert nft["ownership_state"] == "staked"
    assert nft["optimistic"] is False


def test_unknown_mutation_returns_404(client):
    _load(client)
    assert client.post(f"/wallets/{WALLET}/mutations/missing/confirm").status_code == 404
    assert client.post(f"/wallets/{WALLET}/mutations/missing/revert").status_code == 404


def test_invalid_mutations_are_rejected(client):
    assert (
        client.post(f"/wallets/{WALLET}/mutations", json={"kind": "burn", "target_ids": ["nft-001"]}).status_code
        == 404
    )
    _load(client)

    bad_field = client.post(
        f"/wallets/{WALLET}/mutations",
        json={"kind": "update", "target_ids": ["nft-001"], "per_target": {"nft-001": {"bogus": 1}}},
    )
    missing_record = client.post(
        f"/wallets/{WALLET}/mutations", json={"kind": "claim_complete", "target_ids": ["nft-001"]}
    )
    no_targets = client.post(f"/wallets/{WALLET}/mutations", json={"kind": "burn", "target_ids": []})

    assert bad_field.status_code == 422
    assert missing_record.status_code == 422
    assert no_targets.status_code == 422


def test_patch_values_sent_as_strings_are_typed(client):
    """String enum values in a patch behave like the engine's own stake."""
    _load(client)
    response = client.post(
        f"/wallets/{WALLET}/mutations",
        json={
            "kind": "stake",
            "target_ids": ["nft-001"],
            "patch": {"ownership_state": "staked", "staking_source": "offchain"},
        },
    )
    assert response.status_code == 201

    staked = client.get(f"/wallets/{WALLET}/nfts", params={"view": "staked"}).json()
    assert {item["id"] for item in staked["items"]} == {"nft-001", "nft-002", "polygon-amoy_3"}

    invalid = client.post(
        f"/wallets/{WALLET}/mutations",
        json={"kind": "update", "target_ids": ["nft-003"], "patch": {"staking_source": "elsewhere"}},
    )
    assert invalid.status_code == 422


def test_claim_complete_replaces_offchain_nft(client):
    _load(client)
    response = client.post(
        f"/wallets/{WALLET}/mutations",
        json={
            "kind": "claim_complete",
            "target_ids": ["nft-003"],
            "claimed_record": {"token_id": "77", "blockchain": "sepolia", "name": "Minted"},
        },
    )
    assert response.status_code == 201

    payload = _load(client)
    ids = {item["id"] for item in payload["items"]}
    assert "nft-003" not in ids
    claimed = _item(payload, "sepolia_77")
    assert claimed["name"] == "NEFTIT Gold NFT"
    assert claimed["claiming_status"] == "completed"


def test_staking_sync(client):
    """Empty staked lists downgrade previously staked NFTs."""
    _load(client)
    response = client.post(f"/wallets/{WALLET}/staking/sync")

    assert response.status_code == 200
    assert response.json() == {"changed": 2, "forced": False}


def test_refresh_and_reload(client):
    _load(client)
    client.post(f"/wallets/{WALLET}/mutations", json={"kind": "burn", "target_ids": ["nft-001"]})

    refreshed = client.post(f"/wallets/{WALLET}/refresh").json()
    assert refreshed["state"] == "loaded"
    assert refreshed["has_optimistic_mutations"] is True

    reloaded = client.post(f"/wallets/{WALLET}/reload").json()
    assert reloaded["has_optimistic_mutations"] is False
    assert reloaded["total"] == 8


def test_drop_wallet(client, registry):
    _load(client)

    assert client.delete(f"/wallets/{WALLET}").status_code == 204
    assert len(registry) == 0
    assert client.delete(f"/wallets/{WALLET}").status_code == 404
