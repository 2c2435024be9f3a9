from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from dateutil import parser as date_parser

from app.domain.models import (
    OFFCHAIN_SOURCE,
    ClaimingStatus,
    Entity,
    LifecycleState,
    OriginMetadata,
    OwnershipState,
    StakingSource,
)
from app.domain.rewards import daily_reward_for_rarity, normalize_rarity


DEFAULT_GATEWAY = "https://ipfs.io/ipfs/"
DEFAULT_RARITY = "common"


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_list(value: Any) -> list[Any]:
    """Return value as a list when possible, decoding JSON strings."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return date_parser.isoparse(str(value))
    except (ValueError, TypeError):
        return None


def _parse_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "staked"}
    return bool(value)


def resolve_ipfs(uri: Any, gateway: str = DEFAULT_GATEWAY) -> str:
    """Rewrite ``ipfs://`` URIs onto an HTTP gateway; other values pass through."""

    if not uri:
        return ""
    text = str(uri)
    if text.startswith("ipfs://"):
        base = gateway if gateway.endswith("/") else gateway + "/"
        return base + text[len("ipfs://"):].removeprefix("ipfs/")
    return text


def extract_rarity(raw: Mapping[str, Any]) -> str:
    """Rarity from the record itself or from its ``Rarity`` attribute."""

    direct = raw.get("rarity")
    if direct:
        return normalize_rarity(str(direct))
    for attribute in _as_list(raw.get("attributes")):
        if not isinstance(attribute, dict):
            continue
        trait = str(attribute.get("trait_type") or "").lower()
        if trait == "rarity" and attribute.get("value"):
            return normalize_rarity(str(attribute["value"]))
    return DEFAULT_RARITY


def entity_id_for(raw: Mapping[str, Any], source: str) -> str:
    raw_id = _first(raw, "id", "nft_id")
    if raw_id is not None:
        return str(raw_id)
    token_id = _first(raw, "token_id", "tokenId")
    network = _first(raw, "blockchain", "network") or (None if source == OFFCHAIN_SOURCE else source)
    if token_id is not None and network:
        return f"{network}_{token_id}"
    raise ValueError(f"record from {source} has no usable id: {sorted(raw)}")


def _claiming_status(raw: Mapping[str, Any]) -> ClaimingStatus | None:
    value = _first(raw, "claiming_status", "claimingStatus")
    if value is None and raw.get("status") == "claiming":
        value = "claiming"
    if value is None:
        return None
    try:
        return ClaimingStatus(str(value).lower())
    except ValueError:
        return None


def normalize_record(
    raw: Mapping[str, Any],
    source: str,
    *,
    fetched_at: datetime | None = None,
    reward_table: Mapping[str, float] | None = None,
    default_reward: float = 0.1,
    gateway: str = DEFAULT_GATEWAY,
) -> Entity:
    """Convert one raw adapter record into an :class:`Entity`.

    Raises ``ValueError`` when no identifier can be derived.
    """

    entity_id = entity_id_for(raw, source)
    is_offchain = source == OFFCHAIN_SOURCE
    rarity = extract_rarity(raw)

    token_id = _first(raw, "token_id", "tokenId")
    token_id = str(token_id) if token_id is not None else None
    contract_address = _first(raw, "contract_address", "contractAddress", "chain_contract_address")
    metadata_uri = _first(raw, "metadata_uri", "metadataURI", "token_uri")
    if metadata_uri is None and raw.get("metadata_cid"):
        metadata_uri = f"ipfs://{raw['metadata_cid']}"

    image = resolve_ipfs(_first(raw, "image", "image_url"), gateway)
    if not image and raw.get("cid"):
        image = resolve_ipfs(f"ipfs://{raw['cid']}", gateway)
    name = _first(raw, "name")
    if not name:
        name = f"NFT #{token_id}" if token_id else f"NEFTIT {rarity.capitalize()} NFT"

    staked = _parse_bool(_first(raw, "is_staked", "isStaked", "staked"))
    staking_source = StakingSource.NONE
    if staked:
        explicit = _first(raw, "staking_source", "stakingSource")
        if explicit in (StakingSource.OFFCHAIN.value, StakingSource.ONCHAIN.value):
            staking_source = StakingSource(explicit)
        else:
            staking_source = StakingSource.OFFCHAIN if is_offchain else StakingSource.ONCHAIN

    blockchain = _first(raw, "blockchain", "network")
    if blockchain is None and not is_offchain:
        blockchain = source

    origin = OriginMetadata(
        name=str(name),
        image=image,
        rarity=rarity,
        token_id=token_id,
        contract_address=str(contract_address) if contract_address else None,
        metadata_uri=str(metadata_uri) if metadata_uri else None,
    )

    return Entity(
        id=entity_id,
        origin_source=source,
        lifecycle_state=LifecycleState.OFFCHAIN if is_offchain else LifecycleState.ONCHAIN,
        name=origin.name,
        image=origin.image,
        rarity=rarity,
        description=raw.get("description") or None,
        attributes=[item for item in _as_list(raw.get("attributes")) if isinstance(item, dict)],
        ownership_state=OwnershipState.STAKED if staked else OwnershipState.FREE,
        staking_source=staking_source,
        staked_at=parse_datetime(_first(raw, "staked_at", "stakedAt")) if staked else None,
        claiming_status=_claiming_status(raw),
        preserved_origin_metadata=origin,
        daily_reward=daily_reward_for_rarity(rarity, reward_table, default=default_reward),
        token_id=token_id,
        contract_address=origin.contract_address,
        metadata_uri=origin.metadata_uri,
        blockchain=str(blockchain) if blockchain else None,
        chain_id=_parse_int(_first(raw, "chain_id", "chainId")),
        chain_name=_first(raw, "chain_name", "chainName"),
        chain_icon_url=_first(raw, "chain_icon_url", "chainIconUrl"),
        assigned_chain=_first(raw, "assigned_chain", "assignedChain"),
        last_updated=fetched_at,
        raw_data=dict(raw),
    )
