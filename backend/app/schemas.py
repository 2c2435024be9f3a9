from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from app.domain.models import (
    ClaimingStatus,
    LifecycleState,
    LoadState,
    MutationKind,
    OwnershipState,
    StakingSource,
)


class OriginMetadata(BaseModel):
    name: str
    image: str
    rarity: str
    token_id: str | None = None
    contract_address: str | None = None
    metadata_uri: str | None = None

    model_config = {"from_attributes": True}


class Nft(BaseModel):
    id: str
    origin_source: str
    lifecycle_state: LifecycleState
    name: str
    image: str
    rarity: str
    description: str | None = None
    attributes: list[dict[str, Any]] = Field(default_factory=list)
    ownership_state: OwnershipState
    staking_source: StakingSource
    staked_at: datetime | None = None
    claiming_status: ClaimingStatus | None = None
    preserved_origin_metadata: OriginMetadata | None = None
    daily_reward: float
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

    model_config = {"from_attributes": True}


class LoadingProgress(BaseModel):
    per_source: dict[str, bool] = Field(default_factory=dict)
    failed_sources: list[str] = Field(default_factory=list)
    completed: int = 0
    total: int = 0

    model_config = {"from_attributes": True}


class NftCollection(BaseModel):
    owner_key: str | None = None
    state: LoadState
    total: int
    items: list[Nft]
    progress: LoadingProgress
    has_optimistic_mutations: bool = False
    error: str | None = None
    last_updated: datetime | None = None


class MutationRequest(BaseModel):
    kind: MutationKind
    target_ids: list[str] = Field(min_length=1)
    patch: dict[str, Any] | None = None
    per_target: dict[str, dict[str, Any]] | None = None
    claimed_record: dict[str, Any] | None = Field(
        default=None,
        description="On-chain record replacing the off-chain NFT (claim_complete only)",
    )

    @model_validator(mode="after")
    def _check_claim(self) -> "MutationRequest":
        if self.kind is MutationKind.CLAIM_COMPLETE:
            if len(self.target_ids) != 1:
                raise ValueError("claim_complete targets exactly one off-chain NFT")
            if not self.claimed_record:
                raise ValueError("claim_complete requires claimed_record")
        return self


class MutationHandle(BaseModel):
    mutation_id: str
    owner_key: str
    kind: MutationKind
    target_ids: list[str]

    model_config = {"from_attributes": True}


class ConfirmRequest(BaseModel):
    authoritative: list[dict[str, Any]] | None = None


class MutationOutcome(BaseModel):
    mutation_id: str
    confirmed: bool | None = None
    reverted: bool | None = None
    has_optimistic_mutations: bool


class StakingSyncResult(BaseModel):
    changed: int
    forced: bool
