from functools import lru_cache
from typing import Any

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_RARITY_DAILY_REWARDS: dict[str, float] = {
    "common": 0.1,
    "rare": 0.4,
    "legendary": 1.0,
    "platinum": 2.5,
    "silver": 8.0,
    "gold": 30.0,
}


def _split_csv(value: Any, *, field_name: str) -> list[str]:
    if value in (None, "", []):
        return []
    if isinstance(value, str):
        return [item for item in (part.strip() for part in value.split(",")) if item]
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if str(item).strip()]
    raise ValueError(
        f"{field_name} must be provided as a list or comma-separated string"
    )


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    supabase_url: AnyUrl | str | None = Field(
        default=None,
        description="Base URL of the hosted database project (REST and RPC endpoints)",
    )
    supabase_anon_key: str | None = Field(
        default=None,
        description="Public API key sent with every hosted database request",
    )
    ipfs_gateway_url: str = Field(
        default="https://ipfs.io/ipfs/",
        description="HTTP gateway used to resolve ipfs:// token and image URIs",
    )
    nft_cache_ttl_seconds: float = Field(
        default=120.0,
        description="Seconds a completed wallet load stays valid before the next read reloads it",
    )
    offchain_fetch_timeout_seconds: float = Field(
        default=15.0,
        description="Timeout applied to each off-chain database request",
    )
    onchain_fetch_timeout_seconds: float = Field(
        default=30.0,
        description="Upper bound for loading one chain's owned and staked tokens",
    )
    metadata_fetch_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for fetching a single token metadata document",
    )
    bookkeeping_id_prefixes: list[str] | str = Field(
        default_factory=lambda: ["onchain_reward_"],
        description="Entity id prefixes reserved for reward bookkeeping rows (never shown)",
    )
    enabled_networks: list[str] | str = Field(
        default_factory=list,
        description="Chain networks to aggregate (comma-separated); empty enables every known chain",
    )
    chain_overrides: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Per-network overrides for rpc_urls, nft_contract and staking_contract",
    )
    rarity_daily_rewards: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_RARITY_DAILY_REWARDS),
        description="Daily reward rate per rarity tier",
    )
    default_daily_reward: float = Field(
        default=0.1,
        description="Daily reward applied to unknown or missing rarities",
        ge=0,
    )
    count_sync_enabled: bool = Field(
        default=True,
        description="Push per-wallet NFT counts to the hosted database after each load",
    )
    count_sync_delay_seconds: float = Field(
        default=2.0,
        description="Delay between a completed load and the count push",
        ge=0,
    )

    @field_validator(
        "nft_cache_ttl_seconds",
        "offchain_fetch_timeout_seconds",
        "onchain_fetch_timeout_seconds",
        "metadata_fetch_timeout_seconds",
    )
    @classmethod
    def _require_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("cache TTL and fetch timeouts must be positive")
        return value

    @field_validator("bookkeeping_id_prefixes", mode="after")
    @classmethod
    def _parse_prefixes(cls, value: Any) -> list[str]:
        return _split_csv(value, field_name="BOOKKEEPING_ID_PREFIXES")

    @field_validator("enabled_networks", mode="after")
    @classmethod
    def _parse_networks(cls, value: Any) -> list[str]:
        return [item.lower() for item in _split_csv(value, field_name="ENABLED_NETWORKS")]

    @field_validator("rarity_daily_rewards", mode="after")
    @classmethod
    def _normalize_reward_keys(cls, value: dict[str, float]) -> dict[str, float]:
        normalized: dict[str, float] = {}
        for rarity, rate in value.items():
            if float(rate) < 0:
                raise ValueError("RARITY_DAILY_REWARDS rates must not be negative")
            normalized[str(rarity).strip().lower()] = float(rate)
        return normalized

    @property
    def supabase_rest_url(self) -> str | None:
        if not self.supabase_url:
            return None
        return str(self.supabase_url).rstrip("/") + "/rest/v1"

    def chain_override(self, network: str) -> dict[str, Any]:
        base = dict(self.chain_overrides.get("__default__", {}))
        specific = self.chain_overrides.get(network, {})
        if specific:
            base.update(specific)
        return base


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
