"""Supported EVM testnets and their NFT / staking contract deployments."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from loguru import logger

from app.core.config import Settings, settings as default_settings


@dataclass(slots=True, frozen=True)
class ChainConfig:
    network: str
    chain_id: int
    name: str
    rpc_urls: tuple[str, ...]
    nft_contract: str | None = None
    staking_contract: str | None = None
    icon_url: str | None = None
    native_symbol: str = "ETH"
    explorer_urls: tuple[str, ...] = field(default_factory=tuple)


DEFAULT_CHAINS: dict[str, ChainConfig] = {
    chain.network: chain
    for chain in (
        ChainConfig(
            network="polygon-amoy",
            chain_id=80002,
            name="Polygon Amoy Testnet",
            rpc_urls=(
                "https://rpc-amoy.polygon.technology/",
                "https://polygon-amoy.drpc.org",
                "https://polygon-amoy-bor-rpc.publicnode.com",
                "https://rpc.ankr.com/polygon_amoy",
            ),
            nft_contract="0x5Bb23220cC12585264fCd144C448eF222c8572A2",
            staking_contract="0x1F2Dbf590b1c4C96c1ddb4FF55002Dbb33DA294e",
            icon_url="/chain-logos/PolygonAmoyTestnet.png",
            native_symbol="MATIC",
            explorer_urls=("https://amoy.polygonscan.com/",),
        ),
        ChainConfig(
            network="sepolia",
            chain_id=11155111,
            name="Ethereum Sepolia",
            rpc_urls=(
                "https://ethereum-sepolia-rpc.publicnode.com",
                "https://rpc.ankr.com/eth_sepolia",
                "https://1rpc.io/sepolia",
            ),
            nft_contract="0xedE55c384D620dD9a06d39fA632b2B55f29Bd387",
            staking_contract="0x637B5CbfBFd074Fe468e2B976b780862448F984C",
            icon_url="/chain-logos/EthereumLogo.png",
            explorer_urls=("https://sepolia.etherscan.io/",),
        ),
        ChainConfig(
            network="bsc-testnet",
            chain_id=97,
            name="BNB Smart Chain Testnet",
            rpc_urls=(
                "https://data-seed-prebsc-1-s1.bnbchain.org:8545",
                "https://data-seed-prebsc-2-s1.bnbchain.org:8545",
                "https://bsc-testnet.publicnode.com",
                "https://bsc-testnet-rpc.publicnode.com",
            ),
            nft_contract="0xfaAA35A41f070B7408740Fefff0635fD5B66398b",
            staking_contract="0x1FAe00647ff1931Ab9d234E685EAf5211bed12b7",
            icon_url="/chain-logos/BNBSmartChainTestnet.png",
            native_symbol="tBNB",
            explorer_urls=("https://testnet.bscscan.com/",),
        ),
        ChainConfig(
            network="avalanche-fuji",
            chain_id=43113,
            name="Avalanche Fuji Testnet",
            rpc_urls=(
                "https://api.avax-test.network/ext/bc/C/rpc",
                "https://avalanche-fuji-c-chain-rpc.publicnode.com",
                "https://rpc.ankr.com/avalanche_fuji",
                "https://ava-testnet.public.blastapi.io/ext/bc/C/rpc",
            ),
            nft_contract="0x7a85EE8944EC9d15528c7517D1FD2A173f552F08",
            staking_contract="0x95F2B1d375532690a78f152E4c90F4a6196fB8Df",
            icon_url="/chain-logos/AvalancheFujiTestnet.png",
            native_symbol="AVAX",
            explorer_urls=("https://testnet.snowtrace.io/",),
        ),
        ChainConfig(
            network="arbitrum-sepolia",
            chain_id=421614,
            name="Arbitrum Sepolia",
            rpc_urls=(
                "https://sepolia-rollup.arbitrum.io/rpc",
                "https://arbitrum-sepolia.blockpi.network/v1/rpc/public",
                "https://arbitrum-sepolia-rpc.publicnode.com",
            ),
            nft_contract="0x71EC87B1aFBe18255e8c415c3d84c9369719de21",
            staking_contract="0x5B17525Db3B6811F36a0e301d0Ff286b44b51147",
            icon_url="/chain-logos/ArbitrumSepolia.png",
            explorer_urls=("https://sepolia.arbiscan.io/",),
        ),
        ChainConfig(
            network="optimism-sepolia",
            chain_id=11155420,
            name="Optimism Sepolia",
            rpc_urls=(
                "https://sepolia.optimism.io",
                "https://optimism-sepolia.blockpi.network/v1/rpc/public",
                "https://optimism-sepolia-rpc.publicnode.com",
            ),
            nft_contract="0x68C3734b65e3b2f7858123ccb5Bfc5fd7cC1D733",
            staking_contract="0x37Fdb126989C1c355b93f0155FEe0CbD0e892AF8",
            icon_url="/chain-logos/OptimismSepolia.png",
            explorer_urls=("https://sepolia-optimism.etherscan.io/",),
        ),
        ChainConfig(
            network="base-sepolia",
            chain_id=84532,
            name="Base Sepolia",
            rpc_urls=(
                "https://sepolia.base.org",
                "https://base-sepolia.blockpi.network/v1/rpc/public",
                "https://base-sepolia-rpc.publicnode.com",
            ),
            nft_contract="0x10ca82E3F31459f7301BDE2ca8Cf93CCA4113705",
            staking_contract="0xB250CD56aDB08cd30aBC275b9E20978A92bC4dd1",
            icon_url="/chain-logos/BaseSepolia.png",
            explorer_urls=("https://sepolia.basescan.org/",),
        ),
    )
}


def _apply_override(chain: ChainConfig, override: dict[str, Any]) -> ChainConfig:
    changes: dict[str, Any] = {}
    rpc_urls = override.get("rpc_urls")
    if isinstance(rpc_urls, str):
        rpc_urls = [part.strip() for part in rpc_urls.split(",") if part.strip()]
    if rpc_urls:
        changes["rpc_urls"] = tuple(rpc_urls)
    for key in ("nft_contract", "staking_contract", "name", "icon_url"):
        if override.get(key):
            changes[key] = str(override[key])
    return replace(chain, **changes) if changes else chain


def resolve_chains(config: Settings | None = None) -> list[ChainConfig]:
    """Return the enabled chains with per-network overrides applied.

    Chains without an NFT contract are dropped since there is nothing to read.
    """

    config = config or default_settings
    enabled = config.enabled_networks or list(DEFAULT_CHAINS)
    chains: list[ChainConfig] = []
    for network in enabled:
        chain = DEFAULT_CHAINS.get(network)
        if chain is None:
            logger.warning("Ignoring unknown network in ENABLED_NETWORKS: {}", network)
            continue
        chain = _apply_override(chain, config.chain_override(network))
        if not chain.nft_contract:
            logger.warning("Skipping {}: no NFT contract configured", network)
            continue
        chains.append(chain)
    return chains


def get_chain(network: str) -> ChainConfig | None:
    return DEFAULT_CHAINS.get(network)


def get_chain_by_id(chain_id: int) -> ChainConfig | None:
    return next((chain for chain in DEFAULT_CHAINS.values() if chain.chain_id == chain_id), None)
