import argparse
import asyncio
import json

from loguru import logger

from app.core.config import get_settings
from app.engine import NftStateEngine
from sources.adapters import CompositeLookup, build_adapters


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Load one wallet's NFTs from every source")
    parser.add_argument("wallet", help="Wallet address to aggregate")
    parser.add_argument(
        "--network",
        action="append",
        default=None,
        metavar="NETWORK",
        help="Restrict on-chain sources (repeatable, e.g. --network sepolia)",
    )
    parser.add_argument(
        "--sync-staking",
        action="store_true",
        help="Re-derive staking state from every staked list after loading",
    )
    parser.add_argument("--json", action="store_true", help="Print every NFT as JSON")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> dict[str, object]:
    settings = get_settings()
    if args.network:
        settings = settings.model_copy(update={"enabled_networks": [item.lower() for item in args.network]})
    offchain, onchain = build_adapters(settings)
    engine = NftStateEngine(
        offchain,
        onchain,
        lookup=CompositeLookup([offchain, *onchain]),
        config=settings,
    )
    try:
        view = await engine.load_all(args.wallet.lower())
        if args.sync_staking:
            changed = await engine.sync_staking_status()
            logger.info("Staking sync changed {} NFTs", changed)
            view = engine.snapshot()
    finally:
        await engine.aclose()
        await offchain.client.aclose()
        for adapter in onchain:
            await adapter.client.aclose()

    summary: dict[str, object] = {
        "wallet": view.owner_key,
        "state": view.state.value,
        "error": view.error,
        "progress": view.progress.to_dict(),
        "counts": engine.counts(),
    }
    if args.json:
        summary["nfts"] = [
            {
                "id": entity.id,
                "name": entity.name,
                "rarity": entity.rarity,
                "lifecycle_state": entity.lifecycle_state.value,
                "ownership_state": entity.ownership_state.value,
                "blockchain": entity.blockchain,
            }
            for entity in view.entities
        ]
    return summary


def main() -> None:
    args = parse_args()
    summary = asyncio.run(run(args))
    print(json.dumps(summary, indent=2, default=str))


if __name__ == "__main__":
    main()
