from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Body, Depends, FastAPI, HTTPException, Path, Query
from loguru import logger

from . import schemas
from .core.config import settings
from .domain.models import CollectionView, MutationKind
from .engine import NftStateEngine
from .services.session_registry import EngineRegistry


_registry_instance: EngineRegistry | None = None


def _registry() -> EngineRegistry:
    """Provide the process-wide registry of wallet sessions."""

    global _registry_instance
    if _registry_instance is None:
        _registry_instance = EngineRegistry()
    return _registry_instance


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    if _registry_instance is not None:
        logger.info("Closing {} wallet sessions", len(_registry_instance))
        await _registry_instance.aclose()


app = FastAPI(title="NFT State API", version="0.1.0", debug=settings.debug, lifespan=lifespan)

WalletKey = Annotated[str, Path(description="Wallet address owning the NFTs", min_length=1)]


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


async def _engine(owner_key: WalletKey, registry: EngineRegistry = Depends(_registry)) -> NftStateEngine:
    return await registry.get_or_create(owner_key)


async def _existing_engine(owner_key: WalletKey, registry: EngineRegistry = Depends(_registry)) -> NftStateEngine:
    engine = registry.get(owner_key)
    if engine is None:
        raise HTTPException(status_code=404, detail="Wallet session not found")
    return engine


def _collection(view: CollectionView, which: str = "all") -> schemas.NftCollection:
    selectors = {
        "all": lambda: list(view.entities),
        "available": view.available,
        "staked": view.staked,
        "offchain": view.offchain,
        "onchain": view.onchain,
    }
    items = selectors[which]()
    return schemas.NftCollection(
        owner_key=view.owner_key,
        state=view.state,
        total=len(items),
        items=[schemas.Nft.model_validate(entity) for entity in items],
        progress=schemas.LoadingProgress.model_validate(view.progress),
        has_optimistic_mutations=view.has_optimistic_mutations,
        error=view.error,
        last_updated=view.last_updated,
    )


@app.get("/wallets/{owner_key}/nfts", response_model=schemas.NftCollection, tags=["nfts"])
async def list_nfts(
    *,
    view: Annotated[
        str,
        Query(description="Subset to return", pattern="^(all|available|staked|offchain|onchain)$"),
    ] = "all",
    engine: NftStateEngine = Depends(_engine),
):
    """Return the merged collection, loading it first when the cache window requires."""

    snapshot = await engine.ensure_loaded()
    return _collection(snapshot, view)


@app.get("/wallets/{owner_key}/progress", response_model=schemas.LoadingProgress, tags=["nfts"])
async def get_progress(engine: NftStateEngine = Depends(_existing_engine)):
    return schemas.LoadingProgress.model_validate(engine.get_loading_progress())


@app.post("/wallets/{owner_key}/refresh", response_model=schemas.NftCollection, tags=["nfts"])
async def refresh_nfts(engine: NftStateEngine = Depends(_engine)):
    """Invalidate the cache window and reload every source."""

    if engine.owner_key is None:
        return _collection(await engine.ensure_loaded())
    return _collection(await engine.refresh())


@app.post("/wallets/{owner_key}/reload", response_model=schemas.NftCollection, tags=["nfts"])
async def reload_nfts(engine: NftStateEngine = Depends(_engine)):
    """Drop the collection and pending mutations, then reload from scratch."""

    if engine.owner_key is None:
        return _collection(await engine.ensure_loaded())
    return _collection(await engine.force_reload())


@app.post(
    "/wallets/{owner_key}/mutations",
    response_model=schemas.MutationHandle,
    status_code=201,
    tags=["mutations"],
)
async def apply_mutation(
    request: schemas.MutationRequest,
    engine: NftStateEngine = Depends(_existing_engine),
):
    """Apply an optimistic stake, unstake, burn, claim or update."""

    try:
        if request.kind is MutationKind.CLAIM_COMPLETE:
            handle = engine.complete_claim(request.target_ids[0], request.claimed_record or {})
        elif request.kind is MutationKind.STAKE and not request.patch:
            handle = engine.stake(request.target_ids)
        elif request.kind is MutationKind.UNSTAKE and not request.patch:
            handle = engine.unstake(request.target_ids)
        elif request.kind is MutationKind.CLAIM_START and not request.patch:
            handle = engine.start_claim(request.target_ids[0])
        else:
            handle = engine.apply_optimistic(
                request.kind,
                request.target_ids,
                request.patch,
                per_target=request.per_target,
            )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if handle is None:
        raise HTTPException(status_code=404, detail="Wallet session is not active")
    return schemas.MutationHandle(
        mutation_id=handle.mutation_id,
        owner_key=handle.owner_key,
        kind=handle.kind,
        target_ids=sorted(handle.target_ids),
    )


def _pending_handle(engine: NftStateEngine, mutation_id: str):
    handle = engine.find_mutation(mutation_id)
    if handle is None:
        raise HTTPException(status_code=404, detail="Mutation not pending")
    return handle


@app.post(
    "/wallets/{owner_key}/mutations/{mutation_id}/confirm",
    response_model=schemas.MutationOutcome,
    tags=["mutations"],
)
async def confirm_mutation(
    mutation_id: str,
    body: Annotated[schemas.ConfirmRequest | None, Body()] = None,
    engine: NftStateEngine = Depends(_existing_engine),
):
    """Check a pending mutation against authoritative data; mismatches keep it pending."""

    handle = _pending_handle(engine, mutation_id)
    authoritative = body.authoritative if body else None
    try:
        confirmed = await engine.confirm(handle, authoritative)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return schemas.MutationOutcome(
        mutation_id=mutation_id,
        confirmed=confirmed,
        has_optimistic_mutations=engine.snapshot().has_optimistic_mutations,
    )


@app.post(
    "/wallets/{owner_key}/mutations/{mutation_id}/revert",
    response_model=schemas.MutationOutcome,
    tags=["mutations"],
)
async def revert_mutation(mutation_id: str, engine: NftStateEngine = Depends(_existing_engine)):
    handle = _pending_handle(engine, mutation_id)
    reverted = engine.revert(handle)
    return schemas.MutationOutcome(
        mutation_id=mutation_id,
        reverted=reverted,
        has_optimistic_mutations=engine.snapshot().has_optimistic_mutations,
    )


@app.post("/wallets/{owner_key}/staking/sync", response_model=schemas.StakingSyncResult, tags=["nfts"])
async def sync_staking(
    force: Annotated[bool, Query(description="Overwrite NFTs with pending optimistic changes")] = False,
    engine: NftStateEngine = Depends(_existing_engine),
):
    changed = await engine.sync_staking_status(force=force)
    return schemas.StakingSyncResult(changed=changed, forced=force)


@app.delete("/wallets/{owner_key}", status_code=204, tags=["nfts"])
async def drop_wallet(owner_key: WalletKey, registry: EngineRegistry = Depends(_registry)):
    """Forget a wallet session and everything cached for it."""

    if not await registry.drop(owner_key):
        raise HTTPException(status_code=404, detail="Wallet session not found")
