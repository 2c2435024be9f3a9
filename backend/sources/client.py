from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from loguru import logger
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import Web3Exception

from app.core.config import settings

from .chains import ChainConfig
from .normalize import extract_rarity, resolve_ipfs


T = TypeVar("T")

DISTRIBUTION_TABLE = "nft_cid_distribution_log"
CLAIMS_TABLE = "nft_claims"
COUNTS_TABLE = "user_nft_counts"
STAKED_RPC = "get_staked_nfts_with_source"

DISTRIBUTION_COLUMNS = (
    "nft_id,rarity,cid,distributed_at,assigned_chain,chain_id,"
    "chain_contract_address,image_url,metadata_cid"
)

ERC721_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "owner", "type": "address"}, {"name": "index", "type": "uint256"}],
        "name": "tokenOfOwnerByIndex",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "tokenURI",
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
]

STAKING_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"name": "_staker", "type": "address"}],
        "name": "getStakeInfo",
        "outputs": [
            {"name": "stakedNFTs", "type": "uint256[]"},
            {"name": "totalStaked", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


class SupabaseClient:
    """Async wrapper around the hosted database's REST and RPC endpoints."""

    def __init__(
        self,
        *,
        rest_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rest_url = rest_url or settings.supabase_rest_url
        if not self.rest_url:
            raise ValueError("SUPABASE_URL must be configured to read off-chain NFTs")
        self.api_key = api_key or settings.supabase_anon_key or ""
        self.timeout = timeout or settings.offchain_fetch_timeout_seconds
        headers = {"apikey": self.api_key, "Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        self.client = httpx.AsyncClient(
            base_url=self.rest_url.rstrip("/") + "/",
            headers=headers,
            timeout=self.timeout,
            transport=transport,
        )

    @staticmethod
    def _wallet_headers(owner_key: str) -> dict[str, str]:
        return {"x-wallet-address": owner_key}

    async def select(
        self, table: str, params: dict[str, Any], *, owner_key: str | None = None
    ) -> list[dict[str, Any]]:
        headers = self._wallet_headers(owner_key) if owner_key else None
        logger.debug("Supabase GET {} params={}", table, params)
        response = await self.client.get(table, params=params, headers=headers)
        response.raise_for_status()
        payload = response.json()
        return [row for row in payload if isinstance(row, dict)] if isinstance(payload, list) else []

    async def rpc(
        self, name: str, payload: dict[str, Any], *, owner_key: str | None = None
    ) -> Any:
        headers = self._wallet_headers(owner_key) if owner_key else None
        logger.debug("Supabase RPC {} payload={}", name, payload)
        response = await self.client.post(f"rpc/{name}", json=payload, headers=headers)
        response.raise_for_status()
        return response.json()

    async def fetch_offchain_staked(self, owner_key: str) -> list[dict[str, Any]]:
        wallet = owner_key.lower()
        result = await self.rpc(STAKED_RPC, {"user_wallet": wallet}, owner_key=wallet)
        if isinstance(result, dict):
            result = result.get("data") or result.get("staked_nfts") or []
        return [row for row in result or [] if isinstance(row, dict)]

    async def fetch_offchain_entities(self, owner_key: str) -> list[dict[str, Any]]:
        """Distributed NFTs for the wallet that have not been claimed on-chain yet."""

        wallet = owner_key.lower()
        rows, claims, staked = await asyncio.gather(
            self.select(
                DISTRIBUTION_TABLE,
                {
                    "select": DISTRIBUTION_COLUMNS,
                    "wallet_address": f"eq.{wallet}",
                    "order": "distributed_at.desc",
                },
                owner_key=wallet,
            ),
            self.select(
                CLAIMS_TABLE,
                {"select": "nft_id", "wallet_address": f"eq.{wallet}"},
                owner_key=wallet,
            ),
            self.fetch_offchain_staked(wallet),
        )
        claimed = {str(row.get("nft_id")) for row in claims if row.get("nft_id")}
        staked_by_id = {
            str(row.get("nft_id") or row.get("id")): row
            for row in staked
            if row.get("nft_id") or row.get("id")
        }

        records: list[dict[str, Any]] = []
        for row in rows:
            nft_id = row.get("nft_id")
            if not nft_id or str(nft_id) in claimed:
                continue
            record = dict(row)
            record["id"] = str(nft_id)
            stake = staked_by_id.get(str(nft_id))
            if stake is not None:
                record["is_staked"] = True
                record["staking_source"] = stake.get("staking_source") or "offchain"
                record["staked_at"] = stake.get("staked_at")
            records.append(record)
        logger.info(
            "Loaded {} off-chain NFTs ({} claimed, {} staked) for {}",
            len(records),
            len(claimed),
            sum(1 for record in records if record.get("is_staked")),
            wallet,
        )
        return records

    async def upsert_counts(self, owner_key: str, counts: dict[str, int]) -> None:
        wallet = owner_key.lower()
        row = {
            "wallet_address": wallet,
            "offchain_nfts": counts.get("offchain", 0),
            "onchain_nfts": counts.get("onchain", 0),
            "total_nfts": counts.get("total", 0),
            "staked_nfts": counts.get("staked", 0),
        }
        response = await self.client.post(
            COUNTS_TABLE,
            params={"on_conflict": "wallet_address"},
            json=row,
            headers={
                "Prefer": "resolution=merge-duplicates",
                **self._wallet_headers(wallet),
            },
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "SupabaseClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


Web3Factory = Callable[[str], AsyncWeb3]


def _default_web3_factory(timeout: float) -> Web3Factory:
    def factory(rpc_url: str) -> AsyncWeb3:
        return AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    return factory


class ChainNftClient:
    """Reads owned and staked tokens of one chain's NFT and staking contracts."""

    def __init__(
        self,
        chain: ChainConfig,
        *,
        gateway: str | None = None,
        metadata_timeout: float | None = None,
        rpc_timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        web3_factory: Web3Factory | None = None,
    ) -> None:
        self.chain = chain
        self.gateway = gateway or settings.ipfs_gateway_url
        self.metadata_timeout = metadata_timeout or settings.metadata_fetch_timeout_seconds
        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(
            timeout=self.metadata_timeout, follow_redirects=True
        )
        self._web3_factory = web3_factory or _default_web3_factory(
            rpc_timeout or settings.onchain_fetch_timeout_seconds
        )

    async def _with_rpc_fallback(self, call: Callable[[AsyncWeb3], Awaitable[T]]) -> T:
        last_error: Exception | None = None
        for rpc_url in self.chain.rpc_urls:
            try:
                return await call(self._web3_factory(rpc_url))
            except (Web3Exception, httpx.HTTPError, OSError, asyncio.TimeoutError, ValueError) as exc:
                logger.debug("RPC {} failed on {}: {}", rpc_url, self.chain.network, exc)
                last_error = exc
        raise RuntimeError(
            f"all RPC endpoints failed for {self.chain.network}"
        ) from last_error

    def _nft_contract(self, w3: AsyncWeb3):
        return w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self.chain.nft_contract),
            abi=ERC721_ABI,
        )

    async def fetch_owned_token_ids(self, owner_key: str) -> list[int]:
        owner = AsyncWeb3.to_checksum_address(owner_key)

        async def call(w3: AsyncWeb3) -> list[int]:
            contract = self._nft_contract(w3)
            balance = int(await contract.functions.balanceOf(owner).call())
            if balance == 0:
                return []
            return [
                int(token_id)
                for token_id in await asyncio.gather(
                    *(
                        contract.functions.tokenOfOwnerByIndex(owner, index).call()
                        for index in range(balance)
                    )
                )
            ]

        return await self._with_rpc_fallback(call)

    async def fetch_staked_token_ids(self, owner_key: str) -> list[int]:
        if not self.chain.staking_contract:
            return []
        owner = AsyncWeb3.to_checksum_address(owner_key)

        async def call(w3: AsyncWeb3) -> list[int]:
            staking = w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(self.chain.staking_contract),
                abi=STAKING_ABI,
            )
            staked_ids, _total = await staking.functions.getStakeInfo(owner).call()
            return [int(token_id) for token_id in staked_ids]

        return await self._with_rpc_fallback(call)

    async def fetch_metadata(self, token_uri: str) -> dict[str, Any]:
        url = resolve_ipfs(token_uri, self.gateway)
        response = await self.http.get(url)
        response.raise_for_status()
        payload = response.json()
        return payload if isinstance(payload, dict) else {}

    async def _token_record(self, token_id: int, *, staked: bool) -> dict[str, Any]:
        token_uri = await self._with_rpc_fallback(
            lambda w3: self._nft_contract(w3).functions.tokenURI(token_id).call()
        )
        try:
            metadata = await self.fetch_metadata(token_uri)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Metadata unavailable for token {} on {}: {}", token_id, self.chain.network, exc
            )
            metadata = {}

        record: dict[str, Any] = {
            "id": f"{self.chain.network}_{token_id}",
            "token_id": str(token_id),
            "name": metadata.get("name") or f"NFT #{token_id}",
            "description": metadata.get("description") or "",
            "image": resolve_ipfs(metadata.get("image"), self.gateway),
            "attributes": metadata.get("attributes") or [],
            "contract_address": self.chain.nft_contract,
            "metadata_uri": token_uri,
            "blockchain": self.chain.network,
            "chain_id": self.chain.chain_id,
            "chain_name": self.chain.name,
            "chain_icon_url": self.chain.icon_url,
            "is_staked": staked,
        }
        record["rarity"] = extract_rarity(
            {"rarity": metadata.get("rarity"), "attributes": record["attributes"]}
        )
        if staked:
            record["staking_source"] = "onchain"
        return record

    async def fetch_all(self, owner_key: str) -> list[dict[str, Any]]:
        """Owned plus staked tokens; staked tokens are held by the staking contract."""

        owned_ids, staked_ids = await asyncio.gather(
            self.fetch_owned_token_ids(owner_key),
            self._staked_ids_or_empty(owner_key),
        )
        logger.info(
            "Found {} owned and {} staked NFTs on {}",
            len(owned_ids),
            len(staked_ids),
            self.chain.name,
        )
        staked_set = set(staked_ids)
        tasks = [self._token_record(token_id, staked=False) for token_id in owned_ids if token_id not in staked_set]
        tasks.extend(self._token_record(token_id, staked=True) for token_id in staked_ids)
        return list(await asyncio.gather(*tasks))

    async def _staked_ids_or_empty(self, owner_key: str) -> list[int]:
        try:
            return await self.fetch_staked_token_ids(owner_key)
        except RuntimeError as exc:
            logger.info("Staking not available on {}: {}", self.chain.name, exc)
            return []

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()
