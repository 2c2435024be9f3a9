"""In-memory collaborators for engine tests."""

from __future__ import annotations

import asyncio
from typing import Any

from app.domain.models import SourceSnapshot


WALLET = "0xabc0000000000000000000000000000000000001"
OTHER_WALLET = "0xdef0000000000000000000000000000000000002"


class FakeAdapter:
    def __init__(
        self,
        name: str,
        records: list[dict[str, Any]] | None = None,
        *,
        staked: list[dict[str, Any]] | None = None,
        by_owner: dict[str, list[dict[str, Any]]] | None = None,
        fail: bool = False,
    ) -> None:
        self.name = name
        self.records = list(records or [])
        self.staked = list(staked or [])
        self.by_owner = by_owner or {}
        self.fail = fail
        self.fail_staked = False
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[str] = []
        self.staked_calls: list[str] = []

    def hold(self, owner_key: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[owner_key] = gate
        return gate

    async def fetch(self, owner_key: str) -> SourceSnapshot:
        self.calls.append(owner_key)
        gate = self.gates.get(owner_key)
        if gate is not None:
            await gate.wait()
        if self.fail:
            return SourceSnapshot.failed(self.name, owner_key, "simulated outage")
        records = self.by_owner.get(owner_key, self.records)
        return SourceSnapshot.ok(self.name, owner_key, [dict(record) for record in records])

    async def fetch_staked(self, owner_key: str) -> SourceSnapshot:
        self.staked_calls.append(owner_key)
        if self.fail_staked:
            return SourceSnapshot.failed(self.name, owner_key, "simulated outage")
        return SourceSnapshot.ok(self.name, owner_key, [dict(record) for record in self.staked])


class FakeIdentity:
    def __init__(self, owner_key: str | None) -> None:
        self.owner_key = owner_key
        self.authenticated = owner_key is not None

    def current_owner_key(self) -> str | None:
        return self.owner_key

    def is_authenticated(self) -> bool:
        return self.authenticated


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingReporter:
    def __init__(self) -> None:
        self.reports: list[tuple[str, dict[str, int]]] = []

    async def report(self, owner_key: str, counts: dict[str, int]) -> None:
        self.reports.append((owner_key, counts))


async def settle(rounds: int = 20) -> None:
    """Give scheduled tasks a few loop iterations to run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
