from __future__ import annotations

import time
from typing import Callable

from app.domain.models import Collection


class CacheWindow:
    """TTL envelope around the last merged collection of one wallet key.

    Expiry only starts counting once a full load completes; sources still in
    flight never make the window invalid.
    """

    def __init__(
        self,
        wallet_key: str,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.wallet_key = wallet_key
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.collection: Collection = {}
        self.expires_at: float | None = None
        self.loaded = False
        self.has_optimistic_mutations = False

    def store(self, collection: Collection) -> None:
        self.collection = collection

    def mark_loaded(self) -> None:
        self.loaded = True
        self.expires_at = self._clock() + self.ttl_seconds

    def invalidate(self) -> None:
        self.expires_at = None

    def is_expired(self) -> bool:
        return self.expires_at is None or self._clock() >= self.expires_at

    def is_valid(self, wallet_key: str | None = None) -> bool:
        if wallet_key is not None and wallet_key != self.wallet_key:
            return False
        return self.loaded and not self.is_expired()
