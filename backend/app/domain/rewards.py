from __future__ import annotations

from collections.abc import Mapping

from app.core.config import DEFAULT_RARITY_DAILY_REWARDS


_RARITY_ALIASES = {"legend": "legendary"}


def normalize_rarity(rarity: str | None) -> str:
    value = (rarity or "").strip().lower()
    return _RARITY_ALIASES.get(value, value)


def daily_reward_for_rarity(
    rarity: str | None,
    table: Mapping[str, float] | None = None,
    *,
    default: float = 0.1,
) -> float:
    """Return the daily reward rate for ``rarity``; pure, no I/O."""

    rates = DEFAULT_RARITY_DAILY_REWARDS if table is None else table
    key = normalize_rarity(rarity)
    if not key:
        return default
    return float(rates.get(key, default))
