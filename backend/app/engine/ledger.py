"""Optimistic Mutation Ledger.

Pending mutations are replayed on top of the merged collection to produce the
visible view. The stored collection itself is never touched here, so it is
the backup: reverting drops the pending chain and the untouched base (the
last fully-confirmed state) becomes visible again.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Iterable, Mapping
from dataclasses import fields, replace
from functools import lru_cache
from typing import Any, Callable, get_type_hints

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from app.domain.models import (
    Collection,
    Entity,
    MutationHandle,
    MutationKind,
    PendingMutation,
)


_LOCKED_FIELDS = {"id", "optimistic", "last_updated", "preserved_origin_metadata"}
PATCHABLE_FIELDS = frozenset(item.name for item in fields(Entity) if item.name not in _LOCKED_FIELDS)

# Fields a confirming record is not expected to reproduce exactly.
UNCONFIRMABLE_FIELDS = frozenset({"staked_at", "daily_reward", "raw_data", "claiming_status"})


class UnknownMutationError(LookupError):
    """Raised when a mutation handle is not (or no longer) pending."""


@lru_cache(maxsize=None)
def _field_adapter(name: str) -> TypeAdapter:
    return TypeAdapter(get_type_hints(Entity)[name])


def validate_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``patch`` with every value converted to its ``Entity`` field type.

    Raises ``ValueError`` for locked or unknown fields and for values that
    cannot be converted (``"staked"`` becomes ``OwnershipState.STAKED``).
    """

    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported patch fields: {', '.join(sorted(unknown))}")
    converted: dict[str, Any] = {}
    for name, value in patch.items():
        try:
            converted[name] = _field_adapter(name).validate_python(value)
        except ValidationError as exc:
            raise ValueError(f"invalid value for {name}: {value!r}") from exc
    return converted


class OptimisticMutationLedger:
    def __init__(self, *, reward_for: Callable[[str | None], float] | None = None) -> None:
        self._pending: OrderedDict[str, PendingMutation] = OrderedDict()
        self._reward_for = reward_for

    def __len__(self) -> int:
        return len(self._pending)

    def __bool__(self) -> bool:
        return bool(self._pending)

    def __iter__(self):
        return iter(list(self._pending.values()))

    def record(
        self,
        handle: MutationHandle,
        *,
        patch: Mapping[str, Any] | None = None,
        per_target: Mapping[str, Mapping[str, Any]] | None = None,
        removes: Iterable[str] = (),
        inserts: Iterable[Entity] = (),
    ) -> PendingMutation:
        converted = validate_patch(patch or {})
        targets = {key: validate_patch(value) for key, value in (per_target or {}).items()}
        mutation = PendingMutation(
            handle=handle,
            patch=converted,
            per_target=targets,
            removes=frozenset(removes),
            inserts=tuple(inserts),
        )
        self._pending[handle.mutation_id] = mutation
        return mutation

    def get(self, handle: MutationHandle | str) -> PendingMutation:
        mutation_id = handle if isinstance(handle, str) else handle.mutation_id
        try:
            return self._pending[mutation_id]
        except KeyError:
            raise UnknownMutationError(mutation_id) from None

    def find(self, entity_id: str, kind: MutationKind) -> PendingMutation | None:
        for mutation in self._pending.values():
            if mutation.kind is kind and entity_id in mutation.target_ids:
                return mutation
        return None

    def optimistic_ids(self) -> set[str]:
        ids: set[str] = set()
        for mutation in self._pending.values():
            ids.update(mutation.target_ids)
            ids.update(entity.id for entity in mutation.inserts)
        return ids

    def overlay(self, base: Collection) -> Collection:
        """Return ``base`` with every pending mutation replayed in order."""

        if not self._pending:
            return base
        view = dict(base)
        for mutation in self._pending.values():
            for entity_id in mutation.removes:
                view.pop(entity_id, None)
            for entity in mutation.inserts:
                view[entity.id] = replace(entity, optimistic=True, last_updated=mutation.created_at)
            if mutation.kind in (MutationKind.BURN, MutationKind.CLAIM_COMPLETE):
                continue
            for entity_id in mutation.target_ids:
                current = view.get(entity_id)
                if current is None:
                    continue
                changes = {**mutation.patch, **mutation.per_target.get(entity_id, {})}
                updated = replace(current, **changes, optimistic=True, last_updated=mutation.created_at)
                if self._reward_for is not None:
                    updated.daily_reward = self._reward_for(updated.rarity)
                view[entity_id] = updated
        return view

    def is_confirmed(self, mutation: PendingMutation, fragment: Mapping[str, Entity]) -> bool:
        """Whether ``fragment`` (authoritative copies) shows every target in its expected state."""

        kind = mutation.kind
        if kind is MutationKind.CLAIM_START:
            return False
        if kind in (MutationKind.BURN, MutationKind.CLAIM_COMPLETE):
            if any(entity_id in fragment for entity_id in mutation.removes):
                return False
            return all(entity.id in fragment for entity in mutation.inserts)
        for entity_id in mutation.target_ids:
            authoritative = fragment.get(entity_id)
            if authoritative is None:
                return False
            expected = {**mutation.patch, **mutation.per_target.get(entity_id, {})}
            for name, value in expected.items():
                if name in UNCONFIRMABLE_FIELDS:
                    continue
                if getattr(authoritative, name) != value:
                    logger.debug(
                        "Mutation {} not confirmed for {}: {}={!r}, expected {!r}",
                        mutation.handle.mutation_id,
                        entity_id,
                        name,
                        getattr(authoritative, name),
                        value,
                    )
                    return False
        return True

    def settle(self, handle: MutationHandle | str) -> PendingMutation:
        """Drop a confirmed mutation once its effect has been folded into the base."""

        mutation = self.get(handle)
        del self._pending[mutation.handle.mutation_id]
        return mutation

    def discard(self, handle: MutationHandle | str) -> PendingMutation:
        """Remove one mutation without confirming or reverting the chain."""

        mutation = self.get(handle)
        del self._pending[mutation.handle.mutation_id]
        return mutation

    def revert(self, handle: MutationHandle | str) -> list[PendingMutation]:
        """Discard the whole pending chain; the untouched base becomes visible again."""

        self.get(handle)
        dropped = list(self._pending.values())
        self._pending.clear()
        return dropped

    def clear(self) -> None:
        self._pending.clear()
