"""
In-memory entity store.

Holds one insertion-ordered collection per entity kind. Stored models are
never mutated in place: ``update`` swaps in the model returned by the
patcher, and every read hands out a deep copy, so callers can never see or
cause a half-applied write.
"""

from __future__ import annotations

import logging
from typing import Callable, Generic, Iterator, TypeVar

from pydantic import BaseModel

from agent_monitor.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

KINDS = ("agents", "tasks", "messages", "skills", "logs", "alerts")

_LABELS = {
    "agents": "Agent",
    "tasks": "Task",
    "messages": "Message",
    "skills": "Skill",
    "logs": "Log entry",
    "alerts": "Alert",
}

# Fields no patcher may change once an entity exists
_IMMUTABLE_FIELDS = ("id", "created_at")

E = TypeVar("E", bound=BaseModel)
Predicate = Callable[[E], bool]
Patcher = Callable[[E], E]


class Listing(Generic[E]):
    """Lazy, restartable view over one collection.

    Each iteration walks the collection as it is when iteration starts.
    """

    def __init__(self, items: dict[str, E], predicate: Predicate | None) -> None:
        self._items = items
        self._predicate = predicate

    def __iter__(self) -> Iterator[E]:
        for entity in list(self._items.values()):
            if self._predicate is None or self._predicate(entity):
                yield entity.model_copy(deep=True)


class EntityStore:
    """Authoritative in-memory state for every entity kind."""

    def __init__(self, capacities: dict[str, int] | None = None) -> None:
        self._collections: dict[str, dict[str, BaseModel]] = {kind: {} for kind in KINDS}
        self._capacities = dict(capacities or {})
        for kind in self._capacities:
            self._collection(kind)

    def _collection(self, kind: str) -> dict[str, BaseModel]:
        try:
            return self._collections[kind]
        except KeyError:
            raise ValueError(f"Unknown entity kind: {kind}") from None

    def get(self, kind: str, entity_id: str) -> BaseModel:
        entity = self._collection(kind).get(entity_id)
        if entity is None:
            raise NotFoundError(_LABELS[kind], entity_id)
        return entity.model_copy(deep=True)

    def find(self, kind: str, entity_id: str) -> BaseModel | None:
        entity = self._collection(kind).get(entity_id)
        return entity.model_copy(deep=True) if entity is not None else None

    def contains(self, kind: str, entity_id: str) -> bool:
        return entity_id in self._collection(kind)

    def list(self, kind: str, predicate: Predicate | None = None) -> Listing:
        return Listing(self._collection(kind), predicate)

    def count(self, kind: str) -> int:
        return len(self._collection(kind))

    def insert(self, kind: str, entity: BaseModel) -> BaseModel:
        items = self._collection(kind)
        entity_id = entity.id  # type: ignore[attr-defined]
        if entity_id in items:
            raise ConflictError(_LABELS[kind], entity_id)
        items[entity_id] = entity.model_copy(deep=True)

        capacity = self._capacities.get(kind)
        if capacity is not None:
            while len(items) > capacity:
                evicted = next(iter(items))
                del items[evicted]
                logger.debug("Evicted %s %s (capacity %d)", kind, evicted, capacity)
        return entity.model_copy(deep=True)

    def update(self, kind: str, entity_id: str, patcher: Patcher) -> BaseModel:
        """Replace an entity with ``patcher(current)``.

        The patcher gets a private copy; nothing is stored if it raises.
        """
        items = self._collection(kind)
        current = items.get(entity_id)
        if current is None:
            raise NotFoundError(_LABELS[kind], entity_id)
        updated = patcher(current.model_copy(deep=True))
        for field in _IMMUTABLE_FIELDS:
            if field in type(current).model_fields and getattr(updated, field) != getattr(current, field):
                raise ValidationError(f"{_LABELS[kind]} {entity_id}: {field} is immutable")
        items[entity_id] = updated.model_copy(deep=True)
        return updated

    def delete(self, kind: str, entity_id: str) -> BaseModel:
        items = self._collection(kind)
        entity = items.pop(entity_id, None)
        if entity is None:
            raise NotFoundError(_LABELS[kind], entity_id)
        return entity

    def clear(self) -> None:
        for items in self._collections.values():
            items.clear()
