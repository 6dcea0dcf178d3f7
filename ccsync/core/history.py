"""Capped, most-recent-first log of terminalized entities."""

from __future__ import annotations

from collections import deque
from typing import Deque, Iterator, Tuple

from .models import Entity


class BoundedHistory:
    """
    Most-recent-first history with a fixed capacity.

    Invariants:
    - len(history) <= capacity
    - history[0] is the entity pushed last
    - an entity id appears at most once (a re-push moves it to the front)
    """

    def __init__(self, capacity: int):
        if int(capacity) < 1:
            raise ValueError(f"history capacity must be >= 1, got {capacity}")
        self._capacity = int(capacity)
        self._items: Deque[Entity] = deque(maxlen=self._capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def push(self, entity: Entity) -> None:
        for existing in list(self._items):
            if existing.entity_id == entity.entity_id:
                self._items.remove(existing)
                break
        # appendleft on a full deque(maxlen) drops the oldest from the right.
        self._items.appendleft(entity.copy())

    def list(self) -> Tuple[Entity, ...]:
        return tuple(e.copy() for e in self._items)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Entity]:
        return iter(self.list())

    def __contains__(self, entity_id: object) -> bool:
        return any(e.entity_id == entity_id for e in self._items)
