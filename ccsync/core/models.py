"""Data models shared by the engine, adapters, and readers."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Best-effort conversion of a wire timestamp to an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (``Z`` suffix allowed), and epoch
    numbers in seconds or milliseconds. Returns None for anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = float(value)
        # Anything past year ~2286 in seconds is really milliseconds.
        if seconds > 1e10:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERRORED = "errored"


class EventKind(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status-changed"
    POSITION_UPDATED = "positional-update"
    REMOVED = "removed"
    # Full-list push (e.g. ``queue:update``); handled like a snapshot.
    REPLACED = "replaced"


@dataclass
class Entity:
    """A synchronized domain record. Only the owning engine mutates it."""

    entity_id: str
    status: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    observed_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def copy(self) -> "Entity":
        return replace(self, data=copy.deepcopy(self.data))

    def get(self, key: str, default: Any = None) -> Any:
        if key == "status":
            return self.status if self.status is not None else default
        return self.data.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.data)
        out["entityId"] = self.entity_id
        out["status"] = self.status
        out["observedAt"] = self.observed_at.isoformat()
        if self.updated_at is not None:
            out["updatedAt"] = self.updated_at.isoformat()
        return out


@dataclass(frozen=True)
class DomainEvent:
    """A wire event after adapter normalization."""

    kind: EventKind
    entity_id: Optional[str]
    fields: Dict[str, Any] = field(default_factory=dict)
    status: Optional[str] = None
    stamp_field: Optional[str] = None
    occurred_at: Optional[datetime] = None
    event_name: str = ""
    deep_merge_keys: FrozenSet[str] = frozenset()
    rows: Tuple[Entity, ...] = ()


@dataclass(frozen=True)
class TableView:
    """Immutable read of a domain's live table and history at one version."""

    domain: str
    version: int
    live: Tuple[Entity, ...]
    history: Tuple[Entity, ...]
    bootstrapping: bool = False

    def by_id(self) -> Dict[str, Entity]:
        return {e.entity_id: e for e in self.live}
