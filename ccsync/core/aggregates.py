"""
Aggregate statistics derived from a domain table on read.

Nothing here is stored or diffed; every call recomputes from the entities it
is handed, so callers should pass a ``TableView`` snapshot rather than a live
reference.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from .models import Entity

PRIORITY_LEVELS = frozenset({"high", "vip"})


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _numeric(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        if math.isnan(value):
            return None
        return float(value)
    return None


@dataclass(frozen=True)
class AggregateSpec:
    """Which fields a domain aggregates and how."""

    average_fields: Tuple[str, ...] = ()
    max_fields: Tuple[str, ...] = ()
    flags: Mapping[str, Callable[[Entity], bool]] = field(default_factory=dict)
    include_history: bool = False


@dataclass(frozen=True)
class AggregateSnapshot:
    total: int = 0
    active: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    averages: Dict[str, int] = field(default_factory=dict)
    maxima: Dict[str, float] = field(default_factory=dict)
    flags: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "active": self.active,
            "by_status": dict(self.by_status),
            "averages": dict(self.averages),
            "maxima": dict(self.maxima),
            "flags": dict(self.flags),
        }


def status_counts(entities: Iterable[Entity]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for entity in entities:
        key = entity.status or "unknown"
        counts[key] = counts.get(key, 0) + 1
    return counts


def average_of(entities: Sequence[Entity], field_name: str) -> int:
    """Half-up rounded mean over entities that report ``field_name``; 0 if none do."""
    values = [v for v in (_numeric(e.get(field_name)) for e in entities) if v is not None]
    if not values:
        return 0
    return round_half_up(sum(values) / len(values))


def max_of(entities: Sequence[Entity], field_name: str) -> float:
    values = [v for v in (_numeric(e.get(field_name)) for e in entities) if v is not None]
    if not values:
        return 0
    best = max(values)
    return int(best) if float(best).is_integer() else best


def compute_aggregates(
    live: Sequence[Entity],
    spec: AggregateSpec,
    history: Sequence[Entity] = (),
) -> AggregateSnapshot:
    population = list(live) + (list(history) if spec.include_history else [])
    return AggregateSnapshot(
        total=len(population),
        active=len(live),
        by_status=status_counts(population),
        averages={name: average_of(population, name) for name in spec.average_fields},
        maxima={name: max_of(population, name) for name in spec.max_fields},
        flags={
            name: sum(1 for e in population if predicate(e))
            for name, predicate in spec.flags.items()
        },
    )


def is_priority(entity: Entity) -> bool:
    return entity.get("priority") in PRIORITY_LEVELS


def queue_stats(entries: Sequence[Entity]) -> Dict[str, Any]:
    """Dashboard queue panel numbers."""
    return {
        "total": len(entries),
        "avgWaitTime": average_of(entries, "waitTime"),
        "longestWait": max_of(entries, "waitTime"),
        "priorityCalls": sum(1 for e in entries if is_priority(e)),
    }


def campaign_call_stats(live: Sequence[Entity], history: Sequence[Entity]) -> Dict[str, Any]:
    population = list(live) + list(history)
    counts = status_counts(population)
    durations = [
        v for v in (_numeric(e.get("duration")) for e in population) if v
    ]
    return {
        "total": len(population),
        "active": len(live),
        "completed": counts.get("completed", 0),
        "failed": counts.get("failed", 0),
        "noAnswer": counts.get("no-answer", 0),
        "busy": counts.get("busy", 0),
        "voicemail": counts.get("voicemail", 0),
        "avgDuration": round_half_up(sum(durations) / len(durations)) if durations else 0,
    }
