"""
ReconciliationEngine - one consistent entity table per domain.

Snapshot rows and push events feed the same merge step. The engine enforces:
- every entity in the live table has a non-terminal status
- terminal entities move to history in the same step that terminalized them
- events received while a snapshot is in flight are buffered and replayed,
  in arrival order, after the snapshot is applied
- merge anomalies are logged and counted, never raised
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import structlog
from prometheus_client import Counter, Gauge

from .history import BoundedHistory
from .models import DomainEvent, Entity, EventKind, TableView, utcnow

logger = structlog.get_logger(__name__)

_EVENTS_APPLIED_TOTAL = Counter(
    "ccsync_events_applied_total",
    "Domain events merged into a live table",
    labelnames=("domain", "kind"),
)
_EVENTS_DROPPED_TOTAL = Counter(
    "ccsync_events_dropped_total",
    "Domain events discarded without merging",
    labelnames=("domain", "reason"),
)
_LIVE_ENTITIES = Gauge(
    "ccsync_live_entities",
    "Entities currently in the live table",
    labelnames=("domain",),
)
_HISTORY_ENTITIES = Gauge(
    "ccsync_history_entities",
    "Entities currently retained in history",
    labelnames=("domain",),
)

Clock = Callable[[], datetime]
DeriveFn = Callable[[Entity, datetime], Mapping[str, Any]]


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ReconciliationEngine:
    """Single-writer entity table for one domain instance."""

    def __init__(
        self,
        domain: str,
        *,
        terminal_statuses: Iterable[str],
        history_capacity: int,
        clock: Optional[Clock] = None,
    ):
        self.domain = domain
        self.terminal_statuses = frozenset(terminal_statuses)
        self._clock: Clock = clock or utcnow
        self._live: Dict[str, Entity] = {}
        self._history = BoundedHistory(history_capacity)
        self._pending: List[DomainEvent] = []
        self._bootstrapping = False
        self._version = 0
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ reads

    @property
    def bootstrapping(self) -> bool:
        return self._bootstrapping

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def version(self) -> int:
        return self._version

    def is_terminal(self, status: Optional[str]) -> bool:
        return status is not None and status in self.terminal_statuses

    def get(self, entity_id: str) -> Optional[Entity]:
        with self._lock:
            entity = self._live.get(str(entity_id))
            return entity.copy() if entity else None

    def live(self) -> List[Entity]:
        with self._lock:
            return [e.copy() for e in self._live.values()]

    def history(self) -> Tuple[Entity, ...]:
        with self._lock:
            return self._history.list()

    def view(self) -> TableView:
        with self._lock:
            return TableView(
                domain=self.domain,
                version=self._version,
                live=tuple(e.copy() for e in self._live.values()),
                history=self._history.list(),
                bootstrapping=self._bootstrapping,
            )

    # -------------------------------------------------------------- bootstrap

    def begin_bootstrap(self) -> None:
        """Buffer events until the next snapshot (or abort) resolves."""
        with self._lock:
            if not self._bootstrapping:
                self._bootstrapping = True
                logger.debug("Bootstrap started", domain=self.domain)

    def apply_snapshot(self, entities: Sequence[Entity]) -> int:
        """
        Replace the live table with an authoritative snapshot.

        Rows already terminal go to history. Buffered events are replayed
        afterwards in arrival order. Returns the live table size.
        """
        with self._lock:
            now = self._clock()
            previous_ids = set(self._live.keys())
            fresh: Dict[str, Entity] = {}
            historized = 0
            for row in entities:
                entity = row.copy()
                if entity.updated_at is None:
                    entity.updated_at = now
                if self.is_terminal(entity.status):
                    # Terminal rows are re-listed on every refresh; keep their history slot.
                    if entity.entity_id not in self._history:
                        self._history.push(entity)
                        historized += 1
                    continue
                fresh[entity.entity_id] = entity

            dropped = previous_ids - set(fresh.keys())
            self._live = fresh
            self._version += 1
            if dropped:
                logger.info(
                    "Snapshot dropped entities absent from server",
                    domain=self.domain,
                    dropped=len(dropped),
                )

            replayed = self._drain_pending()
            self._refresh_gauges()
            logger.info(
                "Snapshot applied",
                domain=self.domain,
                live=len(self._live),
                historized=historized,
                replayed=replayed,
                version=self._version,
            )
            return len(self._live)

    def abort_bootstrap(self) -> int:
        """Snapshot failed: keep the previous table, replay what was buffered."""
        with self._lock:
            replayed = self._drain_pending()
            self._refresh_gauges()
            if replayed:
                logger.info(
                    "Bootstrap aborted; replayed buffered events on previous table",
                    domain=self.domain,
                    replayed=replayed,
                )
            return replayed

    def _drain_pending(self) -> int:
        pending, self._pending = self._pending, []
        self._bootstrapping = False
        for event in pending:
            self._apply_locked(event)
        return len(pending)

    # ------------------------------------------------------------------ merge

    def apply_event(self, event: DomainEvent) -> Optional[Entity]:
        """
        Merge one event. Returns a copy of the resulting entity (live or just
        historized), or None if the event was buffered or discarded.
        """
        if event.kind is not EventKind.REPLACED and not event.entity_id:
            _EVENTS_DROPPED_TOTAL.labels(self.domain, "malformed").inc()
            logger.warning(
                "Dropping event without entity key",
                domain=self.domain,
                event_name=event.event_name,
                kind=event.kind.value,
            )
            return None

        with self._lock:
            if self._bootstrapping:
                self._pending.append(event)
                return None
            result = self._apply_locked(event)
            self._refresh_gauges()
            return result

    def _apply_locked(self, event: DomainEvent) -> Optional[Entity]:
        if event.kind is EventKind.REPLACED:
            self._replace_locked(event)
            _EVENTS_APPLIED_TOTAL.labels(self.domain, event.kind.value).inc()
            return None

        entity_id = str(event.entity_id)
        now = self._clock()
        current = self._live.get(entity_id)

        if current is None:
            if event.kind is EventKind.REMOVED:
                _EVENTS_DROPPED_TOTAL.labels(self.domain, "unknown_removal").inc()
                logger.warning(
                    "Removal for unknown entity ignored",
                    domain=self.domain,
                    entity_id=entity_id,
                    event_name=event.event_name,
                )
                return None
            current = Entity(
                entity_id=entity_id,
                status=event.status,
                data=copy.deepcopy(dict(event.fields)),
                observed_at=now,
            )
            if event.kind is not EventKind.CREATED:
                logger.debug(
                    "Synthesized entity from update event",
                    domain=self.domain,
                    entity_id=entity_id,
                    event_name=event.event_name,
                )
            self._live[entity_id] = current
            before = None
        else:
            before = (current.status, copy.deepcopy(current.data))
            if event.deep_merge_keys:
                nested = {k: v for k, v in event.fields.items() if k in event.deep_merge_keys}
                flat = {k: v for k, v in event.fields.items() if k not in event.deep_merge_keys}
                current.data.update(copy.deepcopy(flat))
                current.data = _deep_merge(current.data, nested)
            else:
                current.data.update(copy.deepcopy(dict(event.fields)))
            # Re-creation keeps the status already known (duplicate delivery guard).
            if event.status is not None and not (
                event.kind is EventKind.CREATED and current.status is not None
            ):
                current.status = event.status

        if event.stamp_field and current.data.get(event.stamp_field) is None:
            current.data[event.stamp_field] = event.occurred_at or now
        if before is None or event.kind is EventKind.REMOVED or before != (current.status, current.data):
            current.updated_at = now
        self._version += 1
        _EVENTS_APPLIED_TOTAL.labels(self.domain, event.kind.value).inc()

        if event.kind is EventKind.REMOVED or self.is_terminal(current.status):
            self._evict_locked(current)
        return current.copy()

    def _replace_locked(self, event: DomainEvent) -> None:
        now = self._clock()
        fresh: Dict[str, Entity] = {}
        for row in event.rows:
            entity = row.copy()
            previous = self._live.get(entity.entity_id)
            if previous is not None:
                entity.observed_at = previous.observed_at
            entity.updated_at = now
            if self.is_terminal(entity.status):
                if entity.entity_id not in self._history:
                    self._history.push(entity)
                continue
            fresh[entity.entity_id] = entity
        self._live = fresh
        self._version += 1
        logger.debug(
            "Live table replaced from push",
            domain=self.domain,
            live=len(fresh),
            event_name=event.event_name,
        )

    def _evict_locked(self, entity: Entity) -> None:
        self._live.pop(entity.entity_id, None)
        self._history.push(entity)
        logger.debug(
            "Entity moved to history",
            domain=self.domain,
            entity_id=entity.entity_id,
            status=entity.status,
            history=len(self._history),
        )

    # ------------------------------------------------------------- recompute

    def recompute(self, derive: DeriveFn) -> int:
        """
        Merge derived fields into every live entity (periodic tick).

        Status, first-observation time and lifecycle stamps returned by
        ``derive`` are ignored; only plain fields change.
        """
        with self._lock:
            now = self._clock()
            changed = 0
            for entity in self._live.values():
                derived = derive(entity, now) or {}
                for key, value in derived.items():
                    if key == "status" or key.endswith("At"):
                        continue
                    if entity.data.get(key) != value:
                        entity.data[key] = value
                        changed += 1
            if changed:
                self._version += 1
            return changed

    # ------------------------------------------------------------------ reset

    def clear(self) -> None:
        with self._lock:
            self._live.clear()
            self._history.clear()
            self._pending.clear()
            self._bootstrapping = False
            self._version += 1
            self._refresh_gauges()
            logger.info("Domain table cleared", domain=self.domain)

    def _refresh_gauges(self) -> None:
        _LIVE_ENTITIES.labels(self.domain).set(len(self._live))
        _HISTORY_ENTITIES.labels(self.domain).set(len(self._history))
