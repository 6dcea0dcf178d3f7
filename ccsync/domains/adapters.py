"""
Domain adapters.

A ``DomainAdapter`` is pure configuration for the generic reconciliation
engine: where the snapshot lives, which wire events matter and how each one
maps onto a ``DomainEvent``, which statuses are terminal, how much history to
keep, and (for the queue) a periodic re-derivation of fields.

Wire payloads name their key differently per domain (``callId``, ``_id``,
``campaignId``, ``callbackId``, ``voicemailId``); the adapter normalizes that
to ``Entity.entity_id`` so the engine never sees wire naming.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Sequence, Tuple

import structlog

from ccsync.core.aggregates import (
    AggregateSnapshot,
    AggregateSpec,
    campaign_call_stats,
    compute_aggregates,
    is_priority,
    queue_stats,
)
from ccsync.core.engine import ReconciliationEngine
from ccsync.core.models import DomainEvent, Entity, EventKind, TableView, parse_timestamp, utcnow

logger = structlog.get_logger(__name__)

CALL_TERMINAL_STATUSES = frozenset({"completed", "failed", "no-answer", "busy"})
CAMPAIGN_TERMINAL_STATUSES = frozenset({"completed", "stopped"})
QUEUE_TERMINAL_STATUSES = frozenset({"removed"})
CALLBACK_TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})
VOICEMAIL_TERMINAL_STATUSES = frozenset({"deleted"})

DEFAULT_HISTORY_CAPACITY = 50
CAMPAIGN_CALL_HISTORY_CAPACITY = 100

# Wire keys that never become entity data.
_ENVELOPE_KEYS = frozenset({"status", "timestamp"})

DeriveFn = Callable[[Entity, datetime], Mapping[str, Any]]
ScopeFn = Callable[[Mapping[str, Any]], bool]
SummaryFn = Callable[[TableView], Dict[str, Any]]


@dataclass(frozen=True)
class EventBinding:
    """How one wire event name translates into a ``DomainEvent``."""

    kind: EventKind
    id_fields: Tuple[str, ...] = ()
    status: Optional[str] = None
    default_status: Optional[str] = None
    stamp_field: Optional[str] = None
    record_key: Optional[str] = None
    rows_key: Optional[str] = None
    renames: Mapping[str, str] = field(default_factory=dict)
    defaults: Mapping[str, Any] = field(default_factory=dict)
    extra: Mapping[str, Any] = field(default_factory=dict)
    deep_merge_keys: FrozenSet[str] = frozenset()


@dataclass
class DomainAdapter:
    name: str
    endpoint: str
    snapshot_key: str
    row_id_fields: Tuple[str, ...]
    event_id_fields: Tuple[str, ...]
    terminal_statuses: FrozenSet[str]
    events: Dict[str, EventBinding]
    history_capacity: int = DEFAULT_HISTORY_CAPACITY
    default_status: Optional[str] = None
    aggregate_spec: AggregateSpec = field(default_factory=AggregateSpec)
    tick: Optional[DeriveFn] = None
    tick_interval: float = 1.0
    scope: Optional[ScopeFn] = None
    summary: Optional[SummaryFn] = None

    @property
    def event_names(self) -> Tuple[str, ...]:
        return tuple(self.events.keys())

    def build_engine(self, clock: Optional[Callable[[], datetime]] = None) -> ReconciliationEngine:
        return ReconciliationEngine(
            self.name,
            terminal_statuses=self.terminal_statuses,
            history_capacity=self.history_capacity,
            clock=clock,
        )

    # ---------------------------------------------------------- translation

    def translate(self, event_name: str, payload: Any) -> Optional[DomainEvent]:
        """
        Normalize one wire event.

        Returns None for events this domain does not bind, or that fall outside
        its scope. A payload without a usable key still yields an event (with
        ``entity_id=None``) so the engine can count and log the drop.
        """
        binding = self.events.get(event_name)
        if binding is None:
            return None
        if not isinstance(payload, Mapping):
            return DomainEvent(kind=binding.kind, entity_id=None, event_name=event_name)

        if binding.rows_key:
            rows = payload.get(binding.rows_key) or []
            entities = tuple(
                entity
                for entity in (self.entity_from_row(row) for row in rows if isinstance(row, Mapping))
                if entity is not None
            )
            return DomainEvent(
                kind=EventKind.REPLACED,
                entity_id=None,
                event_name=event_name,
                rows=entities,
            )

        record: Dict[str, Any] = dict(payload)
        if binding.record_key:
            nested = record.pop(binding.record_key, None)
            if isinstance(nested, Mapping):
                record.update(nested)

        if self.scope is not None and not self.scope(record):
            return None

        entity_id = _first_key(record, binding.id_fields or self.event_id_fields)

        status = binding.status
        if status is None:
            wire_status = record.get("status")
            status = wire_status if isinstance(wire_status, str) and wire_status else binding.default_status

        fields = {k: v for k, v in record.items() if k not in _ENVELOPE_KEYS}
        for source, target in binding.renames.items():
            if source in fields:
                fields[target] = fields.pop(source)
        for key, value in binding.defaults.items():
            if fields.get(key) is None:
                fields[key] = value
        fields.update(binding.extra)

        return DomainEvent(
            kind=binding.kind,
            entity_id=entity_id,
            fields=fields,
            status=status,
            stamp_field=binding.stamp_field,
            occurred_at=parse_timestamp(record.get("timestamp")),
            event_name=event_name,
            deep_merge_keys=binding.deep_merge_keys,
        )

    def entity_from_row(self, row: Mapping[str, Any], now: Optional[datetime] = None) -> Optional[Entity]:
        entity_id = _first_key(row, self.row_id_fields)
        if entity_id is None:
            logger.warning("Snapshot row without entity key skipped", domain=self.name)
            return None
        status = row.get("status")
        if not isinstance(status, str) or not status:
            status = self.default_status
        return Entity(
            entity_id=entity_id,
            status=status,
            data={k: v for k, v in row.items() if k != "status"},
            observed_at=now or utcnow(),
        )

    def entities_from_rows(self, rows: Sequence[Mapping[str, Any]], now: Optional[datetime] = None):
        return [e for e in (self.entity_from_row(row, now) for row in rows) if e is not None]

    # ---------------------------------------------------------------- reads

    def aggregates(self, view: TableView) -> AggregateSnapshot:
        return compute_aggregates(view.live, self.aggregate_spec, view.history)

    def summarize(self, view: TableView) -> Dict[str, Any]:
        if self.summary is not None:
            return self.summary(view)
        return self.aggregates(view).to_dict()


def _first_key(record: Mapping[str, Any], candidates: Sequence[str]) -> Optional[str]:
    for name in candidates:
        value = record.get(name)
        if value is None or isinstance(value, bool):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


# ---------------------------------------------------------------- queue tick

def queue_wait_time(entity: Entity, now: datetime) -> Dict[str, Any]:
    """Seconds since ``joinedAt`` (first observation when absent), floored."""
    joined = parse_timestamp(entity.get("joinedAt")) or entity.observed_at
    elapsed = (now - joined).total_seconds()
    return {"waitTime": max(0, int(math.floor(elapsed)))}


# ----------------------------------------------------------------- factories

def campaigns_adapter(history_capacity: Optional[int] = None) -> DomainAdapter:
    ids = ("campaignId", "_id")
    return DomainAdapter(
        name="campaigns",
        endpoint="/api/campaigns",
        snapshot_key="campaigns",
        row_id_fields=("_id", "campaignId", "id"),
        event_id_fields=ids,
        terminal_statuses=CAMPAIGN_TERMINAL_STATUSES,
        history_capacity=history_capacity or DEFAULT_HISTORY_CAPACITY,
        events={
            "campaign:started": EventBinding(EventKind.STATUS_CHANGED, status="running", stamp_field="startedAt"),
            "campaign:paused": EventBinding(EventKind.STATUS_CHANGED, status="paused", stamp_field="pausedAt"),
            "campaign:resumed": EventBinding(EventKind.STATUS_CHANGED, status="running", stamp_field="resumedAt"),
            "campaign:stopped": EventBinding(EventKind.STATUS_CHANGED, status="stopped", stamp_field="stoppedAt"),
            "campaign:completed": EventBinding(
                EventKind.STATUS_CHANGED, status="completed", stamp_field="completedAt"
            ),
            "campaign:stats:update": EventBinding(
                EventKind.STATUS_CHANGED,
                deep_merge_keys=frozenset({"statistics"}),
            ),
        },
        aggregate_spec=AggregateSpec(include_history=True),
    )


def campaign_calls_adapter(campaign_id: str, history_capacity: Optional[int] = None) -> DomainAdapter:
    if not campaign_id:
        raise ValueError("campaign_calls requires a campaign id")
    scoped_id = str(campaign_id)

    def _in_campaign(record: Mapping[str, Any]) -> bool:
        return str(record.get("campaignId")) == scoped_id

    def _summary(view: TableView) -> Dict[str, Any]:
        return campaign_call_stats(view.live, view.history)

    return DomainAdapter(
        name="campaign_calls",
        endpoint=f"/api/campaigns/{scoped_id}/calls",
        snapshot_key="calls",
        row_id_fields=("callId", "_id"),
        event_id_fields=("callId",),
        terminal_statuses=CALL_TERMINAL_STATUSES,
        history_capacity=history_capacity or CAMPAIGN_CALL_HISTORY_CAPACITY,
        events={
            "call:initiated": EventBinding(EventKind.CREATED, status="initiated", stamp_field="startedAt"),
            "call:connected": EventBinding(EventKind.STATUS_CHANGED, status="connected", stamp_field="connectedAt"),
            "call:completed": EventBinding(EventKind.STATUS_CHANGED, status="completed", stamp_field="completedAt"),
            "call:failed": EventBinding(EventKind.STATUS_CHANGED, status="failed", stamp_field="failedAt"),
            "call:status:update": EventBinding(EventKind.STATUS_CHANGED),
        },
        aggregate_spec=AggregateSpec(average_fields=("duration",), include_history=True),
        scope=_in_campaign,
        summary=_summary,
    )


def inbound_calls_adapter(history_capacity: Optional[int] = None) -> DomainAdapter:
    return DomainAdapter(
        name="inbound_calls",
        endpoint="/api/inbound/calls/active",
        snapshot_key="calls",
        row_id_fields=("_id", "callId"),
        event_id_fields=("callId", "_id"),
        terminal_statuses=CALL_TERMINAL_STATUSES,
        history_capacity=history_capacity or DEFAULT_HISTORY_CAPACITY,
        default_status="in-progress",
        events={
            "inbound:call:received": EventBinding(
                EventKind.CREATED,
                status="ringing",
                stamp_field="receivedAt",
                defaults={"direction": "inbound"},
            ),
            "inbound:call:answered": EventBinding(
                EventKind.STATUS_CHANGED,
                status="in-progress",
                stamp_field="answeredAt",
                renames={"agent": "answeredBy"},
            ),
            "inbound:call:ended": EventBinding(
                EventKind.REMOVED,
                default_status="completed",
                stamp_field="endedAt",
            ),
        },
        aggregate_spec=AggregateSpec(average_fields=("duration",), max_fields=("duration",)),
    )


def queue_adapter(history_capacity: Optional[int] = None, tick_interval: float = 1.0) -> DomainAdapter:
    def _summary(view: TableView) -> Dict[str, Any]:
        return queue_stats(view.live)

    return DomainAdapter(
        name="queue",
        endpoint="/api/inbound/queue",
        snapshot_key="queue",
        row_id_fields=("callId", "_id"),
        event_id_fields=("callId",),
        terminal_statuses=QUEUE_TERMINAL_STATUSES,
        history_capacity=history_capacity or DEFAULT_HISTORY_CAPACITY,
        default_status="waiting",
        events={
            "queue:caller:added": EventBinding(
                EventKind.CREATED,
                default_status="waiting",
                stamp_field="joinedAt",
                defaults={"waitTime": 0, "priority": "normal"},
            ),
            "queue:caller:removed": EventBinding(EventKind.REMOVED, status="removed", stamp_field="leftAt"),
            "queue:position:update": EventBinding(EventKind.POSITION_UPDATED),
            "queue:update": EventBinding(EventKind.REPLACED, rows_key="queue"),
        },
        aggregate_spec=AggregateSpec(
            average_fields=("waitTime",),
            max_fields=("waitTime",),
            flags={"priority": is_priority},
        ),
        tick=queue_wait_time,
        tick_interval=tick_interval,
        summary=_summary,
    )


def callbacks_adapter(history_capacity: Optional[int] = None) -> DomainAdapter:
    """
    Callback domain.

    ``callback:status:update`` and ``callback:cancelled`` are assumed wire
    names; the dashboard server only documents ``callback:scheduled`` and
    ``callback:due``.
    """
    return DomainAdapter(
        name="callbacks",
        endpoint="/api/callbacks",
        snapshot_key="callbacks",
        row_id_fields=("_id", "callbackId"),
        event_id_fields=("callbackId", "_id"),
        terminal_statuses=CALLBACK_TERMINAL_STATUSES,
        history_capacity=history_capacity or DEFAULT_HISTORY_CAPACITY,
        default_status="scheduled",
        events={
            "callback:scheduled": EventBinding(
                EventKind.CREATED,
                default_status="scheduled",
                record_key="callback",
                stamp_field="scheduledAt",
            ),
            "callback:due": EventBinding(
                EventKind.STATUS_CHANGED,
                status="due",
                stamp_field="dueAt",
                extra={"isDue": True},
            ),
            "callback:status:update": EventBinding(EventKind.STATUS_CHANGED),
            "callback:cancelled": EventBinding(EventKind.REMOVED, status="cancelled", stamp_field="cancelledAt"),
        },
        aggregate_spec=AggregateSpec(flags={"due": lambda e: bool(e.get("isDue"))}),
    )


def voicemail_adapter(history_capacity: Optional[int] = None) -> DomainAdapter:
    """
    Voicemail domain.

    ``voicemail:deleted`` is an assumed wire name; the dashboard server only
    documents ``voicemail:received`` and ``voicemail:transcribed``.
    """
    return DomainAdapter(
        name="voicemail",
        endpoint="/api/voicemail",
        snapshot_key="voicemails",
        row_id_fields=("_id", "voicemailId"),
        event_id_fields=("voicemailId", "_id"),
        terminal_statuses=VOICEMAIL_TERMINAL_STATUSES,
        history_capacity=history_capacity or DEFAULT_HISTORY_CAPACITY,
        default_status="new",
        events={
            "voicemail:received": EventBinding(
                EventKind.CREATED,
                default_status="new",
                record_key="voicemail",
                stamp_field="receivedAt",
            ),
            "voicemail:transcribed": EventBinding(
                EventKind.STATUS_CHANGED,
                stamp_field="transcribedAt",
                extra={"transcriptionStatus": "completed"},
            ),
            "voicemail:deleted": EventBinding(EventKind.REMOVED, status="deleted", stamp_field="deletedAt"),
        },
        aggregate_spec=AggregateSpec(
            average_fields=("duration",),
            flags={"unread": lambda e: not e.get("isRead", False)},
        ),
    )


def build_adapters(config) -> Dict[str, DomainAdapter]:
    """Adapters for every enabled domain in an ``AppConfig``."""
    factories: Dict[str, Callable[..., DomainAdapter]] = {
        "campaigns": campaigns_adapter,
        "inbound_calls": inbound_calls_adapter,
        "callbacks": callbacks_adapter,
        "voicemail": voicemail_adapter,
    }
    adapters: Dict[str, DomainAdapter] = {}
    for name in ("campaigns", "campaign_calls", "inbound_calls", "queue", "callbacks", "voicemail"):
        domain_config = config.domain(name)
        if not domain_config.enabled:
            continue
        capacity = domain_config.history_capacity
        if name == "campaign_calls":
            if not domain_config.campaign_id:
                logger.warning("campaign_calls enabled without a campaign id; skipping")
                continue
            adapters[name] = campaign_calls_adapter(domain_config.campaign_id, capacity)
        elif name == "queue":
            adapters[name] = queue_adapter(capacity, tick_interval=config.queue.tick_interval_seconds)
        else:
            adapters[name] = factories[name](capacity)
    return adapters
