"""
Core reconciliation components.

The engine owns one live table and one history per domain; aggregates and
history are read-only consumers of it.
"""

from .aggregates import AggregateSnapshot, AggregateSpec, compute_aggregates
from .engine import ReconciliationEngine
from .history import BoundedHistory
from .models import ConnectionState, DomainEvent, Entity, EventKind, TableView

__all__ = [
    'AggregateSnapshot',
    'AggregateSpec',
    'BoundedHistory',
    'ConnectionState',
    'DomainEvent',
    'Entity',
    'EventKind',
    'ReconciliationEngine',
    'TableView',
    'compute_aggregates',
]
