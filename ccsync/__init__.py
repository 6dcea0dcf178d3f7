"""Real-time state synchronization core for a contact-center dashboard."""

from .session import SyncSession
from .transport import ConnectionManager, Credentials, SnapshotLoader

__version__ = "0.1.0"

__all__ = [
    'ConnectionManager',
    'Credentials',
    'SnapshotLoader',
    'SyncSession',
]
