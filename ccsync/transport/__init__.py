from .connection import ConnectionHandle, ConnectionManager, Credentials
from .snapshot import SnapshotLoader

__all__ = [
    'ConnectionHandle',
    'ConnectionManager',
    'Credentials',
    'SnapshotLoader',
]
