from .adapters import DomainAdapter, EventBinding, build_adapters
from .sync import DomainSync

__all__ = [
    'DomainAdapter',
    'DomainSync',
    'EventBinding',
    'build_adapters',
]
