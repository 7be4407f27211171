"""
The store module provides a central, type-safe repository for HelmRelease
resources, their inputs (ConfigMaps and Secrets) and their status.

- Uses NamedResource as the key for all objects.
- Every write bumps a resource version, status writes are optimistic.
- StatusPatcher applies a proposed status as a conflict-retried partial update.

This abstract interface allows for various implementations (in-memory, persistent, etc.).
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore
from .patch import StatusPatcher

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "StatusPatcher",
]
