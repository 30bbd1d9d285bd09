"""Offline services package.

- OfflineCacheService: read-through cache with stale fallback
- SyncQueueService: durable write queue replayed on reconnect
- Entity stores: screen-facing reads and writes built on both
"""

from .cache import CacheResult, CacheSource, OfflineCacheService
from .sync_queue import SyncQueueService
from .api_client import FieldApiClient
from .stores import (
    ClusterStore,
    EntityStore,
    FarmStore,
    FarmerStore,
    register_default_writers,
)

__all__ = [
    # Cache
    "CacheResult",
    "CacheSource",
    "OfflineCacheService",
    # Sync queue
    "SyncQueueService",
    # Remote API
    "FieldApiClient",
    # Stores
    "ClusterStore",
    "EntityStore",
    "FarmStore",
    "FarmerStore",
    "register_default_writers",
]
