"""Centralized constants for storage keys, cache keys and entity types.

Single source of truth for every key written to the local key-value store,
so the cache and sync queue never collide on a key.
"""

from typing import FrozenSet

# =============================================================================
# STORAGE KEYS (internal bookkeeping)
# =============================================================================

CACHE_REGISTRY_KEY = "@cache_registry"        # JSON list of every cache key written
CACHE_LAST_SYNC_KEY = "@cache_last_sync"      # JSON object resource -> epoch seconds

QUEUE_OPERATIONS_KEY = "@offline_operations"  # JSON list of queued operations
QUEUE_LAST_SYNC_KEY = "@last_sync"            # epoch seconds of last replay pass

# =============================================================================
# CACHE KEYS (per logical resource)
# =============================================================================

FARMERS_LIST_KEY = "farmers-list"
ALL_FARMS_KEY = "farms-all"
CLUSTERS_DROPDOWN_KEY = "clusters-dropdown"


def farms_for_farmer_key(farmer_id: str) -> str:
    """Cache key for the farms belonging to one farmer."""
    return f"farms-for-farmer-{farmer_id}"


# =============================================================================
# ENTITY TYPES (resolve remote writers together with the operation kind)
# =============================================================================

ENTITY_FARM = "farm"
ENTITY_FARMER = "farmer"
ENTITY_CLUSTER = "cluster"

ENTITY_TYPES: FrozenSet[str] = frozenset([
    ENTITY_FARM,
    ENTITY_FARMER,
    ENTITY_CLUSTER,
])
