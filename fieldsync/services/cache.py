"""Offline-first cache service.

Fetch policy for a named resource:
- Offline: serve whatever is cached, however old
- Online with a fresh entry: serve it and refresh in the background
- Otherwise: fetch, store, return; on failure fall back to any cached entry

Entries live in the key-value store, one key per resource. A registry key
tracks every resource key written so stats and ``clear_all`` cover keys
built at runtime (e.g. ``farms-for-farmer-42``).
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from fieldsync.constants import CACHE_LAST_SYNC_KEY, CACHE_REGISTRY_KEY
from fieldsync.core.connectivity import ConnectivityMonitor
from fieldsync.core.exceptions import NoCachedData, RemoteFetchFailed
from fieldsync.core.logging import get_logger, log_cache_operation
from fieldsync.core.storage import KeyValueStore
from fieldsync.models.cache import CacheEntry

logger = get_logger(__name__)

RemoteFetch = Callable[[], Awaitable[Any]]


class CacheSource:
    """Where a fetched payload came from."""
    NETWORK = "network"            # remote fetch just succeeded
    CACHE = "cache"                # fresh cache hit while online
    STALE_FALLBACK = "stale_cache"  # online fetch failed, served cached entry
    OFFLINE = "offline_cache"      # offline, served cached entry


@dataclass
class CacheResult:
    payload: Any
    source: str
    stored_at: Optional[float] = None


class OfflineCacheService:
    """Read-through cache with lazy expiry and network-aware refresh."""

    def __init__(self, store: KeyValueStore, connectivity: ConnectivityMonitor,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.connectivity = connectivity
        self.clock = clock
        self._registry_lock = asyncio.Lock()
        self._last_sync_lock = asyncio.Lock()
        self._refreshing: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # FETCH WITH CACHE
    # =========================================================================

    async def fetch_with_cache(self, key: str, remote_fetch: RemoteFetch,
                               ttl_ms: Optional[int] = None,
                               force_refresh: bool = False) -> Any:
        """Serve a resource from cache or network.

        Args:
            key: Cache key for the logical resource
            remote_fetch: Zero-argument coroutine function returning the payload
            ttl_ms: Expiry in milliseconds, None for no expiry
            force_refresh: Skip the fresh-cache shortcut (pull to refresh)

        Returns:
            The payload

        Raises:
            NoCachedData: offline and nothing cached for the key
            RemoteFetchFailed: online, fetch failed and nothing cached
        """
        result = await self.fetch_with_source(key, remote_fetch, ttl_ms, force_refresh)
        return result.payload

    async def fetch_with_source(self, key: str, remote_fetch: RemoteFetch,
                                ttl_ms: Optional[int] = None,
                                force_refresh: bool = False) -> CacheResult:
        """Same as ``fetch_with_cache`` but reports where the payload came from."""
        _validate_key(key)
        if ttl_ms is not None and ttl_ms < 0:
            raise ValueError("ttl_ms must be non-negative")

        if not self.connectivity.currently_online():
            entry = await self._read_entry(key)
            if entry is None:
                log_cache_operation(logger, "fetch_offline", key, hit=False)
                raise NoCachedData(key)
            log_cache_operation(logger, "fetch_offline", key, hit=True,
                                fresh=entry.is_fresh(self.clock(), ttl_ms))
            return CacheResult(entry.payload, CacheSource.OFFLINE, entry.stored_at)

        if not force_refresh:
            entry = await self._read_entry(key)
            if entry is not None and entry.is_fresh(self.clock(), ttl_ms):
                log_cache_operation(logger, "fetch", key, hit=True)
                self._schedule_refresh(key, remote_fetch, ttl_ms)
                return CacheResult(entry.payload, CacheSource.CACHE, entry.stored_at)

        try:
            payload = await remote_fetch()
        except Exception as e:
            entry = await self._read_entry(key)
            if entry is not None:
                logger.warning("Remote fetch failed, using cached data",
                              key=key, error=str(e),
                              age_ms=round(entry.age_ms(self.clock())))
                return CacheResult(entry.payload, CacheSource.STALE_FALLBACK, entry.stored_at)
            logger.error("Remote fetch failed with nothing cached", key=key, error=str(e))
            raise RemoteFetchFailed(key, e) from e

        entry = await self._store_fetched(key, payload, ttl_ms)
        return CacheResult(payload, CacheSource.NETWORK, entry.stored_at)

    def _schedule_refresh(self, key: str, remote_fetch: RemoteFetch,
                          ttl_ms: Optional[int]) -> None:
        """Refresh in the background without blocking; one task per key."""
        if key in self._refreshing:
            return
        task = asyncio.create_task(self._refresh_in_background(key, remote_fetch, ttl_ms))
        self._refreshing[key] = task
        task.add_done_callback(lambda _: self._refreshing.pop(key, None))

    async def _refresh_in_background(self, key: str, remote_fetch: RemoteFetch,
                                     ttl_ms: Optional[int]) -> None:
        try:
            payload = await remote_fetch()
            await self._store_fetched(key, payload, ttl_ms)
            logger.debug("Background refresh completed", key=key)
        except Exception as e:
            logger.warning("Background refresh failed", key=key, error=str(e))

    async def _store_fetched(self, key: str, payload: Any,
                             ttl_ms: Optional[int]) -> CacheEntry:
        entry = await self._write_entry(key, payload, ttl_ms)
        await self.update_last_sync(key)
        return entry

    async def wait_for_refreshes(self) -> None:
        """Wait for every in-progress background refresh."""
        while self._refreshing:
            await asyncio.gather(*list(self._refreshing.values()), return_exceptions=True)

    async def prefetch(self, resources: Dict[str, Tuple[RemoteFetch, Optional[int]]]) -> List[str]:
        """Warm the cache for several resources at once.

        Args:
            resources: key -> (remote_fetch, ttl_ms)

        Returns:
            Keys that could not be refreshed (all of them when offline)
        """
        if not self.connectivity.currently_online():
            logger.info("Offline, skipping prefetch", count=len(resources))
            return list(resources)

        failed = []
        for key, (remote_fetch, ttl_ms) in resources.items():
            try:
                await self.fetch_with_cache(key, remote_fetch, ttl_ms, force_refresh=True)
            except Exception as e:
                logger.warning("Prefetch failed", key=key, error=str(e))
                failed.append(key)
        logger.info("Prefetch completed", total=len(resources), failed=len(failed))
        return failed

    # =========================================================================
    # DIRECT CACHE ACCESS (no network)
    # =========================================================================

    async def set_cache(self, key: str, payload: Any, ttl_ms: Optional[int] = None) -> CacheEntry:
        """Write an entry with ``stored_at = now``."""
        _validate_key(key)
        return await self._write_entry(key, payload, ttl_ms)

    async def get_cache(self, key: str, ttl_ms_override: Optional[int] = None) -> Optional[Any]:
        """Return the payload only if the entry is fresh."""
        entry = await self._read_entry(key)
        if entry is None:
            log_cache_operation(logger, "get", key, hit=False)
            return None
        if not entry.is_fresh(self.clock(), ttl_ms_override):
            log_cache_operation(logger, "get", key, hit=False, expired=True)
            return None
        log_cache_operation(logger, "get", key, hit=True)
        return entry.payload

    async def get_stale(self, key: str) -> Optional[Any]:
        """Return the payload regardless of age."""
        entry = await self._read_entry(key)
        return entry.payload if entry else None

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        return await self._read_entry(key)

    async def clear_cache(self, key: str) -> None:
        await self.store.remove(key)
        async with self._registry_lock:
            keys = await self._known_keys()
            if key in keys:
                keys.remove(key)
                await self.store.set(CACHE_REGISTRY_KEY, json.dumps(keys))
        log_cache_operation(logger, "delete", key)

    async def clear_all(self) -> None:
        """Remove every cache entry and the cache bookkeeping keys."""
        async with self._registry_lock:
            keys = await self._known_keys()
            await self.store.remove_many(keys + [CACHE_REGISTRY_KEY, CACHE_LAST_SYNC_KEY])
        logger.info("Cleared all caches", count=len(keys))

    async def get_cache_stats(self) -> Dict[str, Dict[str, Any]]:
        """Per-key size, age and item count. Diagnostics only."""
        now = self.clock()
        stats = {}
        for key in await self._known_keys():
            raw = await self.store.get(key)
            if raw is None:
                continue
            entry = self._decode(key, raw)
            if entry is None:
                continue
            stats[key] = {
                "size": len(raw),
                "stored_at": entry.stored_at,
                "age_ms": round(entry.age_ms(now)),
                "item_count": entry.item_count,
                "fresh": entry.is_fresh(now),
            }
        return stats

    # =========================================================================
    # LAST SYNC BOOKKEEPING
    # =========================================================================

    async def update_last_sync(self, resource: str) -> None:
        """Record when a resource was last refreshed from the network."""
        async with self._last_sync_lock:
            last_sync = await self._load_last_sync()
            last_sync[resource] = self.clock()
            await self.store.set(CACHE_LAST_SYNC_KEY, json.dumps(last_sync))

    async def get_last_sync(self, resource: str) -> Optional[float]:
        return (await self._load_last_sync()).get(resource)

    async def _load_last_sync(self) -> Dict[str, float]:
        raw = await self.store.get(CACHE_LAST_SYNC_KEY)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable last-sync record")
            return {}
        return data if isinstance(data, dict) else {}

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _write_entry(self, key: str, payload: Any, ttl_ms: Optional[int]) -> CacheEntry:
        entry = CacheEntry(key=key, payload=payload, stored_at=self.clock(), ttl_ms=ttl_ms)
        await self.store.set(key, entry.to_json())
        await self._register_key(key)
        log_cache_operation(logger, "set", key, ttl_ms=ttl_ms)
        return entry

    async def _read_entry(self, key: str) -> Optional[CacheEntry]:
        raw = await self.store.get(key)
        if raw is None:
            return None
        return self._decode(key, raw)

    def _decode(self, key: str, raw: str) -> Optional[CacheEntry]:
        try:
            return CacheEntry.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable cache entry", key=key, error=str(e))
            return None

    async def _known_keys(self) -> List[str]:
        raw = await self.store.get(CACHE_REGISTRY_KEY)
        if not raw:
            return []
        try:
            keys = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable cache registry")
            return []
        return list(keys) if isinstance(keys, list) else []

    async def _register_key(self, key: str) -> None:
        async with self._registry_lock:
            keys = await self._known_keys()
            if key not in keys:
                keys.append(key)
                await self.store.set(CACHE_REGISTRY_KEY, json.dumps(keys))

    async def shutdown(self) -> None:
        """Cancel outstanding background refreshes."""
        tasks = list(self._refreshing.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refreshing.clear()


def _validate_key(key: str) -> None:
    if not isinstance(key, str) or not key:
        raise ValueError("cache key must be a non-empty string")
