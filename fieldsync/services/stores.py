"""Entity stores: the screen-facing read/write API over cache, queue and API.

Reads go through the cache with a per-resource key and never raise for
offline conditions; the result carries a state the UI can render
(fresh data, offline data, nothing available).

Writes try the API when online and fall back to the sync queue when offline
or when the call fails, so a form submission is never lost.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

from fieldsync.constants import (
    ALL_FARMS_KEY,
    CLUSTERS_DROPDOWN_KEY,
    ENTITY_CLUSTER,
    ENTITY_FARM,
    ENTITY_FARMER,
    FARMERS_LIST_KEY,
    farms_for_farmer_key,
)
from fieldsync.core.config import Settings
from fieldsync.core.connectivity import ConnectivityMonitor
from fieldsync.core.exceptions import NoCachedData, RemoteFetchFailed
from fieldsync.core.logging import get_logger
from fieldsync.models.entities import (
    Cluster,
    ClusterOption,
    Farm,
    Farmer,
    ReadResult,
    ReadState,
    WriteResult,
    WriteStatus,
)
from fieldsync.models.queue import OperationKind, OperationStatus, QueuedOperation
from fieldsync.services.api_client import FieldApiClient
from fieldsync.services.cache import CacheSource, OfflineCacheService
from fieldsync.services.sync_queue import SyncQueueService

logger = get_logger(__name__)

_FRESH_SOURCES = frozenset([CacheSource.NETWORK, CacheSource.CACHE])


class EntityStore:
    """Shared read/write plumbing for the entity stores."""

    entity_type: str = ""

    def __init__(self, cache: OfflineCacheService, queue: SyncQueueService,
                 api: FieldApiClient, connectivity: ConnectivityMonitor,
                 settings: Settings):
        self.cache = cache
        self.queue = queue
        self.api = api
        self.connectivity = connectivity
        self.settings = settings

    async def _read(self, key: str, remote_fetch: Callable[[], Awaitable[Any]],
                    ttl_ms: Optional[int], force_refresh: bool = False) -> ReadResult:
        try:
            result = await self.cache.fetch_with_source(key, remote_fetch, ttl_ms, force_refresh)
        except (NoCachedData, RemoteFetchFailed) as e:
            logger.info("No data available", key=key, error=str(e))
            return ReadResult(data=None, state=ReadState.NO_DATA, error=str(e))

        state = ReadState.FRESH if result.source in _FRESH_SOURCES else ReadState.OFFLINE_DATA
        return ReadResult(data=result.payload, state=state, source=result.source)

    async def _write(self, kind: OperationKind, payload: Dict[str, Any],
                     invalidate: List[str]) -> WriteResult:
        if not self.connectivity.currently_online():
            operation = await self.queue.enqueue(kind, self.entity_type, payload)
            logger.info("Saved offline", entity_type=self.entity_type,
                       kind=kind.value, operation_id=operation.id)
            return WriteResult(
                status=WriteStatus.QUEUED,
                data=payload,
                operation_id=operation.id,
                message="No internet connection. Saved locally and will sync when you're back online.",
            )

        try:
            writer = self.queue.get_writer(self.entity_type, kind)
            response = await writer(payload)
        except Exception as e:
            operation = await self.queue.enqueue(kind, self.entity_type, payload)
            logger.warning("Online write failed, saved offline",
                          entity_type=self.entity_type, kind=kind.value,
                          operation_id=operation.id, error=str(e))
            return WriteResult(
                status=WriteStatus.QUEUED,
                data=payload,
                operation_id=operation.id,
                message="Unable to reach server. Saved locally and will sync when connection is restored.",
            )

        for key in invalidate:
            await self.cache.clear_cache(key)
        return WriteResult(status=WriteStatus.SYNCED, data=response)


class FarmerStore(EntityStore):
    entity_type = ENTITY_FARMER

    async def load_farmers(self, force_refresh: bool = False) -> ReadResult:
        return await self._read(FARMERS_LIST_KEY, self.api.get_farmers,
                                self.settings.cache_farmers_ttl_ms, force_refresh)

    async def search_farmers(self, query: str) -> ReadResult:
        """Search the cached farmer list; works the same offline."""
        result = await self.load_farmers()
        if result.state == ReadState.NO_DATA:
            return result
        return result.model_copy(update={"data": self.filter_farmers(result.items, search=query)})

    @staticmethod
    def filter_farmers(farmers: List[Dict[str, Any]], state: Optional[str] = None,
                       cluster: Optional[str] = None, status: Optional[str] = None,
                       search: Optional[str] = None) -> List[Dict[str, Any]]:
        """Local filtering of a farmer list."""
        filtered = []
        for raw in farmers:
            farmer = Farmer.model_validate(raw)
            if state and farmer.state != state:
                continue
            if cluster and farmer.cluster_id != cluster:
                continue
            if status and farmer.status != status:
                continue
            if search and not farmer.matches(search):
                continue
            filtered.append(raw)
        return filtered

    @staticmethod
    def farmers(result: ReadResult) -> List[Farmer]:
        return [Farmer.model_validate(item) for item in result.items]

    async def add_farmer(self, farmer: Dict[str, Any]) -> WriteResult:
        return await self._write(OperationKind.CREATE, farmer, [FARMERS_LIST_KEY])

    async def update_farmer(self, farmer: Dict[str, Any]) -> WriteResult:
        return await self._write(OperationKind.UPDATE, farmer, [FARMERS_LIST_KEY])

    async def delete_farmer(self, farmer_id: str) -> WriteResult:
        return await self._write(OperationKind.DELETE, {"id": farmer_id},
                                 [FARMERS_LIST_KEY, farms_for_farmer_key(farmer_id)])


class FarmStore(EntityStore):
    entity_type = ENTITY_FARM

    async def load_farms(self, farmer_id: str, force_refresh: bool = False) -> ReadResult:
        return await self._read(
            farms_for_farmer_key(farmer_id),
            lambda: self.api.get_farms_for_farmer(farmer_id),
            self.settings.cache_farms_ttl_ms,
            force_refresh,
        )

    async def load_all_farms(self, force_refresh: bool = False) -> ReadResult:
        return await self._read(ALL_FARMS_KEY, self.api.get_all_farms,
                                self.settings.cache_farms_ttl_ms, force_refresh)

    async def create_farm(self, farmer_id: str, farm: Dict[str, Any],
                          farmer: Optional[Dict[str, Any]] = None) -> WriteResult:
        """Create a farm for a farmer.

        ``farmer`` is display info kept with a queued farm so a sync screen
        can show whose farm is waiting; it is not sent to the API.
        """
        payload = dict(farm, farmerId=farmer_id)
        if farmer:
            payload["_farmer"] = farmer
        return await self._write(OperationKind.CREATE, payload,
                                 [farms_for_farmer_key(farmer_id), ALL_FARMS_KEY])

    async def update_farm(self, farm: Dict[str, Any]) -> WriteResult:
        invalidate = [ALL_FARMS_KEY]
        farmer_id = farm.get("farmerId")
        if farmer_id:
            invalidate.append(farms_for_farmer_key(farmer_id))
        return await self._write(OperationKind.UPDATE, farm, invalidate)

    async def delete_farm(self, farm_id: str, farmer_id: Optional[str] = None) -> WriteResult:
        invalidate = [ALL_FARMS_KEY]
        if farmer_id:
            invalidate.append(farms_for_farmer_key(farmer_id))
        return await self._write(OperationKind.DELETE, {"id": farm_id}, invalidate)

    @staticmethod
    def farms(result: ReadResult) -> List[Farm]:
        return [Farm.model_validate(item) for item in result.items]

    async def pending_farms(self, farmer_id: Optional[str] = None) -> List[QueuedOperation]:
        """Queued farm creations not yet synced, optionally for one farmer."""
        operations = await self.queue.get_operations(entity_type=ENTITY_FARM)
        return [
            op for op in operations
            if op.kind == OperationKind.CREATE
            and op.status != OperationStatus.DONE
            and (farmer_id is None or op.payload.get("farmerId") == farmer_id)
        ]


class ClusterStore(EntityStore):
    entity_type = ENTITY_CLUSTER

    async def _fetch_dropdown(self) -> List[Dict[str, Any]]:
        clusters = await self.api.get_clusters()
        return [Cluster.model_validate(c).to_option().model_dump() for c in clusters]

    async def get_clusters_for_dropdown(self, force_refresh: bool = False) -> ReadResult:
        """Clusters formatted as dropdown options, cached for a week."""
        return await self._read(CLUSTERS_DROPDOWN_KEY, self._fetch_dropdown,
                                self.settings.cache_clusters_ttl_ms, force_refresh)

    @staticmethod
    def options(result: ReadResult) -> List[ClusterOption]:
        return [ClusterOption.model_validate(item) for item in result.items]

    async def create_cluster(self, cluster: Dict[str, Any]) -> WriteResult:
        return await self._write(OperationKind.CREATE, cluster, [CLUSTERS_DROPDOWN_KEY])

    async def update_cluster(self, cluster: Dict[str, Any]) -> WriteResult:
        return await self._write(OperationKind.UPDATE, cluster, [CLUSTERS_DROPDOWN_KEY])


def register_default_writers(queue: SyncQueueService, api: FieldApiClient) -> None:
    """Wire every (entity type, kind) pair to its API call."""
    writers = {
        (ENTITY_FARMER, OperationKind.CREATE): api.create_farmer,
        (ENTITY_FARMER, OperationKind.UPDATE): api.update_farmer,
        (ENTITY_FARMER, OperationKind.DELETE): api.delete_farmer,
        (ENTITY_FARM, OperationKind.CREATE): _without_display_info(api.create_farm),
        (ENTITY_FARM, OperationKind.UPDATE): api.update_farm,
        (ENTITY_FARM, OperationKind.DELETE): api.delete_farm,
        (ENTITY_CLUSTER, OperationKind.CREATE): api.create_cluster,
        (ENTITY_CLUSTER, OperationKind.UPDATE): api.update_cluster,
    }
    for (entity_type, kind), writer in writers.items():
        queue.register_writer(entity_type, kind, writer)
    logger.debug("Registered remote writers", count=len(writers))


def _without_display_info(call: Callable[[Dict[str, Any]], Awaitable[Any]]):
    async def writer(payload: Dict[str, Any]) -> Any:
        return await call({k: v for k, v in payload.items() if k != "_farmer"})
    return writer
