"""Application lifecycle for the offline layer.

Starts services in dependency order (store, API client, connectivity, sync
queue) and stops them in reverse. Embedding code either calls
``startup()``/``shutdown()`` or uses the ``lifespan()`` context manager.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from fieldsync.core.container import Container, container as default_container
from fieldsync.core.logging import configure_logging, get_logger
from fieldsync.services.stores import register_default_writers

logger = get_logger(__name__)


class OfflineApp:
    """Owns the container and the start/stop order of its services."""

    def __init__(self, container: Optional[Container] = None,
                 configure_logs: bool = True):
        self.container = container or default_container
        self.settings = self.container.settings()
        if configure_logs:
            configure_logging(self.settings)
        self._started = False

    @property
    def cache(self):
        return self.container.cache()

    @property
    def sync_queue(self):
        return self.container.sync_queue()

    @property
    def connectivity(self):
        return self.container.connectivity()

    @property
    def farmers(self):
        return self.container.farmer_store()

    @property
    def farms(self):
        return self.container.farm_store()

    @property
    def clusters(self):
        return self.container.cluster_store()

    async def startup(self) -> None:
        if self._started:
            return
        logger.info("Starting offline layer", storage_backend=self.settings.storage_backend)

        await self.container.store().startup()
        await self.container.api_client().startup()
        register_default_writers(self.sync_queue, self.container.api_client())

        # Queue subscribes before the first reading so a reconnect right after
        # startup is not missed; the first observation never triggers a replay
        await self.sync_queue.start()
        await self.connectivity.start()

        self._started = True
        logger.info("Offline layer started",
                   online=self.connectivity.state,
                   pending=await self.sync_queue.pending_count())

    async def shutdown(self) -> None:
        if not self._started:
            return
        await self.connectivity.stop()
        await self.sync_queue.stop()
        await self.cache.shutdown()
        await self.container.api_client().shutdown()
        await self.container.store().shutdown()
        self._started = False
        logger.info("Offline layer shutdown complete")

    @asynccontextmanager
    async def lifespan(self) -> AsyncIterator["OfflineApp"]:
        await self.startup()
        try:
            yield self
        finally:
            await self.shutdown()

    async def health(self) -> Dict[str, Any]:
        """Status snapshot for a diagnostics screen."""
        status = await self.sync_queue.get_sync_status()
        return {
            "status": "OK" if self._started else "STOPPED",
            "online": self.connectivity.currently_online(),
            "storage_backend": self.settings.storage_backend,
            "retry_policy": self.sync_queue.retry_policy.to_dict(),
            "sync": {
                "pending": status.pending,
                "in_flight": status.in_flight,
                "failed": status.failed,
                "last_sync": status.last_sync,
            },
            "cache": await self.cache.get_cache_stats(),
            "timestamp": datetime.now().isoformat(),
        }
