"""Dependency injection container for the offline layer."""

from dependency_injector import containers, providers

from fieldsync.core.config import Settings
from fieldsync.core.connectivity import ConnectivityMonitor, HttpReachabilityProbe
from fieldsync.core.storage import create_store
from fieldsync.models.queue import RetryPolicy
from fieldsync.services.api_client import FieldApiClient
from fieldsync.services.cache import OfflineCacheService
from fieldsync.services.stores import ClusterStore, FarmerStore, FarmStore
from fieldsync.services.sync_queue import SyncQueueService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Durable key-value store (SQLite by default)
    store = providers.Singleton(
        create_store,
        settings=settings
    )

    # Connectivity
    probe = providers.Singleton(
        HttpReachabilityProbe,
        url=settings.provided.connectivity_probe_url,
        timeout=settings.provided.connectivity_probe_timeout
    )

    connectivity = providers.Singleton(
        ConnectivityMonitor,
        probe=probe,
        probe_interval=settings.provided.connectivity_probe_interval
    )

    # Remote API
    api_client = providers.Singleton(
        FieldApiClient,
        settings=settings
    )

    # Offline core
    retry_policy = providers.Singleton(
        RetryPolicy.from_settings,
        settings=settings
    )

    cache = providers.Singleton(
        OfflineCacheService,
        store=store,
        connectivity=connectivity
    )

    sync_queue = providers.Singleton(
        SyncQueueService,
        store=store,
        connectivity=connectivity,
        retry_policy=retry_policy,
        done_retention=settings.provided.sync_done_retention
    )

    # Entity stores
    farmer_store = providers.Factory(
        FarmerStore,
        cache=cache,
        queue=sync_queue,
        api=api_client,
        connectivity=connectivity,
        settings=settings
    )

    farm_store = providers.Factory(
        FarmStore,
        cache=cache,
        queue=sync_queue,
        api=api_client,
        connectivity=connectivity,
        settings=settings
    )

    cluster_store = providers.Factory(
        ClusterStore,
        cache=cache,
        queue=sync_queue,
        api=api_client,
        connectivity=connectivity,
        settings=settings
    )


# Global container instance
container = Container()
