# tests/conftest.py
import pytest
from unittest.mock import AsyncMock

from fieldsync.core.config import Settings
from fieldsync.core.connectivity import ConnectivityMonitor
from fieldsync.core.storage import MemoryKeyValueStore
from fieldsync.models.queue import RetryPolicy
from fieldsync.services.cache import OfflineCacheService
from fieldsync.services.sync_queue import SyncQueueService


class FakeClock:
    """Controllable epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backing():
    """Dict shared by every store built in a test, to simulate restarts."""
    return {}


@pytest.fixture
def store(backing):
    return MemoryKeyValueStore(backing)


@pytest.fixture
def monitor():
    """Monitor without a probe; tests drive it with set_online()."""
    return ConnectivityMonitor()


@pytest.fixture
def retry_policy():
    return RetryPolicy(delay=0)


@pytest.fixture
def cache(store, monitor, clock):
    return OfflineCacheService(store, monitor, clock=clock)


@pytest.fixture
def queue(store, monitor, retry_policy, clock):
    return SyncQueueService(store, monitor, retry_policy=retry_policy, clock=clock)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        storage_backend="memory",
        storage_url="sqlite+aiosqlite:///:memory:",
        api_base_url="http://api.test/",
        connectivity_probe_url="http://api.test/api/health",
        sync_replay_delay=0,
    )


@pytest.fixture
def api():
    """API client double; every method is an AsyncMock."""
    client = AsyncMock()
    client.get_farmers.return_value = [
        {"id": "1", "firstName": "Amina", "lastName": "Bello", "phone": "08030000001",
         "state": "Kano", "clusterId": "c1", "status": "active"},
        {"id": "2", "firstName": "Chinedu", "lastName": "Okafor", "nin": "12345678901",
         "state": "Enugu", "clusterId": "c2", "status": "inactive"},
    ]
    client.get_farms_for_farmer.return_value = [{"id": "f1", "farmerId": "1", "farmSize": 2.5}]
    client.get_all_farms.return_value = [{"id": "f1", "farmerId": "1"}, {"id": "f2", "farmerId": "2"}]
    client.get_clusters.return_value = [
        {"id": "c1", "title": "North", "clusterLeadFirstName": "Musa",
         "clusterLeadLastName": "Ali", "_count": {"farmers": 12}},
        {"_id": "c2", "title": "East"},
    ]
    return client
