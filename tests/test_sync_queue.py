"""
Tests for the sync queue: durability, replay, retry accounting and auto-sync.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from fieldsync.constants import QUEUE_OPERATIONS_KEY
from fieldsync.core.exceptions import (
    NoNetwork,
    NotFound,
    NotRetryable,
    QueueWriteFailed,
    RemoteUnavailableError,
    RemoteValidationError,
    RetryExhausted,
    StorageError,
    SyncAttemptFailed,
)
from fieldsync.core.storage import MemoryKeyValueStore
from fieldsync.models.queue import OperationKind, OperationStatus, RetryPolicy
from fieldsync.services.sync_queue import SyncQueueService


def failing_writer(error=None):
    return AsyncMock(side_effect=error or RemoteUnavailableError("server unreachable"))


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_enqueue_is_local_only(self, queue, monitor):
        writer = AsyncMock()
        queue.register_writer("farm", "create", writer)
        monitor.set_online(True)

        op = await queue.enqueue("create", "farm", {"farmSize": "2"})

        assert op.status == OperationStatus.PENDING
        assert op.attempt_count == 0
        assert op.id.startswith("op_")
        assert await queue.pending_count() == 1
        writer.assert_not_called()

    @pytest.mark.asyncio
    async def test_operations_survive_restart(self, queue, monitor, clock, backing):
        op = await queue.enqueue(OperationKind.CREATE, "farm", {"farmSize": "2"})

        restarted = SyncQueueService(MemoryKeyValueStore(backing), monitor, clock=clock)
        operations = await restarted.get_operations()

        assert [o.id for o in operations] == [op.id]
        assert operations[0].status == OperationStatus.PENDING
        assert operations[0].attempt_count == 0
        assert operations[0].payload == {"farmSize": "2"}

    @pytest.mark.asyncio
    async def test_persistence_failure_raises_queue_write_failed(self, queue, store):
        with patch.object(store, "set", new_callable=AsyncMock,
                          side_effect=StorageError("set", QUEUE_OPERATIONS_KEY, "disk full")):
            with pytest.raises(QueueWriteFailed):
                await queue.enqueue("create", "farm", {})

    @pytest.mark.asyncio
    async def test_unserializable_payload_raises_queue_write_failed(self, queue):
        with pytest.raises(QueueWriteFailed):
            await queue.enqueue("create", "farm", {"when": object()})
        assert await queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_corrupt_queue_is_not_overwritten(self, queue, store):
        await store.set(QUEUE_OPERATIONS_KEY, "{broken")
        with pytest.raises(QueueWriteFailed):
            await queue.enqueue("create", "farm", {})
        assert await store.get(QUEUE_OPERATIONS_KEY) == "{broken"

    @pytest.mark.asyncio
    async def test_filters(self, queue):
        await queue.enqueue("create", "farm", {})
        await queue.enqueue("update", "farmer", {"id": "1"})
        assert len(await queue.get_operations(entity_type="farm")) == 1
        assert len(await queue.get_operations(status=OperationStatus.PENDING)) == 2
        assert await queue.get_operations(status=OperationStatus.FAILED) == []


class TestReplayAll:

    @pytest.mark.asyncio
    async def test_successful_replay(self, queue, monitor):
        writer = AsyncMock(return_value={"id": "farm-1"})
        queue.register_writer("farm", "create", writer)
        await queue.enqueue("create", "farm", {"farmSize": "2"})
        assert await queue.pending_count() == 1

        monitor.set_online(True)
        summary = await queue.replay_all()

        assert (summary.synced_count, summary.failed_count, summary.pending_count) == (1, 0, 0)
        writer.assert_awaited_once_with({"farmSize": "2"})
        assert summary.results[0].response == {"id": "farm-1"}
        assert summary.to_dict()["results"] == [
            {"success": True, "operation_id": summary.results[0].operation_id, "error": None}
        ]
        assert await queue.get_operations() == []

    @pytest.mark.asyncio
    async def test_offline_replay_is_noop(self, queue, monitor):
        writer = AsyncMock()
        queue.register_writer("farm", "create", writer)
        await queue.enqueue("create", "farm", {})
        monitor.set_online(False)

        summary = await queue.replay_all()

        assert (summary.synced_count, summary.failed_count) == (0, 0)
        assert summary.pending_count == 1
        writer.assert_not_called()

    @pytest.mark.asyncio
    async def test_retry_ceiling(self, queue, monitor):
        writer = failing_writer()
        queue.register_writer("farm", "create", writer)
        op = await queue.enqueue("create", "farm", {})
        monitor.set_online(True)

        for _ in range(5):
            summary = await queue.replay_all()
            assert summary.failed_count == 1

        [failed] = await queue.get_operations()
        assert failed.status == OperationStatus.FAILED
        assert failed.attempt_count == 5
        assert failed.last_error == "server unreachable"
        assert isinstance(summary.results[0].error, RetryExhausted)

        summary = await queue.replay_all()
        assert (summary.synced_count, summary.failed_count, summary.pending_count) == (0, 0, 1)
        [untouched] = await queue.get_operations()
        assert untouched.id == op.id
        assert untouched.status == OperationStatus.FAILED
        assert untouched.attempt_count == 5
        assert writer.await_count == 5

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_batch(self, queue, monitor):
        queue.register_writer("farm", "create", failing_writer())
        farmer_writer = AsyncMock(return_value={})
        queue.register_writer("farmer", "create", farmer_writer)
        await queue.enqueue("create", "farm", {"n": 1})
        await queue.enqueue("create", "farmer", {"n": 2})
        monitor.set_online(True)

        summary = await queue.replay_all()

        assert (summary.synced_count, summary.failed_count, summary.pending_count) == (1, 1, 1)
        assert isinstance(summary.results[0].error, SyncAttemptFailed)
        assert not isinstance(summary.results[0].error, RetryExhausted)
        farmer_writer.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_writer_calls_never_overlap(self, queue, monitor):
        active = 0
        calls = []

        async def writer(payload):
            nonlocal active
            assert active == 0, "writer invoked concurrently"
            active += 1
            await asyncio.sleep(0.01)
            calls.append(payload["n"])
            active -= 1

        queue.register_writer("farm", "create", writer)
        for n in range(4):
            await queue.enqueue("create", "farm", {"n": n})
        monitor.set_online(True)

        summary, retried = await asyncio.gather(queue.replay_all(), queue.replay_all())

        assert calls == [0, 1, 2, 3]
        assert summary.synced_count == 4
        assert retried.synced_count == 0

    @pytest.mark.asyncio
    async def test_delay_between_operations(self, store, monitor, clock):
        queue = SyncQueueService(store, monitor, retry_policy=RetryPolicy(delay=0.5), clock=clock)
        queue.register_writer("farm", "create", AsyncMock())
        for n in range(3):
            await queue.enqueue("create", "farm", {"n": n})
        monitor.set_online(True)

        with patch("fieldsync.services.sync_queue.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await queue.replay_all()

        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_validation_failure_excluded_from_auto_replay(self, queue, monitor):
        writer = failing_writer(RemoteValidationError("farmSize is required", 422))
        queue.register_writer("farm", "create", writer)
        await queue.enqueue("create", "farm", {})
        monitor.set_online(True)

        await queue.replay_all()
        await queue.replay_all()

        [op] = await queue.get_operations()
        assert op.status == OperationStatus.FAILED
        assert op.retryable is False
        assert op.attempt_count == 1
        writer.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_writer_is_terminal(self, queue, monitor):
        await queue.enqueue("delete", "cluster", {"id": "c1"})
        monitor.set_online(True)

        summary = await queue.replay_all()

        assert summary.failed_count == 1
        [op] = await queue.get_operations()
        assert op.retryable is False
        assert op.last_error == "No remote writer registered for delete cluster"

    @pytest.mark.asyncio
    async def test_clear_all_during_batch(self, queue, monitor):
        async def writer(payload):
            await queue.clear_all()

        queue.register_writer("farm", "create", writer)
        await queue.enqueue("create", "farm", {"n": 1})
        await queue.enqueue("create", "farm", {"n": 2})
        monitor.set_online(True)

        summary = await queue.replay_all()

        assert (summary.synced_count, summary.failed_count, summary.pending_count) == (1, 0, 0)
        assert len(summary.results) == 1
        assert await queue.get_operations() == []

    @pytest.mark.asyncio
    async def test_last_sync_time_recorded(self, queue, monitor, clock):
        queue.register_writer("farm", "create", AsyncMock())
        await queue.enqueue("create", "farm", {})
        monitor.set_online(True)
        assert await queue.get_last_sync_time() is None

        await queue.replay_all()

        assert await queue.get_last_sync_time() == clock.now


class TestReplayOne:

    @pytest.mark.asyncio
    async def test_success_removes_operation(self, queue):
        queue.register_writer("farmer", "update", AsyncMock(return_value={"ok": True}))
        op = await queue.enqueue("update", "farmer", {"id": "1"})

        result = await queue.replay_one(op)

        assert result.success
        assert result.operation.status == OperationStatus.DONE
        assert await queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_failure_records_error(self, queue):
        queue.register_writer("farmer", "update", failing_writer())
        op = await queue.enqueue("update", "farmer", {"id": "1"})

        result = await queue.replay_one(op.id)

        assert not result.success
        assert result.operation.attempt_count == 1
        assert result.operation.last_error == "server unreachable"
        assert isinstance(result.error.__cause__, RemoteUnavailableError)

    @pytest.mark.asyncio
    async def test_unknown_id(self, queue):
        with pytest.raises(NotFound):
            await queue.replay_one("op_missing")

    @pytest.mark.asyncio
    async def test_done_retention(self, store, monitor, clock):
        queue = SyncQueueService(store, monitor, retry_policy=RetryPolicy(delay=0),
                                 done_retention=3600, clock=clock)
        queue.register_writer("farm", "create", AsyncMock())
        op = await queue.enqueue("create", "farm", {})

        await queue.replay_one(op)
        [done] = await queue.get_operations(status=OperationStatus.DONE)
        assert done.completed_at == clock.now
        assert await queue.pending_count() == 0

        with pytest.raises(NotRetryable):
            await queue.replay_one(op)

        clock.advance(3601)
        assert await queue.prune_done() == 1
        assert await queue.get_operations() == []


class TestRetryOne:

    @pytest.mark.asyncio
    async def test_requires_network(self, queue, monitor):
        op = await queue.enqueue("create", "farm", {})
        monitor.set_online(False)
        with pytest.raises(NoNetwork):
            await queue.retry_one(op.id)

    @pytest.mark.asyncio
    async def test_unknown_id(self, queue, monitor):
        monitor.set_online(True)
        with pytest.raises(NotFound):
            await queue.retry_one("op_missing")

    @pytest.mark.asyncio
    async def test_pending_is_not_retryable(self, queue, monitor):
        op = await queue.enqueue("create", "farm", {})
        monitor.set_online(True)
        with pytest.raises(NotRetryable):
            await queue.retry_one(op.id)

    @pytest.mark.asyncio
    async def test_manual_retry_keeps_attempt_count(self, queue, monitor):
        writer = failing_writer()
        queue.register_writer("farm", "create", writer)
        op = await queue.enqueue("create", "farm", {})
        monitor.set_online(True)
        for _ in range(5):
            await queue.replay_all()

        result = await queue.retry_one(op.id)

        assert not result.success
        assert result.operation.attempt_count == 6
        assert isinstance(result.error, RetryExhausted)

        writer.side_effect = None
        writer.return_value = {"id": "farm-1"}
        result = await queue.retry_one(op.id)
        assert result.success
        assert await queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_manual_retry_reset_policy(self, store, monitor, clock):
        queue = SyncQueueService(store, monitor, clock=clock,
                                 retry_policy=RetryPolicy(delay=0, reset_on_manual_retry=True))
        queue.register_writer("farm", "create", failing_writer())
        op = await queue.enqueue("create", "farm", {})
        monitor.set_online(True)
        for _ in range(5):
            await queue.replay_all()

        result = await queue.retry_one(op.id)

        assert result.operation.attempt_count == 1
        summary = await queue.replay_all()
        assert summary.failed_count == 1

    @pytest.mark.asyncio
    async def test_manual_retry_of_validation_failure(self, queue, monitor):
        writer = failing_writer(RemoteValidationError("bad phone", 400))
        queue.register_writer("farmer", "create", writer)
        op = await queue.enqueue("create", "farmer", {"phone": "x"})
        monitor.set_online(True)
        await queue.replay_all()

        writer.side_effect = None
        result = await queue.retry_one(op.id)

        assert result.success


class TestMaintenance:

    @pytest.mark.asyncio
    async def test_clear_all(self, queue, monitor):
        queue.register_writer("farm", "create", AsyncMock())
        await queue.enqueue("create", "farm", {})
        monitor.set_online(True)
        await queue.replay_all()
        await queue.enqueue("create", "farm", {})

        await queue.clear_all()

        assert await queue.pending_count() == 0
        assert await queue.get_last_sync_time() is None

    @pytest.mark.asyncio
    async def test_crash_recovery_resets_in_flight(self, queue, monitor, clock, backing):
        op = await queue.enqueue("create", "farm", {})
        await queue._update(op.id, lambda o: o.mark_in_flight(clock.now))

        restarted = SyncQueueService(MemoryKeyValueStore(backing), monitor, clock=clock)
        await restarted.start()
        try:
            [recovered] = await restarted.get_operations()
            assert recovered.status == OperationStatus.PENDING
            assert recovered.attempt_count == 0
        finally:
            await restarted.stop()

    @pytest.mark.asyncio
    async def test_sync_status(self, queue, monitor, clock):
        queue.register_writer("farm", "create", failing_writer())
        await queue.enqueue("create", "farm", {})
        await queue.enqueue("update", "farmer", {"id": "1"})
        monitor.set_online(True)
        await queue.replay_one((await queue.get_operations(entity_type="farm"))[0])

        status = await queue.get_sync_status()

        assert status.connected is True
        assert (status.total, status.pending, status.failed, status.in_flight, status.done) == (2, 1, 1, 0, 0)
        assert status.to_dict()["operations"][0]["status"] == "failed"


class TestAutoSync:

    @pytest.mark.asyncio
    async def test_replays_on_reconnect_and_notifies(self, queue, monitor):
        writer = AsyncMock(return_value={})
        queue.register_writer("farm", "create", writer)
        summaries = []
        queue.add_sync_observer(summaries.append)
        monitor.set_online(False)
        await queue.start()
        await queue.enqueue("create", "farm", {})

        monitor.set_online(True)
        await queue.wait_for_auto_sync()

        writer.assert_awaited_once()
        assert len(summaries) == 1
        assert summaries[0].synced_count == 1
        await queue.stop()

    @pytest.mark.asyncio
    async def test_reconnect_reported_from_another_thread(self, queue, monitor):
        writer = AsyncMock(return_value={})
        queue.register_writer("farm", "create", writer)
        monitor.set_online(False)
        await queue.start()
        await queue.enqueue("create", "farm", {})

        await asyncio.to_thread(monitor.set_online, True)
        await asyncio.sleep(0)
        await queue.wait_for_auto_sync()

        writer.assert_awaited_once()
        await queue.stop()

    @pytest.mark.asyncio
    async def test_first_observation_does_not_sync(self, queue, monitor):
        writer = AsyncMock(return_value={})
        queue.register_writer("farm", "create", writer)
        await queue.enqueue("create", "farm", {})
        await queue.start()

        monitor.set_online(True)
        await queue.wait_for_auto_sync()

        writer.assert_not_called()
        await queue.stop()

    @pytest.mark.asyncio
    async def test_going_offline_does_not_sync(self, queue, monitor):
        writer = AsyncMock(return_value={})
        queue.register_writer("farm", "create", writer)
        monitor.set_online(True)
        await queue.start()
        await queue.enqueue("create", "farm", {})

        monitor.set_online(False)
        await queue.wait_for_auto_sync()

        writer.assert_not_called()
        await queue.stop()

    @pytest.mark.asyncio
    async def test_observer_unsubscribe_and_errors(self, queue, monitor):
        queue.register_writer("farm", "create", AsyncMock())
        seen = []

        def broken(summary):
            raise RuntimeError("toast failed")

        queue.add_sync_observer(broken)
        unsubscribe = queue.add_sync_observer(seen.append)
        monitor.set_online(False)
        await queue.start()

        monitor.set_online(True)
        await queue.wait_for_auto_sync()
        assert len(seen) == 1

        unsubscribe()
        monitor.set_online(False)
        monitor.set_online(True)
        await queue.wait_for_auto_sync()
        assert len(seen) == 1
        await queue.stop()

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self, queue, monitor):
        writer = AsyncMock()
        queue.register_writer("farm", "create", writer)
        monitor.set_online(False)
        await queue.start()
        await queue.stop()
        await queue.enqueue("create", "farm", {})

        monitor.set_online(True)
        await queue.wait_for_auto_sync()

        writer.assert_not_called()
