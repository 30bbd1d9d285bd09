"""Durable sync queue for offline writes.

Local writes are saved immediately as queued operations and replayed against
the remote API when connectivity returns:
- replay is strictly sequential, spaced by the retry policy delay
- every state transition is persisted before the next step
- failures are counted per operation; past the ceiling only a manual retry
  replays an operation again

Storage layout: the whole queue is one JSON list under QUEUE_OPERATIONS_KEY,
rewritten under a lock on every transition.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from fieldsync.constants import ENTITY_TYPES, QUEUE_LAST_SYNC_KEY, QUEUE_OPERATIONS_KEY
from fieldsync.core.connectivity import ConnectivityMonitor
from fieldsync.core.exceptions import (
    NoNetwork,
    NotFound,
    NotRetryable,
    QueueWriteFailed,
    RetryExhausted,
    StorageError,
    SyncAttemptFailed,
    WriterNotRegistered,
)
from fieldsync.core.logging import get_logger, log_sync_operation
from fieldsync.core.storage import KeyValueStore
from fieldsync.models.queue import (
    OperationKind,
    OperationStatus,
    QueuedOperation,
    ReplayResult,
    RetryPolicy,
    SyncStatus,
    SyncSummary,
)

logger = get_logger(__name__)

RemoteWriter = Callable[[Dict[str, Any]], Awaitable[Any]]
SyncObserver = Callable[[SyncSummary], None]


class SyncQueueService:
    """Queue of pending writes with sequential replay and retry accounting."""

    def __init__(self, store: KeyValueStore, connectivity: ConnectivityMonitor,
                 retry_policy: Optional[RetryPolicy] = None,
                 done_retention: float = 0.0,
                 clock: Callable[[], float] = time.time):
        """Initialize sync queue.

        Args:
            store: Durable key-value store
            connectivity: Connectivity monitor driving automatic replay
            retry_policy: Attempt ceiling and replay spacing (5 attempts, 500 ms)
            done_retention: Seconds to keep done operations for history;
                0 removes them as soon as they sync
            clock: Time source (epoch seconds)
        """
        self.store = store
        self.connectivity = connectivity
        self.retry_policy = retry_policy or RetryPolicy()
        self.done_retention = done_retention
        self.clock = clock

        self._writers: Dict[Tuple[str, OperationKind], RemoteWriter] = {}
        self._observers: List[SyncObserver] = []
        self._queue_lock = asyncio.Lock()    # read-modify-write of the queue record
        self._replay_lock = asyncio.Lock()   # at most one writer call in flight
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._last_seen_online: Optional[bool] = None
        self._tasks: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Recover interrupted replays and subscribe to connectivity changes."""
        recovered = await self.recover_in_flight()
        if recovered:
            logger.info("Recovered interrupted operations", count=recovered)

        self._loop = asyncio.get_running_loop()
        if self._unsubscribe is None:
            self._last_seen_online = self.connectivity.state
            self._unsubscribe = self.connectivity.subscribe(self._on_connectivity_change)
        logger.info("Sync queue started",
                   max_attempts=self.retry_policy.max_attempts,
                   pending=await self.pending_count())

    async def stop(self) -> None:
        """Unsubscribe and wait for any automatic replay to finish."""
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("Sync queue stopped")

    def _on_connectivity_change(self, online: bool) -> None:
        previous = self._last_seen_online
        self._last_seen_online = online

        # The first observation is the cold-start reading, not a reconnect
        if previous is None:
            return
        if online and previous is False:
            logger.info("Network restored, scheduling replay")
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                # Platform network callbacks may arrive on their own thread
                if self._loop is None or self._loop.is_closed():
                    logger.error("Network restored with no event loop, replay not scheduled")
                    return
                self._loop.call_soon_threadsafe(self._schedule_auto_sync)
                return
            self._schedule_auto_sync()

    def _schedule_auto_sync(self) -> None:
        task = asyncio.create_task(self._auto_sync())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _auto_sync(self) -> None:
        try:
            summary = await self.replay_all()
        except Exception as e:
            logger.error("Automatic replay failed", error=str(e))
            return
        self._notify(summary)

    async def wait_for_auto_sync(self) -> None:
        """Wait until scheduled automatic replays have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def add_sync_observer(self, observer: SyncObserver) -> Callable[[], None]:
        """Register a callback receiving the summary of every automatic replay."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self, summary: SyncSummary) -> None:
        for observer in list(self._observers):
            try:
                observer(summary)
            except Exception as e:
                logger.error("Sync observer failed", error=str(e))

    # =========================================================================
    # WRITERS
    # =========================================================================

    def register_writer(self, entity_type: str, kind: Union[OperationKind, str],
                        writer: RemoteWriter) -> None:
        """Register the remote call that replays ``kind`` operations on ``entity_type``."""
        if entity_type not in ENTITY_TYPES:
            logger.warning("Registering writer for unknown entity type", entity_type=entity_type)
        self._writers[(entity_type, OperationKind(kind))] = writer

    def get_writer(self, entity_type: str, kind: Union[OperationKind, str]) -> RemoteWriter:
        kind = OperationKind(kind)
        writer = self._writers.get((entity_type, kind))
        if writer is None:
            raise WriterNotRegistered(entity_type, kind.value)
        return writer

    def _resolve_writer(self, operation: QueuedOperation) -> RemoteWriter:
        return self.get_writer(operation.entity_type, operation.kind)

    # =========================================================================
    # QUEUE OPERATIONS
    # =========================================================================

    async def enqueue(self, kind: Union[OperationKind, str], entity_type: str,
                      payload: Dict[str, Any]) -> QueuedOperation:
        """Save a write locally. No network access.

        Raises:
            QueueWriteFailed: the operation could not be persisted
        """
        kind = OperationKind(kind)
        operation = QueuedOperation.create(kind, entity_type, payload, now=self.clock())
        try:
            async with self._queue_lock:
                operations = await self._load()
                operations.append(operation)
                await self._save(operations)
        except (StorageError, TypeError, ValueError) as e:
            logger.error("Failed to queue operation",
                        entity_type=entity_type, kind=kind.value, error=str(e))
            raise QueueWriteFailed(entity_type, kind.value, str(e)) from e

        log_sync_operation(logger, "enqueue", operation.id,
                          entity_type=entity_type, kind=kind.value)
        return operation

    async def get_operations(self, status: Optional[OperationStatus] = None,
                             entity_type: Optional[str] = None) -> List[QueuedOperation]:
        """Queued operations in insertion order, optionally filtered."""
        operations = await self._load()
        if status is not None:
            operations = [op for op in operations if op.status == OperationStatus(status)]
        if entity_type is not None:
            operations = [op for op in operations if op.entity_type == entity_type]
        return operations

    async def get_operation(self, operation_id: str) -> Optional[QueuedOperation]:
        for operation in await self._load():
            if operation.id == operation_id:
                return operation
        return None

    async def pending_count(self) -> int:
        """Operations not yet done."""
        return sum(1 for op in await self._load() if op.status != OperationStatus.DONE)

    async def clear_all(self) -> None:
        """Destructive: drop every queued operation and sync bookkeeping."""
        async with self._queue_lock:
            await self.store.remove_many([QUEUE_OPERATIONS_KEY, QUEUE_LAST_SYNC_KEY])
        logger.warning("All offline operations cleared")

    # =========================================================================
    # REPLAY
    # =========================================================================

    def _is_eligible(self, operation: QueuedOperation) -> bool:
        return (
            operation.status in (OperationStatus.PENDING, OperationStatus.FAILED)
            and operation.retryable
            and not self.retry_policy.is_exhausted(operation.attempt_count)
        )

    async def replay_one(self, operation: Union[QueuedOperation, str]) -> ReplayResult:
        """Replay a single operation now, ignoring the attempt ceiling.

        Raises:
            NotFound: unknown id
            NotRetryable: the operation already synced
        """
        operation_id = operation if isinstance(operation, str) else operation.id
        async with self._replay_lock:
            current = await self.get_operation(operation_id)
            if current is None:
                raise NotFound(operation_id)
            if current.status == OperationStatus.DONE:
                raise NotRetryable(operation_id, current.status.value)
            result = await self._replay(operation_id)
            if result is None:
                raise NotFound(operation_id)
            return result

    async def replay_all(self) -> SyncSummary:
        """Replay every eligible operation, one at a time, in queue order.

        Never raises for individual failures; they are counted and recorded on
        the operations. Offline, nothing is attempted.
        """
        async with self._replay_lock:
            if not self.connectivity.currently_online():
                logger.info("No network connection, skipping replay")
                return SyncSummary(pending_count=await self.pending_count())

            await self.prune_done()
            eligible = [op for op in await self._load() if self._is_eligible(op)]
            if not eligible:
                logger.debug("No operations to replay")
                return SyncSummary(pending_count=await self.pending_count())

            logger.info("Replaying queued operations", count=len(eligible))
            summary = SyncSummary()
            for index, operation in enumerate(eligible):
                if index:
                    await asyncio.sleep(self.retry_policy.calculate_delay(operation.attempt_count))
                result = await self._replay(operation.id)
                if result is None:
                    # Removed by clear_all while the batch was running
                    logger.info("Queued operation vanished during replay", operation_id=operation.id)
                    continue
                summary.results.append(result)
                if result.success:
                    summary.synced_count += 1
                else:
                    summary.failed_count += 1

            await self.store.set(QUEUE_LAST_SYNC_KEY, json.dumps(self.clock()))
            summary.pending_count = await self.pending_count()
            logger.info("Replay complete",
                       synced=summary.synced_count,
                       failed=summary.failed_count,
                       pending=summary.pending_count)
            return summary

    async def retry_one(self, operation_id: str) -> ReplayResult:
        """User-triggered replay of a failed operation.

        Raises:
            NoNetwork: offline
            NotFound: unknown id
            NotRetryable: the operation is not in failed state
        """
        if not self.connectivity.currently_online():
            raise NoNetwork()

        async with self._replay_lock:
            operation = await self.get_operation(operation_id)
            if operation is None:
                raise NotFound(operation_id)
            if operation.status != OperationStatus.FAILED:
                raise NotRetryable(operation_id, operation.status.value)

            if self.retry_policy.reset_on_manual_retry:
                await self._update(operation_id, _reset_attempts)

            logger.info("Manual retry", operation_id=operation_id,
                       attempt_count=operation.attempt_count)
            result = await self._replay(operation_id)
            if result is None:
                raise NotFound(operation_id)
            return result

    async def _replay(self, operation_id: str) -> Optional[ReplayResult]:
        """Run one replay. Caller holds the replay lock.

        Returns None when the operation is no longer queued.
        """
        now = self.clock()
        operation = await self._update(operation_id, lambda op: op.mark_in_flight(now))
        if operation is None:
            return None
        log_sync_operation(logger, "replay", operation.id,
                          entity_type=operation.entity_type,
                          kind=operation.kind.value,
                          attempt=operation.attempt_count + 1)

        try:
            writer = self._resolve_writer(operation)
            response = await writer(operation.payload)
        except Exception as e:
            return await self._record_failure(operation, e)

        finished_at = self.clock()
        if self.done_retention > 0:
            done = await self._update(operation_id, lambda op: op.mark_done(finished_at))
            operation = done or operation
        else:
            operation.mark_done(finished_at)
            await self._remove(operation_id)
        log_sync_operation(logger, "replay", operation.id, success=True,
                          entity_type=operation.entity_type)
        return ReplayResult(success=True, operation=operation, response=response)

    async def _record_failure(self, operation: QueuedOperation, error: Exception) -> ReplayResult:
        retryable = self.retry_policy.is_retryable(error)
        failed_at = self.clock()
        message = str(error) or type(error).__name__
        updated = await self._update(
            operation.id, lambda op: op.mark_failed(message, retryable, failed_at)
        ) or operation

        if self.retry_policy.is_exhausted(updated.attempt_count):
            failure: SyncAttemptFailed = RetryExhausted(updated.id, updated.attempt_count, message)
        else:
            failure = SyncAttemptFailed(updated.id, updated.attempt_count, message)
        failure.__cause__ = error

        log_sync_operation(logger, "replay", updated.id, success=False,
                          entity_type=updated.entity_type,
                          attempt_count=updated.attempt_count,
                          retryable=retryable,
                          exhausted=isinstance(failure, RetryExhausted),
                          error=message)
        return ReplayResult(success=False, operation=updated, error=failure)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def recover_in_flight(self) -> int:
        """Reset operations left in flight by a crash back to pending.

        The interrupted attempt is not counted; the server may or may not have
        received it, and replay is at-least-once.
        """
        async with self._queue_lock:
            operations = await self._load()
            stuck = [op for op in operations if op.status == OperationStatus.IN_FLIGHT]
            for operation in stuck:
                operation.status = OperationStatus.PENDING
            if stuck:
                await self._save(operations)
        return len(stuck)

    async def prune_done(self) -> int:
        """Drop done operations older than the retention window."""
        cutoff = self.clock() - self.done_retention
        async with self._queue_lock:
            operations = await self._load()
            kept = [
                op for op in operations
                if op.status != OperationStatus.DONE or (op.completed_at or 0) > cutoff
            ]
            removed = len(operations) - len(kept)
            if removed:
                await self._save(kept)
        return removed

    async def get_last_sync_time(self) -> Optional[float]:
        raw = await self.store.get(QUEUE_LAST_SYNC_KEY)
        return json.loads(raw) if raw else None

    async def get_sync_status(self) -> SyncStatus:
        """Counts per status plus the operations, for a sync status screen."""
        operations = await self._load()
        counts = {status: 0 for status in OperationStatus}
        for operation in operations:
            counts[operation.status] += 1
        return SyncStatus(
            connected=self.connectivity.currently_online(),
            last_sync=await self.get_last_sync_time(),
            total=len(operations),
            pending=counts[OperationStatus.PENDING],
            in_flight=counts[OperationStatus.IN_FLIGHT],
            failed=counts[OperationStatus.FAILED],
            done=counts[OperationStatus.DONE],
            operations=operations,
        )

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    async def _load(self) -> List[QueuedOperation]:
        raw = await self.store.get(QUEUE_OPERATIONS_KEY)
        if not raw:
            return []
        try:
            return [QueuedOperation.from_dict(item) for item in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as e:
            # Refuse to overwrite a queue we cannot read
            raise StorageError("decode", QUEUE_OPERATIONS_KEY, str(e)) from e

    async def _save(self, operations: List[QueuedOperation]) -> None:
        await self.store.set(QUEUE_OPERATIONS_KEY,
                             json.dumps([op.to_dict() for op in operations]))

    async def _update(self, operation_id: str,
                      mutate: Callable[[QueuedOperation], None]) -> Optional[QueuedOperation]:
        async with self._queue_lock:
            operations = await self._load()
            for operation in operations:
                if operation.id == operation_id:
                    mutate(operation)
                    await self._save(operations)
                    return operation
        return None

    async def _remove(self, operation_id: str) -> None:
        async with self._queue_lock:
            operations = await self._load()
            await self._save([op for op in operations if op.id != operation_id])


def _reset_attempts(operation: QueuedOperation) -> None:
    operation.attempt_count = 0
    operation.retryable = True
