"""Sync queue state models.

All models are JSON-serializable so the whole queue can be persisted as a
single key-value record after every state transition.
"""

import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from fieldsync.core.exceptions import RemoteValidationError, WriterNotRegistered

if TYPE_CHECKING:
    from fieldsync.core.config import Settings


class OperationKind(str, Enum):
    """Write operation replayed against the remote API."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(str, Enum):
    """Queued operation states.

    State transitions:
        PENDING -> IN_FLIGHT -> DONE
                             -> FAILED -> IN_FLIGHT (automatic or manual retry)
        FAILED is terminal for automatic replay once attempt_count >= max_attempts.
    """
    PENDING = "pending"        # Saved locally, never attempted
    IN_FLIGHT = "in_flight"    # Writer call in progress
    DONE = "done"              # Remote accepted the write
    FAILED = "failed"          # Last attempt failed


def generate_operation_id(now: Optional[float] = None) -> str:
    """Time + random based local id, e.g. ``op_1718000000000_k3j9x0a1b``."""
    millis = int((time.time() if now is None else now) * 1000)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"op_{millis}_{suffix}"


@dataclass
class RetryPolicy:
    """Retry configuration for queue replay.

    Delay formula: min(delay * (backoff_multiplier ^ attempt), max_delay).
    The default (multiplier 1.0) spaces replays a fixed 500 ms apart.
    """
    max_attempts: int = 5
    delay: float = 0.5               # seconds between replayed operations
    backoff_multiplier: float = 1.0
    max_delay: float = 30.0          # seconds
    reset_on_manual_retry: bool = False

    def calculate_delay(self, attempt: int) -> float:
        """Calculate spacing before replaying an operation.

        Args:
            attempt: Attempts already made for the operation (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = self.delay * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay)

    def is_retryable(self, error: BaseException) -> bool:
        """Validation failures and missing writers will fail the same way again."""
        return not isinstance(error, (RemoteValidationError, WriterNotRegistered))

    def is_exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "max_attempts": self.max_attempts,
            "delay": self.delay,
            "backoff_multiplier": self.backoff_multiplier,
            "max_delay": self.max_delay,
            "reset_on_manual_retry": self.reset_on_manual_retry,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        """Create from dict."""
        return cls(
            max_attempts=data.get("max_attempts", 5),
            delay=data.get("delay", 0.5),
            backoff_multiplier=data.get("backoff_multiplier", 1.0),
            max_delay=data.get("max_delay", 30.0),
            reset_on_manual_retry=data.get("reset_on_manual_retry", False),
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RetryPolicy":
        return cls(
            max_attempts=settings.sync_max_attempts,
            delay=settings.sync_replay_delay,
            backoff_multiplier=settings.sync_backoff_multiplier,
            max_delay=settings.sync_max_delay,
            reset_on_manual_retry=settings.sync_reset_on_manual_retry,
        )


@dataclass
class QueuedOperation:
    """A local write waiting to be replayed against the remote API."""
    id: str
    kind: OperationKind
    entity_type: str
    payload: Dict[str, Any]
    status: OperationStatus = OperationStatus.PENDING
    attempt_count: int = 0
    last_error: Optional[str] = None
    retryable: bool = True
    created_at: float = field(default_factory=time.time)
    last_attempt_at: Optional[float] = None
    completed_at: Optional[float] = None

    @classmethod
    def create(cls, kind: OperationKind, entity_type: str, payload: Dict[str, Any],
               now: Optional[float] = None) -> "QueuedOperation":
        """Factory method for a freshly enqueued operation."""
        now = time.time() if now is None else now
        return cls(
            id=generate_operation_id(now),
            kind=OperationKind(kind),
            entity_type=entity_type,
            payload=payload,
            created_at=now,
        )

    def mark_in_flight(self, now: float) -> None:
        self.status = OperationStatus.IN_FLIGHT
        self.last_attempt_at = now

    def mark_done(self, now: float) -> None:
        self.status = OperationStatus.DONE
        self.last_error = None
        self.completed_at = now

    def mark_failed(self, error: str, retryable: bool, now: float) -> None:
        self.status = OperationStatus.FAILED
        self.attempt_count += 1
        self.last_error = error
        self.retryable = retryable
        self.last_attempt_at = now

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "entity_type": self.entity_type,
            "payload": self.payload,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "retryable": self.retryable,
            "created_at": self.created_at,
            "last_attempt_at": self.last_attempt_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedOperation":
        """Create from dict (storage deserialization)."""
        return cls(
            id=data["id"],
            kind=OperationKind(data["kind"]),
            entity_type=data["entity_type"],
            payload=data.get("payload", {}),
            status=OperationStatus(data.get("status", "pending")),
            attempt_count=data.get("attempt_count", 0),
            last_error=data.get("last_error"),
            retryable=data.get("retryable", True),
            created_at=data.get("created_at", time.time()),
            last_attempt_at=data.get("last_attempt_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class ReplayResult:
    """Outcome of replaying one operation."""
    success: bool
    operation: QueuedOperation
    response: Any = None
    error: Optional[Exception] = None

    @property
    def operation_id(self) -> str:
        return self.operation.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "operation_id": self.operation.id,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class SyncSummary:
    """Aggregate counts from a replay pass."""
    synced_count: int = 0
    failed_count: int = 0
    pending_count: int = 0
    results: List[ReplayResult] = field(default_factory=list, compare=False)

    @property
    def success(self) -> bool:
        return self.failed_count == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced_count": self.synced_count,
            "failed_count": self.failed_count,
            "pending_count": self.pending_count,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class SyncStatus:
    """Queue summary for a sync status screen."""
    connected: bool
    last_sync: Optional[float]
    total: int = 0
    pending: int = 0
    in_flight: int = 0
    failed: int = 0
    done: int = 0
    operations: List[QueuedOperation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "last_sync": self.last_sync,
            "total": self.total,
            "pending": self.pending,
            "in_flight": self.in_flight,
            "failed": self.failed,
            "done": self.done,
            "operations": [op.to_dict() for op in self.operations],
        }
