"""
Module for the process-wide registry of long-running operations and its event fan-out.
"""
import asyncio
import itertools
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from .models import percent, utc_now

logger = logging.getLogger(__name__)

EVENT_CREATED = "operation:created"
EVENT_UPDATED = "operation:updated"
EVENT_REMOVED = "operation:removed"
EVENT_HEARTBEAT = "heartbeat"


class OperationType(str, Enum):
    LONG_READ = "LONG_READ"
    LONG_WRITE = "LONG_WRITE"
    SHORT_READ = "SHORT_READ"
    SHORT_WRITE = "SHORT_WRITE"


class OperationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class OperationProgress:
    current: int
    total: int
    percentage: int


@dataclass
class OperationError:
    message: str
    retry_count: int = 0
    max_retries: int = 3
    last_retry_at: Optional[str] = None


@dataclass
class Operation:
    id: str
    type: OperationType
    name: str
    status: OperationStatus = OperationStatus.PENDING
    description: Optional[str] = None
    progress: Optional[OperationProgress] = None
    error: Optional[OperationError] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    started_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None

    def snapshot(self) -> "Operation":
        return replace(
            self,
            progress=replace(self.progress) if self.progress else None,
            error=replace(self.error) if self.error else None,
            metadata=dict(self.metadata),
        )


@dataclass
class OperationEvent:
    type: str
    operation: Optional[Operation] = None
    operation_id: Optional[str] = None
    timestamp: str = field(default_factory=utc_now)


@dataclass
class Subscription:
    """Handle returned by subscribe(): a snapshot plus a private event channel."""
    id: int
    snapshot: List[Operation]
    events: "asyncio.Queue[OperationEvent]"

    async def next_event(self) -> OperationEvent:
        return await self.events.get()


class OperationStatusHub:
    """Tracks ongoing operations and pushes changes to subscribers.

    Delivery is best effort: an event reaches the subscribers attached at the
    moment it is published and nothing is replayed. A subscriber whose queue
    is full misses events until it catches up.
    """

    def __init__(self, heartbeat_interval: float = 30.0,
                 completed_ttl: Optional[float] = 30.0,
                 failed_ttl: Optional[float] = 60.0,
                 subscriber_queue_size: int = 1000):
        self._operations: Dict[str, Operation] = {}
        self._subscribers: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._subscription_ids = itertools.count(1)
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._completed_ttl = completed_ttl
        self._failed_ttl = failed_ttl
        self._subscriber_queue_size = subscriber_queue_size

    # -- lifecycle -----------------------------------------------------------

    def create_operation(self, type: OperationType, name: str,
                         description: Optional[str] = None,
                         total: Optional[int] = None,
                         metadata: Optional[Dict[str, Any]] = None) -> str:
        """Create a new operation in the pending state.

        Args:
            type: Operation category
            name: Short display name
            description: Optional longer text
            total: Optional number of work units, enables progress tracking
            metadata: Free-form context (user key, folder id, ...)

        Returns:
            The new operation id
        """
        op_id = f"op-{next(self._ids)}-{int(time.time() * 1000)}"
        operation = Operation(
            id=op_id,
            type=type,
            name=name,
            description=description,
            progress=OperationProgress(0, total, 0) if total else None,
            metadata=dict(metadata or {}),
        )
        self._operations[op_id] = operation
        self._publish(OperationEvent(EVENT_CREATED, operation=operation.snapshot()))
        logger.info(f"Operation created: {op_id} {type.value} '{name}' total={total}")
        return op_id

    def update_operation(self, op_id: str, status: Optional[OperationStatus] = None,
                         current: Optional[int] = None, total: Optional[int] = None,
                         error: Optional[OperationError] = None,
                         metadata: Optional[Dict[str, Any]] = None,
                         completed_at: Optional[str] = None) -> None:
        operation = self._operations.get(op_id)
        if operation is None:
            logger.warning(f"Attempted to update non-existent operation {op_id}")
            return

        if status is not None:
            operation.status = status
        if current is not None or total is not None:
            if operation.progress is None:
                operation.progress = OperationProgress(0, 100, 0)
            if current is not None:
                operation.progress.current = current
            if total is not None:
                operation.progress.total = total
            progress = operation.progress
            progress.percentage = percent(progress.current, progress.total)
        if error is not None:
            operation.error = error
        if metadata:
            operation.metadata.update(metadata)
        if completed_at is not None:
            operation.completed_at = completed_at

        self._publish(OperationEvent(EVENT_UPDATED, operation=operation.snapshot()))
        logger.debug(f"Operation updated: {op_id} status={operation.status.value}")

    def start_operation(self, op_id: str) -> None:
        self.update_operation(op_id, status=OperationStatus.IN_PROGRESS)

    def update_progress(self, op_id: str, current: int, total: Optional[int] = None) -> None:
        """Record progress; this also moves the operation to in_progress."""
        self.update_operation(op_id, status=OperationStatus.IN_PROGRESS,
                              current=current, total=total)

    def retry_operation(self, op_id: str, message: str, retry_count: int,
                        max_retries: int) -> None:
        self.update_operation(
            op_id,
            status=OperationStatus.RETRYING,
            error=OperationError(message, retry_count, max_retries, utc_now()),
        )

    def complete_operation(self, op_id: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.update_operation(op_id, status=OperationStatus.COMPLETED,
                              metadata=metadata, completed_at=utc_now())
        self._schedule_removal(op_id, self._completed_ttl)

    def fail_operation(self, op_id: str, message: str) -> None:
        self.update_operation(op_id, status=OperationStatus.FAILED,
                              error=OperationError(message, 0, 0),
                              completed_at=utc_now())
        self._schedule_removal(op_id, self._failed_ttl)

    def remove_operation(self, op_id: str) -> None:
        if self._operations.pop(op_id, None) is not None:
            self._publish(OperationEvent(EVENT_REMOVED, operation_id=op_id))
            logger.debug(f"Operation removed: {op_id}")

    def clear_completed(self) -> int:
        done = [
            op_id for op_id, op in self._operations.items()
            if op.status in (OperationStatus.COMPLETED, OperationStatus.FAILED)
        ]
        for op_id in done:
            self.remove_operation(op_id)
        logger.info(f"Cleared {len(done)} finished operations")
        return len(done)

    def _schedule_removal(self, op_id: str, delay: Optional[float]) -> None:
        if delay is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(delay, self.remove_operation, op_id)

    # -- queries -------------------------------------------------------------

    def get_operation(self, op_id: str) -> Optional[Operation]:
        operation = self._operations.get(op_id)
        return operation.snapshot() if operation else None

    def get_all_operations(self) -> List[Operation]:
        return [op.snapshot() for op in self._operations.values()]

    def get_operations_by_type(self, type: OperationType) -> List[Operation]:
        return [op.snapshot() for op in self._operations.values() if op.type == type]

    def get_operations_by_status(self, status: OperationStatus) -> List[Operation]:
        return [op.snapshot() for op in self._operations.values() if op.status == status]

    # -- publish / subscribe -------------------------------------------------

    def subscribe(self) -> Subscription:
        """Attach a subscriber.

        Returns:
            Subscription holding the current snapshot and a queue that receives
            every later event until unsubscribe() is called
        """
        subscription = Subscription(
            id=next(self._subscription_ids),
            snapshot=self.get_all_operations(),
            events=asyncio.Queue(maxsize=self._subscriber_queue_size),
        )
        self._subscribers[subscription.id] = subscription
        self._ensure_heartbeat()
        logger.info(f"Subscriber {subscription.id} attached with "
                    f"{len(subscription.snapshot)} active operations")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if self._subscribers.pop(subscription.id, None) is None:
            return
        logger.info(f"Subscriber {subscription.id} detached")
        if not self._subscribers and self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _publish(self, event: OperationEvent) -> None:
        for subscription in list(self._subscribers.values()):
            try:
                subscription.events.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(f"Subscriber {subscription.id} is not keeping up, dropped {event.type} event")

    def _ensure_heartbeat(self) -> None:
        if self._heartbeat_task and not self._heartbeat_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._heartbeat_task = loop.create_task(self._heartbeat())

    async def _heartbeat(self) -> None:
        while self._subscribers:
            await asyncio.sleep(self._heartbeat_interval)
            self._publish(OperationEvent(EVENT_HEARTBEAT))

    @asynccontextmanager
    async def track_operation(self, type: OperationType, name: str,
                              description: Optional[str] = None,
                              total: Optional[int] = None,
                              metadata: Optional[Dict[str, Any]] = None) -> AsyncIterator[str]:
        """Run a block as an operation: started on entry, completed or failed on exit.

        Yields:
            The operation id
        """
        op_id = self.create_operation(type, name, description=description,
                                      total=total, metadata=metadata)
        self.start_operation(op_id)
        try:
            yield op_id
        except Exception as e:
            self.fail_operation(op_id, str(e))
            raise
        op = self._operations.get(op_id)
        if op is not None and op.status not in (OperationStatus.COMPLETED, OperationStatus.FAILED):
            self.complete_operation(op_id)
