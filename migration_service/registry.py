"""
Module tracking which processing loops are running and which have been asked to stop.
"""
import logging
import threading
from typing import Set, Tuple

from .models import QueueType

logger = logging.getLogger(__name__)

SlotKey = Tuple[str, QueueType]


class ProcessingRegistry:
    """Running-set and stop flags keyed by (user_key, queue type).

    Guarantees at most one processing loop per user and queue type. Claiming
    is synchronous, so two callers racing on the same event loop can never
    both succeed.
    """

    def __init__(self):
        self._running: Set[SlotKey] = set()
        self._stop_requested: Set[SlotKey] = set()
        self._lock = threading.Lock()

    def try_claim(self, user_key: str, queue_type: QueueType) -> bool:
        """Claim the processing slot.

        Args:
            user_key: Owner of the queue
            queue_type: Which queue the loop drains

        Returns:
            True if the caller now owns the slot, False if a loop is already running
        """
        key = (user_key, queue_type)
        with self._lock:
            if key in self._running:
                logger.info(f"{queue_type.value} queue for {user_key} is already being processed")
                return False
            self._running.add(key)
            self._stop_requested.discard(key)
            return True

    def release(self, user_key: str, queue_type: QueueType) -> None:
        key = (user_key, queue_type)
        with self._lock:
            self._running.discard(key)
            self._stop_requested.discard(key)

    def is_running(self, user_key: str, queue_type: QueueType) -> bool:
        with self._lock:
            return (user_key, queue_type) in self._running

    def request_stop(self, user_key: str, queue_type: QueueType) -> bool:
        """Ask a running loop to stop at its next checkpoint.

        Returns:
            True if a loop was running and has been flagged
        """
        key = (user_key, queue_type)
        with self._lock:
            if key not in self._running:
                return False
            self._stop_requested.add(key)
            logger.info(f"Stop requested for {queue_type.value} queue of {user_key}")
            return True

    def stop_requested(self, user_key: str, queue_type: QueueType) -> bool:
        with self._lock:
            return (user_key, queue_type) in self._stop_requested
