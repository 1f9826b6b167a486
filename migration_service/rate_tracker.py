"""
Rolling window of recent uploads, used to report throughput.
"""
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

BUCKET_SECONDS = 5
MAX_BUCKETS = 12


@dataclass
class RateBucket:
    start: float
    files: int = 0
    bytes: int = 0


@dataclass
class UploadRateStats:
    files_per_minute: float
    bytes_per_second: float
    window_seconds: int
    total_files: int
    total_bytes: int


class UploadRateTracker:
    """Counts uploads into fixed-size time buckets covering the last minute."""

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self._buckets: Deque[RateBucket] = deque(maxlen=MAX_BUCKETS)
        self._lock = threading.Lock()

    def add_upload(self, size: Optional[int] = None) -> None:
        now = self._clock()
        with self._lock:
            self._prune(now)
            bucket_start = now - (now % BUCKET_SECONDS)
            if not self._buckets or self._buckets[-1].start != bucket_start:
                self._buckets.append(RateBucket(bucket_start))
            bucket = self._buckets[-1]
            bucket.files += 1
            bucket.bytes += size or 0

    def get_stats(self) -> UploadRateStats:
        now = self._clock()
        with self._lock:
            self._prune(now)
            buckets: List[RateBucket] = list(self._buckets)

        total_files = sum(b.files for b in buckets)
        total_bytes = sum(b.bytes for b in buckets)
        if not buckets:
            return UploadRateStats(0.0, 0.0, 0, 0, 0)

        window = max(now - buckets[0].start, BUCKET_SECONDS)
        return UploadRateStats(
            files_per_minute=round(total_files / window * 60, 2),
            bytes_per_second=round(total_bytes / window, 2),
            window_seconds=int(window),
            total_files=total_files,
            total_bytes=total_bytes,
        )

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()

    def _prune(self, now: float) -> None:
        cutoff = now - BUCKET_SECONDS * MAX_BUCKETS
        while self._buckets and self._buckets[0].start < cutoff:
            self._buckets.popleft()
