"""
Tests for the upload rate tracker.
"""
from migration_service.rate_tracker import UploadRateTracker


def test_rate_over_recent_buckets():
    now = [100.0]
    tracker = UploadRateTracker(clock=lambda: now[0])

    for t in (100.0, 103.0, 107.0):
        now[0] = t
        tracker.add_upload(100)
    now[0] = 110.0

    stats = tracker.get_stats()
    assert stats.total_files == 3
    assert stats.total_bytes == 300
    assert stats.window_seconds == 10
    assert stats.files_per_minute == 18.0
    assert stats.bytes_per_second == 30.0


def test_old_uploads_fall_out_of_the_window():
    now = [100.0]
    tracker = UploadRateTracker(clock=lambda: now[0])
    tracker.add_upload(100)

    now[0] = 200.0

    assert tracker.get_stats().total_files == 0


def test_reset():
    tracker = UploadRateTracker()
    tracker.add_upload()

    tracker.reset()

    assert tracker.get_stats().files_per_minute == 0.0
