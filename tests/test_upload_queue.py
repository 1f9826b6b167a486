"""
Tests for the upload queue manager.
"""
import asyncio
import json
from unittest.mock import patch

import pytest

from migration_service.errors import ConflictError, RemoteAPIError, TransientError
from migration_service.models import FileDescriptor, QueueItemStatus, QueueType, UploadRecord
from migration_service.operations import OperationStatus, OperationType
from migration_service.upload_queue import (
    INTERRUPTED_REASON,
    SKIP_ALREADY_QUEUED,
    SKIP_ALREADY_SYNCED,
    SKIP_IGNORED,
    SKIP_INVALID,
    STOPPED_REASON,
)

USER = "user@example.com"


def descriptor(file_id, mime_type="image/jpeg", size=1024):
    return FileDescriptor(file_id, f"{file_id}.jpg", mime_type, size)


def statuses(uploads):
    return {item.remote_file_id: item.status for item in uploads.get_queue(USER)}


def test_add_to_queue_reports_skip_reasons(uploads, store):
    store.record_upload(USER, UploadRecord("synced", "media-1", "synced.jpg", "image/jpeg"))
    uploads.ignore_files(USER, ["ignored"])
    uploads.add_to_queue(USER, [descriptor("queued")])

    result = uploads.add_to_queue(USER, [
        descriptor("new"),
        descriptor("queued"),
        descriptor("synced"),
        descriptor("ignored"),
        FileDescriptor("broken", "", "image/jpeg"),
        descriptor("negative", size=-1),
    ])

    assert [item.remote_file_id for item in result.added] == ["new"]
    assert {s.remote_file_id: s.reason for s in result.skipped} == {
        "queued": SKIP_ALREADY_QUEUED,
        "synced": SKIP_ALREADY_SYNCED,
        "ignored": SKIP_IGNORED,
        "broken": SKIP_INVALID,
        "negative": SKIP_INVALID,
    }


def test_add_to_queue_is_idempotent(uploads):
    first = uploads.add_to_queue(USER, [descriptor("a"), descriptor("b")])
    second = uploads.add_to_queue(USER, [descriptor("a"), descriptor("b")])

    assert len(first.added) == 2
    assert second.added == []
    assert len(uploads.get_queue(USER)) == 2


def test_unignored_file_can_be_queued(uploads):
    uploads.ignore_files(USER, ["a"])
    assert uploads.get_ignored_files(USER) == ["a"]

    uploads.unignore_file(USER, "a")

    assert len(uploads.add_to_queue(USER, [descriptor("a")]).added) == 1


def test_processing_uploads_in_creation_order(uploads, store, drive, photos, hub, auth):
    uploads.add_to_queue(USER, [descriptor("a"), descriptor("b"), descriptor("c")])

    assert asyncio.run(uploads.start_processing(USER, auth)) is True

    assert [c.args[1] for c in drive.download.await_args_list] == ["a", "b", "c"]
    assert set(statuses(uploads).values()) == {QueueItemStatus.COMPLETED}
    item = uploads.get_queue(USER)[0]
    assert item.remote_media_item_id == "media-a.jpg"
    assert item.started_at is not None and item.completed_at is not None
    assert store.get_upload_record(USER, "a").remote_media_item_id == "media-a.jpg"
    photos.upload_bytes.assert_any_await("access-token", b"bytes-a", "a.jpg", "image/jpeg")

    operation = hub.get_operations_by_type(OperationType.LONG_WRITE)[0]
    assert operation.name == "Processing Upload Queue"
    assert operation.status == OperationStatus.COMPLETED
    assert operation.progress.percentage == 100
    assert operation.metadata['completed'] == 3


def test_file_uploaded_after_queueing_is_not_uploaded_again(uploads, store, drive, photos, auth):
    added = uploads.add_to_queue(USER, [descriptor("a"), descriptor("b")]).added
    store.record_upload(USER, UploadRecord("a", "media-earlier", "a.jpg", "image/jpeg"))

    asyncio.run(uploads.start_processing(USER, auth))

    assert [c.args[1] for c in drive.download.await_args_list] == ["b"]
    assert photos.upload_bytes.await_count == 1
    item = store.get_queue_item(USER, added[0].id)
    assert item.status == QueueItemStatus.COMPLETED
    assert item.remote_media_item_id == "media-earlier"


def test_queued_file_uploaded_by_album_workflow_completes_without_transfer(
        uploads, albums, store, photos, auth):
    added = uploads.add_to_queue(USER, [descriptor("h1")]).added[0]

    async def scenario():
        await albums.add_to_queue(USER, "f1", "Holidays")
        await albums.start_processing(USER, auth)
        await uploads.start_processing(USER, auth)

    asyncio.run(scenario())

    assert photos.upload_bytes.await_count == 5
    item = store.get_queue_item(USER, added.id)
    assert item.status == QueueItemStatus.COMPLETED
    assert item.remote_media_item_id == "media-h1.jpg"


def test_add_to_queue_writes_state_once(uploads, tmp_state_file):
    with patch('migration_service.store.json.dump', wraps=json.dump) as dump:
        result = uploads.add_to_queue(USER, [descriptor(f"file-{i}") for i in range(200)])

    assert len(result.added) == 200
    assert dump.call_count == 1
    with open(tmp_state_file) as f:
        assert len(json.load(f)['queue'][USER]) == 200


def test_failing_file_does_not_stop_the_queue(uploads, drive, hub, auth):
    """Test that a file failing every retry is marked failed and the rest still upload."""
    async def download(token, file_id):
        if file_id == "bad":
            raise TransientError("backend unavailable", 503)
        return b"content"

    drive.download.side_effect = download
    uploads.add_to_queue(USER, [descriptor("good-1"), descriptor("bad"), descriptor("good-2")])

    asyncio.run(uploads.start_processing(USER, auth))

    assert statuses(uploads) == {
        "good-1": QueueItemStatus.COMPLETED,
        "bad": QueueItemStatus.FAILED,
        "good-2": QueueItemStatus.COMPLETED,
    }
    bad = uploads.get_queue(USER, QueueItemStatus.FAILED)[0]
    assert "backend unavailable" in bad.error
    assert sum(1 for c in drive.download.await_args_list if c.args[1] == "bad") == 3

    stats = uploads.get_stats(USER)
    assert (stats['completed'], stats['failed'], stats['pending']) == (2, 1, 0)
    assert stats['uploaded_files'] == 2
    assert stats['is_processing'] is False
    assert stats['rate']['total_files'] == 2

    operation = hub.get_operations_by_type(OperationType.LONG_WRITE)[0]
    assert operation.error.retry_count == 2


def test_auth_expiry_fails_only_the_item(uploads, photos, auth):
    async def upload_bytes(token, content, file_name, mime_type):
        if file_name == "expired.jpg":
            raise RemoteAPIError("invalid credentials", 401)
        return f"upload-token-{file_name}"

    photos.upload_bytes.side_effect = upload_bytes
    uploads.add_to_queue(USER, [descriptor("expired"), descriptor("fine")])

    asyncio.run(uploads.start_processing(USER, auth))

    assert statuses(uploads) == {
        "expired": QueueItemStatus.FAILED,
        "fine": QueueItemStatus.COMPLETED,
    }


def test_concurrent_start_runs_one_loop(uploads, drive, auth):
    uploads.add_to_queue(USER, [descriptor("a"), descriptor("b")])

    async def scenario():
        return await asyncio.gather(
            uploads.start_processing(USER, auth),
            uploads.start_processing(USER, auth),
        )

    results = asyncio.run(scenario())

    assert sorted(results) == [False, True]
    assert drive.download.await_count == 2


def test_stop_marks_remaining_items_failed(uploads, drive, registry, auth):
    """Test that stopping lets the current file finish and fails the rest."""
    uploads.add_to_queue(USER, [descriptor(f"f{i}") for i in range(1, 6)])

    async def scenario():
        reached = asyncio.Event()
        release = asyncio.Event()

        async def download(token, file_id):
            if file_id == "f3":
                reached.set()
                await release.wait()
            return b"content"

        drive.download.side_effect = download
        task = asyncio.create_task(uploads.start_processing(USER, auth))
        await reached.wait()
        assert uploads.is_processing(USER)
        assert uploads.stop_processing(USER) is True
        release.set()
        return await task

    assert asyncio.run(scenario()) is True

    assert statuses(uploads) == {
        "f1": QueueItemStatus.COMPLETED,
        "f2": QueueItemStatus.COMPLETED,
        "f3": QueueItemStatus.COMPLETED,
        "f4": QueueItemStatus.FAILED,
        "f5": QueueItemStatus.FAILED,
    }
    assert {item.error for item in uploads.get_queue(USER, QueueItemStatus.FAILED)} == {STOPPED_REASON}
    assert not registry.is_running(USER, QueueType.UPLOAD)
    assert not registry.stop_requested(USER, QueueType.UPLOAD)

    uploads.requeue_failed(USER)
    assert asyncio.run(uploads.start_processing(USER, auth)) is True
    assert set(statuses(uploads).values()) == {QueueItemStatus.COMPLETED}


def test_stop_without_running_loop(uploads):
    assert uploads.stop_processing(USER) is False


def test_interrupted_uploads_are_failed_on_start(uploads, store, auth):
    added = uploads.add_to_queue(USER, [descriptor("a")]).added[0]
    store.update_queue_item(USER, added.id, status=QueueItemStatus.UPLOADING)

    asyncio.run(uploads.start_processing(USER, auth))

    item = store.get_queue_item(USER, added.id)
    assert item.status == QueueItemStatus.FAILED
    assert item.error == INTERRUPTED_REASON


def test_requeue_failed_clears_errors(uploads, store):
    added = uploads.add_to_queue(USER, [descriptor("a"), descriptor("b")]).added
    store.update_queue_item(USER, added[0].id, status=QueueItemStatus.FAILED, error="boom")

    assert uploads.requeue_failed(USER) == 1

    item = store.get_queue_item(USER, added[0].id)
    assert item.status == QueueItemStatus.PENDING
    assert item.error is None


def test_clear_completed_keeps_pending(uploads, store):
    added = uploads.add_to_queue(USER, [descriptor("a"), descriptor("b"), descriptor("c")]).added
    store.update_queue_item(USER, added[0].id, status=QueueItemStatus.FAILED)
    store.update_queue_item(USER, added[1].id, status=QueueItemStatus.UPLOADING)
    store.update_queue_item(USER, added[1].id, status=QueueItemStatus.COMPLETED)

    assert uploads.clear_completed(USER) == 2
    assert [item.remote_file_id for item in uploads.get_queue(USER)] == ["c"]


def test_remove_uploading_item_while_processing(uploads, store, registry):
    added = uploads.add_to_queue(USER, [descriptor("a")]).added[0]
    store.update_queue_item(USER, added.id, status=QueueItemStatus.UPLOADING)
    registry.try_claim(USER, QueueType.UPLOAD)

    with pytest.raises(ConflictError):
        uploads.remove_item(USER, added.id)

    registry.release(USER, QueueType.UPLOAD)
    assert uploads.remove_item(USER, added.id) is True
    assert uploads.remove_item(USER, added.id) is False


def test_completed_upload_refreshes_folder_status(uploads, sync_engine, cache, auth):
    for folder_id in ("root", "f1", "f2"):
        asyncio.run(cache.sync_folder_to_cache(USER, auth, folder_id))
    sync_engine.calculate_folder_sync_status(USER, "root")
    uploads.add_to_queue(USER, [descriptor("b1", mime_type="video/mp4")])

    asyncio.run(uploads.start_processing(USER, auth))

    assert sync_engine.get_cached_folder_sync_status(USER, "f2").percentage == 100
    assert sync_engine.get_cached_folder_sync_status(USER, "root").synced_count == 1
