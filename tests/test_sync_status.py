"""
Tests for folder and file sync status rollups.
"""
import asyncio

from migration_service.models import SyncStatus, UploadRecord

USER = "user@example.com"


def sync_tree(cache, auth):
    for folder_id in ("root", "f1", "f2"):
        asyncio.run(cache.sync_folder_to_cache(USER, auth, folder_id))


def record_upload(store, sync_engine, file_id):
    store.record_upload(USER, UploadRecord(file_id, f"media-{file_id}", f"{file_id}.jpg", "image/jpeg"))
    return sync_engine.invalidate_file(USER, file_id)


def test_file_status_follows_upload_records(store, sync_engine):
    assert sync_engine.calculate_file_sync_status(USER, "h1").status == SyncStatus.UNSYNCED

    store.record_upload(USER, UploadRecord("h1", "media-h1", "h1.jpg", "image/jpeg"))

    assert sync_engine.calculate_file_sync_status(USER, "h1").status == SyncStatus.SYNCED
    assert sync_engine.get_cached_file_sync_status(USER, "h1").status == SyncStatus.SYNCED


def test_never_enumerated_folder_has_no_status(sync_engine, cache, auth):
    asyncio.run(cache.sync_folder_to_cache(USER, auth, "root"))

    assert sync_engine.calculate_folder_sync_status(USER, "f1") is None


def test_enumerated_empty_folder_reports_unsynced(sync_engine, cache, drive_tree, auth):
    drive_tree["f2"]["files"] = []
    asyncio.run(cache.sync_folder_to_cache(USER, auth, "f2"))

    status = sync_engine.calculate_folder_sync_status(USER, "f2")

    assert status.status == SyncStatus.UNSYNCED
    assert status.total_count == 0


def test_folder_rollup_includes_descendants(store, sync_engine, cache, auth):
    sync_tree(cache, auth)
    store.record_upload(USER, UploadRecord("b1", "media-b1", "b1.mp4", "video/mp4"))

    root = sync_engine.calculate_folder_sync_status(USER, "root")
    beach = sync_engine.get_cached_folder_sync_status(USER, "f2")

    assert (root.synced_count, root.total_count) == (1, 8)
    assert root.status == SyncStatus.PARTIAL
    assert beach.status == SyncStatus.SYNCED
    assert beach.percentage == 100


def test_cached_rollup_is_reused_until_forced(store, sync_engine, cache, auth):
    sync_tree(cache, auth)
    assert sync_engine.calculate_folder_sync_status(USER, "root").synced_count == 0

    store.record_upload(USER, UploadRecord("r1", "media-r1", "r1.jpg", "image/jpeg"))

    assert sync_engine.calculate_folder_sync_status(USER, "root").synced_count == 0
    assert sync_engine.calculate_folder_sync_status(USER, "root", force=True).synced_count == 1


def test_upload_invalidates_ancestors(store, sync_engine, cache, auth):
    sync_tree(cache, auth)
    sync_engine.calculate_folder_sync_status(USER, "root")

    updated = record_upload(store, sync_engine, "b1")

    assert [s.synced_count for s in updated] == [1, 1, 1]
    assert sync_engine.get_cached_folder_sync_status(USER, "f2").status == SyncStatus.SYNCED
    assert sync_engine.get_cached_folder_sync_status(USER, "f1").synced_count == 1
    assert sync_engine.get_cached_folder_sync_status(USER, "root").synced_count == 1


def test_ancestor_percentage_never_decreases(store, sync_engine, cache, auth):
    """Test that completing uploads one by one only ever raises ancestor percentages."""
    sync_tree(cache, auth)
    previous = {folder_id: sync_engine.calculate_folder_sync_status(USER, folder_id).percentage
                for folder_id in ("root", "f1", "f2")}

    for file_id in ["h3", "b1", "r2", "h1", "h2", "h4", "h5", "r1"]:
        record_upload(store, sync_engine, file_id)
        for folder_id in ("root", "f1", "f2"):
            current = sync_engine.get_cached_folder_sync_status(USER, folder_id).percentage
            assert current >= previous[folder_id]
            previous[folder_id] = current

    assert sync_engine.get_cached_folder_sync_status(USER, "root").status == SyncStatus.SYNCED


def test_invalidate_folder_drops_chain(sync_engine, cache, auth):
    sync_tree(cache, auth)
    sync_engine.calculate_folder_sync_status(USER, "root")

    sync_engine.invalidate_folder(USER, "f2")

    assert sync_engine.get_cached_folder_sync_status(USER, "f2") is None
    assert sync_engine.get_cached_folder_sync_status(USER, "f1") is None
    assert sync_engine.get_cached_folder_sync_status(USER, "root") is None


def test_recursive_refresh_syncs_and_aggregates(store, sync_engine, cache, auth):
    store.record_upload(USER, UploadRecord("h1", "media-h1", "h1.jpg", "image/jpeg"))

    result = asyncio.run(sync_engine.recursively_refresh_folder_sync_status(USER, "root", auth))

    assert result.folder_name == "My Drive"
    assert result.processed_count == 3
    assert result.duration_ms >= 0
    assert (result.status.synced_count, result.status.total_count) == (1, 8)
    holidays = result.subfolders[0]
    assert holidays.folder_name == "Holidays"
    assert (holidays.status.synced_count, holidays.status.total_count) == (1, 6)
    assert holidays.subfolders[0].status.total_count == 1
    assert cache.is_folder_cached(USER, "f2")


def test_recursive_refresh_without_auth_reports_unknown_folders(sync_engine, cache, auth):
    asyncio.run(cache.sync_folder_to_cache(USER, auth, "root"))

    result = asyncio.run(sync_engine.recursively_refresh_folder_sync_status(USER, "root"))

    assert result.processed_count == 2
    assert result.subfolders[0].status is None
    assert result.status.total_count == 2


def test_clear_all(sync_engine, cache, auth):
    sync_tree(cache, auth)
    sync_engine.calculate_folder_sync_status(USER, "root")

    sync_engine.clear_all(USER)

    assert sync_engine.get_cached_folder_sync_status(USER, "root") is None
