"""
Test fixtures for the migration service.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from migration_service.album_queue import AlbumQueueManager
from migration_service.auth import AuthContext
from migration_service.cache import DriveCache
from migration_service.config import ServiceConfig
from migration_service.coordinator import MigrationCoordinator
from migration_service.discovery import EnqueueAllWorkflow
from migration_service.drive import DriveClient
from migration_service.errors import NotFoundOrGoneError
from migration_service.models import FOLDER_MIME_TYPE, Album, DriveFile, DriveListPage
from migration_service.operations import OperationStatusHub
from migration_service.photos import PhotosClient
from migration_service.registry import ProcessingRegistry
from migration_service.remote import RemoteCallWrapper
from migration_service.store import RecordStore
from migration_service.sync_status import SyncStatusEngine
from migration_service.upload_queue import UploadQueueManager


def drive_file(file_id, name=None, mime_type="image/jpeg", size=1024):
    return DriveFile(id=file_id, name=name or f"{file_id}.jpg", mime_type=mime_type, size=size)


def drive_folder(folder_id, name):
    return DriveFile(id=folder_id, name=name, mime_type=FOLDER_MIME_TYPE)


@pytest.fixture
def tmp_state_file(tmp_path):
    """Create a temporary state file path."""
    return tmp_path / "migration_state.json"


@pytest.fixture
def store(tmp_state_file):
    """Create a record store persisted to a temporary file."""
    return RecordStore(state_file=tmp_state_file)


@pytest.fixture
def hub():
    """Create an operation hub that keeps finished operations around."""
    return OperationStatusHub(heartbeat_interval=0.01, completed_ttl=None, failed_ttl=None)


@pytest.fixture
def registry():
    return ProcessingRegistry()


@pytest.fixture
def remote():
    """Create a call wrapper that retries without waiting."""
    return RemoteCallWrapper(max_attempts=3, wait_multiplier=0)


@pytest.fixture
def auth():
    return AuthContext("access-token", "refresh-token")


@pytest.fixture
def drive_tree():
    """Folder tree served by the fake Drive client.

    My Drive (root): r1, r2, Holidays
      Holidays (f1): h1..h5, Beach
        Beach (f2): b1
    """
    return {
        "root": {
            "files": [drive_file("r1"), drive_file("r2")],
            "folders": [drive_folder("f1", "Holidays")],
        },
        "f1": {
            "files": [drive_file(f"h{i}") for i in range(1, 6)],
            "folders": [drive_folder("f2", "Beach")],
        },
        "f2": {
            "files": [drive_file("b1", mime_type="video/mp4", size=4096)],
            "folders": [],
        },
    }


@pytest.fixture
def drive(drive_tree):
    """Mock Drive client paging through drive_tree two entries at a time."""
    page_size = 2

    async def list_folder_page(token, folder_id, page_token=None):
        if folder_id not in drive_tree:
            raise NotFoundOrGoneError(f"Folder {folder_id} not found", 404)
        entry = drive_tree[folder_id]
        items = entry["folders"] + entry["files"]
        start = int(page_token or 0)
        chunk = items[start:start + page_size]
        next_token = str(start + page_size) if start + page_size < len(items) else None
        return DriveListPage(
            files=[i for i in chunk if not i.is_folder],
            folders=[i for i in chunk if i.is_folder],
            next_page_token=next_token,
        )

    async def get_file(token, file_id):
        for entry in drive_tree.values():
            for item in entry["files"] + entry["folders"]:
                if item.id == file_id:
                    return item
        raise NotFoundOrGoneError(f"File {file_id} not found", 404)

    async def download(token, file_id):
        return f"bytes-{file_id}".encode()

    client = MagicMock(spec=DriveClient)
    client.list_folder_page = AsyncMock(side_effect=list_folder_page)
    client.get_file = AsyncMock(side_effect=get_file)
    client.download = AsyncMock(side_effect=download)
    client.close = AsyncMock()
    return client


@pytest.fixture
def photos():
    """Mock Photos client that accepts everything."""

    async def upload_bytes(token, content, file_name, mime_type):
        return f"upload-token-{file_name}"

    async def create_media_item(token, upload_token, file_name):
        return f"media-{file_name}"

    async def create_album(token, title):
        return Album(id=f"album-{title}", title=title, product_url=f"https://photos.example/{title}")

    async def get_album(token, album_id):
        return Album(id=album_id, title="Existing", product_url=f"https://photos.example/{album_id}")

    client = MagicMock(spec=PhotosClient)
    client.upload_bytes = AsyncMock(side_effect=upload_bytes)
    client.create_media_item = AsyncMock(side_effect=create_media_item)
    client.create_album = AsyncMock(side_effect=create_album)
    client.get_album = AsyncMock(side_effect=get_album)
    client.list_albums = AsyncMock(return_value={"albums": [], "next_page_token": None})
    client.add_media_items = AsyncMock(return_value=None)
    client.close = AsyncMock()
    return client


@pytest.fixture
def cache(drive, remote, hub):
    return DriveCache(drive, remote, hub)


@pytest.fixture
def sync_engine(store, cache):
    return SyncStatusEngine(store, cache)


@pytest.fixture
def uploads(store, sync_engine, drive, photos, remote, hub, registry):
    return UploadQueueManager(store, sync_engine, drive, photos, remote, hub, registry)


@pytest.fixture
def albums(store, cache, uploads, photos, remote, hub, registry):
    return AlbumQueueManager(store, cache, uploads, photos, remote, hub, registry)


@pytest.fixture
def discovery(cache, uploads, drive, remote, hub):
    return EnqueueAllWorkflow(cache, uploads, drive, remote, hub, batch_size=3)


@pytest.fixture
def coordinator(tmp_state_file, drive, photos):
    """Create a coordinator wired to the mock clients."""
    config = ServiceConfig(
        state_file=tmp_state_file,
        wait_multiplier=0,
        completed_operation_ttl=None,
        failed_operation_ttl=None,
    )
    return MigrationCoordinator(config, drive=drive, photos=photos)
