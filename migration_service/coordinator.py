"""
Module wiring the migration components together behind one facade.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from .album_queue import AlbumQueueManager
from .auth import AuthContext, OAuthTokenRefresher
from .cache import DriveCache
from .config import ServiceConfig
from .discovery import EnqueueAllWorkflow
from .drive import DriveClient
from .models import (
    AddToQueueResult,
    AlbumQueueItem,
    AlbumQueueStatus,
    CachedFolder,
    CachedPage,
    EnqueueAllResult,
    FileDescriptor,
    QueueItem,
    QueueItemStatus,
    RecursiveSyncResult,
    SyncStatusDetail,
)
from .operations import OperationStatusHub, Subscription
from .photos import PhotosClient
from .registry import ProcessingRegistry
from .remote import RemoteCallWrapper
from .store import RecordStore
from .sync_status import SyncStatusEngine
from .upload_queue import UploadQueueManager

logger = logging.getLogger(__name__)


class MigrationCoordinator:
    """Builds the service graph and exposes the operations callers need."""

    def __init__(self, config: Optional[ServiceConfig] = None,
                 store: Optional[RecordStore] = None,
                 drive: Optional[DriveClient] = None,
                 photos: Optional[PhotosClient] = None):
        """Initialize the coordinator.

        Args:
            config: Service settings, defaults to ServiceConfig()
            store: Record store, defaults to one backed by config.state_file
            drive: Drive API client
            photos: Photos API client
        """
        self.config = config or ServiceConfig()
        self.store = store or RecordStore(state_file=self.config.state_file)
        self.drive = drive or DriveClient(page_size=self.config.page_size)
        self.photos = photos or PhotosClient()
        self.remote = RemoteCallWrapper(
            max_attempts=self.config.max_attempts,
            wait_multiplier=self.config.wait_multiplier,
            wait_max=self.config.wait_max,
        )
        self.operations = OperationStatusHub(
            heartbeat_interval=self.config.heartbeat_interval,
            completed_ttl=self.config.completed_operation_ttl,
            failed_ttl=self.config.failed_operation_ttl,
            subscriber_queue_size=self.config.subscriber_queue_size,
        )
        self.registry = ProcessingRegistry()
        self.cache = DriveCache(self.drive, self.remote, self.operations,
                                stale_after=self.config.cache_stale_after)
        self.sync_status = SyncStatusEngine(self.store, self.cache, max_depth=self.config.max_depth)
        self.uploads = UploadQueueManager(self.store, self.sync_status, self.drive, self.photos,
                                          self.remote, self.operations, self.registry)
        self.albums = AlbumQueueManager(self.store, self.cache, self.uploads, self.photos,
                                        self.remote, self.operations, self.registry,
                                        discover_albums=self.config.discover_albums)
        self.discovery = EnqueueAllWorkflow(self.cache, self.uploads, self.drive, self.remote,
                                            self.operations, max_depth=self.config.max_depth,
                                            batch_size=self.config.enqueue_batch_size)

    def create_auth(self, access_token: str, refresh_token: Optional[str] = None,
                    expires_at: Optional[int] = None) -> AuthContext:
        """Build credentials that refresh themselves when client credentials are configured."""
        refresher = None
        if self.config.client_id and self.config.client_secret:
            refresher = OAuthTokenRefresher(self.config.client_id, self.config.client_secret)
        return AuthContext(access_token, refresh_token, expires_at, refresher)

    async def close(self) -> None:
        await self.drive.close()
        await self.photos.close()

    # -- upload queue ----------------------------------------------------------

    def add_to_queue(self, user_key: str,
                     descriptors: Iterable[FileDescriptor]) -> AddToQueueResult:
        return self.uploads.add_to_queue(user_key, descriptors)

    async def start_processing(self, user_key: str, auth: AuthContext) -> bool:
        return await self.uploads.start_processing(user_key, auth)

    def stop_processing(self, user_key: str) -> bool:
        return self.uploads.stop_processing(user_key)

    def get_queue(self, user_key: str,
                  status: Optional[QueueItemStatus] = None) -> List[QueueItem]:
        return self.uploads.get_queue(user_key, status)

    def get_stats(self, user_key: str) -> Dict[str, Any]:
        return self.uploads.get_stats(user_key)

    async def enqueue_all(self, user_key: str, root_folder_id: str, auth: AuthContext,
                          folder_name: Optional[str] = None,
                          start_processing: bool = False) -> EnqueueAllResult:
        return await self.discovery.enqueue_all(user_key, root_folder_id, auth,
                                                folder_name, start_processing)

    # -- album queue -----------------------------------------------------------

    async def add_album_to_queue(self, user_key: str, remote_folder_id: str, folder_name: str,
                                 auth: Optional[AuthContext] = None) -> AlbumQueueItem:
        return await self.albums.add_to_queue(user_key, remote_folder_id, folder_name, auth)

    async def start_album_processing(self, user_key: str, auth: AuthContext) -> bool:
        return await self.albums.start_processing(user_key, auth)

    def stop_album_processing(self, user_key: str) -> int:
        return self.albums.stop_processing(user_key)

    def get_album_queue(self, user_key: str,
                        status: Optional[AlbumQueueStatus] = None) -> List[AlbumQueueItem]:
        return self.albums.get_queue(user_key, status)

    def get_album_stats(self, user_key: str) -> Dict[str, Any]:
        return self.albums.get_stats(user_key)

    # -- cache and sync status -------------------------------------------------

    def is_folder_cached(self, user_key: str, folder_id: str) -> bool:
        return self.cache.is_folder_cached(user_key, folder_id)

    async def sync_folder_to_cache(self, user_key: str, auth: AuthContext,
                                   folder_id: str) -> CachedFolder:
        return await self.cache.sync_folder_to_cache(user_key, auth, folder_id)

    def get_cached_folder_page(self, user_key: str, folder_id: str, offset: int = 0,
                               limit: int = 50) -> Optional[CachedPage]:
        return self.cache.get_cached_folder_page(user_key, folder_id, offset, limit)

    def get_cached_folder_sync_status(self, user_key: str,
                                      folder_id: str) -> Optional[SyncStatusDetail]:
        return self.sync_status.get_cached_folder_sync_status(user_key, folder_id)

    def calculate_folder_sync_status(self, user_key: str, folder_id: str,
                                     force: bool = False) -> Optional[SyncStatusDetail]:
        return self.sync_status.calculate_folder_sync_status(user_key, folder_id, force)

    async def recursively_refresh_folder_sync_status(
            self, user_key: str, folder_id: str,
            auth: Optional[AuthContext] = None) -> RecursiveSyncResult:
        return await self.sync_status.recursively_refresh_folder_sync_status(user_key, folder_id, auth)

    # -- operations --------------------------------------------------------------

    def subscribe(self) -> Subscription:
        return self.operations.subscribe()

    def unsubscribe(self, subscription: Subscription) -> None:
        self.operations.unsubscribe(subscription)
