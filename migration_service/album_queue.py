"""
Module for the per-user album queue: turns Drive folders into Photos albums.
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from .auth import AuthContext
from .cache import DriveCache
from .errors import (
    AuthExpiredError,
    ConflictError,
    MigrationError,
    NotFoundOrGoneError,
    RemoteAPIError,
    ValidationError,
)
from .models import (
    TERMINAL_ALBUM_STATUSES,
    AddMediaItemsResult,
    Album,
    AlbumItem,
    AlbumItemStatus,
    AlbumMode,
    AlbumQueueItem,
    AlbumQueueStatus,
    DriveFile,
    FolderAlbumMapping,
    QueueType,
    utc_now,
)
from .operations import OperationStatusHub, OperationType
from .photos import MAX_ALBUM_BATCH, PhotosClient
from .registry import ProcessingRegistry
from .remote import RemoteCallWrapper
from .store import RecordStore
from .upload_queue import UploadQueueManager

logger = logging.getLogger(__name__)

CANCELLED_REASON = "Cancelled by user"
INTERRUPTED_REASON = "Interrupted before completion"
MAX_ALBUM_PAGES = 100


class WorkflowCancelled(Exception):
    """Raised inside an album workflow when a stop was requested at a checkpoint."""


class AlbumQueueManager:
    """Owns the album queue and runs each folder through upload, album and mapping steps."""

    def __init__(self, store: RecordStore, cache: DriveCache, uploads: UploadQueueManager,
                 photos: PhotosClient, remote: RemoteCallWrapper, hub: OperationStatusHub,
                 registry: ProcessingRegistry, discover_albums: bool = True):
        self.store = store
        self.cache = cache
        self.uploads = uploads
        self.photos = photos
        self.remote = remote
        self.hub = hub
        self.registry = registry
        self.discover_albums = discover_albums

    # -- enqueue -------------------------------------------------------------

    async def add_to_queue(self, user_key: str, remote_folder_id: str, folder_name: str,
                           auth: Optional[AuthContext] = None) -> AlbumQueueItem:
        """Queue a folder to become an album, or to update its existing album.

        Args:
            user_key: Owner of the folder
            remote_folder_id: Drive folder id
            folder_name: Folder name, used as the album title
            auth: Optional credentials, enables lookup of an existing app-created album

        Returns:
            The new album queue item

        Raises:
            ValidationError: If the folder id or name is missing
            ConflictError: If the folder already has an active album queue item
        """
        if not isinstance(remote_folder_id, str) or not remote_folder_id.strip():
            raise ValidationError("remote_folder_id is required")
        if not isinstance(folder_name, str) or not folder_name.strip():
            raise ValidationError("folder_name is required", {"remote_folder_id": remote_folder_id})

        active = self._active_item_for_folder(user_key, remote_folder_id)
        if active is not None:
            raise ConflictError("Folder is already in the album queue",
                                {"remote_folder_id": remote_folder_id, "album_queue_id": active.id})

        mapping = self.store.get_folder_album_mapping(user_key, remote_folder_id)
        if (mapping is None or mapping.album_deleted) and auth is not None and self.discover_albums:
            mapping = await self.discover_album_for_folder(user_key, auth, remote_folder_id,
                                                           folder_name) or mapping

        item = AlbumQueueItem(
            id=str(uuid.uuid4()),
            user_key=user_key,
            remote_folder_id=remote_folder_id,
            folder_name=folder_name,
            mode=_mode_for(mapping),
        )
        item = self.store.insert_album_queue_item(item)
        logger.info(f"Queued folder {folder_name} ({remote_folder_id}) for album "
                    f"{item.mode.value.lower()} for {user_key}")
        return item

    def _active_item_for_folder(self, user_key: str,
                                remote_folder_id: str) -> Optional[AlbumQueueItem]:
        for item in self.store.get_album_queue(user_key):
            if (item.remote_folder_id == remote_folder_id
                    and item.status not in TERMINAL_ALBUM_STATUSES):
                return item
        return None

    async def discover_album_for_folder(self, user_key: str, auth: AuthContext,
                                        remote_folder_id: str,
                                        folder_name: str) -> Optional[FolderAlbumMapping]:
        """Look for an app-created album titled like the folder and record it.

        Lookup failures are logged and treated as "no album found".

        Returns:
            The new mapping, or None if no album matched
        """
        try:
            album = await self._find_album_by_title(auth, folder_name)
        except MigrationError as e:
            logger.warning(f"Could not look up existing albums for {folder_name}: {e}")
            return None

        if album is None:
            logger.info(f"No existing app-created album titled {folder_name}")
            return None

        logger.info(f"Found existing album {album.id} for folder {folder_name}")
        return self.store.upsert_folder_album_mapping(FolderAlbumMapping(
            user_key=user_key,
            remote_folder_id=remote_folder_id,
            folder_name=folder_name,
            album_id=album.id,
            album_url=album.product_url,
            total_items_in_album=album.media_items_count,
            discovered_via_api=True,
            last_updated_at=utc_now(),
        ))

    async def _find_album_by_title(self, auth: AuthContext, title: str) -> Optional[Album]:
        page_token = None
        for _ in range(MAX_ALBUM_PAGES):
            page = await self.remote.call(
                auth, lambda token, pt=page_token: self.photos.list_albums(token, pt),
                description="list albums",
            )
            for album in page['albums']:
                if album.title == title:
                    return album
            page_token = page['next_page_token']
            if not page_token:
                break
        return None

    # -- processing loop -------------------------------------------------------

    async def start_processing(self, user_key: str, auth: AuthContext) -> bool:
        """Process the user's PENDING album items in creation order.

        Returns:
            False if another loop owns the album queue, True once this loop has finished
        """
        if not self.registry.try_claim(user_key, QueueType.ALBUM):
            return False

        try:
            self._reset_interrupted_items(user_key)
            pending = len(self.store.get_album_queue(user_key, AlbumQueueStatus.PENDING))
            async with self.hub.track_operation(
                OperationType.LONG_WRITE,
                "Processing Album Queue",
                description=f"Creating or updating {pending} albums",
                total=pending,
                metadata={'user_key': user_key, 'queue_type': QueueType.ALBUM.value},
            ) as op_id:
                processed = 0
                while not self.registry.stop_requested(user_key, QueueType.ALBUM):
                    item = self.store.next_pending_album_item(user_key)
                    if item is None:
                        break
                    await self._process_item(user_key, auth, item, op_id)
                    processed += 1
                    remaining = len(self.store.get_album_queue(user_key, AlbumQueueStatus.PENDING))
                    self.hub.update_progress(op_id, processed, processed + remaining)
                    await asyncio.sleep(0)
                self.hub.complete_operation(op_id, {'processed': processed})
        finally:
            self.registry.release(user_key, QueueType.ALBUM)
        return True

    def _reset_interrupted_items(self, user_key: str) -> None:
        in_flight = {AlbumQueueStatus.UPLOADING, AlbumQueueStatus.CREATING, AlbumQueueStatus.UPDATING}
        for item in self.store.get_album_queue(user_key):
            if item.status in in_flight:
                logger.warning(f"Marking interrupted album workflow for {item.folder_name} as failed")
                self.store.update_album_queue_item(user_key, item.id, status=AlbumQueueStatus.FAILED,
                                                   error=INTERRUPTED_REASON, completed_at=utc_now())

    async def _process_item(self, user_key: str, auth: AuthContext, item: AlbumQueueItem,
                            op_id: str) -> None:
        try:
            await self._run_workflow(user_key, auth, item, op_id)
        except WorkflowCancelled:
            logger.info(f"Album workflow for {item.folder_name} cancelled")
            self.store.update_album_queue_item(user_key, item.id,
                                               status=AlbumQueueStatus.CANCELLED,
                                               error=CANCELLED_REASON, completed_at=utc_now())
        except Exception as e:
            logger.error(f"Album workflow for {item.folder_name} failed: {e}")
            current = self.store.get_album_queue_item(user_key, item.id)
            if current is not None and current.status not in TERMINAL_ALBUM_STATUSES:
                self.store.update_album_queue_item(user_key, item.id,
                                                   status=AlbumQueueStatus.FAILED,
                                                   error=str(e), completed_at=utc_now())

    async def _run_workflow(self, user_key: str, auth: AuthContext, item: AlbumQueueItem,
                            op_id: str) -> None:
        self.hub.update_operation(op_id, metadata={'details': f"Reading folder {item.folder_name}"})

        # 1. Resolve the folder's current files; the item stays PENDING until this succeeds
        entry = await self.cache.ensure_folder(user_key, auth, item.remote_folder_id,
                                               item.folder_name)
        current = self.store.get_album_queue_item(user_key, item.id)
        if current is None or current.status != AlbumQueueStatus.PENDING:
            state = current.status.value if current else "removed"
            logger.info(f"Album item for {item.folder_name} was {state} while its folder "
                        f"was read, skipping")
            return

        files = {f.id: f for f in entry.files}
        self.store.update_album_queue_item(user_key, item.id, status=AlbumQueueStatus.UPLOADING,
                                           started_at=utc_now(), completed_at=None, error=None,
                                           total_files=len(files))
        self.store.add_album_items(item.id, files.keys())

        # 2. Upload everything not uploaded yet
        await self._upload_items(user_key, auth, item, files, op_id)

        # 3. Create or update the album
        self._check_cancelled(user_key)
        uploaded = self.store.get_album_items(item.id, AlbumItemStatus.UPLOADED)
        if not uploaded:
            raise MigrationError(f"No files from {item.folder_name} could be uploaded")

        mapping = self.store.get_folder_album_mapping(user_key, item.remote_folder_id)
        album = await self._resolve_album(user_key, auth, item, mapping, op_id)
        result = await self._add_media_items(auth, album.id, uploaded)
        self._mark_rejected(item.id, uploaded, result)
        if not result.added:
            raise MigrationError(result.errors[0] if result.errors else "Adding media items failed")

        # 4. Record the folder to album link
        in_album = len(self.store.get_album_items(item.id, AlbumItemStatus.UPLOADED))
        self.store.upsert_folder_album_mapping(FolderAlbumMapping(
            user_key=user_key,
            remote_folder_id=item.remote_folder_id,
            folder_name=item.folder_name,
            album_id=album.id,
            album_url=album.product_url,
            total_items_in_album=in_album,
            discovered_via_api=bool(mapping and mapping.discovered_via_api),
            album_deleted=False,
            last_updated_at=utc_now(),
        ))

        error = None
        if result.rejected:
            error = (f"{len(result.rejected)} file(s) could not be added to the album: "
                     f"{', '.join(result.rejected)}")
        self.store.update_album_queue_item(user_key, item.id, status=AlbumQueueStatus.COMPLETED,
                                           album_id=album.id, album_url=album.product_url,
                                           uploaded_files=in_album, error=error,
                                           completed_at=utc_now())
        logger.info(f"Album {album.id} for {item.folder_name} now has {in_album} items"
                    + (f" ({len(result.rejected)} rejected)" if result.rejected else ""))

    async def _upload_items(self, user_key: str, auth: AuthContext, item: AlbumQueueItem,
                            files: Dict[str, DriveFile], op_id: str) -> None:
        album_items = self.store.get_album_items(item.id)
        uploaded = sum(1 for a in album_items if a.status == AlbumItemStatus.UPLOADED)

        for album_item in album_items:
            if album_item.status == AlbumItemStatus.UPLOADED:
                continue
            self._check_cancelled(user_key)

            media_item_id = self._upload_media_item_id(user_key, album_item)
            if media_item_id is None:
                drive_file = files.get(album_item.remote_file_id)
                if drive_file is None:
                    self.store.update_album_item(item.id, album_item.id,
                                                 status=AlbumItemStatus.FAILED,
                                                 error_message="File is no longer in the folder")
                    continue
                self.hub.update_operation(op_id, metadata={
                    'details': f"Uploading {drive_file.name} for album {item.folder_name}"
                })
                try:
                    media_item_id = await self.uploads.transfer_file(
                        user_key, auth, drive_file.descriptor()
                    )
                except Exception as e:
                    logger.error(f"Upload of {drive_file.name} for album {item.folder_name} failed: {e}")
                    self.store.update_album_item(item.id, album_item.id,
                                                 status=AlbumItemStatus.FAILED,
                                                 error_message=str(e))
                    continue

            self.store.update_album_item(item.id, album_item.id, status=AlbumItemStatus.UPLOADED,
                                         remote_media_item_id=media_item_id, error_message=None)
            uploaded += 1
            self.store.update_album_queue_item(user_key, item.id, uploaded_files=uploaded)

    def _upload_media_item_id(self, user_key: str, album_item: AlbumItem) -> Optional[str]:
        record = self.store.get_upload_record(user_key, album_item.remote_file_id)
        return record.remote_media_item_id if record else None

    async def _resolve_album(self, user_key: str, auth: AuthContext, item: AlbumQueueItem,
                             mapping: Optional[FolderAlbumMapping], op_id: str) -> Album:
        if item.mode == AlbumMode.UPDATE and mapping is not None and not mapping.album_deleted:
            self.store.update_album_queue_item(user_key, item.id, status=AlbumQueueStatus.UPDATING)
            self.hub.update_operation(op_id, metadata={'details': f"Updating album {item.folder_name}"})
            try:
                return await self.remote.call(
                    auth, lambda token: self.photos.get_album(token, mapping.album_id),
                    description=f"get album {mapping.album_id}",
                )
            except NotFoundOrGoneError as e:
                self.store.mark_album_deleted(user_key, item.remote_folder_id)
                raise MigrationError(
                    f"Album {mapping.album_id} no longer exists; re-queue the folder to create a new one",
                    {"album_id": mapping.album_id},
                ) from e

        self.store.update_album_queue_item(user_key, item.id, status=AlbumQueueStatus.CREATING,
                                           mode=AlbumMode.CREATE)
        self.hub.update_operation(op_id, metadata={'details': f"Creating album {item.folder_name}"})
        return await self.remote.call(
            auth, lambda token: self.photos.create_album(token, item.folder_name),
            description=f"create album {item.folder_name}",
        )

    async def _add_media_items(self, auth: AuthContext, album_id: str,
                               uploaded: List[AlbumItem]) -> AddMediaItemsResult:
        """Add media items in batches; a rejected batch does not stop the others."""
        result = AddMediaItemsResult()
        ids = [a.remote_media_item_id for a in uploaded]
        for start in range(0, len(ids), MAX_ALBUM_BATCH):
            chunk = ids[start:start + MAX_ALBUM_BATCH]
            try:
                await self.remote.call(
                    auth, lambda token, c=chunk: self.photos.add_media_items(token, album_id, c),
                    description=f"add {len(chunk)} media items to album {album_id}",
                )
            except AuthExpiredError:
                raise
            except RemoteAPIError as e:
                logger.error(f"Album {album_id} rejected {len(chunk)} media items: {e}")
                result.rejected.extend(chunk)
                result.errors.append(str(e))
                continue
            result.added.extend(chunk)
        return result

    def _mark_rejected(self, album_queue_id: str, uploaded: List[AlbumItem],
                       result: AddMediaItemsResult) -> None:
        if not result.rejected:
            return
        rejected = set(result.rejected)
        message = result.errors[0] if result.errors else "Rejected by album"
        for album_item in uploaded:
            if album_item.remote_media_item_id in rejected:
                self.store.update_album_item(album_queue_id, album_item.id,
                                             status=AlbumItemStatus.FAILED_ADD,
                                             error_message=message)

    def _check_cancelled(self, user_key: str) -> None:
        if self.registry.stop_requested(user_key, QueueType.ALBUM):
            raise WorkflowCancelled()

    def stop_processing(self, user_key: str) -> int:
        """Cancel every PENDING item now and flag the running workflow to stop.

        The item being processed stops at its next checkpoint, unless the
        album call has already been issued.

        Returns:
            Number of PENDING items cancelled
        """
        pending = self.store.get_album_queue(user_key, AlbumQueueStatus.PENDING)
        with self.store.batch():
            for item in pending:
                self.store.update_album_queue_item(user_key, item.id,
                                                   status=AlbumQueueStatus.CANCELLED,
                                                   error=CANCELLED_REASON, completed_at=utc_now())
        self.registry.request_stop(user_key, QueueType.ALBUM)
        logger.info(f"Cancelled {len(pending)} pending album items for {user_key}")
        return len(pending)

    def is_processing(self, user_key: str) -> bool:
        return self.registry.is_running(user_key, QueueType.ALBUM)

    # -- queue maintenance -----------------------------------------------------

    def get_queue(self, user_key: str,
                  status: Optional[AlbumQueueStatus] = None) -> List[AlbumQueueItem]:
        return self.store.get_album_queue(user_key, status)

    def get_stats(self, user_key: str) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.store.count_album_queue_items(user_key))
        stats['is_processing'] = self.is_processing(user_key)
        return stats

    def get_album_items(self, album_queue_id: str,
                        status: Optional[AlbumItemStatus] = None) -> List[AlbumItem]:
        return self.store.get_album_items(album_queue_id, status)

    def get_failed_items(self, user_key: str) -> List[Dict[str, Any]]:
        """List album queue items that have files which failed to upload or attach."""
        failed = []
        for item in self.store.get_album_queue(user_key):
            items = [
                a for a in self.store.get_album_items(item.id)
                if a.status in (AlbumItemStatus.FAILED, AlbumItemStatus.FAILED_ADD)
            ]
            if items:
                failed.append({'album': item, 'items': items})
        return failed

    def get_folder_album_mappings(self, user_key: str,
                                  remote_folder_ids: Iterable[str]) -> Dict[str, FolderAlbumMapping]:
        return self.store.get_folder_album_mappings(user_key, remote_folder_ids)

    def requeue_failed(self, user_key: str) -> int:
        """Re-queue FAILED and CANCELLED items."""
        return self._requeue(user_key, {AlbumQueueStatus.FAILED, AlbumQueueStatus.CANCELLED})

    def requeue_completed(self, user_key: str) -> int:
        """Re-queue COMPLETED items so their albums pick up new files."""
        return self._requeue(user_key, {AlbumQueueStatus.COMPLETED})

    def _requeue(self, user_key: str, statuses: set) -> int:
        count = 0
        for item in self.store.get_album_queue(user_key):
            if item.status not in statuses:
                continue
            active = self._active_item_for_folder(user_key, item.remote_folder_id)
            if active is not None:
                logger.info(f"Not re-queueing {item.folder_name}: folder is already queued")
                continue

            for album_item in self.store.get_album_items(item.id):
                if album_item.status == AlbumItemStatus.FAILED:
                    self.store.update_album_item(item.id, album_item.id,
                                                 status=AlbumItemStatus.PENDING, error_message=None)
                elif album_item.status == AlbumItemStatus.FAILED_ADD:
                    self.store.update_album_item(item.id, album_item.id,
                                                 status=AlbumItemStatus.UPLOADED, error_message=None)

            mapping = self.store.get_folder_album_mapping(user_key, item.remote_folder_id)
            self.store.update_album_queue_item(
                user_key, item.id, status=AlbumQueueStatus.PENDING, mode=_mode_for(mapping),
                error=None, started_at=None, completed_at=None,
                uploaded_files=len(self.store.get_album_items(item.id, AlbumItemStatus.UPLOADED)),
            )
            count += 1
        logger.info(f"Re-queued {count} album items for {user_key}")
        return count

    def clear_completed(self, user_key: str) -> int:
        removed = self.store.clear_album_queue_items(user_key, TERMINAL_ALBUM_STATUSES)
        logger.info(f"Cleared {removed} finished album items for {user_key}")
        return removed

    def remove_item(self, user_key: str, item_id: str) -> bool:
        """Remove one album queue item and its album items.

        Raises:
            ConflictError: If the item is in the middle of its workflow
        """
        item = self.store.get_album_queue_item(user_key, item_id)
        if item is None:
            return False
        in_flight = {AlbumQueueStatus.UPLOADING, AlbumQueueStatus.CREATING, AlbumQueueStatus.UPDATING}
        if item.status in in_flight and self.is_processing(user_key):
            raise ConflictError("Cannot remove an album item while it is being processed",
                                {"id": item_id})
        return self.store.remove_album_queue_item(user_key, item_id)


def _mode_for(mapping: Optional[FolderAlbumMapping]) -> AlbumMode:
    if mapping is not None and not mapping.album_deleted:
        return AlbumMode.UPDATE
    return AlbumMode.CREATE
