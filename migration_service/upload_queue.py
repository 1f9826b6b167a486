"""
Module for the per-user upload queue and its processing loop.
"""
import asyncio
import logging
import uuid
from dataclasses import asdict
from typing import Any, Dict, Iterable, List, Optional

from .auth import AuthContext
from .drive import DriveClient
from .errors import ConflictError
from .models import (
    AddToQueueResult,
    FileDescriptor,
    QueueItem,
    QueueItemStatus,
    QueueType,
    SkippedFile,
    UploadRecord,
    utc_now,
)
from .operations import OperationStatusHub, OperationType
from .photos import PhotosClient
from .rate_tracker import UploadRateTracker
from .registry import ProcessingRegistry
from .remote import RetryCallback, RemoteCallWrapper
from .store import RecordStore
from .sync_status import SyncStatusEngine

logger = logging.getLogger(__name__)

SKIP_ALREADY_QUEUED = "already queued"
SKIP_ALREADY_SYNCED = "already synced"
SKIP_IGNORED = "ignored"
SKIP_INVALID = "invalid descriptor"
STOPPED_REASON = "Stopped by user"
INTERRUPTED_REASON = "Interrupted before completion"


class UploadQueueManager:
    """Owns the upload queue: enqueueing, the processing loop and the transfer primitive."""

    def __init__(self, store: RecordStore, sync_engine: SyncStatusEngine,
                 drive: DriveClient, photos: PhotosClient, remote: RemoteCallWrapper,
                 hub: OperationStatusHub, registry: ProcessingRegistry,
                 rate_tracker: Optional[UploadRateTracker] = None):
        self.store = store
        self.sync_engine = sync_engine
        self.drive = drive
        self.photos = photos
        self.remote = remote
        self.hub = hub
        self.registry = registry
        self.rate_tracker = rate_tracker or UploadRateTracker()

    # -- enqueue -------------------------------------------------------------

    def add_to_queue(self, user_key: str, descriptors: Iterable[FileDescriptor],
                     operation_id: Optional[str] = None) -> AddToQueueResult:
        """Add files to the user's upload queue.

        Each descriptor is judged on its own; a bad one is skipped, never raised.

        Args:
            user_key: Owner of the queue
            descriptors: Files to enqueue
            operation_id: Optional operation to report enqueue progress on

        Returns:
            AddToQueueResult listing added items and skipped files with a reason
        """
        descriptors = list(descriptors)
        result = AddToQueueResult()
        with self.store.batch():
            for index, descriptor in enumerate(descriptors, 1):
                reason = self._skip_reason(user_key, descriptor)
                if reason:
                    file_id = getattr(descriptor, 'remote_file_id', None)
                    result.skipped.append(SkippedFile(str(file_id or ''), reason))
                else:
                    item = QueueItem(
                        id=str(uuid.uuid4()),
                        user_key=user_key,
                        remote_file_id=descriptor.remote_file_id,
                        file_name=descriptor.file_name,
                        mime_type=descriptor.mime_type,
                        size=descriptor.size,
                    )
                    result.added.append(self.store.insert_queue_item(item))

                if operation_id and (index % 50 == 0 or index == len(descriptors)):
                    self.hub.update_operation(
                        operation_id, metadata={'details': f"Queued {index}/{len(descriptors)} files"}
                    )

        logger.info(f"Added {len(result.added)} files to upload queue for {user_key}, "
                    f"skipped {len(result.skipped)}")
        return result

    def _skip_reason(self, user_key: str, descriptor: Any) -> Optional[str]:
        if not _is_valid_descriptor(descriptor):
            return SKIP_INVALID
        if self.store.has_active_queue_item(user_key, descriptor.remote_file_id):
            return SKIP_ALREADY_QUEUED
        if self.store.has_upload_record(user_key, descriptor.remote_file_id):
            return SKIP_ALREADY_SYNCED
        if self.store.is_file_ignored(user_key, descriptor.remote_file_id):
            return SKIP_IGNORED
        return None

    # -- transfer ------------------------------------------------------------

    async def transfer_file(self, user_key: str, auth: AuthContext,
                            descriptor: FileDescriptor,
                            on_retry: Optional[RetryCallback] = None) -> str:
        """Copy one file from Drive into the Photos library.

        Downloads the bytes, uploads them, creates the media item, records the
        upload and refreshes the rollups of the file's ancestors.

        Args:
            user_key: Owner of the file
            auth: Credentials for both APIs
            descriptor: File to transfer
            on_retry: Optional hook called before each retry

        Returns:
            The new media item id
        """
        file_id = descriptor.remote_file_id
        name = descriptor.file_name

        content = await self.remote.call(
            auth, lambda token: self.drive.download(token, file_id),
            description=f"download {name}", on_retry=on_retry,
        )
        upload_token = await self.remote.call(
            auth,
            lambda token: self.photos.upload_bytes(token, content, name, descriptor.mime_type),
            description=f"upload {name}", on_retry=on_retry,
        )
        media_item_id = await self.remote.call(
            auth, lambda token: self.photos.create_media_item(token, upload_token, name),
            description=f"create media item for {name}", on_retry=on_retry,
        )

        with self.store.batch():
            self.store.record_upload(user_key, UploadRecord(
                remote_file_id=file_id,
                remote_media_item_id=media_item_id,
                file_name=name,
                mime_type=descriptor.mime_type,
            ))
            self.sync_engine.invalidate_file(user_key, file_id)
        self.rate_tracker.add_upload(descriptor.size or len(content))
        logger.info(f"Uploaded {name} ({file_id}) as media item {media_item_id}")
        return media_item_id

    # -- processing loop -------------------------------------------------------

    async def start_processing(self, user_key: str, auth: AuthContext) -> bool:
        """Drain the user's pending items, one at a time, in creation order.

        A call made while a loop is already running for the user returns
        immediately.

        Returns:
            False if another loop owns the queue, True once this loop has finished
        """
        if not self.registry.try_claim(user_key, QueueType.UPLOAD):
            return False

        try:
            self._reset_interrupted_items(user_key)
            pending = self.store.count_queue_items(user_key)[QueueItemStatus.PENDING.value]
            async with self.hub.track_operation(
                OperationType.LONG_WRITE,
                "Processing Upload Queue",
                description=f"Uploading {pending} files to Photos",
                total=pending,
                metadata={'user_key': user_key, 'queue_type': QueueType.UPLOAD.value},
            ) as op_id:
                summary = await self._process_pending(user_key, auth, op_id)
                self.hub.complete_operation(op_id, summary)
        finally:
            self.registry.release(user_key, QueueType.UPLOAD)
        return True

    async def _process_pending(self, user_key: str, auth: AuthContext,
                               op_id: str) -> Dict[str, int]:
        summary = {'processed': 0, 'completed': 0, 'failed': 0, 'stopped': 0}
        while True:
            if self.registry.stop_requested(user_key, QueueType.UPLOAD):
                summary['stopped'] = self._mark_pending_stopped(user_key)
                logger.info(f"Upload processing for {user_key} stopped, "
                            f"{summary['stopped']} pending items marked failed")
                break

            item = self.store.next_pending_queue_item(user_key)
            if item is None:
                break

            succeeded = await self._process_item(user_key, auth, item, op_id)
            summary['processed'] += 1
            summary['completed' if succeeded else 'failed'] += 1

            remaining = self.store.count_queue_items(user_key)[QueueItemStatus.PENDING.value]
            self.hub.update_progress(op_id, summary['processed'], summary['processed'] + remaining)
            await asyncio.sleep(0)

        logger.info(f"Upload processing for {user_key} finished: {summary}")
        return summary

    async def _process_item(self, user_key: str, auth: AuthContext, item: QueueItem,
                            op_id: str) -> bool:
        self.store.update_queue_item(user_key, item.id, status=QueueItemStatus.UPLOADING,
                                     started_at=utc_now(), error=None)
        self.hub.update_operation(op_id, metadata={'details': f"Uploading {item.file_name}"})

        # The album workflow may have copied this file since it was queued.
        record = self.store.get_upload_record(user_key, item.remote_file_id)
        if record is not None:
            logger.info(f"{item.file_name} ({item.remote_file_id}) is already uploaded "
                        f"as media item {record.remote_media_item_id}")
            self.store.update_queue_item(user_key, item.id, status=QueueItemStatus.COMPLETED,
                                         remote_media_item_id=record.remote_media_item_id,
                                         completed_at=utc_now())
            return True

        def on_retry(error: BaseException, attempt: int, max_attempts: int) -> None:
            self.hub.retry_operation(op_id, f"{item.file_name}: {error}", attempt, max_attempts)

        try:
            media_item_id = await self.transfer_file(user_key, auth, item.descriptor(), on_retry)
        except Exception as e:
            logger.error(f"Failed to upload {item.file_name} ({item.remote_file_id}): {e}")
            self.store.update_queue_item(user_key, item.id, status=QueueItemStatus.FAILED,
                                         error=str(e), completed_at=utc_now())
            return False

        self.store.update_queue_item(user_key, item.id, status=QueueItemStatus.COMPLETED,
                                     remote_media_item_id=media_item_id, completed_at=utc_now())
        return True

    def _mark_pending_stopped(self, user_key: str) -> int:
        pending = self.store.get_queue(user_key, QueueItemStatus.PENDING)
        with self.store.batch():
            for item in pending:
                self.store.update_queue_item(user_key, item.id, status=QueueItemStatus.FAILED,
                                             error=STOPPED_REASON, completed_at=utc_now())
        return len(pending)

    def _reset_interrupted_items(self, user_key: str) -> None:
        # Only called while holding the slot, so any uploading item is left over
        # from a loop that no longer exists.
        for item in self.store.get_queue(user_key, QueueItemStatus.UPLOADING):
            logger.warning(f"Marking interrupted upload of {item.file_name} as failed")
            self.store.update_queue_item(user_key, item.id, status=QueueItemStatus.FAILED,
                                         error=INTERRUPTED_REASON, completed_at=utc_now())

    def stop_processing(self, user_key: str) -> bool:
        """Ask the running loop to stop before its next item.

        Returns:
            True if a loop was running
        """
        return self.registry.request_stop(user_key, QueueType.UPLOAD)

    def is_processing(self, user_key: str) -> bool:
        return self.registry.is_running(user_key, QueueType.UPLOAD)

    # -- queue maintenance -----------------------------------------------------

    def get_queue(self, user_key: str,
                  status: Optional[QueueItemStatus] = None) -> List[QueueItem]:
        return self.store.get_queue(user_key, status)

    def get_stats(self, user_key: str) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.store.count_queue_items(user_key))
        stats['uploaded_files'] = self.store.count_upload_records(user_key)
        stats['is_processing'] = self.is_processing(user_key)
        stats['rate'] = asdict(self.rate_tracker.get_stats())
        return stats

    def requeue_failed(self, user_key: str) -> int:
        """Move every failed item back to pending, clearing its error."""
        failed = self.store.get_queue(user_key, QueueItemStatus.FAILED)
        with self.store.batch():
            for item in failed:
                self.store.update_queue_item(user_key, item.id, status=QueueItemStatus.PENDING,
                                             error=None, started_at=None, completed_at=None)
        logger.info(f"Re-queued {len(failed)} failed items for {user_key}")
        return len(failed)

    def clear_completed(self, user_key: str) -> int:
        removed = self.store.clear_queue_items(
            user_key, [QueueItemStatus.COMPLETED, QueueItemStatus.FAILED]
        )
        logger.info(f"Cleared {removed} finished items from upload queue of {user_key}")
        return removed

    def remove_item(self, user_key: str, item_id: str) -> bool:
        """Remove one queue item.

        Raises:
            ConflictError: If the item is currently being uploaded
        """
        item = self.store.get_queue_item(user_key, item_id)
        if item is None:
            return False
        if item.status == QueueItemStatus.UPLOADING and self.is_processing(user_key):
            raise ConflictError("Cannot remove an item while it is uploading", {"id": item_id})
        return self.store.remove_queue_item(user_key, item_id)

    def ignore_files(self, user_key: str, remote_file_ids: Iterable[str]) -> None:
        remote_file_ids = list(remote_file_ids)
        self.store.set_files_ignored(user_key, remote_file_ids, True)
        logger.info(f"Ignoring {len(remote_file_ids)} files for {user_key}")

    def unignore_file(self, user_key: str, remote_file_id: str) -> None:
        self.store.set_files_ignored(user_key, [remote_file_id], False)

    def get_ignored_files(self, user_key: str) -> List[str]:
        return sorted(self.store.get_ignored_file_ids(user_key))


def _is_valid_descriptor(descriptor: Any) -> bool:
    for attr in ('remote_file_id', 'file_name', 'mime_type'):
        value = getattr(descriptor, attr, None)
        if not isinstance(value, str) or not value.strip():
            return False
    size = getattr(descriptor, 'size', None)
    return size is None or (isinstance(size, int) and size >= 0)
