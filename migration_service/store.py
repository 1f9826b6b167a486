"""
Module for tracking and persisting queue, album and upload records.
"""
import json
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from .errors import InvalidTransitionError, ConflictError
from .models import (
    ACTIVE_QUEUE_STATUSES,
    ALBUM_TRANSITIONS,
    QUEUE_TRANSITIONS,
    TERMINAL_ALBUM_STATUSES,
    AlbumItem,
    AlbumItemStatus,
    AlbumQueueItem,
    AlbumQueueStatus,
    FolderAlbumMapping,
    QueueItem,
    QueueItemStatus,
    SyncStatusDetail,
    UploadRecord,
    album_item_from_dict,
    album_queue_item_from_dict,
    queue_item_from_dict,
    sync_status_from_dict,
    utc_now,
)

logger = logging.getLogger(__name__)


class RecordStore:
    """Durable record store with atomic per-row CRUD, keyed by user.

    Everything lives in memory and, when a state file is configured, is
    written through to JSON after each mutation. Mutations made inside
    batch() are written once, when the outermost batch exits.
    """

    def __init__(self, state_file: Optional[Path] = None):
        """Initialize the record store.

        Args:
            state_file: Path to the state persistence JSON file. If None,
                records are kept in memory only.
        """
        self.state_file = state_file
        self._queue: Dict[str, List[QueueItem]] = {}
        self._album_queue: Dict[str, List[AlbumQueueItem]] = {}
        self._album_items: Dict[str, List[AlbumItem]] = {}
        self._mappings: Dict[str, Dict[str, FolderAlbumMapping]] = {}
        self._uploads: Dict[str, Dict[str, UploadRecord]] = {}
        self._ignored: Dict[str, Set[str]] = {}
        self._sync_status: Dict[str, Dict[str, Dict[str, SyncStatusDetail]]] = {}
        # user -> remote_file_id -> number of pending/uploading queue items
        self._active_files: Dict[str, Dict[str, int]] = {}
        self._lock = threading.RLock()
        self._batch_depth = 0
        self._dirty = False

        self._load_state()

    # -- persistence -------------------------------------------------------

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Defer state file writes until the outermost batch exits."""
        with self._lock:
            self._batch_depth += 1
        try:
            yield
        finally:
            with self._lock:
                self._batch_depth -= 1
                if self._batch_depth == 0 and self._dirty:
                    self._save_state()

    def _load_state(self) -> None:
        """Load records from the state file."""
        if not self.state_file or not self.state_file.exists():
            return

        try:
            with open(self.state_file, 'r') as f:
                data = json.load(f)

            for user, items in data.get('queue', {}).items():
                self._queue[user] = [queue_item_from_dict(i) for i in items]
                for item in self._queue[user]:
                    self._track_active(item, 1)
            for user, items in data.get('album_queue', {}).items():
                self._album_queue[user] = [album_queue_item_from_dict(i) for i in items]
            for queue_id, items in data.get('album_items', {}).items():
                self._album_items[queue_id] = [album_item_from_dict(i) for i in items]
            for user, mappings in data.get('mappings', {}).items():
                self._mappings[user] = {
                    folder_id: FolderAlbumMapping(**m) for folder_id, m in mappings.items()
                }
            for user, records in data.get('uploads', {}).items():
                self._uploads[user] = {
                    file_id: UploadRecord(**r) for file_id, r in records.items()
                }
            for user, ids in data.get('ignored', {}).items():
                self._ignored[user] = set(ids)
            for user, kinds in data.get('sync_status', {}).items():
                self._sync_status[user] = {
                    kind: {item_id: sync_status_from_dict(s) for item_id, s in entries.items()}
                    for kind, entries in kinds.items()
                }

            logger.info(f"Loaded records for {len(self._queue)} queue users from {self.state_file}")
        except Exception as e:
            logger.error(f"Error loading state file: {e}")

    def _save_state(self) -> None:
        """Save current records to the state file."""
        if not self.state_file:
            return
        if self._batch_depth:
            self._dirty = True
            return
        self._dirty = False

        try:
            data = {
                'queue': {u: [asdict(i) for i in items] for u, items in self._queue.items()},
                'album_queue': {u: [asdict(i) for i in items] for u, items in self._album_queue.items()},
                'album_items': {q: [asdict(i) for i in items] for q, items in self._album_items.items()},
                'mappings': {
                    u: {f: asdict(m) for f, m in mappings.items()}
                    for u, mappings in self._mappings.items()
                },
                'uploads': {
                    u: {f: asdict(r) for f, r in records.items()}
                    for u, records in self._uploads.items()
                },
                'ignored': {u: sorted(ids) for u, ids in self._ignored.items()},
                'sync_status': {
                    u: {kind: {i: asdict(s) for i, s in entries.items()} for kind, entries in kinds.items()}
                    for u, kinds in self._sync_status.items()
                },
            }

            with open(self.state_file, 'w') as f:
                json.dump(data, f, indent=2)

            logger.debug(f"Saved records to {self.state_file}")
        except Exception as e:
            logger.error(f"Error saving state file: {e}")

    # -- upload queue --------------------------------------------------------

    def _track_active(self, item: QueueItem, delta: int) -> None:
        if item.status not in ACTIVE_QUEUE_STATUSES:
            return
        counts = self._active_files.setdefault(item.user_key, {})
        remaining = counts.get(item.remote_file_id, 0) + delta
        if remaining > 0:
            counts[item.remote_file_id] = remaining
        else:
            counts.pop(item.remote_file_id, None)

    def has_active_queue_item(self, user_key: str, remote_file_id: str) -> bool:
        with self._lock:
            return remote_file_id in self._active_files.get(user_key, {})

    def insert_queue_item(self, item: QueueItem) -> QueueItem:
        with self._lock:
            self._queue.setdefault(item.user_key, []).append(item)
            self._track_active(item, 1)
            self._save_state()
            return replace(item)

    def get_queue(self, user_key: str,
                  status: Optional[QueueItemStatus] = None) -> List[QueueItem]:
        """Get a user's queue items in creation order.

        Args:
            user_key: Owner of the queue
            status: Optional status filter

        Returns:
            Copies of the matching queue items
        """
        with self._lock:
            return [
                replace(item) for item in self._queue.get(user_key, [])
                if status is None or item.status == status
            ]

    def get_queue_item(self, user_key: str, item_id: str) -> Optional[QueueItem]:
        with self._lock:
            for item in self._queue.get(user_key, []):
                if item.id == item_id:
                    return replace(item)
            return None

    def next_pending_queue_item(self, user_key: str) -> Optional[QueueItem]:
        with self._lock:
            for item in self._queue.get(user_key, []):
                if item.status == QueueItemStatus.PENDING:
                    return replace(item)
            return None

    def update_queue_item(self, user_key: str, item_id: str, **changes: Any) -> QueueItem:
        """Apply changes to one queue item, enforcing its transition graph.

        Args:
            user_key: Owner of the queue
            item_id: Queue item to update
            **changes: Field values to set

        Returns:
            Copy of the updated item
        """
        with self._lock:
            item = self._find(self._queue.get(user_key, []), item_id)
            target = changes.get('status')
            if target is not None and target != item.status:
                if target not in QUEUE_TRANSITIONS[item.status]:
                    raise InvalidTransitionError('queue item', item.status.value, target.value)
            self._track_active(item, -1)
            for key, value in changes.items():
                setattr(item, key, value)
            self._track_active(item, 1)
            self._save_state()
            return replace(item)

    def remove_queue_item(self, user_key: str, item_id: str) -> bool:
        with self._lock:
            items = self._queue.get(user_key, [])
            remaining = [item for item in items if item.id != item_id]
            if len(remaining) == len(items):
                return False
            self._track_active(self._find(items, item_id), -1)
            self._queue[user_key] = remaining
            self._save_state()
            return True

    def clear_queue_items(self, user_key: str, statuses: Iterable[QueueItemStatus]) -> int:
        statuses = set(statuses)
        with self._lock:
            items = self._queue.get(user_key, [])
            remaining = [item for item in items if item.status not in statuses]
            removed = len(items) - len(remaining)
            if removed:
                for item in items:
                    if item.status in statuses:
                        self._track_active(item, -1)
                self._queue[user_key] = remaining
                self._save_state()
            return removed

    def count_queue_items(self, user_key: str) -> Dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in QueueItemStatus}
            for item in self._queue.get(user_key, []):
                counts[item.status.value] += 1
            counts['total'] = len(self._queue.get(user_key, []))
            return counts

    # -- upload records ------------------------------------------------------

    def has_upload_record(self, user_key: str, remote_file_id: str) -> bool:
        with self._lock:
            return remote_file_id in self._uploads.get(user_key, {})

    def get_upload_record(self, user_key: str, remote_file_id: str) -> Optional[UploadRecord]:
        with self._lock:
            record = self._uploads.get(user_key, {}).get(remote_file_id)
            return replace(record) if record else None

    def get_upload_records(self, user_key: str,
                           remote_file_ids: Iterable[str]) -> Dict[str, Optional[UploadRecord]]:
        with self._lock:
            records = self._uploads.get(user_key, {})
            return {file_id: records.get(file_id) for file_id in remote_file_ids}

    def record_upload(self, user_key: str, record: UploadRecord) -> None:
        with self._lock:
            self._uploads.setdefault(user_key, {})[record.remote_file_id] = record
            self._save_state()

    def delete_upload_record(self, user_key: str, remote_file_id: str) -> bool:
        with self._lock:
            if self._uploads.get(user_key, {}).pop(remote_file_id, None) is None:
                return False
            self._save_state()
            return True

    def count_upload_records(self, user_key: str) -> int:
        with self._lock:
            return len(self._uploads.get(user_key, {}))

    # -- ignored files -------------------------------------------------------

    def is_file_ignored(self, user_key: str, remote_file_id: str) -> bool:
        with self._lock:
            return remote_file_id in self._ignored.get(user_key, set())

    def set_files_ignored(self, user_key: str, remote_file_ids: Iterable[str],
                          ignored: bool = True) -> None:
        with self._lock:
            current = self._ignored.setdefault(user_key, set())
            if ignored:
                current.update(remote_file_ids)
            else:
                current.difference_update(remote_file_ids)
            self._save_state()

    def get_ignored_file_ids(self, user_key: str) -> Set[str]:
        with self._lock:
            return set(self._ignored.get(user_key, set()))

    # -- album queue ---------------------------------------------------------

    def insert_album_queue_item(self, item: AlbumQueueItem) -> AlbumQueueItem:
        """Insert an album queue item unless the folder already has an active one.

        Raises:
            ConflictError: If a non-terminal item exists for the folder
        """
        with self._lock:
            items = self._album_queue.setdefault(item.user_key, [])
            for existing in items:
                if (existing.remote_folder_id == item.remote_folder_id
                        and existing.status not in TERMINAL_ALBUM_STATUSES):
                    raise ConflictError(
                        "Folder is already in the album queue",
                        {"remote_folder_id": item.remote_folder_id, "album_queue_id": existing.id},
                    )
            items.append(item)
            self._save_state()
            return replace(item)

    def get_album_queue(self, user_key: str,
                        status: Optional[AlbumQueueStatus] = None) -> List[AlbumQueueItem]:
        with self._lock:
            return [
                replace(item) for item in self._album_queue.get(user_key, [])
                if status is None or item.status == status
            ]

    def get_album_queue_item(self, user_key: str, item_id: str) -> Optional[AlbumQueueItem]:
        with self._lock:
            for item in self._album_queue.get(user_key, []):
                if item.id == item_id:
                    return replace(item)
            return None

    def next_pending_album_item(self, user_key: str) -> Optional[AlbumQueueItem]:
        with self._lock:
            for item in self._album_queue.get(user_key, []):
                if item.status == AlbumQueueStatus.PENDING:
                    return replace(item)
            return None

    def update_album_queue_item(self, user_key: str, item_id: str,
                                **changes: Any) -> AlbumQueueItem:
        with self._lock:
            item = self._find(self._album_queue.get(user_key, []), item_id)
            target = changes.get('status')
            if target is not None and target != item.status:
                if target not in ALBUM_TRANSITIONS[item.status]:
                    raise InvalidTransitionError('album queue item', item.status.value, target.value)
            for key, value in changes.items():
                setattr(item, key, value)
            self._save_state()
            return replace(item)

    def remove_album_queue_item(self, user_key: str, item_id: str) -> bool:
        with self._lock:
            items = self._album_queue.get(user_key, [])
            remaining = [item for item in items if item.id != item_id]
            if len(remaining) == len(items):
                return False
            self._album_queue[user_key] = remaining
            self._album_items.pop(item_id, None)
            self._save_state()
            return True

    def clear_album_queue_items(self, user_key: str,
                                statuses: Iterable[AlbumQueueStatus]) -> int:
        statuses = set(statuses)
        with self._lock:
            items = self._album_queue.get(user_key, [])
            remaining = []
            for item in items:
                if item.status in statuses:
                    self._album_items.pop(item.id, None)
                else:
                    remaining.append(item)
            removed = len(items) - len(remaining)
            if removed:
                self._album_queue[user_key] = remaining
                self._save_state()
            return removed

    def count_album_queue_items(self, user_key: str) -> Dict[str, int]:
        with self._lock:
            counts = {status.value.lower(): 0 for status in AlbumQueueStatus}
            for item in self._album_queue.get(user_key, []):
                counts[item.status.value.lower()] += 1
            counts['total'] = len(self._album_queue.get(user_key, []))
            return counts

    # -- album items ---------------------------------------------------------

    def add_album_items(self, album_queue_id: str,
                        remote_file_ids: Iterable[str]) -> List[AlbumItem]:
        """Create PENDING album items, skipping files the album already tracks."""
        with self._lock:
            items = self._album_items.setdefault(album_queue_id, [])
            known = {item.remote_file_id for item in items}
            added = []
            for file_id in remote_file_ids:
                if file_id in known:
                    continue
                known.add(file_id)
                item = AlbumItem(id=str(uuid.uuid4()), album_queue_id=album_queue_id,
                                 remote_file_id=file_id)
                items.append(item)
                added.append(replace(item))
            if added:
                self._save_state()
            return added

    def get_album_items(self, album_queue_id: str,
                        status: Optional[AlbumItemStatus] = None) -> List[AlbumItem]:
        with self._lock:
            return [
                replace(item) for item in self._album_items.get(album_queue_id, [])
                if status is None or item.status == status
            ]

    def update_album_item(self, album_queue_id: str, item_id: str, **changes: Any) -> AlbumItem:
        with self._lock:
            item = self._find(self._album_items.get(album_queue_id, []), item_id)
            for key, value in changes.items():
                setattr(item, key, value)
            self._save_state()
            return replace(item)

    # -- folder album mappings -----------------------------------------------

    def get_folder_album_mapping(self, user_key: str,
                                 remote_folder_id: str) -> Optional[FolderAlbumMapping]:
        with self._lock:
            mapping = self._mappings.get(user_key, {}).get(remote_folder_id)
            return replace(mapping) if mapping else None

    def get_folder_album_mappings(self, user_key: str,
                                  remote_folder_ids: Iterable[str]) -> Dict[str, FolderAlbumMapping]:
        with self._lock:
            mappings = self._mappings.get(user_key, {})
            return {
                folder_id: replace(mappings[folder_id])
                for folder_id in remote_folder_ids if folder_id in mappings
            }

    def upsert_folder_album_mapping(self, mapping: FolderAlbumMapping) -> FolderAlbumMapping:
        """Insert or replace the mapping for (user_key, remote_folder_id).

        The original creation time survives an update.
        """
        with self._lock:
            mappings = self._mappings.setdefault(mapping.user_key, {})
            existing = mappings.get(mapping.remote_folder_id)
            if existing:
                mapping = replace(mapping, created_at=existing.created_at)
            mappings[mapping.remote_folder_id] = mapping
            self._save_state()
            return replace(mapping)

    def mark_album_deleted(self, user_key: str, remote_folder_id: str) -> None:
        with self._lock:
            mapping = self._mappings.get(user_key, {}).get(remote_folder_id)
            if mapping:
                mapping.album_deleted = True
                mapping.last_updated_at = utc_now()
                self._save_state()

    # -- sync status cache ---------------------------------------------------

    def get_sync_status(self, user_key: str, kind: str, item_id: str) -> Optional[SyncStatusDetail]:
        with self._lock:
            status = self._sync_status.get(user_key, {}).get(kind, {}).get(item_id)
            return replace(status) if status else None

    def set_sync_status(self, user_key: str, kind: str, item_id: str,
                        status: SyncStatusDetail) -> None:
        with self._lock:
            kinds = self._sync_status.setdefault(user_key, {})
            kinds.setdefault(kind, {})[item_id] = status
            self._save_state()

    def delete_sync_status(self, user_key: str, kind: str, item_ids: Iterable[str]) -> None:
        with self._lock:
            entries = self._sync_status.get(user_key, {}).get(kind)
            if not entries:
                return
            for item_id in item_ids:
                entries.pop(item_id, None)
            self._save_state()

    def clear_sync_status(self, user_key: str) -> None:
        with self._lock:
            if self._sync_status.pop(user_key, None) is not None:
                self._save_state()

    @staticmethod
    def _find(items: List[Any], item_id: str) -> Any:
        for item in items:
            if item.id == item_id:
                return item
        raise KeyError(item_id)
