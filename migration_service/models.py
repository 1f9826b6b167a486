"""
Module containing data models for the migration service.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
ROOT_FOLDER_ID = "root"
ROOT_FOLDER_NAME = "My Drive"

# Media types accepted by the Photos library
SUPPORTED_MIME_TYPES = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/heic",
    "image/heif",
    "video/mp4",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def percent(current: int, total: int) -> int:
    """Whole percentage of current over total, halves rounded up."""
    if total <= 0:
        return 0
    return (current * 200 + total) // (total * 2)


class QueueType(str, Enum):
    UPLOAD = "upload"
    ALBUM = "album"


class QueueItemStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


class AlbumQueueStatus(str, Enum):
    PENDING = "PENDING"
    UPLOADING = "UPLOADING"
    CREATING = "CREATING"
    UPDATING = "UPDATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class AlbumMode(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"


class AlbumItemStatus(str, Enum):
    PENDING = "PENDING"
    UPLOADED = "UPLOADED"
    FAILED = "FAILED"
    FAILED_ADD = "FAILED_ADD"


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PARTIAL = "partial"
    UNSYNCED = "unsynced"


QUEUE_TRANSITIONS = {
    QueueItemStatus.PENDING: {QueueItemStatus.UPLOADING, QueueItemStatus.FAILED},
    QueueItemStatus.UPLOADING: {QueueItemStatus.COMPLETED, QueueItemStatus.FAILED},
    QueueItemStatus.COMPLETED: set(),
    QueueItemStatus.FAILED: {QueueItemStatus.PENDING},
}

ALBUM_TRANSITIONS = {
    AlbumQueueStatus.PENDING: {
        AlbumQueueStatus.UPLOADING,
        AlbumQueueStatus.FAILED,
        AlbumQueueStatus.CANCELLED,
    },
    AlbumQueueStatus.UPLOADING: {
        AlbumQueueStatus.CREATING,
        AlbumQueueStatus.UPDATING,
        AlbumQueueStatus.FAILED,
        AlbumQueueStatus.CANCELLED,
    },
    AlbumQueueStatus.CREATING: {AlbumQueueStatus.COMPLETED, AlbumQueueStatus.FAILED},
    AlbumQueueStatus.UPDATING: {AlbumQueueStatus.COMPLETED, AlbumQueueStatus.FAILED},
    AlbumQueueStatus.COMPLETED: {AlbumQueueStatus.PENDING},
    AlbumQueueStatus.FAILED: {AlbumQueueStatus.PENDING},
    AlbumQueueStatus.CANCELLED: {AlbumQueueStatus.PENDING},
}

ACTIVE_QUEUE_STATUSES = {QueueItemStatus.PENDING, QueueItemStatus.UPLOADING}
TERMINAL_ALBUM_STATUSES = {
    AlbumQueueStatus.COMPLETED,
    AlbumQueueStatus.FAILED,
    AlbumQueueStatus.CANCELLED,
}


@dataclass
class FileDescriptor:
    """A remote file the caller wants uploaded."""
    remote_file_id: str
    file_name: str
    mime_type: str
    size: Optional[int] = None


@dataclass
class QueueItem:
    """Represents one file in a user's upload queue."""
    id: str
    user_key: str
    remote_file_id: str
    file_name: str
    mime_type: str
    size: Optional[int] = None
    status: QueueItemStatus = QueueItemStatus.PENDING
    created_at: str = field(default_factory=utc_now)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    remote_media_item_id: Optional[str] = None

    def descriptor(self) -> FileDescriptor:
        return FileDescriptor(self.remote_file_id, self.file_name, self.mime_type, self.size)


@dataclass
class SkippedFile:
    remote_file_id: str
    reason: str


@dataclass
class AddToQueueResult:
    """Outcome of a bulk enqueue."""
    added: List[QueueItem] = field(default_factory=list)
    skipped: List[SkippedFile] = field(default_factory=list)


@dataclass
class AlbumQueueItem:
    """Represents one folder waiting to become (or update) an album."""
    id: str
    user_key: str
    remote_folder_id: str
    folder_name: str
    status: AlbumQueueStatus = AlbumQueueStatus.PENDING
    mode: Optional[AlbumMode] = None
    total_files: Optional[int] = None
    uploaded_files: int = 0
    album_id: Optional[str] = None
    album_url: Optional[str] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass
class AlbumItem:
    """A single file within an album workflow."""
    id: str
    album_queue_id: str
    remote_file_id: str
    remote_media_item_id: Optional[str] = None
    status: AlbumItemStatus = AlbumItemStatus.PENDING
    error_message: Optional[str] = None
    added_at: str = field(default_factory=utc_now)


@dataclass
class FolderAlbumMapping:
    """Durable link between a remote folder and a remote album."""
    user_key: str
    remote_folder_id: str
    folder_name: str
    album_id: str
    album_url: str
    total_items_in_album: int = 0
    discovered_via_api: bool = False
    album_deleted: bool = False
    created_at: str = field(default_factory=utc_now)
    last_updated_at: Optional[str] = None


@dataclass
class UploadRecord:
    """A file that has been uploaded to the Photos library."""
    remote_file_id: str
    remote_media_item_id: str
    file_name: str
    mime_type: str
    uploaded_at: str = field(default_factory=utc_now)


@dataclass
class DriveFile:
    id: str
    name: str
    mime_type: str
    size: Optional[int] = None
    created_time: Optional[str] = None
    modified_time: Optional[str] = None
    parents: List[str] = field(default_factory=list)

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    def descriptor(self) -> FileDescriptor:
        return FileDescriptor(self.id, self.name, self.mime_type, self.size)


@dataclass
class DriveListPage:
    files: List[DriveFile]
    folders: List[DriveFile]
    next_page_token: Optional[str] = None


@dataclass
class CachedFolder:
    """Snapshot of a remote folder's direct contents."""
    folder_id: str
    files: List[DriveFile]
    subfolders: List[DriveFile]
    last_synced: str = field(default_factory=utc_now)

    @property
    def total_count(self) -> int:
        return len(self.files) + len(self.subfolders)


@dataclass
class CachedPage:
    files: List[DriveFile]
    folders: List[DriveFile]
    total_count: int
    has_more: bool
    last_synced: Optional[str] = None


@dataclass
class CacheStats:
    cached_folders: int
    cached_files: int
    cached_subfolders: int
    total_cache_size: int
    last_cache_update: Optional[str]
    file_type_breakdown: Dict[str, int]


@dataclass
class SyncStatusDetail:
    status: SyncStatus
    synced_count: int
    total_count: int
    percentage: int
    last_checked: str = field(default_factory=utc_now)

    @classmethod
    def from_counts(cls, synced_count: int, total_count: int) -> "SyncStatusDetail":
        if total_count == 0 or synced_count == 0:
            status = SyncStatus.UNSYNCED
        elif synced_count >= total_count:
            status = SyncStatus.SYNCED
        else:
            status = SyncStatus.PARTIAL
        percentage = percent(synced_count, total_count)
        return cls(status, synced_count, total_count, percentage)


@dataclass
class RecursiveSyncResult:
    """Aggregated rollup tree returned by a recursive refresh."""
    folder_id: str
    folder_name: Optional[str]
    status: Optional[SyncStatusDetail]
    subfolders: List["RecursiveSyncResult"]
    processed_count: int
    duration_ms: int


@dataclass
class Album:
    id: str
    title: str
    product_url: str = ""
    media_items_count: int = 0


@dataclass
class AddMediaItemsResult:
    added: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class EnqueueAllResult:
    """Summary of a recursive enqueue."""
    operation_id: str
    folders: List[Dict[str, str]]
    added: int
    skipped: int


def queue_item_from_dict(data: Dict[str, Any]) -> QueueItem:
    return QueueItem(**{**data, "status": QueueItemStatus(data["status"])})


def album_queue_item_from_dict(data: Dict[str, Any]) -> AlbumQueueItem:
    mode = data.get("mode")
    return AlbumQueueItem(**{
        **data,
        "status": AlbumQueueStatus(data["status"]),
        "mode": AlbumMode(mode) if mode else None,
    })


def album_item_from_dict(data: Dict[str, Any]) -> AlbumItem:
    return AlbumItem(**{**data, "status": AlbumItemStatus(data["status"])})


def sync_status_from_dict(data: Dict[str, Any]) -> SyncStatusDetail:
    return SyncStatusDetail(**{**data, "status": SyncStatus(data["status"])})
