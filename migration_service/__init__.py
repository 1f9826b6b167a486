from .album_queue import AlbumQueueManager
from .auth import AuthContext, OAuthTokenRefresher
from .cache import DriveCache
from .config import ServiceConfig, load_config
from .coordinator import MigrationCoordinator
from .discovery import EnqueueAllWorkflow
from .models import AlbumQueueItem, FileDescriptor, QueueItem, SyncStatusDetail
from .operations import OperationStatusHub
from .registry import ProcessingRegistry
from .store import RecordStore
from .sync_status import SyncStatusEngine
from .upload_queue import UploadQueueManager

__version__ = "0.1.0"

__all__ = [
    "MigrationCoordinator",
    "UploadQueueManager",
    "AlbumQueueManager",
    "EnqueueAllWorkflow",
    "DriveCache",
    "SyncStatusEngine",
    "OperationStatusHub",
    "ProcessingRegistry",
    "RecordStore",
    "AuthContext",
    "OAuthTokenRefresher",
    "ServiceConfig",
    "load_config",
    "AlbumQueueItem",
    "FileDescriptor",
    "QueueItem",
    "SyncStatusDetail",
]
