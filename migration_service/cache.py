"""
Module for the in-memory cache of remote folder listings.
"""
import logging
import time
from collections import Counter
from typing import Callable, Dict, List, Optional, Set, Tuple

from .auth import AuthContext
from .drive import DriveClient, split_listing
from .models import (
    ROOT_FOLDER_ID,
    ROOT_FOLDER_NAME,
    CachedFolder,
    CachedPage,
    CacheStats,
    DriveFile,
    DriveListPage,
    utc_now,
)
from .operations import OperationStatusHub, OperationType
from .remote import RemoteCallWrapper

logger = logging.getLogger(__name__)

FolderKey = Tuple[str, str]


class DriveCache:
    """Process-wide cache of folder contents, keyed by (user_key, folder_id).

    Entries are only ever replaced whole, so a reader sees either the old or
    the new listing. Nothing is persisted; after a restart folders are
    re-enumerated on first use.
    """

    def __init__(self, drive: DriveClient, remote: RemoteCallWrapper,
                 hub: Optional[OperationStatusHub] = None,
                 stale_after: Optional[float] = 3600.0,
                 clock: Optional[Callable[[], float]] = None):
        """Initialize the cache.

        Args:
            drive: Drive API client used to enumerate folders
            remote: Wrapper applying token refresh and retries to remote calls
            hub: Optional operation hub; syncs are reported as LONG_READ operations
            stale_after: Seconds after which an entry is considered stale (None = never)
            clock: Time source, defaults to time.monotonic
        """
        self.drive = drive
        self.remote = remote
        self.hub = hub
        self.stale_after = stale_after
        self._clock = clock or time.monotonic
        self._folders: Dict[FolderKey, CachedFolder] = {}
        self._synced_at: Dict[FolderKey, float] = {}
        self._parents: Dict[FolderKey, str] = {}
        self._names: Dict[FolderKey, str] = {}

    def is_folder_cached(self, user_key: str, folder_id: str) -> bool:
        return (user_key, folder_id) in self._folders

    def is_stale(self, user_key: str, folder_id: str) -> bool:
        """Return True if the folder is missing from the cache or older than stale_after."""
        key = (user_key, folder_id)
        if key not in self._folders:
            return True
        if self.stale_after is None:
            return False
        return self._clock() - self._synced_at[key] > self.stale_after

    async def sync_folder_to_cache(self, user_key: str, auth: AuthContext,
                                   folder_id: str,
                                   folder_name: Optional[str] = None) -> CachedFolder:
        """Enumerate every page of a folder and overwrite its cache entry.

        Args:
            user_key: Owner of the listing
            auth: Credentials for the Drive API
            folder_id: Folder to enumerate
            folder_name: Display name, if already known

        Returns:
            The new cache entry
        """
        name = folder_name or self.get_folder_name(user_key, folder_id) or folder_id
        if self.hub is None:
            return await self._sync(user_key, auth, folder_id, folder_name)

        async with self.hub.track_operation(
            OperationType.LONG_READ,
            f"Syncing folder {name}",
            metadata={'user_key': user_key, 'folder_id': folder_id},
        ) as op_id:
            entry = await self._sync(user_key, auth, folder_id, folder_name, op_id)
            self.hub.complete_operation(op_id, {
                'files': len(entry.files),
                'folders': len(entry.subfolders),
            })
            return entry

    async def _sync(self, user_key: str, auth: AuthContext, folder_id: str,
                    folder_name: Optional[str], op_id: Optional[str] = None) -> CachedFolder:
        pages: List[DriveListPage] = []
        page_token: Optional[str] = None
        seen_tokens: Set[str] = set()
        while True:
            page = await self.remote.call(
                auth,
                lambda token, pt=page_token: self.drive.list_folder_page(token, folder_id, pt),
                description=f"list folder {folder_id}",
            )
            pages.append(page)
            if self.hub and op_id:
                listed = sum(len(p.files) + len(p.folders) for p in pages)
                self.hub.update_operation(op_id, metadata={'details': f"Listed {listed} items"})
            page_token = page.next_page_token
            if not page_token or page_token in seen_tokens:
                break
            seen_tokens.add(page_token)

        files, subfolders = split_listing(pages)
        entry = CachedFolder(folder_id=folder_id, files=files, subfolders=subfolders,
                             last_synced=utc_now())

        key = (user_key, folder_id)
        self._folders[key] = entry
        self._synced_at[key] = self._clock()
        if folder_name:
            self._names[key] = folder_name
        elif folder_id == ROOT_FOLDER_ID:
            self._names.setdefault(key, ROOT_FOLDER_NAME)
        for child in subfolders:
            self._parents[(user_key, child.id)] = folder_id
            self._names[(user_key, child.id)] = child.name
        for item in files:
            self._parents[(user_key, item.id)] = folder_id

        logger.info(f"Cached folder {folder_id} for {user_key}: "
                    f"{len(files)} files, {len(subfolders)} subfolders in {len(pages)} pages")
        return entry

    async def refresh_folder(self, user_key: str, auth: AuthContext,
                             folder_id: str) -> CachedFolder:
        """Hard refresh: drop the entry, then enumerate again."""
        name = self.get_folder_name(user_key, folder_id)
        self.clear_folder(user_key, folder_id)
        return await self.sync_folder_to_cache(user_key, auth, folder_id, name)

    async def ensure_folder(self, user_key: str, auth: AuthContext, folder_id: str,
                            folder_name: Optional[str] = None) -> CachedFolder:
        """Return the cached entry, syncing first if it is missing or stale."""
        if self.is_stale(user_key, folder_id):
            return await self.sync_folder_to_cache(user_key, auth, folder_id, folder_name)
        return self._folders[(user_key, folder_id)]

    def get_cached_folder(self, user_key: str, folder_id: str) -> Optional[CachedFolder]:
        return self._folders.get((user_key, folder_id))

    def get_cached_folder_page(self, user_key: str, folder_id: str,
                               offset: int = 0, limit: int = 50) -> Optional[CachedPage]:
        """Read one page of files from a cached folder.

        Subfolders are returned on the first page only.

        Args:
            user_key: Owner of the listing
            folder_id: Cached folder
            offset: Index of the first file to return
            limit: Maximum number of files to return

        Returns:
            CachedPage, or None if the folder is not cached
        """
        entry = self._folders.get((user_key, folder_id))
        if entry is None:
            return None
        offset = max(offset, 0)
        files = entry.files[offset:offset + max(limit, 0)]
        return CachedPage(
            files=list(files),
            folders=list(entry.subfolders) if offset == 0 else [],
            total_count=entry.total_count,
            has_more=offset + len(files) < len(entry.files),
            last_synced=entry.last_synced,
        )

    def get_cached_files(self, user_key: str, folder_id: str) -> List[DriveFile]:
        entry = self._folders.get((user_key, folder_id))
        return list(entry.files) if entry else []

    def get_cached_subfolders(self, user_key: str, folder_id: str) -> List[DriveFile]:
        entry = self._folders.get((user_key, folder_id))
        return list(entry.subfolders) if entry else []

    def get_all_cached_files(self, user_key: str, folder_ids: List[str]) -> List[DriveFile]:
        """Collect files across several cached folders, first occurrence of an id wins."""
        seen: Dict[str, DriveFile] = {}
        for folder_id in folder_ids:
            for item in self.get_cached_files(user_key, folder_id):
                seen.setdefault(item.id, item)
        return list(seen.values())

    def get_all_cached_file_ids(self, user_key: str, folder_ids: List[str]) -> List[str]:
        return [item.id for item in self.get_all_cached_files(user_key, folder_ids)]

    def get_folder_name(self, user_key: str, folder_id: str) -> Optional[str]:
        name = self._names.get((user_key, folder_id))
        if name is None and folder_id == ROOT_FOLDER_ID:
            return ROOT_FOLDER_NAME
        return name

    def set_folder_name(self, user_key: str, folder_id: str, name: str) -> None:
        self._names[(user_key, folder_id)] = name

    def get_ancestor_chain(self, user_key: str, item_id: str) -> List[str]:
        """Return the known parent folders of a file or folder, nearest first.

        Only parent links learnt from enumerations are followed. A repeated id
        ends the walk.
        """
        chain: List[str] = []
        seen = {item_id}
        parent = self._parents.get((user_key, item_id))
        while parent is not None and parent not in seen:
            chain.append(parent)
            seen.add(parent)
            parent = self._parents.get((user_key, parent))
        return chain

    def clear_folder(self, user_key: str, folder_id: str) -> None:
        key = (user_key, folder_id)
        self._folders.pop(key, None)
        self._synced_at.pop(key, None)
        logger.debug(f"Cleared cache entry for folder {folder_id}")

    def clear_user(self, user_key: str) -> None:
        for store in (self._folders, self._synced_at, self._parents, self._names):
            for key in [k for k in store if k[0] == user_key]:
                del store[key]
        logger.info(f"Cleared folder cache for {user_key}")

    def get_cache_stats(self, user_key: str) -> CacheStats:
        entries = [entry for (user, _), entry in self._folders.items() if user == user_key]
        breakdown: Counter = Counter()
        total_size = 0
        cached_files = 0
        for entry in entries:
            cached_files += len(entry.files)
            for item in entry.files:
                breakdown[item.mime_type] += 1
                total_size += item.size or 0

        return CacheStats(
            cached_folders=len(entries),
            cached_files=cached_files,
            cached_subfolders=sum(len(entry.subfolders) for entry in entries),
            total_cache_size=total_size,
            last_cache_update=max((entry.last_synced for entry in entries), default=None),
            file_type_breakdown=dict(breakdown),
        )
