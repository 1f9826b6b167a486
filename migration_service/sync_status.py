"""
Module computing synced/partial/unsynced rollups for files and folders.
"""
import asyncio
import logging
import time
from typing import List, Optional, Set

from .auth import AuthContext
from .cache import DriveCache
from .models import RecursiveSyncResult, SyncStatusDetail
from .store import RecordStore

logger = logging.getLogger(__name__)

FILES = "files"
FOLDERS = "folders"


class SyncStatusEngine:
    """Derives sync status from upload records and the folder cache.

    A file is synced iff an upload record exists for it. A folder aggregates
    every descendant file it knows about through the cache. Rollups are
    memoised in the record store and invalidated along the ancestor chain
    whenever a descendant upload completes.
    """

    def __init__(self, store: RecordStore, cache: DriveCache, max_depth: int = 64):
        self.store = store
        self.cache = cache
        self.max_depth = max_depth

    # -- files ---------------------------------------------------------------

    def calculate_file_sync_status(self, user_key: str, file_id: str) -> SyncStatusDetail:
        synced = 1 if self.store.has_upload_record(user_key, file_id) else 0
        detail = SyncStatusDetail.from_counts(synced, 1)
        self.store.set_sync_status(user_key, FILES, file_id, detail)
        return detail

    def get_cached_file_sync_status(self, user_key: str, file_id: str) -> Optional[SyncStatusDetail]:
        return self.store.get_sync_status(user_key, FILES, file_id)

    # -- folders -------------------------------------------------------------

    def get_cached_folder_sync_status(self, user_key: str,
                                      folder_id: str) -> Optional[SyncStatusDetail]:
        return self.store.get_sync_status(user_key, FOLDERS, folder_id)

    def calculate_folder_sync_status(self, user_key: str, folder_id: str,
                                     force: bool = False) -> Optional[SyncStatusDetail]:
        """Compute (or reuse) the rollup for a folder.

        Args:
            user_key: Owner of the folder
            folder_id: Folder to compute
            force: Recompute the whole subtree instead of reusing memoised child rollups

        Returns:
            SyncStatusDetail, or None if the folder has never been enumerated
        """
        with self.store.batch():
            return self._calculate(user_key, folder_id, force, 0, set())

    def _calculate(self, user_key: str, folder_id: str, force: bool, depth: int,
                   visited: Set[str]) -> Optional[SyncStatusDetail]:
        if folder_id in visited:
            return None
        visited.add(folder_id)

        if not force:
            cached = self.store.get_sync_status(user_key, FOLDERS, folder_id)
            if cached is not None:
                return cached

        entry = self.cache.get_cached_folder(user_key, folder_id)
        if entry is None:
            return self.store.get_sync_status(user_key, FOLDERS, folder_id)

        records = self.store.get_upload_records(user_key, [f.id for f in entry.files])
        synced = sum(1 for record in records.values() if record is not None)
        total = len(entry.files)

        if depth < self.max_depth:
            for child in entry.subfolders:
                child_status = self._calculate(user_key, child.id, force, depth + 1, visited)
                if child_status is not None:
                    synced += child_status.synced_count
                    total += child_status.total_count
        else:
            logger.warning(f"Maximum folder depth reached below {folder_id}, rollup truncated")

        detail = SyncStatusDetail.from_counts(synced, total)
        self.store.set_sync_status(user_key, FOLDERS, folder_id, detail)
        return detail

    # -- invalidation ----------------------------------------------------------

    def invalidate_file(self, user_key: str, file_id: str) -> List[SyncStatusDetail]:
        """Refresh a file's status and every known ancestor rollup, nearest first.

        Returns:
            The recomputed ancestor rollups, nearest first
        """
        updated = []
        with self.store.batch():
            self.calculate_file_sync_status(user_key, file_id)
            ancestors = self.cache.get_ancestor_chain(user_key, file_id)
            self.store.delete_sync_status(user_key, FOLDERS, ancestors)
            for folder_id in ancestors:
                detail = self.calculate_folder_sync_status(user_key, folder_id)
                if detail is not None:
                    updated.append(detail)
        logger.debug(f"Invalidated sync status of {file_id} and {len(ancestors)} ancestors")
        return updated

    def invalidate_folder(self, user_key: str, folder_id: str) -> None:
        """Drop the memoised rollup of a folder and of all its ancestors."""
        folder_ids = [folder_id] + self.cache.get_ancestor_chain(user_key, folder_id)
        self.store.delete_sync_status(user_key, FOLDERS, folder_ids)

    def clear_all(self, user_key: str) -> None:
        self.store.clear_sync_status(user_key)
        logger.info(f"Cleared all sync status for {user_key}")

    # -- recursive refresh -----------------------------------------------------

    async def recursively_refresh_folder_sync_status(
            self, user_key: str, folder_id: str,
            auth: Optional[AuthContext] = None) -> RecursiveSyncResult:
        """Walk a folder subtree and recompute every rollup in it.

        Folders that were never enumerated are synced first when auth is given;
        otherwise they are reported without a status. Control is yielded to the
        event loop between folders.

        Args:
            user_key: Owner of the folders
            folder_id: Root of the subtree
            auth: Optional credentials used to enumerate unknown folders

        Returns:
            Aggregated rollup tree with processed_count and duration_ms set on the root
        """
        started = time.monotonic()
        counter = [0]
        result = await self._refresh(user_key, folder_id, auth, 0, set(), counter)
        result.processed_count = counter[0]
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Recursive sync status refresh of {folder_id} processed "
                    f"{counter[0]} folders in {result.duration_ms}ms")
        return result

    async def _refresh(self, user_key: str, folder_id: str, auth: Optional[AuthContext],
                       depth: int, visited: Set[str], counter: List[int]) -> RecursiveSyncResult:
        visited.add(folder_id)
        if auth is not None and not self.cache.is_folder_cached(user_key, folder_id):
            await self.cache.sync_folder_to_cache(user_key, auth, folder_id)

        children: List[RecursiveSyncResult] = []
        if depth < self.max_depth:
            for child in self.cache.get_cached_subfolders(user_key, folder_id):
                if child.id in visited:
                    continue
                await asyncio.sleep(0)
                children.append(
                    await self._refresh(user_key, child.id, auth, depth + 1, visited, counter)
                )

        # Children were just recomputed; only this folder's own memo is stale.
        self.store.delete_sync_status(user_key, FOLDERS, [folder_id])
        status = self.calculate_folder_sync_status(user_key, folder_id)
        counter[0] += 1
        return RecursiveSyncResult(
            folder_id=folder_id,
            folder_name=self.cache.get_folder_name(user_key, folder_id),
            status=status,
            subfolders=children,
            processed_count=0,
            duration_ms=0,
        )
