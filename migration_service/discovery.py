"""
Module for the recursive "enqueue all" walk over a Drive folder tree.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Set

from .auth import AuthContext
from .cache import DriveCache
from .drive import DriveClient
from .models import ROOT_FOLDER_ID, ROOT_FOLDER_NAME, EnqueueAllResult
from .operations import OperationStatusHub, OperationType
from .remote import RemoteCallWrapper
from .upload_queue import UploadQueueManager

logger = logging.getLogger(__name__)


class EnqueueAllWorkflow:
    """Discovers every folder below a root and queues all of their files for upload.

    Progress is reported on a single operation: 0-50% while folders are
    discovered, 50-100% while files are added to the queue.
    """

    def __init__(self, cache: DriveCache, uploads: UploadQueueManager, drive: DriveClient,
                 remote: RemoteCallWrapper, hub: OperationStatusHub,
                 max_depth: int = 64, batch_size: int = 100):
        self.cache = cache
        self.uploads = uploads
        self.drive = drive
        self.remote = remote
        self.hub = hub
        self.max_depth = max_depth
        self.batch_size = batch_size
        self._background: Set[asyncio.Task] = set()

    async def enqueue_all(self, user_key: str, root_folder_id: str, auth: AuthContext,
                          folder_name: Optional[str] = None,
                          start_processing: bool = False) -> EnqueueAllResult:
        """Queue every supported file below a folder.

        Args:
            user_key: Owner of the folders
            root_folder_id: Folder to start from
            auth: Credentials for the Drive API
            folder_name: Display name of the root, looked up when omitted
            start_processing: Start the upload loop in the background afterwards

        Returns:
            EnqueueAllResult with the visited folders and added/skipped counts
        """
        async with self.hub.track_operation(
            OperationType.LONG_WRITE,
            "Enqueue All",
            description=f"Queueing all files below {folder_name or root_folder_id}",
            total=100,
            metadata={'user_key': user_key, 'folder_id': root_folder_id},
        ) as op_id:
            root_name = folder_name or await self._resolve_name(user_key, auth, root_folder_id)
            self.cache.set_folder_name(user_key, root_folder_id, root_name)

            # Phase 1: discovery
            folders: List[Dict[str, str]] = []
            visited: Set[str] = set()
            pending = [1]
            await self._visit(user_key, auth, root_folder_id, root_name, 0, visited, folders,
                              pending, op_id)
            logger.info(f"Discovered {len(folders)} folders below {root_name} for {user_key}")

            # Phase 2: bulk enqueue
            files = self.cache.get_all_cached_files(user_key, [f['id'] for f in folders])
            added = skipped = 0
            self.hub.update_progress(op_id, 50)
            for start in range(0, len(files), self.batch_size):
                batch = files[start:start + self.batch_size]
                result = self.uploads.add_to_queue(user_key, [f.descriptor() for f in batch])
                added += len(result.added)
                skipped += len(result.skipped)
                done = start + len(batch)
                self.hub.update_progress(op_id, 50 + done * 50 // len(files))
                self.hub.update_operation(op_id, metadata={
                    'details': f"Queued {done}/{len(files)} files"
                })
                await asyncio.sleep(0)

            self.hub.complete_operation(op_id, {
                'folders': len(folders),
                'added': added,
                'skipped': skipped,
                'details': f"Queued {added} files from {len(folders)} folders",
            })

        if start_processing:
            task = asyncio.ensure_future(self.uploads.start_processing(user_key, auth))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        return EnqueueAllResult(operation_id=op_id, folders=folders, added=added, skipped=skipped)

    async def _resolve_name(self, user_key: str, auth: AuthContext, folder_id: str) -> str:
        known = self.cache.get_folder_name(user_key, folder_id)
        if known:
            return known
        if folder_id == ROOT_FOLDER_ID:
            return ROOT_FOLDER_NAME
        folder = await self.remote.call(
            auth, lambda token: self.drive.get_file(token, folder_id),
            description=f"get folder {folder_id}",
        )
        return folder.name

    async def _visit(self, user_key: str, auth: AuthContext, folder_id: str, name: str,
                     depth: int, visited: Set[str], folders: List[Dict[str, str]],
                     pending: List[int], op_id: str) -> None:
        pending[0] -= 1
        if folder_id in visited:
            logger.warning(f"Folder {folder_id} already visited, skipping")
            return
        visited.add(folder_id)

        self.hub.update_operation(op_id, metadata={'details': f"Scanning folder {name}"})
        entry = await self.cache.ensure_folder(user_key, auth, folder_id, name)
        folders.append({'id': folder_id, 'name': name})

        children = [f for f in entry.subfolders if f.id not in visited]
        if depth >= self.max_depth:
            if children:
                logger.warning(f"Maximum folder depth reached at {name}, "
                               f"skipping {len(children)} subfolders")
            children = []
        pending[0] += len(children)

        discovered = len(folders)
        self.hub.update_progress(op_id, discovered * 50 // (discovered + max(pending[0], 0)))

        for child in children:
            await asyncio.sleep(0)
            await self._visit(user_key, auth, child.id, child.name, depth + 1, visited,
                              folders, pending, op_id)

