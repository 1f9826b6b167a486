"""
Client for the remote Drive API: folder listing, metadata and downloads.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .client import BaseApiClient
from .models import FOLDER_MIME_TYPE, SUPPORTED_MIME_TYPES, DriveFile, DriveListPage

logger = logging.getLogger(__name__)

DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
FILE_FIELDS = "id, name, mimeType, size, createdTime, modifiedTime, parents"


def parse_drive_file(data: Dict[str, Any]) -> DriveFile:
    size = data.get('size')
    return DriveFile(
        id=data['id'],
        name=data.get('name', ''),
        mime_type=data.get('mimeType', ''),
        size=int(size) if size not in (None, '') else None,
        created_time=data.get('createdTime'),
        modified_time=data.get('modifiedTime'),
        parents=list(data.get('parents') or []),
    )


class DriveClient(BaseApiClient):
    """Thin async wrapper over the Drive v3 REST API.

    Every method takes the access token as its first argument so calls can be
    routed through RemoteCallWrapper.
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None,
                 base_url: str = DRIVE_API_BASE, page_size: int = 100):
        super().__init__(base_url, session)
        self.page_size = page_size

    async def list_folder_page(self, access_token: str, folder_id: str,
                               page_token: Optional[str] = None) -> DriveListPage:
        """List one page of a folder's supported media files and subfolders.

        Args:
            access_token: OAuth access token
            folder_id: Folder to list
            page_token: Continuation token from the previous page

        Returns:
            DriveListPage split into files and folders
        """
        mime_query = " or ".join(f"mimeType='{t}'" for t in SUPPORTED_MIME_TYPES)
        params = {
            'q': (f"'{folder_id}' in parents and trashed=false and "
                  f"({mime_query} or mimeType='{FOLDER_MIME_TYPE}')"),
            'pageSize': str(self.page_size),
            'fields': f"nextPageToken, files({FILE_FIELDS})",
            'orderBy': 'folder,name',
        }
        if page_token:
            params['pageToken'] = page_token

        data = await self._request('GET', '/files', access_token, params=params)
        files: List[DriveFile] = []
        folders: List[DriveFile] = []
        for raw in data.get('files', []):
            item = parse_drive_file(raw)
            (folders if item.is_folder else files).append(item)

        logger.debug(f"Listed {len(files)} files and {len(folders)} folders in {folder_id}")
        return DriveListPage(files=files, folders=folders,
                             next_page_token=data.get('nextPageToken'))

    async def get_file(self, access_token: str, file_id: str) -> DriveFile:
        data = await self._request('GET', f'/files/{file_id}', access_token,
                                   params={'fields': FILE_FIELDS})
        return parse_drive_file(data)

    async def download(self, access_token: str, file_id: str) -> bytes:
        content = await self._request('GET', f'/files/{file_id}', access_token,
                                      expect='bytes', params={'alt': 'media'})
        logger.debug(f"Downloaded {len(content)} bytes for file {file_id}")
        return content


def split_listing(pages: List[DriveListPage]) -> Tuple[List[DriveFile], List[DriveFile]]:
    """Flatten listing pages into (files, folders), dropping repeated ids."""
    files: Dict[str, DriveFile] = {}
    folders: Dict[str, DriveFile] = {}
    for page in pages:
        for item in page.files:
            files.setdefault(item.id, item)
        for item in page.folders:
            folders.setdefault(item.id, item)
    return list(files.values()), list(folders.values())
