"""
Client for the remote Photos library API: uploads and albums.
"""
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .client import BaseApiClient
from .errors import RemoteAPIError
from .models import Album

logger = logging.getLogger(__name__)

PHOTOS_API_BASE = "https://photoslibrary.googleapis.com/v1"
# batchAddMediaItems accepts at most this many ids per request
MAX_ALBUM_BATCH = 50


def parse_album(data: Dict[str, Any]) -> Album:
    return Album(
        id=data['id'],
        title=data.get('title', ''),
        product_url=data.get('productUrl', ''),
        media_items_count=int(data.get('mediaItemsCount') or 0),
    )


class PhotosClient(BaseApiClient):
    """Async wrapper over the Photos Library REST API."""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None,
                 base_url: str = PHOTOS_API_BASE):
        super().__init__(base_url, session)

    async def upload_bytes(self, access_token: str, content: bytes, file_name: str,
                           mime_type: str) -> str:
        """Upload raw bytes and return the upload token."""
        headers = {
            'Content-Type': 'application/octet-stream',
            'X-Goog-Upload-Content-Type': mime_type,
            'X-Goog-Upload-File-Name': file_name,
            'X-Goog-Upload-Protocol': 'raw',
        }
        token = await self._request('POST', '/uploads', access_token, expect='text',
                                    headers=headers, data=content)
        logger.debug(f"Received upload token for {file_name}")
        return token

    async def create_media_item(self, access_token: str, upload_token: str,
                                file_name: str) -> str:
        """Turn an upload token into a library media item.

        Returns:
            The new media item id

        Raises:
            RemoteAPIError: If the item-level status reports a failure
        """
        body = {
            'newMediaItems': [
                {'simpleMediaItem': {'uploadToken': upload_token, 'fileName': file_name}}
            ]
        }
        data = await self._request('POST', '/mediaItems:batchCreate', access_token, json=body)
        results = data.get('newMediaItemResults') or [{}]
        result = results[0]
        media_item = result.get('mediaItem')
        if not media_item:
            status = result.get('status') or {}
            raise RemoteAPIError(
                f"Media item creation failed: {status.get('message', 'unknown error')}",
                details={'file_name': file_name, 'status': status},
            )
        return media_item['id']

    async def create_album(self, access_token: str, title: str) -> Album:
        data = await self._request('POST', '/albums', access_token, json={'album': {'title': title}})
        album = parse_album(data)
        logger.info(f"Created album {album.id} ({title})")
        return album

    async def get_album(self, access_token: str, album_id: str) -> Album:
        data = await self._request('GET', f'/albums/{album_id}', access_token)
        return parse_album(data)

    async def list_albums(self, access_token: str,
                          page_token: Optional[str] = None) -> Dict[str, Any]:
        """List one page of app-created albums.

        Returns:
            Dict with 'albums' (List[Album]) and 'next_page_token'
        """
        params = {'pageSize': '50', 'excludeNonAppCreatedData': 'true'}
        if page_token:
            params['pageToken'] = page_token
        data = await self._request('GET', '/albums', access_token, params=params)
        albums: List[Album] = [parse_album(a) for a in data.get('albums', [])]
        return {'albums': albums, 'next_page_token': data.get('nextPageToken')}

    async def add_media_items(self, access_token: str, album_id: str,
                              media_item_ids: List[str]) -> None:
        """Add up to MAX_ALBUM_BATCH media items to an album."""
        if len(media_item_ids) > MAX_ALBUM_BATCH:
            raise ValueError(f"At most {MAX_ALBUM_BATCH} media items per request")
        await self._request('POST', f'/albums/{album_id}:batchAddMediaItems', access_token,
                            json={'mediaItemIds': media_item_ids})
