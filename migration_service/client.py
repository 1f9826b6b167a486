"""
Shared aiohttp plumbing for the remote API clients.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from .errors import TransientError, error_from_status

logger = logging.getLogger(__name__)

MAX_ERROR_BODY = 2000


class BaseApiClient:
    """Owns an aiohttp session and turns error responses into service errors."""

    def __init__(self, base_url: str, session: Optional[aiohttp.ClientSession] = None,
                 timeout: float = 300.0):
        self.base_url = base_url.rstrip('/')
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, path: str, access_token: str,
                       expect: str = 'json', **kwargs: Any) -> Any:
        """Perform one HTTP request.

        Args:
            method: HTTP method
            path: Path relative to base_url, or an absolute URL
            access_token: Bearer token for the Authorization header
            expect: 'json', 'text' or 'bytes'
            **kwargs: Passed through to aiohttp

        Returns:
            Decoded response body

        Raises:
            RemoteAPIError: For error statuses (subclass chosen by status)
            TransientError: For connection failures and timeouts
        """
        url = path if path.startswith('http') else f"{self.base_url}{path}"
        headers = dict(kwargs.pop('headers', {}))
        headers['Authorization'] = f"Bearer {access_token}"
        session = await self._get_session()

        try:
            async with session.request(method, url, headers=headers, **kwargs) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise error_from_status(
                        response.status,
                        _error_message(body, response.reason),
                        {"url": url, "method": method, "response_body": body[:MAX_ERROR_BODY]},
                    )
                if expect == 'bytes':
                    return await response.read()
                if expect == 'text':
                    return await response.text()
                return await response.json(content_type=None)
        except aiohttp.ClientConnectionError as e:
            raise TransientError(f"Network error calling {url}: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransientError(f"Timeout calling {url}") from e


def _error_message(body: str, reason: Optional[str]) -> str:
    try:
        data: Dict[str, Any] = json.loads(body)
    except ValueError:
        return reason or body[:200] or "Unknown error"
    error = data.get('error') if isinstance(data, dict) else None
    if isinstance(error, dict):
        return error.get('message') or reason or "Unknown error"
    if isinstance(error, str):
        return data.get('error_description') or error
    return reason or "Unknown error"
