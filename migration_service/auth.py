"""
Module for OAuth credentials and runtime token refresh.
"""
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import aiohttp

from .errors import AuthExpiredError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"


@dataclass
class RefreshedTokens:
    access_token: str
    expires_at: int  # epoch seconds
    refresh_token: str


RefreshFunc = Callable[[str], Awaitable[RefreshedTokens]]


class OAuthTokenRefresher:
    """Exchanges a refresh token for a new access token."""

    def __init__(self, client_id: str, client_secret: str,
                 token_url: str = TOKEN_URL,
                 session: Optional[aiohttp.ClientSession] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self._session = session

    async def __call__(self, refresh_token: str) -> RefreshedTokens:
        """Refresh an access token.

        Args:
            refresh_token: The user's refresh token

        Returns:
            RefreshedTokens; the refresh token is reused when none is returned

        Raises:
            AuthExpiredError: If the token endpoint rejects the request
        """
        logger.info("Attempting to refresh access token")
        form = {
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        }

        session = self._session or aiohttp.ClientSession()
        try:
            async with session.post(self.token_url, data=form) as response:
                tokens = await response.json(content_type=None)
                if response.status != 200:
                    error = tokens.get('error', 'Failed to refresh token') if isinstance(tokens, dict) else str(tokens)
                    logger.error(f"Token refresh failed with HTTP {response.status}: {error}")
                    raise AuthExpiredError(f"Token refresh failed: {error}",
                                           {"status_code": response.status})
        except aiohttp.ClientError as e:
            raise AuthExpiredError(f"Token refresh failed: {e}") from e
        finally:
            if self._session is None:
                await session.close()

        logger.info(f"Access token refreshed, expires in {tokens.get('expires_in')}s")
        return RefreshedTokens(
            access_token=tokens['access_token'],
            expires_at=int(time.time()) + int(tokens.get('expires_in', 3600)),
            refresh_token=tokens.get('refresh_token') or refresh_token,
        )


class AuthContext:
    """Credentials for one user, able to rotate its own access token."""

    def __init__(self, access_token: str, refresh_token: Optional[str] = None,
                 expires_at: Optional[int] = None,
                 refresher: Optional[RefreshFunc] = None):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.expires_at = expires_at
        self._refresher = refresher

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token and self._refresher)

    async def refresh(self) -> None:
        """Replace the access token using the refresh token.

        Raises:
            AuthExpiredError: If there is nothing to refresh with or the refresh fails
        """
        if not self.can_refresh:
            raise AuthExpiredError("Access token expired and no refresh token is available")
        try:
            tokens = await self._refresher(self.refresh_token)
        except AuthExpiredError:
            raise
        except Exception as e:
            raise AuthExpiredError(f"Token refresh failed: {e}") from e

        self.access_token = tokens.access_token
        self.expires_at = tokens.expires_at
        self.refresh_token = tokens.refresh_token
