"""
Tests for the remote call wrapper, token refresh and error mapping.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from migration_service.auth import AuthContext, RefreshedTokens
from migration_service.errors import (
    AuthExpiredError,
    NotFoundOrGoneError,
    RemoteAPIError,
    TransientError,
    error_from_status,
    is_auth_error,
    is_retryable_error,
)
from migration_service.remote import RemoteCallWrapper


@pytest.mark.parametrize("status,expected", [
    (404, NotFoundOrGoneError),
    (410, NotFoundOrGoneError),
    (429, TransientError),
    (500, TransientError),
    (503, TransientError),
    (400, RemoteAPIError),
    (401, RemoteAPIError),
])
def test_error_from_status(status, expected):
    error = error_from_status(status, "message")
    assert type(error) is expected
    assert error.status_code == status
    assert str(error) == f"HTTP {status}: message"


def test_retryable_and_auth_classification():
    assert is_retryable_error(TransientError("boom", 503))
    assert is_retryable_error(asyncio.TimeoutError())
    assert not is_retryable_error(NotFoundOrGoneError("gone", 404))
    assert not is_retryable_error(ValueError("bad"))
    assert is_auth_error(RemoteAPIError("expired", 401))
    assert not is_auth_error(RemoteAPIError("forbidden", 403))


def test_transient_errors_are_retried_until_success(remote, auth):
    fn = AsyncMock(side_effect=[TransientError("boom", 503), TransientError("boom", 503), "ok"])
    on_retry = MagicMock()

    result = asyncio.run(remote.call(auth, fn, "test call", on_retry=on_retry))

    assert result == "ok"
    assert fn.await_count == 3
    assert on_retry.call_count == 2
    error, attempt, max_attempts = on_retry.call_args.args
    assert isinstance(error, TransientError)
    assert (attempt, max_attempts) == (2, 3)


def test_transient_errors_exhaust_attempts(remote, auth):
    fn = AsyncMock(side_effect=TransientError("still down", 503))

    with pytest.raises(TransientError, match="still down"):
        asyncio.run(remote.call(auth, fn))

    assert fn.await_count == 3


def test_connection_errors_are_retried(remote, auth):
    fn = AsyncMock(side_effect=[aiohttp.ClientConnectionError("reset"), "ok"])

    assert asyncio.run(remote.call(auth, fn)) == "ok"
    assert fn.await_count == 2


def test_not_found_is_not_retried(remote, auth):
    fn = AsyncMock(side_effect=NotFoundOrGoneError("gone", 404))

    with pytest.raises(NotFoundOrGoneError):
        asyncio.run(remote.call(auth, fn))

    assert fn.await_count == 1


def test_auth_error_refreshes_token_once():
    """Test that a 401 refreshes the token and the call is retried with the new one."""
    refresher = AsyncMock(return_value=RefreshedTokens("new-token", 1700000000, "new-refresh"))
    auth = AuthContext("old-token", "refresh-token", refresher=refresher)
    fn = AsyncMock(side_effect=[RemoteAPIError("expired", 401), "ok"])

    result = asyncio.run(RemoteCallWrapper(wait_multiplier=0).call(auth, fn))

    assert result == "ok"
    refresher.assert_awaited_once_with("refresh-token")
    assert fn.await_args_list[0].args == ("old-token",)
    assert fn.await_args_list[1].args == ("new-token",)
    assert auth.access_token == "new-token"
    assert auth.refresh_token == "new-refresh"


def test_repeated_auth_error_raises_auth_expired():
    refresher = AsyncMock(return_value=RefreshedTokens("new-token", 1700000000, "refresh-token"))
    auth = AuthContext("old-token", "refresh-token", refresher=refresher)
    fn = AsyncMock(side_effect=RemoteAPIError("expired", 401))

    with pytest.raises(AuthExpiredError):
        asyncio.run(RemoteCallWrapper(wait_multiplier=0).call(auth, fn))

    assert fn.await_count == 2
    assert refresher.await_count == 1


def test_auth_error_without_refresh_token_raises_auth_expired():
    auth = AuthContext("old-token")
    fn = AsyncMock(side_effect=RemoteAPIError("expired", 401))

    with pytest.raises(AuthExpiredError):
        asyncio.run(RemoteCallWrapper(wait_multiplier=0).call(auth, fn))

    assert fn.await_count == 1


def test_failed_refresh_raises_auth_expired():
    refresher = AsyncMock(side_effect=RuntimeError("token endpoint down"))
    auth = AuthContext("old-token", "refresh-token", refresher=refresher)
    fn = AsyncMock(side_effect=RemoteAPIError("expired", 401))

    with pytest.raises(AuthExpiredError, match="token endpoint down"):
        asyncio.run(RemoteCallWrapper(wait_multiplier=0).call(auth, fn))
