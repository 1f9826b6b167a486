"""
Error taxonomy for the migration service.
"""
import asyncio
from typing import Any, Dict, Optional

import aiohttp


class MigrationError(Exception):
    """Base class for all errors raised by the migration service."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class RemoteAPIError(MigrationError):
    """A remote Drive or Photos call returned an error response."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"HTTP {self.status_code}: {self.message}"
        return self.message


class TransientError(RemoteAPIError):
    """Network failure, timeout, rate limit or 5xx response. Retried with backoff."""


class NotFoundOrGoneError(RemoteAPIError):
    """Remote resource is missing (e.g. a deleted album). Never retried."""


class AuthExpiredError(MigrationError):
    """Token refresh failed; the user has to re-authenticate."""


class ConflictError(MigrationError):
    """Duplicate enqueue of an item that is still active."""


class ValidationError(MigrationError):
    """Malformed input, rejected before any state is mutated."""


class InternalError(MigrationError):
    """Unexpected condition inside the service."""


class InvalidTransitionError(InternalError):
    """A status change that is not an edge of the item's transition graph."""

    def __init__(self, kind: str, current: str, target: str):
        super().__init__(
            f"Invalid {kind} status transition: {current} -> {target}",
            {"current": current, "target": target},
        )
        self.current = current
        self.target = target


def error_from_status(status_code: int, message: str,
                      details: Optional[Dict[str, Any]] = None) -> RemoteAPIError:
    """Map an HTTP status code to the error taxonomy.

    Args:
        status_code: HTTP status returned by the remote API
        message: Human readable error text
        details: Optional extra context (url, response body, ...)

    Returns:
        RemoteAPIError subclass matching the status
    """
    if status_code in (404, 410):
        return NotFoundOrGoneError(message, status_code, details)
    if status_code == 429 or 500 <= status_code < 600:
        return TransientError(message, status_code, details)
    return RemoteAPIError(message, status_code, details)


def is_auth_error(exception: BaseException) -> bool:
    """Check if an exception is an expired/invalid access token response."""
    return isinstance(exception, RemoteAPIError) and exception.status_code == 401


def is_retryable_error(exception: BaseException) -> bool:
    """Check if an exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True if the error is retryable, False otherwise
    """
    if isinstance(exception, TransientError):
        return True
    return isinstance(exception, (aiohttp.ClientConnectionError, asyncio.TimeoutError))
