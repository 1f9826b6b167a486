"""
Module wrapping outbound remote calls with token refresh and retry logic.
"""
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .auth import AuthContext
from .errors import AuthExpiredError, is_auth_error, is_retryable_error

logger = logging.getLogger(__name__)

T = TypeVar('T')

RemoteCall = Callable[[str], Awaitable[T]]
RetryCallback = Callable[[BaseException, int, int], None]


class RemoteCallWrapper:
    """Runs remote API calls with a token-refresh interceptor and bounded retries.

    A 401 response triggers one silent refresh followed by one retry of the
    call. Transient failures (network errors, 429, 5xx) are retried with
    exponential backoff, doubling the delay on every attempt.
    """

    def __init__(self, max_attempts: int = 3, wait_multiplier: float = 1.0,
                 wait_max: float = 10.0):
        """Initialize the wrapper.

        Args:
            max_attempts: Total attempts for a transient failure
            wait_multiplier: Base delay in seconds, doubled per attempt (0 disables waiting)
            wait_max: Upper bound for a single delay
        """
        self.max_attempts = max_attempts
        self.wait_multiplier = wait_multiplier
        self.wait_max = wait_max

    async def call(self, auth: AuthContext, fn: RemoteCall,
                   description: str = "remote call",
                   on_retry: Optional[RetryCallback] = None) -> T:
        """Execute a remote call.

        Args:
            auth: Credentials; the access token may be rotated in place
            fn: Coroutine function receiving the current access token
            description: Label used in log messages
            on_retry: Called with (error, attempt, max_attempts) before each retry

        Returns:
            Whatever fn returns

        Raises:
            AuthExpiredError: If the token could not be refreshed
            MigrationError: The last error once retries are exhausted
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.wait_multiplier, max=self.wait_max),
            retry=retry_if_exception(is_retryable_error),
            before_sleep=self._before_sleep(description, on_retry),
            reraise=True,
        )
        return await retrying(self._with_token_refresh, auth, fn, description)

    async def _with_token_refresh(self, auth: AuthContext, fn: RemoteCall,
                                  description: str) -> T:
        try:
            return await fn(auth.access_token)
        except Exception as e:
            if not is_auth_error(e):
                raise
            logger.warning(f"Auth error during {description}, refreshing token and retrying once")

        await auth.refresh()
        try:
            return await fn(auth.access_token)
        except Exception as e:
            if is_auth_error(e):
                raise AuthExpiredError(
                    f"Authorization failed after token refresh during {description}"
                ) from e
            raise

    def _before_sleep(self, description: str,
                      on_retry: Optional[RetryCallback]) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                f"Retrying {description} after error (attempt {retry_state.attempt_number}"
                f"/{self.max_attempts}, waiting {delay:.2f}s): {error}"
            )
            if on_retry:
                on_retry(error, retry_state.attempt_number, self.max_attempts)
        return before_sleep
