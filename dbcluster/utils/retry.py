"""
Retry utilities for Kubernetes API calls.

Transient API server failures (timeouts, throttling, 5xx) are retried with
exponential backoff. Everything else propagates immediately so the object
store adapter can translate it.
"""
from typing import Callable, TypeVar

from kubernetes_asyncio.client import ApiException
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from dbcluster.config.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# HTTP status codes that are retryable
RETRYABLE_STATUS_CODES = {
    408,  # Request Timeout
    429,  # Too Many Requests (rate limiting)
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
}


def is_retryable_k8s_error(exception: BaseException) -> bool:
    """
    Determine if a Kubernetes API exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True
    if not isinstance(exception, ApiException):
        return False
    return exception.status in RETRYABLE_STATUS_CODES


def _log_retry(retry_state: RetryCallState) -> None:
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "k8s_api_call_failed_retrying",
        function=getattr(retry_state.fn, "__name__", "unknown"),
        attempt=retry_state.attempt_number,
        delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error_type=type(exception).__name__ if exception else None,
        status_code=getattr(exception, "status", None),
        error=str(exception) if exception else None,
    )


def retry_on_k8s_error(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator to retry Kubernetes API calls with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay between retries in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)

    Example:
        @retry_on_k8s_error(max_retries=5, initial_delay=2.0)
        async def get_stateful_set(self, namespace: str, name: str):
            ...
    """
    return retry(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=initial_delay, min=initial_delay, max=max_delay),
        retry=retry_if_exception(is_retryable_k8s_error),
        before_sleep=_log_retry,
        reraise=True,
    )
