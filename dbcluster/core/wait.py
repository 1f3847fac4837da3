"""
Bounded polling.

Every long wait in a reconcile pass (PVC termination, Pod re-initialization,
replication catching up) goes through ``poll_until`` so it has its own
deadline and surfaces as an ordinary phase error when the deadline passes.
"""
from datetime import timedelta
from typing import Awaitable, Callable, Tuple, Type

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_delay,
    wait_fixed,
)

from dbcluster.config.logging import get_logger
from dbcluster.exceptions import ClusterOperatorException, WaitTimeoutError

logger = get_logger(__name__)


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    *,
    description: str,
    timeout: timedelta,
    interval: timedelta,
    retry_on: Tuple[Type[BaseException], ...] = (ClusterOperatorException,),
) -> None:
    """
    Call ``check`` until it returns True or the deadline passes.

    Exceptions listed in ``retry_on`` count as "not yet" and are retried;
    anything else propagates straight away. ``check`` always runs at least
    once, so a zero timeout means a single attempt.

    Raises:
        WaitTimeoutError: If ``check`` did not succeed before ``timeout``
    """
    retrying = AsyncRetrying(
        stop=stop_after_delay(timeout.total_seconds()),
        wait=wait_fixed(interval.total_seconds()),
        retry=retry_if_result(lambda ok: not ok) | retry_if_exception_type(retry_on),
    )
    try:
        await retrying(check)
    except RetryError as e:
        last_attempt = e.last_attempt
        last_error = last_attempt.exception() if last_attempt.failed else None
        logger.warning(
            "wait_timed_out",
            description=description,
            timeout_seconds=timeout.total_seconds(),
            attempts=last_attempt.attempt_number,
            last_error=str(last_error) if last_error else None,
        )
        raise WaitTimeoutError(description, timeout, last_error) from last_error
