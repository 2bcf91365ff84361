"""Exponential backoff for transient failures.

Three attempts, delay doubling from RETRY_BASE_DELAY_SECONDS. Only errors the
caller names as transient are retried; anything else propagates on the first
attempt.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from lurus_api.config.env import get_retry_base_delay

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3


def retry_call(
    fn: Callable[[], T],
    *,
    retry_on: tuple[type[BaseException], ...],
    attempts: int = DEFAULT_ATTEMPTS,
    base_delay: Optional[float] = None,
    operation: str = "operation",
    on_retry: Optional[Callable[[], None]] = None,
) -> T:
    """Call fn, retrying on the given exception types.

    Args:
        fn: Zero-argument callable
        retry_on: Exception types considered transient
        attempts: Total attempts including the first
        base_delay: First backoff delay in seconds (default from env)
        operation: Name used in log events
        on_retry: Hook run before each retry (e.g. session rollback)

    Returns:
        Whatever fn returns

    Raises:
        The last transient exception once attempts are exhausted
    """
    delay = get_retry_base_delay() if base_delay is None else base_delay
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt == attempts:
                logger.error(
                    "Retry attempts exhausted",
                    extra={
                        "event": "retry.exhausted",
                        "operation": operation,
                        "attempts": attempts,
                        "error_type": type(e).__name__,
                    },
                )
                raise
            logger.warning(
                "Transient failure, retrying",
                extra={
                    "event": "retry.scheduled",
                    "operation": operation,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error_type": type(e).__name__,
                },
            )
            if on_retry is not None:
                on_retry()
            time.sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")


def run_in_transaction(db: Session, fn: Callable[[], T], *, operation: str) -> T:
    """Run a mutator as one unit of work.

    Transient DB errors roll back and retry. Any other failure rolls back
    whatever the mutator flushed and propagates.
    """
    try:
        return retry_call(
            fn,
            retry_on=(OperationalError,),
            operation=operation,
            on_retry=db.rollback,
        )
    except Exception:
        db.rollback()
        raise
