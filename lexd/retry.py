"""Retrying operations with exponential backoff."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, TypeVar

from lexd.logger import get_logger
from lexd.models import RetryPolicy

DEFAULT_MAX_RETRIES = 10
DEFAULT_DELAY_SECONDS = 1.0
DEFAULT_BACKOFF_FACTOR = 2.0

DEFAULT_RETRY_POLICY = RetryPolicy(
    max_retries=DEFAULT_MAX_RETRIES,
    delay=DEFAULT_DELAY_SECONDS,
    backoff_factor=DEFAULT_BACKOFF_FACTOR,
)

T = TypeVar("T")


class RetryCancelledError(Exception):
    """Raised when a retried operation is cancelled."""


def _first(*values: Any) -> Any:
    return next(value for value in values if value is not None)


def merge_policies(specific: RetryPolicy | None, default: RetryPolicy | None) -> RetryPolicy:
    """Fill unset fields of ``specific`` from ``default``, then from the built-in defaults."""
    default = default or DEFAULT_RETRY_POLICY
    specific = specific or RetryPolicy()
    return RetryPolicy(
        max_retries=_first(specific.max_retries, default.max_retries, DEFAULT_MAX_RETRIES),
        delay=_first(specific.delay, default.delay, DEFAULT_DELAY_SECONDS),
        backoff_factor=_first(
            specific.backoff_factor, default.backoff_factor, DEFAULT_BACKOFF_FACTOR
        ),
    )


def _wait(delay: float, cancel_event: threading.Event | None) -> bool:
    """Sleep for ``delay`` seconds; return True if cancelled meanwhile."""
    delay = max(0.0, delay)
    if cancel_event is None:
        time.sleep(delay)
        return False
    return cancel_event.wait(delay)


def run_with_retry(
    operation_name: str,
    policy: RetryPolicy | None,
    operation: Callable[[], T],
    cancel_event: threading.Event | None = None,
) -> T | None:
    """Call ``operation`` until it succeeds or the retries are used up.

    Returns the operation's result. After the last failed attempt its
    exception is raised again. Setting ``cancel_event`` before the first
    attempt or during a wait raises RetryCancelledError.
    """
    log = get_logger()

    def emit(level: int, message: str, **fields: Any) -> None:
        log.log(level, message, extra={"operation": operation_name, **fields})

    if cancel_event is not None and cancel_event.is_set():
        emit(logging.WARNING, "Operation cancelled before first attempt")
        raise RetryCancelledError(f"operation {operation_name!r} was cancelled")

    effective = merge_policies(policy, DEFAULT_RETRY_POLICY)
    max_retries = effective.max_retries
    delay = effective.delay
    factor = effective.backoff_factor

    for attempt in range(max_retries + 1):
        emit(
            logging.DEBUG,
            "Executing operation",
            attempt=attempt + 1,
            max_attempts=max_retries + 1,
        )
        try:
            result = operation()
        except Exception as error:
            emit(
                logging.WARNING,
                "Operation failed",
                attempt=attempt + 1,
                max_attempts=max_retries + 1,
                error=str(error),
            )
            if attempt == max_retries:
                emit(logging.ERROR, "Operation failed after exhausting all retries", error=str(error))
                raise
        else:
            if attempt > 0:
                emit(logging.INFO, "Operation succeeded after retry", attempt=attempt + 1)
            else:
                emit(logging.DEBUG, "Operation succeeded on first attempt")
            return result

        emit(logging.INFO, "Scheduling retry", delay_seconds=delay)
        if _wait(delay, cancel_event):
            emit(logging.WARNING, "Retry cancelled")
            raise RetryCancelledError(f"operation {operation_name!r} was cancelled")
        delay *= factor

    return None