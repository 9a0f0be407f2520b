"""
Bounded retry for whole costing operations.

Responsibility:
    Re-run an operation that lost an optimistic-lock race (a layer's
    version moved under it) or hit a lock timeout / deadlock.  Each attempt
    must open its own transaction; the failed one has already been rolled
    back by ``session_scope``.

Invariants enforced:
    - Only concurrency failures are retried.  Business errors
      (InsufficientStockError, AlreadyReversedError, ...) and defects
      (ConsistencyError) propagate on the first attempt.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from costing_kernel.exceptions import ConcurrencyError, LockTimeoutError, OptimisticLockError
from costing_kernel.logging_config import get_logger

logger = get_logger("services.retry")

T = TypeVar("T")

RETRYABLE_ERRORS = (ConcurrencyError, StaleDataError, OperationalError)


def run_with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    backoff_base: float = 0.05,
    operation: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Execute ``func`` with retry on concurrency-related failures.

    Attempt ``n`` (0-based) that fails sleeps ``backoff_base * 2**n`` before
    the next.  After the last attempt the failure is raised as a
    ConcurrencyError: a raw StaleDataError becomes OptimisticLockError and
    an OperationalError (lock timeout, deadlock) becomes LockTimeoutError.
    """
    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            if attempt >= attempts - 1:
                logger.warning("retry_exhausted", extra={
                    "operation": operation,
                    "attempts": attempts,
                    "error": type(exc).__name__,
                })
                if isinstance(exc, StaleDataError):
                    raise OptimisticLockError("receipt_layer") from exc
                if isinstance(exc, OperationalError):
                    raise LockTimeoutError(operation, str(exc.orig or exc)) from exc
                raise
            delay = backoff_base * (2 ** attempt)
            logger.info("retrying_after_conflict", extra={
                "operation": operation,
                "attempt": attempt + 1,
                "max_attempts": attempts,
                "delay_s": delay,
                "error": type(exc).__name__,
            })
            sleep(delay)
    raise RuntimeError("run_with_retry called with attempts < 1")
