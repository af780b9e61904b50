"""
dispatch_services.retry -- bounded retry of one transaction attempt.

Responsibility:
    Re-runs a whole transaction attempt (fresh session, fresh event
    buffer) when it lost a race, and converts exhausted retries into
    ConflictError carrying the entity's current status.

Architecture position:
    Services -- used only by DispatchOrchestrator.  Kernel services never
    retry; they raise and let the attempt roll back.

Retryable failures:
    - StaleDataError: optimistic ``version`` mismatch on flush.
    - IntegrityError on a UNIQUE constraint: two first attempts with the
      same idempotency key, or two inserts racing for the same natural
      key.  The retry sees the winner's row.
    - OperationalError reporting a lock timeout, deadlock or
      serialization failure.

Everything else (InvalidTransitionError, InsufficientStockError,
ValidationError, CHECK violations) is raised on the first attempt.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from dispatch_config.schema import RetrySettings
from dispatch_kernel.exceptions import ConflictError
from dispatch_kernel.logging_config import get_logger

logger = get_logger("services.retry")

T = TypeVar("T")

_UNIQUE_MARKERS = ("unique", "duplicate key")
_LOCK_MARKERS = ("locked", "deadlock", "could not serialize", "lock timeout")


def is_retryable(exc: BaseException) -> bool:
    """True for failures that a fresh attempt can be expected to get past."""
    if isinstance(exc, StaleDataError):
        return True
    message = str(getattr(exc, "orig", exc)).lower()
    if isinstance(exc, IntegrityError):
        return any(marker in message for marker in _UNIQUE_MARKERS)
    if isinstance(exc, OperationalError):
        return any(marker in message for marker in _LOCK_MARKERS)
    return False


def run_with_retry(
    attempt: Callable[[], T],
    *,
    retry: RetrySettings,
    operation: str,
    entity_type: str | None = None,
    entity_id: Any = None,
    current_status: Callable[[], Any] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``attempt`` until it succeeds or ``retry.max_attempts`` is used up.

    Args:
        attempt: Runs one complete transaction and returns its result.
        retry: Attempt bound and backoff schedule.
        operation: Name used in log lines.
        entity_type / entity_id: Reported on ConflictError.
        current_status: Reads the entity's status in a fresh session once
            retries are exhausted.
        sleep: Injected for tests.

    Raises:
        ConflictError: every attempt failed with a retryable error.
    """
    last: BaseException | None = None
    for n in range(1, retry.max_attempts + 1):
        delay = retry.delay_for(n)
        if delay:
            sleep(delay)
        try:
            return attempt()
        except (StaleDataError, IntegrityError, OperationalError) as exc:
            if not is_retryable(exc):
                raise
            last = exc
            logger.warning(
                "retry_conflict",
                extra={
                    "operation": operation,
                    "attempt": n,
                    "max_attempts": retry.max_attempts,
                    "entity_type": entity_type,
                    "entity_id": str(entity_id) if entity_id is not None else None,
                    "error_type": type(exc).__name__,
                },
            )

    status = current_status() if current_status is not None else None
    logger.error(
        "retry_exhausted",
        extra={
            "operation": operation,
            "attempts": retry.max_attempts,
            "entity_type": entity_type,
            "entity_id": str(entity_id) if entity_id is not None else None,
            "current_status": getattr(status, "value", status),
        },
    )
    raise ConflictError(entity_type, entity_id, retry.max_attempts, current_status=status) from last
