"""
ORM-Level Immutability Enforcement for append-only logs.

===============================================================================
WHY THIS EXISTS
===============================================================================

Every snapshot row in the kernel (order, delivery, task, stock item) must be
reproducible by replaying its log from empty state.  That only holds if the
logs themselves never change:

    order_history, delivery_history, task_history   -- status transitions
    stock_ledger, stock_reservations                -- quantity math
    delivery_proofs, qr_scan_log                    -- audit evidence
    idempotency_records                             -- replay results

A model opts in by setting ``__append_only__ = True``.  A single
``before_flush`` listener on every Session inspects pending UPDATEs and
DELETEs and raises ImmutabilityViolationError before any SQL is sent:

    session.flush()
         |
         v
    [before_flush] --> _check_append_only() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Bulk ``update()`` / ``delete()`` statements bypass the unit of work and are
not covered here; the kernel never issues them against log tables.

===============================================================================
USAGE
===============================================================================

    from dispatch_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()   # idempotent; build_engine() calls it
"""

from sqlalchemy import event
from sqlalchemy.orm import Session

from dispatch_kernel.exceptions import ImmutabilityViolationError
from dispatch_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def is_append_only(obj) -> bool:
    """True if ``obj``'s model is declared append-only."""
    return bool(getattr(type(obj), "__append_only__", False))


def _check_append_only(session, flush_context, instances):
    for obj in session.dirty:
        if is_append_only(obj) and session.is_modified(obj, include_collections=False):
            logger.error(
                "immutability_violation",
                extra={"entity_type": type(obj).__name__, "operation": "update"},
            )
            raise ImmutabilityViolationError(
                type(obj).__name__,
                getattr(obj, "id", "?"),
                "append-only rows cannot be updated",
            )
    for obj in session.deleted:
        if is_append_only(obj):
            logger.error(
                "immutability_violation",
                extra={"entity_type": type(obj).__name__, "operation": "delete"},
            )
            raise ImmutabilityViolationError(
                type(obj).__name__,
                getattr(obj, "id", "?"),
                "append-only rows cannot be deleted",
            )


def register_immutability_listeners() -> None:
    """Install the before_flush guard on all sessions (idempotent)."""
    if not event.contains(Session, "before_flush", _check_append_only):
        event.listen(Session, "before_flush", _check_append_only)
        logger.debug("immutability_listeners_registered")

