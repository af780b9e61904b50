"""
Module: dispatch_kernel.db.types
Responsibility: Column types shared by every model.  Centralizes timestamp
    normalization and monetary precision so that orders, deliveries and
    ledger rows all use identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - Timestamps are always timezone-aware UTC on the way in AND out, on
      every backend.  SQLite drops tzinfo; UTCDateTime re-attaches it so
      that "overdue" comparisons never mix naive and aware values.
    - Money uses Decimal with two-place rounding via round_money(); never
      float.
"""

from datetime import timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

MONEY_DECIMAL_PLACES = 2


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime that always round-trips as UTC.

    Contract:
        Accepts aware datetimes only (naive input is a programming error
        and raises ValueError).  Returns aware UTC datetimes regardless of
        whether the backend preserves tzinfo.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def round_money(value: Decimal) -> Decimal:
    """Round a monetary amount to two places, half-up."""
    return value.quantize(Decimal(1).scaleb(-MONEY_DECIMAL_PLACES), rounding=ROUND_HALF_UP)
