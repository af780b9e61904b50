"""
Module: dispatch_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models.  Provides
    the UUID primary key convention, the type annotation map, and the
    TrackedBase mixin for audit metadata.
Architecture position: Kernel > DB.  Lowest-level import target within the
    kernel.  ALL model files import from here.  MUST NOT import from models/,
    services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - UUID primary keys stored as String(36) for cross-database portability.
    - datetime columns use UTCDateTime (aware UTC on every backend).
    - Decimal maps to Numeric(18, 2) -- order amounts, never float.
    - TrackedBase rows record who created and last touched them.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, Numeric, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from dispatch_kernel.db.types import MONEY_DECIMAL_PLACES, UTCDateTime


class UUIDString(TypeDecorator):
    """UUID stored as its 36-character string form."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return PyUUID(value)


class Base(DeclarativeBase):
    """
    Declarative base for all models.

    Guarantees:
        - id is always a uuid4-generated UUID stored as String(36).
        - Decimal maps to Numeric(18, 2).
        - datetime maps to UTCDateTime.
        - int maps to BigInteger (counters and versions).
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(18, MONEY_DECIMAL_PLACES),
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base for mutable snapshot rows (orders, deliveries, tasks, stock).

    Contract:
        ``created_at`` / ``created_by`` are set once on INSERT by the service
        that creates the row (from the injected Clock); ``updated_at`` /
        ``updated_by`` are refreshed by every accepted mutation.  These are
        audit metadata, not lifecycle data.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(100), nullable=True)


UUID = PyUUID
