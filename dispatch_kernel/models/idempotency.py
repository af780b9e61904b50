"""
Module: dispatch_kernel.models.idempotency
Responsibility: Stored results of mutating calls made with a client key.

A replayed call with the same key and the same request fingerprint returns
``result`` unchanged; the UNIQUE constraint on ``key`` makes two concurrent
first attempts collide so exactly one applies its effects.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from dispatch_kernel.db.base import Base


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __append_only__ = True

    __table_args__ = (UniqueConstraint("key", name="uq_idempotency_key"),)

    key: Mapped[str] = mapped_column(String(128), nullable=False)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[UUID | None] = mapped_column(nullable=True)
    request_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    result: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
