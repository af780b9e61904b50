"""
Module: dispatch_kernel.models.qr_scan
Responsibility: Append-only audit trail of every QR scan and manual
    verification, including rejected ones.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, Enum as SAEnum, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from dispatch_kernel.db.base import Base
from dispatch_kernel.domain.statuses import QRFreshness, ScanContext


class QRScanRecord(Base):
    __tablename__ = "qr_scan_log"
    __append_only__ = True

    __table_args__ = (Index("idx_qr_scan_delivery", "delivery_id"),)

    # Null when the token could not be decoded far enough to name a delivery
    delivery_id: Mapped[UUID | None] = mapped_column(nullable=True)
    method: Mapped[str] = mapped_column(String(16), nullable=False, default="QR")
    # Null for standalone scans that are not part of a pickup or drop-off
    context: Mapped[ScanContext | None] = mapped_column(
        SAEnum(ScanContext, native_enum=False, length=16, validate_strings=True),
        nullable=True,
    )
    result: Mapped[QRFreshness] = mapped_column(
        SAEnum(QRFreshness, native_enum=False, length=32, validate_strings=True),
        nullable=False,
    )
    token_status_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    live_status_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
