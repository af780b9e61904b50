"""
QRVerificationService -- hand-over token issuance and freshness checks.

Responsibility:
    Issues opaque QR tokens bound to a delivery's ``status_version`` and
    classifies scanned tokens as FRESH, STALE or INVALID against the live
    delivery.  Also runs the manual fallback (order number + customer
    name) when a code cannot be scanned.

Token format:
    base64url (unpadded) of canonical JSON

        {"deliveryId", "orderId", "statusVersion", "integrityTag"}

    where integrityTag = HMAC-SHA256(secret, canonical JSON of the other
    three fields).  The token carries no customer data.

Classification:
    undecodable / tag mismatch / unknown delivery / order mismatch /
    token version ahead of live                          -> INVALID
    token version == live status_version                 -> FRESH
    token version <  live status_version                 -> STALE

Architecture position:
    Kernel > Services.  Called by the orchestrator (scan_qr,
    verify_manual) and by ProofCaptureService at pickup and before
    completion.

Audit relevance:
    Every evaluation that reaches ``record`` appends a qr_scan_log row.
    Accepting a STALE token with an explicit override is logged at
    WARNING and recorded with ``override=True``.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any
from uuid import UUID

from dispatch_kernel.domain.dtos import ScanResult
from dispatch_kernel.domain.statuses import QRFreshness, ScanContext
from dispatch_kernel.exceptions import InvalidQRTokenError, NotFoundError, StaleQRTokenError
from dispatch_kernel.logging_config import get_logger
from dispatch_kernel.models.delivery import Delivery
from dispatch_kernel.models.order import Order
from dispatch_kernel.models.qr_scan import QRScanRecord
from dispatch_kernel.services.base import BaseService, as_uuid
from dispatch_kernel.utils.hashing import canonicalize_json, hmac_tag, tags_match

logger = get_logger("services.qr_verification")


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(token: str) -> bytes:
    padding = "=" * (-len(token) % 4)
    return base64.urlsafe_b64decode(token + padding)


def normalize_name(name: str) -> str:
    return " ".join(name.split()).casefold()


class QRVerificationService(BaseService[QRScanRecord]):
    """
    Contract:
        ``evaluate`` never writes.  ``validate``, ``require_verified`` and
        ``check_manual`` record their outcome unless told not to.
        ``ensure_acceptable`` turns an outcome into the matching exception.
    """

    def __init__(self, session, clock=None, events=None, *, secret: bytes):
        super().__init__(session, clock, events)
        if not secret:
            raise ValueError("QR secret must not be empty")
        self._secret = secret

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def _signed_fields(self, delivery_id: Any, order_id: Any, status_version: Any) -> dict[str, Any]:
        return {
            "deliveryId": str(delivery_id),
            "orderId": str(order_id),
            "statusVersion": status_version,
        }

    def generate_token(self, delivery_id: UUID | str) -> str:
        delivery_id = as_uuid(delivery_id, "Delivery")
        delivery = self.session.get(Delivery, delivery_id)
        if delivery is None:
            raise NotFoundError("Delivery", delivery_id)

        fields = self._signed_fields(delivery.id, delivery.order_id, delivery.status_version)
        payload = dict(fields, integrityTag=hmac_tag(self._secret, fields))
        logger.info(
            "qr_token_generated",
            extra={"delivery_id": delivery.id, "status_version": delivery.status_version},
        )
        return _b64encode(canonicalize_json(payload).encode("utf-8"))

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _decode(self, token: object) -> dict[str, Any] | None:
        if not isinstance(token, str) or not token:
            return None
        try:
            data = json.loads(_b64decode(token.strip()).decode("utf-8"))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return None
        if not isinstance(data, dict):
            return None
        version = data.get("statusVersion")
        if isinstance(version, bool) or not isinstance(version, int) or version < 0:
            return None
        if not all(isinstance(data.get(k), str) for k in ("deliveryId", "orderId", "integrityTag")):
            return None
        return data

    def evaluate(self, token: str) -> ScanResult:
        """Classify a token against the live delivery without recording it."""
        data = self._decode(token)
        if data is None:
            return ScanResult(QRFreshness.INVALID, None, reason="undecodable token")

        token_version = data["statusVersion"]
        fields = self._signed_fields(data["deliveryId"], data["orderId"], token_version)
        if not tags_match(hmac_tag(self._secret, fields), data["integrityTag"]):
            return ScanResult(
                QRFreshness.INVALID,
                None,
                token_version=token_version,
                reason="integrity tag mismatch",
            )

        try:
            delivery_id = UUID(data["deliveryId"])
        except ValueError:
            return ScanResult(QRFreshness.INVALID, None, token_version=token_version, reason="malformed delivery id")
        delivery = self.session.get(Delivery, delivery_id)
        if delivery is None:
            return ScanResult(QRFreshness.INVALID, None, token_version=token_version, reason="unknown delivery")

        snapshot = delivery.to_dto()
        live_version = delivery.status_version
        if data["orderId"] != str(delivery.order_id):
            freshness, reason = QRFreshness.INVALID, "order mismatch"
        elif token_version > live_version:
            freshness, reason = QRFreshness.INVALID, "token version ahead of delivery"
        elif token_version == live_version:
            freshness, reason = QRFreshness.FRESH, None
        else:
            freshness, reason = QRFreshness.STALE, None
        return ScanResult(
            freshness,
            snapshot,
            token_version=token_version,
            live_version=live_version,
            reason=reason,
        )

    def record(
        self,
        result: ScanResult,
        *,
        actor: str,
        method: str = "QR",
        override: bool = False,
        delivery_id: UUID | None = None,
        context: ScanContext | None = None,
    ) -> None:
        self.session.add(
            QRScanRecord(
                delivery_id=result.delivery_id or delivery_id,
                method=method,
                context=context,
                result=result.freshness,
                token_status_version=result.token_version,
                live_status_version=result.live_version,
                override=override,
                reason=result.reason,
                actor=actor,
                timestamp=self.clock.now(),
            )
        )
        self.session.flush()

        extra = {
            "delivery_id": result.delivery_id or delivery_id,
            "method": method,
            "context": context.value if context is not None else None,
            "freshness": result.freshness.value,
            "token_version": result.token_version,
            "live_version": result.live_version,
            "reason": result.reason,
        }
        if override:
            logger.warning("qr_stale_override", extra=extra)
        elif result.freshness == QRFreshness.INVALID:
            logger.warning("qr_scan_rejected", extra=extra)
        else:
            logger.info("qr_scanned", extra=extra)

    def validate(self, token: str, *, actor: str) -> ScanResult:
        """Evaluate and record a scan.  Never raises for a bad token."""
        result = self.evaluate(token)
        self.record(result, actor=actor)
        return result

    @staticmethod
    def ensure_acceptable(result: ScanResult, *, allow_stale: bool = False) -> ScanResult:
        """
        Raise unless the outcome permits completing the delivery.

        Raises:
            InvalidQRTokenError: INVALID outcome.
            StaleQRTokenError: STALE outcome without ``allow_stale``.
        """
        current = result.delivery.status if result.delivery else None
        if result.freshness == QRFreshness.INVALID:
            raise InvalidQRTokenError(
                result.reason or "invalid token",
                delivery_id=result.delivery_id,
                current_status=current,
            )
        if result.freshness == QRFreshness.STALE and not allow_stale:
            raise StaleQRTokenError(
                result.delivery_id,
                result.token_version,
                result.live_version,
                current_status=current,
            )
        return result

    def require_verified(
        self,
        token: str,
        *,
        actor: str,
        allow_stale: bool = False,
        record: bool = True,
    ) -> ScanResult:
        """FRESH, or STALE with an explicit override; anything else raises."""
        result = self.evaluate(token)
        if record:
            override = allow_stale and result.freshness == QRFreshness.STALE
            self.record(result, actor=actor, override=override)
        return self.ensure_acceptable(result, allow_stale=allow_stale)

    # ------------------------------------------------------------------
    # Manual fallback
    # ------------------------------------------------------------------

    def check_manual(
        self,
        delivery_id: UUID | str,
        order_number: str,
        customer_name: str,
        *,
        actor: str,
        record: bool = True,
        context: ScanContext | None = None,
    ) -> ScanResult:
        """
        Verify a hand-over without a scannable code.

        The order number must match exactly; the customer name is compared
        ignoring case and surrounding / repeated whitespace.  A match is
        reported as MANUAL_OVERRIDE, a mismatch as INVALID.
        """
        delivery_id = as_uuid(delivery_id, "Delivery")
        delivery = self.session.get(Delivery, delivery_id)
        if delivery is None:
            raise NotFoundError("Delivery", delivery_id)
        order = self.session.get(Order, delivery.order_id)

        if not isinstance(order_number, str) or order_number.strip() != order.order_number:
            freshness, reason = QRFreshness.INVALID, "order number mismatch"
        elif (
            not isinstance(customer_name, str)
            or order.customer_name is None
            or normalize_name(customer_name) != normalize_name(order.customer_name)
        ):
            freshness, reason = QRFreshness.INVALID, "customer name mismatch"
        else:
            freshness, reason = QRFreshness.MANUAL_OVERRIDE, None

        result = ScanResult(
            freshness,
            delivery.to_dto(),
            live_version=delivery.status_version,
            reason=reason,
        )
        if record:
            self.record(result, actor=actor, method="MANUAL", context=context)
        return result

    def verify_manual(
        self,
        delivery_id: UUID | str,
        order_number: str,
        customer_name: str,
        *,
        actor: str,
    ) -> ScanResult:
        result = self.check_manual(delivery_id, order_number, customer_name, actor=actor)
        return self.ensure_acceptable(result)
