"""
ProofCaptureService -- finalize a delivery at hand-over.

Responsibility:
    Checks how the hand-over was verified (fresh QR, stale QR with an
    explicit override, manual order-number/customer-name fallback, or
    nothing at all) and completes the delivery with the captured proof.
    The same checks run, optionally, when the driver picks the parcel up.

Architecture position:
    Kernel > Services.  Composes QRVerificationService and DeliveryManager
    in one session.  Photo bytes are only hashed here; the upload itself
    is a post-commit side effect owned by the orchestrator.

Invariants enforced:
    - The token must name the delivery being completed.
    - Verification is re-evaluated inside the completing transaction, so a
      delivery that changed after the scan cannot be completed on the
      strength of a token that has since gone stale.
    - When ``require_verification`` is set, an unverified hand-over is
      rejected with ValidationError.
"""

from __future__ import annotations

from dataclasses import replace
from uuid import UUID

from dispatch_kernel.domain.dtos import DeliverySnapshot, ManualVerification, Proof
from dispatch_kernel.domain.statuses import DeliveryStatus, ProofVerification, QRFreshness
from dispatch_kernel.exceptions import InvalidQRTokenError, ValidationError
from dispatch_kernel.logging_config import get_logger
from dispatch_kernel.models.delivery import ProofOfDelivery
from dispatch_kernel.services.base import BaseService, as_uuid
from dispatch_kernel.services.delivery_manager import DeliveryManager
from dispatch_kernel.services.qr_verification import QRVerificationService
from dispatch_kernel.utils.hashing import hash_bytes

logger = get_logger("services.proof_capture")


def photo_reference(photo: bytes) -> str:
    """Content address under which a proof photo is stored."""
    return f"sha256:{hash_bytes(photo)}"


class ProofCaptureService(BaseService[ProofOfDelivery]):
    def __init__(
        self,
        session,
        clock=None,
        events=None,
        *,
        qr: QRVerificationService,
        deliveries: DeliveryManager | None = None,
        require_verification: bool = False,
    ):
        super().__init__(session, clock, events)
        self.qr = qr
        self.deliveries = deliveries or DeliveryManager(session, self.clock, self.events)
        self.require_verification = require_verification

    def _verify(
        self,
        delivery_id: UUID,
        *,
        actor: str,
        token: str | None,
        allow_stale: bool,
        manual: ManualVerification | None,
        required: bool,
    ) -> ProofVerification:
        if token is not None:
            result = self.qr.require_verified(token, actor=actor, allow_stale=allow_stale, record=False)
            if result.delivery_id != delivery_id:
                raise InvalidQRTokenError(
                    "token belongs to another delivery",
                    delivery_id=delivery_id,
                    current_status=result.delivery.status if result.delivery else None,
                )
            if result.freshness == QRFreshness.STALE:
                return ProofVerification.QR_STALE_OVERRIDE
            return ProofVerification.QR_FRESH

        if manual is not None:
            result = self.qr.check_manual(
                delivery_id,
                manual.order_number,
                manual.customer_name,
                actor=actor,
                record=False,
            )
            self.qr.ensure_acceptable(result)
            return ProofVerification.MANUAL_OVERRIDE

        if required:
            current = self.deliveries.load(delivery_id).status
            raise ValidationError(
                "Hand-over must be verified by QR scan or manual check",
                field="token",
                entity_type="Delivery",
                entity_id=delivery_id,
                current_status=current,
            )
        return ProofVerification.NONE

    def capture(
        self,
        delivery_id: UUID | str,
        proof: Proof,
        *,
        actor: str,
        token: str | None = None,
        allow_stale: bool = False,
        manual: ManualVerification | None = None,
        photo: bytes | None = None,
    ) -> DeliverySnapshot:
        """
        Verify the hand-over and complete the delivery.

        ``photo`` bytes, when given, replace ``proof.photo_ref`` with their
        content address (see ``photo_reference``).
        """
        delivery_id = as_uuid(delivery_id, "Delivery")
        verification = self._verify(
            delivery_id,
            actor=actor,
            token=token,
            allow_stale=allow_stale,
            manual=manual,
            required=self.require_verification,
        )
        if photo is not None:
            proof = replace(proof, photo_ref=photo_reference(photo))

        snapshot = self.deliveries.complete(delivery_id, proof, actor=actor, verification=verification)
        logger.info(
            "proof_captured",
            extra={
                "delivery_id": delivery_id,
                "verification": verification.value,
                "photo_ref": proof.photo_ref,
            },
        )
        return snapshot

    def depart(
        self,
        delivery_id: UUID | str,
        driver_id: str | None,
        *,
        actor: str,
        token: str | None = None,
        allow_stale: bool = False,
        manual: ManualVerification | None = None,
    ) -> DeliverySnapshot:
        """
        Pickup check, then ASSIGNED or DELAYED -> IN_TRANSIT.

        Verification is optional at pickup; when a token or manual data is
        given it must pass under the same rules as at drop-off.
        """
        delivery_id = as_uuid(delivery_id, "Delivery")
        verification = self._verify(
            delivery_id,
            actor=actor,
            token=token,
            allow_stale=allow_stale,
            manual=manual,
            required=False,
        )
        snapshot = self.deliveries.apply_status(
            delivery_id,
            DeliveryStatus.IN_TRANSIT,
            {"driver_id": driver_id},
            actor=actor,
        )
        logger.info(
            "delivery_departed",
            extra={"delivery_id": delivery_id, "verification": verification.value},
        )
        return snapshot
