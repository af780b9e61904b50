"""
dispatch_services.orchestrator -- the public entry point of the dispatch kernel.

Responsibility:
    Every staff screen, driver app and admin tool calls this class.  Each
    mutating operation:

        1. binds request-scoped log context (correlation, actor, entity,
           idempotency key);
        2. opens a fresh session and a fresh event buffer, builds the
           kernel services on them, answers an idempotent replay from the
           stored result or runs the operation and stores its result;
        3. commits, retrying the whole attempt on version conflicts,
           idempotency-key collisions and lock timeouts;
        4. hands the committed events (and any photo upload) to the
           SideEffectDispatcher.

Architecture position:
    Services -- the only place that owns transaction boundaries.  Kernel
    services below it only flush.

Invariants enforced:
    - No event is published for an attempt that did not commit.
    - A replayed idempotency key returns the original result and changes
      nothing (no history row, no status_version bump, no event).
    - QR scans and manual checks are recorded in their own transaction
      before the pickup or hand-over is attempted, so a rejected scan is
      still in qr_scan_log.  The transaction that moves the delivery
      re-checks the token.

Failure modes:
    - Kernel exceptions propagate unchanged (never retried).
    - ConflictError once retries are exhausted, carrying the entity's
      status as read after the last attempt.

Usage:
    settings = get_active_config()
    orchestrator = build_dispatch_orchestrator(settings)
    order = orchestrator.create_order("cust-1", items, "1 Main St", actor="staff-7")
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from dispatch_config.schema import DispatchSettings
from dispatch_kernel.db.engine import build_engine, create_tables, make_session_factory, session_scope
from dispatch_kernel.domain.clock import Clock, SystemClock
from dispatch_kernel.domain.dtos import (
    BulkResult,
    DeliveryIssueRecord,
    DeliverySnapshot,
    ManualVerification,
    OrderLine,
    OrderSnapshot,
    Proof,
    ScanResult,
    StockLevel,
    StockMovementRecord,
    TaskSnapshot,
)
from dispatch_kernel.domain.events import EventBuffer, EventPublisher, LoggingPublisher
from dispatch_kernel.domain.order_rules import normalize_order_lines
from dispatch_kernel.domain.statuses import (
    DeliveryStatus,
    MovementType,
    OrderStatus,
    QRFreshness,
    ScanContext,
    TaskStatus,
)
from dispatch_kernel.exceptions import ConflictError, DispatchKernelError, InvalidQRTokenError, NotFoundError
from dispatch_kernel.logging_config import LogContext, get_logger
from dispatch_kernel.models.delivery import Delivery
from dispatch_kernel.models.order import Order
from dispatch_kernel.models.task import Task
from dispatch_kernel.selectors import (
    DeliverySelector,
    InventorySelector,
    OrderSelector,
    ReplayResult,
    ReplaySelector,
    TaskSelector,
)
from dispatch_kernel.services import (
    DeliveryManager,
    IdempotencyStore,
    InventoryLedger,
    OrderLifecycleManager,
    ProofCaptureService,
    QRVerificationService,
    TaskScheduler,
)
from dispatch_kernel.services.base import as_uuid, require_text
from dispatch_kernel.services.delivery_manager import coerce_delivery_status, proof_from_payload
from dispatch_kernel.services.idempotency_store import request_fingerprint
from dispatch_kernel.services.order_lifecycle import coerce_order_status
from dispatch_kernel.services.proof_capture import photo_reference
from dispatch_kernel.services.task_scheduler import coerce_task_status
from dispatch_services.retry import run_with_retry
from dispatch_services.side_effects import InMemoryPhotoStore, PhotoStore, SideEffectDispatcher

logger = get_logger("services.orchestrator")

R = TypeVar("R")

_STATUS_MODELS = {"Order": Order, "Delivery": Delivery, "Task": Task}


class _Services:
    """Kernel services sharing one session and one event buffer.

    Built once per transaction attempt, in dependency order, so that an
    order confirmation and the stock reservation it triggers see the same
    rows and the same buffer.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        events: EventBuffer,
        settings: DispatchSettings,
    ) -> None:
        self.session = session
        self.events = events
        self.ledger = InventoryLedger(session, clock, events)
        self.orders = OrderLifecycleManager(session, clock, events, ledger=self.ledger)
        self.deliveries = DeliveryManager(session, clock, events, orders=self.orders)
        self.qr = QRVerificationService(session, clock, events, secret=settings.qr.secret_bytes)
        self.proofs = ProofCaptureService(
            session,
            clock,
            events,
            qr=self.qr,
            deliveries=self.deliveries,
            require_verification=settings.qr.require_verification,
        )
        self.tasks = TaskScheduler(session, clock, events)
        self.idempotency = IdempotencyStore(session, clock, events)


class DispatchOrchestrator:
    """
    Transactional facade over the kernel services.

    Contract:
        Receives a session factory and the active DispatchSettings, plus
        the injected clock, event publisher and photo store.  Every
        public method returns frozen DTOs.

    Non-goals:
        - Does NOT authenticate callers; ``actor`` is taken as given.
        - Does NOT deliver notifications itself; the EventPublisher does.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: DispatchSettings,
        *,
        clock: Clock | None = None,
        publisher: EventPublisher | None = None,
        photo_store: PhotoStore | None = None,
        side_effects: SideEffectDispatcher | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self.settings = settings
        self.clock = clock or SystemClock()
        self.publisher = publisher or LoggingPublisher()
        self.photo_store = photo_store or InMemoryPhotoStore()
        self.side_effects = side_effects or SideEffectDispatcher(
            self.publisher,
            max_workers=settings.side_effects.max_workers,
            synchronous=settings.side_effects.synchronous,
        )
        self._sleep = sleep

    def close(self) -> None:
        self.side_effects.shutdown()

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    def _execute(
        self,
        operation: str,
        work: Callable[[_Services], R],
        *,
        actor: str,
        entity_type: str | None = None,
        entity_id: Any = None,
        idempotency_key: str | None = None,
        request: Mapping[str, Any] | None = None,
        restore: Callable[[dict[str, Any]], R] | None = None,
    ) -> R:
        actor = require_text(actor, "actor")
        correlation_id = LogContext.get_all().get("correlation_id") or str(uuid4())
        fingerprint = (
            request_fingerprint(operation, dict(request or {}))
            if idempotency_key is not None
            else None
        )

        def attempt() -> tuple[R, list]:
            events = EventBuffer()
            with session_scope(self._session_factory) as session:
                services = _Services(session, self.clock, events, self.settings)
                if idempotency_key is not None:
                    services.idempotency.check_key(idempotency_key)
                    stored = services.idempotency.lookup(idempotency_key, operation, fingerprint)
                    if stored is not None:
                        return restore(stored), []
                result = work(services)
                if idempotency_key is not None:
                    services.idempotency.save(
                        idempotency_key,
                        operation,
                        fingerprint,
                        result.to_dict(),
                        actor=actor,
                        entity_id=getattr(result, "id", None),
                    )
            return result, events.drain()

        with LogContext.bind(
            correlation_id=correlation_id,
            actor_id=actor,
            entity_id=str(entity_id) if entity_id is not None else None,
            idempotency_key=idempotency_key,
        ):
            result, events = run_with_retry(
                attempt,
                retry=self.settings.retry,
                operation=operation,
                entity_type=entity_type,
                entity_id=entity_id,
                current_status=lambda: self._current_status(entity_type, entity_id),
                sleep=self._sleep,
            )
            logger.debug(
                "operation_committed",
                extra={"operation": operation, "event_count": len(events)},
            )
            self.side_effects.publish(events)
        return result

    def _read(self, query: Callable[[Session], R]) -> R:
        with session_scope(self._session_factory) as session:
            return query(session)

    def _replayed(
        self,
        operation: str,
        key: str,
        request: Mapping[str, Any],
        restore: Callable[[dict[str, Any]], R],
    ) -> R | None:
        fingerprint = request_fingerprint(operation, dict(request))

        def lookup(session: Session) -> R | None:
            store = IdempotencyStore(session, self.clock)
            store.check_key(key)
            stored = store.lookup(key, operation, fingerprint)
            return restore(stored) if stored is not None else None

        return self._read(lookup)

    def _current_status(self, entity_type: str | None, entity_id: Any) -> Any:
        model = _STATUS_MODELS.get(entity_type)
        if model is None or entity_id is None:
            return None
        with session_scope(self._session_factory) as session:
            try:
                row = session.get(model, as_uuid(entity_id, entity_type))
            except NotFoundError:
                return None
            return row.status if row is not None else None

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def create_order(
        self,
        customer_id: str,
        items: Iterable[OrderLine | Mapping[str, Any]],
        delivery_address: str,
        *,
        actor: str,
        customer_name: str | None = None,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> OrderSnapshot:
        lines = normalize_order_lines(items)
        return self._execute(
            "create_order",
            lambda s: s.orders.create_order(
                customer_id,
                lines,
                delivery_address,
                actor=actor,
                customer_name=customer_name,
                notes=notes,
            ),
            actor=actor,
            idempotency_key=idempotency_key,
            request={
                "customer_id": customer_id,
                "items": [line.to_dict() for line in lines],
                "delivery_address": delivery_address,
                "customer_name": customer_name,
                "notes": notes,
            },
            restore=OrderSnapshot.from_dict,
        )

    def transition_order(
        self,
        order_id: UUID | str,
        target: OrderStatus | str,
        *,
        actor: str,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> OrderSnapshot:
        """
        Move an order to ``target``.

        Raises:
            InvalidTransitionError: target unreachable (status unchanged).
            InsufficientStockError: confirmation short on stock; the order
                stays PENDING.
        """
        target = coerce_order_status(target)
        order_id = as_uuid(order_id, "Order")
        return self._execute(
            "transition_order",
            lambda s: s.orders.transition(order_id, target, actor=actor, notes=notes),
            actor=actor,
            entity_type="Order",
            entity_id=order_id,
            idempotency_key=idempotency_key,
            request={"order_id": str(order_id), "target": target.value, "notes": notes},
            restore=OrderSnapshot.from_dict,
        )

    def get_order(self, order_id: UUID | str) -> OrderSnapshot:
        return self._read(lambda session: OrderLifecycleManager(session, self.clock).get(order_id))

    def get_order_by_number(self, order_number: str) -> OrderSnapshot:
        snapshot = self._read(lambda session: OrderSelector(session).by_number(order_number))
        if snapshot is None:
            raise NotFoundError("Order", order_number)
        return snapshot

    def list_orders(
        self,
        status: OrderStatus | str | None = None,
        *,
        include_archived: bool = False,
    ) -> list[OrderSnapshot]:
        return self._read(
            lambda session: OrderSelector(session).list_by_status(status, include_archived=include_archived)
        )

    # ------------------------------------------------------------------
    # Deliveries
    # ------------------------------------------------------------------

    def create_delivery_task(
        self,
        order_id: UUID | str,
        *,
        actor: str,
        driver_id: str | None = None,
        scheduled_time: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> DeliverySnapshot:
        order_id = as_uuid(order_id, "Order")
        return self._execute(
            "create_delivery_task",
            lambda s: s.deliveries.create_task(
                order_id,
                actor=actor,
                driver_id=driver_id,
                scheduled_time=scheduled_time,
            ),
            actor=actor,
            entity_type="Order",
            entity_id=order_id,
            idempotency_key=idempotency_key,
            request={
                "order_id": str(order_id),
                "driver_id": driver_id,
                "scheduled_time": scheduled_time,
            },
            restore=DeliverySnapshot.from_dict,
        )

    def assign_driver(
        self,
        delivery_id: UUID | str,
        driver_id: str,
        *,
        actor: str,
        idempotency_key: str | None = None,
    ) -> DeliverySnapshot:
        delivery_id = as_uuid(delivery_id, "Delivery")
        return self._execute(
            "assign_driver",
            lambda s: s.deliveries.assign(delivery_id, driver_id, actor=actor),
            actor=actor,
            entity_type="Delivery",
            entity_id=delivery_id,
            idempotency_key=idempotency_key,
            request={"delivery_id": str(delivery_id), "driver_id": driver_id},
            restore=DeliverySnapshot.from_dict,
        )

    def update_delivery_status(
        self,
        delivery_id: UUID | str,
        target: DeliveryStatus | str,
        payload: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
        *,
        actor: str,
    ) -> DeliverySnapshot:
        """
        Apply a driver-app status update.

        ``payload`` keys by target:
            IN_TRANSIT         driver_id, and optionally qr_token + allow_stale,
                               or order_number + customer_name
            DELIVERED          delivered_to, signature_ref, photo_ref, notes,
                               and optionally qr_token + allow_stale, or
                               order_number + customer_name
            DELAYED / FAILED   reason
            CANCELED           reason
        """
        target = coerce_delivery_status(target)
        delivery_id = as_uuid(delivery_id, "Delivery")
        payload = dict(payload or {})
        request = {"delivery_id": str(delivery_id), "target": target.value, "payload": payload}

        manual = None
        if payload.get("order_number") is not None or payload.get("customer_name") is not None:
            manual = ManualVerification(
                order_number=payload.get("order_number") or "",
                customer_name=payload.get("customer_name") or "",
            )

        if target == DeliveryStatus.IN_TRANSIT:
            return self._depart(
                "update_delivery_status",
                delivery_id,
                payload.get("driver_id"),
                actor=actor,
                request=request,
                idempotency_key=idempotency_key,
                token=payload.get("qr_token"),
                allow_stale=bool(payload.get("allow_stale", False)),
                manual=manual,
            )

        if target == DeliveryStatus.DELIVERED:
            return self._complete(
                "update_delivery_status",
                delivery_id,
                proof_from_payload(payload),
                actor=actor,
                request=request,
                idempotency_key=idempotency_key,
                token=payload.get("qr_token"),
                allow_stale=bool(payload.get("allow_stale", False)),
                manual=manual,
                photo=None,
            )

        return self._execute(
            "update_delivery_status",
            lambda s: s.deliveries.apply_status(delivery_id, target, payload, actor=actor),
            actor=actor,
            entity_type="Delivery",
            entity_id=delivery_id,
            idempotency_key=idempotency_key,
            request=request,
            restore=DeliverySnapshot.from_dict,
        )

    def resolve_delivery_issue(
        self,
        issue_id: UUID | str,
        *,
        actor: str,
        idempotency_key: str | None = None,
    ) -> DeliveryIssueRecord:
        issue_id = as_uuid(issue_id, "DeliveryIssue")
        return self._execute(
            "resolve_delivery_issue",
            lambda s: s.deliveries.resolve_issue(issue_id, actor=actor),
            actor=actor,
            entity_type="DeliveryIssue",
            entity_id=issue_id,
            idempotency_key=idempotency_key,
            request={"issue_id": str(issue_id)},
            restore=DeliveryIssueRecord.from_dict,
        )

    def get_delivery(self, delivery_id: UUID | str) -> DeliverySnapshot:
        return self._read(lambda session: DeliveryManager(session, self.clock).get(delivery_id))

    def deliveries_for_order(self, order_id: UUID | str) -> list[DeliverySnapshot]:
        order_id = as_uuid(order_id, "Order")
        return self._read(lambda session: DeliverySelector(session).for_order(order_id))

    def deliveries_for_driver(
        self,
        driver_id: str,
        status: DeliveryStatus | str | None = None,
    ) -> list[DeliverySnapshot]:
        return self._read(lambda session: DeliverySelector(session).for_driver(driver_id, status))

    def open_delivery_issues(self, delivery_id: UUID | str | None = None) -> list[DeliveryIssueRecord]:
        if delivery_id is not None:
            delivery_id = as_uuid(delivery_id, "Delivery")
        return self._read(lambda session: DeliverySelector(session).open_issues(delivery_id))

    # ------------------------------------------------------------------
    # Hand-over verification and proof of delivery
    # ------------------------------------------------------------------

    def generate_qr_token(self, delivery_id: UUID | str) -> str:
        secret = self.settings.qr.secret_bytes
        return self._read(
            lambda session: QRVerificationService(session, self.clock, secret=secret).generate_token(delivery_id)
        )

    def scan_qr(self, token: str, *, actor: str) -> ScanResult:
        """Classify and record a scan.  Never raises for a bad token."""
        return self._execute("scan_qr", lambda s: s.qr.validate(token, actor=actor), actor=actor)

    def verify_manual(
        self,
        delivery_id: UUID | str,
        order_number: str,
        customer_name: str,
        *,
        actor: str,
    ) -> ScanResult:
        """
        Manual fallback check.  The outcome is recorded before a mismatch
        is raised as InvalidQRTokenError.
        """
        delivery_id = as_uuid(delivery_id, "Delivery")
        result = self._execute(
            "verify_manual",
            lambda s: s.qr.check_manual(delivery_id, order_number, customer_name, actor=actor),
            actor=actor,
            entity_type="Delivery",
            entity_id=delivery_id,
        )
        return QRVerificationService.ensure_acceptable(result)

    def start_delivery(
        self,
        delivery_id: UUID | str,
        driver_id: str,
        *,
        actor: str,
        token: str | None = None,
        allow_stale: bool = False,
        manual: ManualVerification | None = None,
        idempotency_key: str | None = None,
    ) -> DeliverySnapshot:
        """
        Driver picks the parcel up: ASSIGNED (or DELAYED) -> IN_TRANSIT.

        A pickup scan or manual check is optional.  When one is supplied it
        is recorded first in its own transaction, like at drop-off, and a
        rejected check leaves the delivery where it was.
        """
        delivery_id = as_uuid(delivery_id, "Delivery")
        request = {
            "delivery_id": str(delivery_id),
            "driver_id": driver_id,
            "token": token,
            "allow_stale": allow_stale,
            "manual": [manual.order_number, manual.customer_name] if manual is not None else None,
        }
        return self._depart(
            "start_delivery",
            delivery_id,
            driver_id,
            actor=actor,
            request=request,
            idempotency_key=idempotency_key,
            token=token,
            allow_stale=allow_stale,
            manual=manual,
        )

    def _depart(
        self,
        operation: str,
        delivery_id: UUID,
        driver_id: str | None,
        *,
        actor: str,
        request: Mapping[str, Any],
        idempotency_key: str | None,
        token: str | None,
        allow_stale: bool,
        manual: ManualVerification | None,
    ) -> DeliverySnapshot:
        if idempotency_key is not None:
            replayed = self._replayed(operation, idempotency_key, request, DeliverySnapshot.from_dict)
            if replayed is not None:
                return replayed

        if token is not None or manual is not None:
            self._record_handover_check(
                delivery_id,
                actor=actor,
                token=token,
                allow_stale=allow_stale,
                manual=manual,
                context=ScanContext.PICKUP,
            )

        return self._execute(
            operation,
            lambda s: s.proofs.depart(
                delivery_id,
                driver_id,
                actor=actor,
                token=token,
                allow_stale=allow_stale,
                manual=manual,
            ),
            actor=actor,
            entity_type="Delivery",
            entity_id=delivery_id,
            idempotency_key=idempotency_key,
            request=request,
            restore=DeliverySnapshot.from_dict,
        )

    def capture_proof(
        self,
        delivery_id: UUID | str,
        proof: Proof,
        *,
        actor: str,
        token: str | None = None,
        allow_stale: bool = False,
        manual: ManualVerification | None = None,
        photo: bytes | None = None,
        idempotency_key: str | None = None,
    ) -> DeliverySnapshot:
        """
        Complete a delivery at hand-over.

        Verification (when a token or manual data is supplied) is recorded
        first in its own transaction; the delivery is then completed in a
        second one.  Photo bytes are uploaded after the second commit under
        their content address, which is what the proof row stores.
        """
        delivery_id = as_uuid(delivery_id, "Delivery")
        request = {
            "delivery_id": str(delivery_id),
            "delivered_to": proof.delivered_to,
            "signature_ref": proof.signature_ref,
            "photo_ref": photo_reference(photo) if photo is not None else proof.photo_ref,
            "notes": proof.notes,
            "token": token,
            "allow_stale": allow_stale,
            "manual": [manual.order_number, manual.customer_name] if manual is not None else None,
        }
        return self._complete(
            "capture_proof",
            delivery_id,
            proof,
            actor=actor,
            request=request,
            idempotency_key=idempotency_key,
            token=token,
            allow_stale=allow_stale,
            manual=manual,
            photo=photo,
        )

    def _complete(
        self,
        operation: str,
        delivery_id: UUID,
        proof: Proof,
        *,
        actor: str,
        request: Mapping[str, Any],
        idempotency_key: str | None,
        token: str | None,
        allow_stale: bool,
        manual: ManualVerification | None,
        photo: bytes | None,
    ) -> DeliverySnapshot:
        if idempotency_key is not None:
            replayed = self._replayed(operation, idempotency_key, request, DeliverySnapshot.from_dict)
            if replayed is not None:
                return replayed

        if token is not None or manual is not None:
            self._record_handover_check(
                delivery_id,
                actor=actor,
                token=token,
                allow_stale=allow_stale,
                manual=manual,
                context=ScanContext.DROPOFF,
            )

        snapshot = self._execute(
            operation,
            lambda s: s.proofs.capture(
                delivery_id,
                proof,
                actor=actor,
                token=token,
                allow_stale=allow_stale,
                manual=manual,
                photo=photo,
            ),
            actor=actor,
            entity_type="Delivery",
            entity_id=delivery_id,
            idempotency_key=idempotency_key,
            request=request,
            restore=DeliverySnapshot.from_dict,
        )
        if photo is not None:
            self.side_effects.submit("photo_upload", self.photo_store.put, photo_reference(photo), photo)
        return snapshot

    def _record_handover_check(
        self,
        delivery_id: UUID,
        *,
        actor: str,
        token: str | None,
        allow_stale: bool,
        manual: ManualVerification | None,
        context: ScanContext,
    ) -> ScanResult:
        def check(s: _Services) -> ScanResult:
            if token is not None:
                result = s.qr.evaluate(token)
                override = allow_stale and result.freshness == QRFreshness.STALE
                s.qr.record(result, actor=actor, override=override, delivery_id=delivery_id, context=context)
                return result
            return s.qr.check_manual(
                delivery_id,
                manual.order_number,
                manual.customer_name,
                actor=actor,
                context=context,
            )

        result = self._execute(
            "verify_handover",
            check,
            actor=actor,
            entity_type="Delivery",
            entity_id=delivery_id,
        )
        QRVerificationService.ensure_acceptable(result, allow_stale=allow_stale)
        if token is not None and result.delivery_id != delivery_id:
            raise InvalidQRTokenError(
                "token belongs to another delivery",
                delivery_id=delivery_id,
                current_status=result.delivery.status if result.delivery else None,
            )
        return result

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def register_product(
        self,
        product_id: str,
        *,
        actor: str,
        reorder_point: int | None = None,
        initial_on_hand: int = 0,
        name: str | None = None,
        idempotency_key: str | None = None,
    ) -> StockLevel:
        if reorder_point is None:
            reorder_point = self.settings.inventory.default_reorder_point
        return self._execute(
            "register_product",
            lambda s: s.ledger.register_product(
                product_id,
                actor=actor,
                reorder_point=reorder_point,
                initial_on_hand=initial_on_hand,
                name=name,
            ),
            actor=actor,
            entity_type="StockItem",
            entity_id=product_id,
            idempotency_key=idempotency_key,
            request={
                "product_id": product_id,
                "reorder_point": reorder_point,
                "initial_on_hand": initial_on_hand,
                "name": name,
            },
            restore=StockLevel.from_dict,
        )

    def set_reorder_point(
        self,
        product_id: str,
        reorder_point: int,
        *,
        actor: str,
        idempotency_key: str | None = None,
    ) -> StockLevel:
        return self._execute(
            "set_reorder_point",
            lambda s: s.ledger.set_reorder_point(product_id, reorder_point, actor=actor),
            actor=actor,
            entity_type="StockItem",
            entity_id=product_id,
            idempotency_key=idempotency_key,
            request={"product_id": product_id, "reorder_point": reorder_point},
            restore=StockLevel.from_dict,
        )

    def record_stock_movement(
        self,
        product_id: str,
        movement_type: MovementType | str,
        quantity: int,
        reason: str,
        *,
        actor: str,
        idempotency_key: str | None = None,
    ) -> StockMovementRecord:
        """
        Book an admin IN / OUT / ADJUST movement.

        Raises:
            InsufficientStockError: OUT beyond available stock, or ADJUST
                below the reserved quantity.
        """
        return self._execute(
            "record_stock_movement",
            lambda s: s.ledger.commit_movement(product_id, movement_type, quantity, reason, actor=actor),
            actor=actor,
            entity_type="StockItem",
            entity_id=product_id,
            idempotency_key=idempotency_key,
            request={
                "product_id": product_id,
                "movement_type": getattr(movement_type, "value", movement_type),
                "quantity": quantity,
                "reason": reason,
            },
            restore=StockMovementRecord.from_dict,
        )

    def get_stock_level(self, product_id: str) -> StockLevel:
        return self._read(lambda session: InventoryLedger(session, self.clock).level(product_id))

    def list_stock_levels(self, *, low_only: bool = False) -> list[StockLevel]:
        return self._read(lambda session: InventorySelector(session).levels(low_only))

    def stock_movements(self, product_id: str, limit: int | None = None) -> list[StockMovementRecord]:
        return self._read(lambda session: InventorySelector(session).movements(product_id, limit))

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        type: str,
        title: str,
        *,
        actor: str,
        description: str | None = None,
        assignee_id: str | None = None,
        priority: int = 0,
        due_date: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> TaskSnapshot:
        return self._execute(
            "create_task",
            lambda s: s.tasks.create_task(
                type,
                title,
                actor=actor,
                description=description,
                assignee_id=assignee_id,
                priority=priority,
                due_date=due_date,
            ),
            actor=actor,
            idempotency_key=idempotency_key,
            request={
                "type": type,
                "title": title,
                "description": description,
                "assignee_id": assignee_id,
                "priority": priority,
                "due_date": due_date,
            },
            restore=TaskSnapshot.from_dict,
        )

    def assign_task(
        self,
        task_id: UUID | str,
        assignee_id: str,
        *,
        actor: str,
        idempotency_key: str | None = None,
    ) -> TaskSnapshot:
        task_id = as_uuid(task_id, "Task")
        return self._execute(
            "assign_task",
            lambda s: s.tasks.assign(task_id, assignee_id, actor=actor),
            actor=actor,
            entity_type="Task",
            entity_id=task_id,
            idempotency_key=idempotency_key,
            request={"task_id": str(task_id), "assignee_id": assignee_id},
            restore=TaskSnapshot.from_dict,
        )

    def transition_task(
        self,
        task_id: UUID | str,
        target: TaskStatus | str,
        *,
        actor: str,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> TaskSnapshot:
        target = coerce_task_status(target)
        task_id = as_uuid(task_id, "Task")
        return self._execute(
            "transition_task",
            lambda s: s.tasks.transition(task_id, target, actor=actor, notes=notes),
            actor=actor,
            entity_type="Task",
            entity_id=task_id,
            idempotency_key=idempotency_key,
            request={"task_id": str(task_id), "target": target.value, "notes": notes},
            restore=TaskSnapshot.from_dict,
        )

    def start_task(
        self,
        task_id: UUID | str,
        *,
        actor: str,
        idempotency_key: str | None = None,
    ) -> TaskSnapshot:
        return self._task_step(
            "start_task",
            task_id,
            lambda tasks, tid: tasks.start(tid, actor=actor),
            actor=actor,
            idempotency_key=idempotency_key,
        )

    def pause_task(
        self,
        task_id: UUID | str,
        *,
        actor: str,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> TaskSnapshot:
        return self._task_step(
            "pause_task",
            task_id,
            lambda tasks, tid: tasks.pause(tid, actor=actor, notes=notes),
            actor=actor,
            notes=notes,
            idempotency_key=idempotency_key,
        )

    def complete_task(
        self,
        task_id: UUID | str,
        *,
        actor: str,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> TaskSnapshot:
        return self._task_step(
            "complete_task",
            task_id,
            lambda tasks, tid: tasks.complete(tid, actor=actor, notes=notes),
            actor=actor,
            notes=notes,
            idempotency_key=idempotency_key,
        )

    def cancel_task(
        self,
        task_id: UUID | str,
        *,
        actor: str,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> TaskSnapshot:
        return self._task_step(
            "cancel_task",
            task_id,
            lambda tasks, tid: tasks.cancel(tid, actor=actor, notes=notes),
            actor=actor,
            notes=notes,
            idempotency_key=idempotency_key,
        )

    def _task_step(
        self,
        operation: str,
        task_id: UUID | str,
        work: Callable[[TaskScheduler, UUID], TaskSnapshot],
        *,
        actor: str,
        notes: str | None = None,
        idempotency_key: str | None,
    ) -> TaskSnapshot:
        task_id = as_uuid(task_id, "Task")
        return self._execute(
            operation,
            lambda s: work(s.tasks, task_id),
            actor=actor,
            entity_type="Task",
            entity_id=task_id,
            idempotency_key=idempotency_key,
            request={"task_id": str(task_id), "notes": notes},
            restore=TaskSnapshot.from_dict,
        )

    def get_task(self, task_id: UUID | str) -> TaskSnapshot:
        return self._read(lambda session: TaskScheduler(session, self.clock).get(task_id))

    def list_tasks(
        self,
        *,
        status: TaskStatus | str | None = None,
        type: str | None = None,
        assignee_id: str | None = None,
        priority: int | None = None,
    ) -> list[TaskSnapshot]:
        return self._read(
            lambda session: TaskSelector(session).list_tasks(
                status=status,
                type=type,
                assignee_id=assignee_id,
                priority=priority,
            )
        )

    def bulk_update_tasks(
        self,
        task_ids: Iterable[UUID | str],
        target: TaskStatus | str,
        *,
        actor: str,
        notes: str | None = None,
    ) -> BulkResult:
        """
        Move many tasks to ``target``.

        Tasks are processed in chunks of ``tasks.bulk_chunk_size``, one
        transaction per chunk and one SAVEPOINT per task: a task that
        cannot move is rolled back alone and reported in ``failed`` with
        its error code, the rest of its chunk still commits.  A chunk whose
        transaction keeps conflicting after retries is reported in
        ``failed`` as a whole and the next chunk is still attempted.
        """
        target = coerce_task_status(target)
        ids = list(dict.fromkeys(task_ids))
        size = max(1, self.settings.tasks.bulk_chunk_size)
        succeeded: list[UUID] = []
        failed: dict[Any, str] = {}

        for offset in range(0, len(ids), size):
            chunk = ids[offset:offset + size]

            def apply_chunk(s: _Services) -> tuple[list[UUID], dict[Any, str]]:
                done: list[UUID] = []
                errors: dict[Any, str] = {}
                for task_id in chunk:
                    savepoint = s.session.begin_nested()
                    try:
                        snapshot = s.tasks.transition(task_id, target, actor=actor, notes=notes)
                    except DispatchKernelError as exc:
                        savepoint.rollback()
                        errors[task_id] = f"{exc.code}: {exc}"
                    else:
                        savepoint.commit()
                        done.append(snapshot.id)
                return done, errors

            try:
                done, errors = self._execute("bulk_update_tasks", apply_chunk, actor=actor)
            except ConflictError as exc:
                logger.warning(
                    "bulk_task_chunk_conflicted",
                    extra={"chunk_start": offset, "chunk_size": len(chunk), "reason": str(exc)},
                )
                done, errors = [], {task_id: f"{exc.code}: {exc}" for task_id in chunk}
            succeeded.extend(done)
            failed.update(errors)
            logger.info(
                "bulk_task_chunk_applied",
                extra={
                    "chunk_start": offset,
                    "chunk_size": len(chunk),
                    "succeeded": len(done),
                    "failed": len(errors),
                    "target": target.value,
                },
            )

        if failed:
            logger.warning(
                "bulk_task_update_partial",
                extra={"succeeded": len(succeeded), "failed": len(failed)},
            )
        return BulkResult(succeeded_ids=tuple(succeeded), failed=failed)

    def sweep_overdue(self, *, actor: str = "scheduler") -> list[TaskSnapshot]:
        """Emit TaskOverdue for every open task past its due date."""
        return self._execute("sweep_overdue", lambda s: s.tasks.flag_overdue(actor=actor), actor=actor)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def verify_ledger(self) -> list[ReplayResult]:
        """
        Rebuild every snapshot row from its log and report the mismatches.

        An empty list means orders, deliveries, tasks and stock all agree
        with their histories and ledgers.
        """
        problems = self._read(lambda session: ReplaySelector(session).verify_all())
        for result in problems:
            logger.error(
                "ledger_replay_mismatch",
                extra={
                    "entity_type": result.entity_type,
                    "entity_id": result.entity_id,
                    "cached": result.cached,
                    "replayed": result.replayed,
                    "problems": list(result.problems),
                },
            )
        logger.info("ledger_verified", extra={"inconsistent": len(problems)})
        return problems


def build_dispatch_orchestrator(
    settings: DispatchSettings,
    *,
    clock: Clock | None = None,
    publisher: EventPublisher | None = None,
    photo_store: PhotoStore | None = None,
    create_schema: bool = False,
) -> DispatchOrchestrator:
    """
    Build an orchestrator on its own engine from ``settings.database``.

    ``create_schema`` creates missing tables first (local runs, CLI).
    """
    db = settings.database
    engine = build_engine(
        db.url,
        echo=db.echo,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        sqlite_busy_timeout=db.sqlite_busy_timeout,
    )
    if create_schema:
        create_tables(engine)
    return DispatchOrchestrator(
        make_session_factory(engine),
        settings,
        clock=clock,
        publisher=publisher,
        photo_store=photo_store,
    )
