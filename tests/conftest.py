"""
Pytest fixtures for the dispatch kernel test suite.

Provides:
- An isolated SQLite database file per test (under tmp_path), created with
  the production engine builder so BEGIN IMMEDIATE and the busy timeout
  apply exactly as they do at runtime
- A DispatchOrchestrator wired with a deterministic clock, a recording
  event publisher and an inline side-effect dispatcher
- Factory fixtures for stock, orders and deliveries at a given stage
- Structured log capture

Tests that drive the orchestrator must not hold a ``session`` transaction
open at the same time: SQLite takes its write lock at BEGIN.
"""

import json
import logging
from io import StringIO

import pytest

from dispatch_config.schema import (
    DatabaseSettings,
    DispatchSettings,
    QRSettings,
    RetrySettings,
    SideEffectSettings,
    TaskSettings,
)
from dispatch_kernel.db.engine import build_engine, create_tables, make_session_factory, session_scope
from dispatch_kernel.domain.clock import DeterministicClock
from dispatch_kernel.domain.dtos import Proof
from dispatch_kernel.domain.events import EventBuffer, RecordingPublisher
from dispatch_kernel.domain.statuses import DeliveryStatus, OrderStatus
from dispatch_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from dispatch_services.orchestrator import DispatchOrchestrator
from dispatch_services.side_effects import InMemoryPhotoStore

STAFF = "staff-1"
ADMIN = "admin-1"
DRIVER = "driver-1"
QR_SECRET = "test-qr-secret"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture dispatch_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, orchestrator):
            orchestrator.scan_qr(token, actor=DRIVER)
            assert any(r["message"] == "qr_scanned" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("dispatch_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'dispatch.db'}", sqlite_busy_timeout=10.0)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def session(session_factory):
    """A bare session for kernel-level tests.  Rolled back afterwards."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def read(session_factory):
    """Run ``fn(session)`` in a short transaction of its own."""

    def _read(fn):
        with session_scope(session_factory) as session:
            return fn(session)

    return _read


# =============================================================================
# Kernel collaborators
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def events():
    return EventBuffer()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def photo_store():
    return InMemoryPhotoStore()


@pytest.fixture
def settings(tmp_path):
    return DispatchSettings(
        config_id="test",
        version=1,
        checksum="0" * 64,
        database=DatabaseSettings(url=f"sqlite:///{tmp_path / 'dispatch.db'}"),
        qr=QRSettings(secret=QR_SECRET),
        retry=RetrySettings(max_attempts=3, base_delay=0.0),
        tasks=TaskSettings(bulk_chunk_size=2),
        side_effects=SideEffectSettings(synchronous=True),
    )


@pytest.fixture
def orchestrator(session_factory, settings, clock, publisher, photo_store):
    orchestrator = DispatchOrchestrator(
        session_factory,
        settings,
        clock=clock,
        publisher=publisher,
        photo_store=photo_store,
    )
    yield orchestrator
    orchestrator.close()


# =============================================================================
# Scenario factories
# =============================================================================


@pytest.fixture
def stock(orchestrator):
    """Register a product with an opening balance."""

    def _stock(product_id: str, on_hand: int, reorder_point: int = 0):
        return orchestrator.register_product(
            product_id,
            actor=ADMIN,
            initial_on_hand=on_hand,
            reorder_point=reorder_point,
        )

    return _stock


@pytest.fixture
def make_order(orchestrator):
    """Create a PENDING order (defaults: SKU-A x2 at 9.99)."""

    def _make(items=None, customer_name: str = "Ada Lovelace", **kwargs):
        if items is None:
            items = [{"product_id": "SKU-A", "quantity": 2, "unit_price": "9.99"}]
        return orchestrator.create_order(
            kwargs.pop("customer_id", "cust-1"),
            items,
            kwargs.pop("delivery_address", "1 Main St"),
            actor=STAFF,
            customer_name=customer_name,
            **kwargs,
        )

    return _make


@pytest.fixture
def ready_order(orchestrator, stock, make_order):
    """A READY_FOR_DISPATCH order holding SKU-A x2 out of 10 on hand."""

    def _ready(**kwargs):
        stock("SKU-A", 10)
        order = make_order(**kwargs)
        for target in (
            OrderStatus.CONFIRMED,
            OrderStatus.PREPARING,
            OrderStatus.READY_FOR_DISPATCH,
        ):
            order = orchestrator.transition_order(order.id, target, actor=STAFF)
        return order

    return _ready


@pytest.fixture
def assigned_delivery(orchestrator, ready_order):
    """An ASSIGNED delivery with DRIVER for a ready order."""

    def _assigned(**kwargs):
        order = ready_order(**kwargs)
        return orchestrator.create_delivery_task(order.id, actor=STAFF, driver_id=DRIVER)

    return _assigned


@pytest.fixture
def in_transit_delivery(orchestrator, assigned_delivery):
    """A delivery the driver has started (order OUT_FOR_DELIVERY)."""

    def _in_transit(**kwargs):
        delivery = assigned_delivery(**kwargs)
        return orchestrator.update_delivery_status(
            delivery.id,
            DeliveryStatus.IN_TRANSIT,
            {"driver_id": DRIVER},
            actor=DRIVER,
        )

    return _in_transit


@pytest.fixture
def proof():
    return Proof(delivered_to="Ada Lovelace", signature_ref="sig-001")
