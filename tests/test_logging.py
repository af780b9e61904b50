"""JSON log lines, request context and logger configuration."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from dispatch_kernel.domain.statuses import DeliveryStatus
from dispatch_kernel.exceptions import InsufficientStockError, InvalidTransitionError
from dispatch_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _isolated_logging():
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


@pytest.fixture
def emit():
    """Configure a JSON handler on a buffer; returns (logger, lines)."""
    buffer = StringIO()
    configure_logging(handler=logging.StreamHandler(buffer), level=logging.DEBUG)

    def lines() -> list[dict]:
        return [json.loads(raw) for raw in buffer.getvalue().splitlines() if raw]

    return get_logger("tests"), lines


class TestLineShape:
    def test_required_keys(self, emit):
        logger, lines = emit
        logger.info("order_created")

        (line,) = lines()
        assert line["message"] == "order_created"
        assert line["level"] == "INFO"
        assert line["logger"] == "dispatch_kernel.tests"
        assert line["ts"].endswith("+00:00")

    def test_extra_values_are_serialized(self, emit):
        logger, lines = emit
        order_id = uuid4()
        logger.info(
            "order_transitioned",
            extra={
                "order_id": order_id,
                "to_status": DeliveryStatus.IN_TRANSIT,
                "total_amount": Decimal("19.98"),
                "line_count": 2,
            },
        )

        (line,) = lines()
        assert line["order_id"] == str(order_id)
        assert line["to_status"] == "IN_TRANSIT"
        assert line["total_amount"] == "19.98"
        assert line["line_count"] == 2

    def test_every_line_is_json(self, emit):
        logger, lines = emit
        logger.debug("a")
        logger.warning("b", extra={"reason": "traffic"})
        logger.error("c")

        assert [line["message"] for line in lines()] == ["a", "b", "c"]

    def test_unconfigured_fields_absent(self, emit):
        logger, lines = emit
        logger.info("bare")

        (line,) = lines()
        assert not {"correlation_id", "actor_id", "idempotency_key"} & set(line)


class TestExceptions:
    def test_plain_exception(self, emit):
        logger, lines = emit
        try:
            raise OSError("disk full")
        except OSError:
            logger.error("photo_upload_failed", exc_info=True)

        (line,) = lines()
        assert line["exc_type"] == "OSError"
        assert line["exc_message"] == "disk full"
        assert "Traceback" in line["traceback"]
        assert "exc_code" not in line

    def test_transition_error_attributes(self, emit):
        logger, lines = emit
        delivery_id = uuid4()
        try:
            raise InvalidTransitionError(
                "Delivery", delivery_id, DeliveryStatus.DELIVERED, DeliveryStatus.IN_TRANSIT
            )
        except InvalidTransitionError:
            logger.error("delivery_transition_failed", exc_info=True)

        (line,) = lines()
        assert line["exc_code"] == "INVALID_TRANSITION"
        assert line["exc_entity_type"] == "Delivery"
        assert line["exc_entity_id"] == str(delivery_id)
        assert line["exc_current_status"] == "DELIVERED"

    def test_stock_error_code(self, emit):
        logger, lines = emit
        try:
            raise InsufficientStockError([{"product_id": "SKU-A", "requested": 3, "available": 1}])
        except InsufficientStockError:
            logger.warning("reservation_rejected", exc_info=True)

        assert lines()[0]["exc_code"] == "INSUFFICIENT_STOCK"


class TestLogContext:
    def test_fields_appear_on_lines(self, emit):
        logger, lines = emit
        LogContext.set(actor_id="driver-7", correlation_id="req-1")
        logger.info("qr_scanned")

        (line,) = lines()
        assert line["actor_id"] == "driver-7"
        assert line["correlation_id"] == "req-1"

    def test_extra_does_not_override_context(self, emit):
        logger, lines = emit
        LogContext.set(actor_id="driver-7")
        logger.info("qr_scanned", extra={"actor_id": "someone-else"})

        assert lines()[0]["actor_id"] == "driver-7"

    def test_bind_nests_and_restores(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner", actor_id="staff-1"):
            assert LogContext.get_all() == {"correlation_id": "inner", "actor_id": "staff-1"}
        assert LogContext.get_all() == {"correlation_id": "outer"}

    def test_bind_skips_none_and_stringifies(self):
        uid = uuid4()
        with LogContext.bind(entity_id=uid, idempotency_key=None):
            assert LogContext.get_all() == {"entity_id": str(uid)}
        assert LogContext.get_all() == {}

    def test_bind_restores_on_error(self):
        with pytest.raises(RuntimeError):
            with LogContext.bind(trace_id="t-1"):
                raise RuntimeError("boom")
        assert LogContext.get_all() == {}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError):
            LogContext.set(customer_name="Ada")

    def test_clear(self):
        LogContext.set(
            correlation_id="c",
            actor_id="a",
            entity_id="e",
            idempotency_key="k",
            trace_id="t",
        )
        assert len(LogContext.get_all()) == 5
        LogContext.clear()
        assert LogContext.get_all() == {}


class TestConfiguration:
    def test_second_configure_is_ignored(self):
        configure_logging(handler=logging.StreamHandler(StringIO()))
        configure_logging(handler=logging.StreamHandler(StringIO()))
        assert len(logging.getLogger("dispatch_kernel").handlers) == 1

    def test_level_filters(self):
        buffer = StringIO()
        configure_logging(handler=logging.StreamHandler(buffer), level="WARNING")
        get_logger("services.task_scheduler").info("task_created")
        assert buffer.getvalue() == ""

    def test_child_logger_names(self):
        assert get_logger("services.delivery_manager").name == "dispatch_kernel.services.delivery_manager"

    def test_formatter_usable_standalone(self):
        record = logging.LogRecord("dispatch_kernel.x", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        assert json.loads(StructuredFormatter().format(record))["message"] == "hello world"


class TestOrchestratorLogging:
    def test_operation_lines_carry_request_context(self, orchestrator, captured_logs):
        orchestrator.create_order(
            "cust-1",
            [{"product_id": "SKU-A", "quantity": 1, "unit_price": "3.50"}],
            "1 Main St",
            actor="staff-9",
        )

        created = [r for r in captured_logs() if r["message"] == "order_created"]
        assert len(created) == 1
        assert created[0]["actor_id"] == "staff-9"
        assert "correlation_id" in created[0]
