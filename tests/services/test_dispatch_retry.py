"""Bounded retry around one transaction attempt."""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from dispatch_config.schema import RetrySettings
from dispatch_kernel.exceptions import ConflictError, InvalidTransitionError
from dispatch_services.retry import is_retryable, run_with_retry


def _integrity(message):
    return IntegrityError("INSERT ...", {}, Exception(message))


def _operational(message):
    return OperationalError("UPDATE ...", {}, Exception(message))


class _Flaky:
    """Fails with ``errors`` in turn, then returns ``result``."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestIsRetryable:
    @pytest.mark.parametrize("exc", [
        StaleDataError("UPDATE statement on table 'deliveries' expected to update 1 row(s); 0 were matched."),
        _integrity("UNIQUE constraint failed: idempotency_records.key"),
        _integrity('duplicate key value violates unique constraint "uq_idempotency_key"'),
        _operational("database is locked"),
        _operational("deadlock detected"),
        _operational("could not serialize access due to concurrent update"),
    ])
    def test_retryable(self, exc):
        assert is_retryable(exc)

    @pytest.mark.parametrize("exc", [
        _integrity("CHECK constraint failed: ck_stock_reserved_bounds"),
        _integrity("NOT NULL constraint failed: orders.customer_id"),
        _operational("no such table: orders"),
        ValueError("boom"),
    ])
    def test_not_retryable(self, exc):
        assert not is_retryable(exc)


class TestRunWithRetry:
    def test_succeeds_after_conflicts(self):
        sleeps = []
        attempt = _Flaky(StaleDataError("stale"), _operational("database is locked"))
        retry = RetrySettings(max_attempts=3, base_delay=0.1, backoff_factor=2.0, max_delay=1.0)

        result = run_with_retry(attempt, retry=retry, operation="test", sleep=sleeps.append)

        assert result == "ok"
        assert attempt.calls == 3
        assert sleeps == [0.1, 0.2]

    def test_exhaustion_raises_conflict_with_current_status(self):
        attempt = _Flaky(*[StaleDataError("stale")] * 3)

        with pytest.raises(ConflictError) as exc:
            run_with_retry(
                attempt,
                retry=RetrySettings(max_attempts=3, base_delay=0.0),
                operation="update_delivery_status",
                entity_type="Delivery",
                entity_id="d-1",
                current_status=lambda: "IN_TRANSIT",
                sleep=lambda _: None,
            )

        assert attempt.calls == 3
        assert exc.value.attempts == 3
        assert exc.value.current_status == "IN_TRANSIT"
        assert exc.value.entity_id == "d-1"
        assert isinstance(exc.value.__cause__, StaleDataError)

    def test_domain_errors_are_not_retried(self):
        error = InvalidTransitionError("Order", "o-1", "CANCELED", "CONFIRMED")
        attempt = _Flaky(error)

        with pytest.raises(InvalidTransitionError):
            run_with_retry(attempt, retry=RetrySettings(), operation="test", sleep=lambda _: None)
        assert attempt.calls == 1

    def test_check_violation_is_not_retried(self):
        attempt = _Flaky(_integrity("CHECK constraint failed: ck_stock_reserved_bounds"))

        with pytest.raises(IntegrityError):
            run_with_retry(attempt, retry=RetrySettings(), operation="test", sleep=lambda _: None)
        assert attempt.calls == 1

    def test_conflict_is_logged(self, captured_logs):
        with pytest.raises(ConflictError):
            run_with_retry(
                _Flaky(StaleDataError("a"), StaleDataError("b")),
                retry=RetrySettings(max_attempts=2, base_delay=0.0),
                operation="assign_driver",
                sleep=lambda _: None,
            )

        messages = [r["message"] for r in captured_logs()]
        assert messages.count("retry_conflict") == 2
        assert messages[-1] == "retry_exhausted"


class TestRetrySettings:
    def test_backoff_is_capped(self):
        retry = RetrySettings(max_attempts=6, base_delay=0.5, backoff_factor=3.0, max_delay=2.0)
        assert [retry.delay_for(n) for n in range(1, 6)] == [0.0, 0.5, 1.5, 2.0, 2.0]
