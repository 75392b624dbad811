"""Tests for retry with exponential backoff and error classification."""

import pytest

from listos.conftest import FakeClock, RecordingSleep
from listos.core.errors import (
    AuthenticationError,
    ClassifiedError,
    ErrorKind,
    ServiceUnavailableError,
    ValidationError,
)
from listos.core.metrics import retry_attempts_total
from listos.core.retry import RetryOptions, RetryPolicy, compute_backoff, with_retry


class Flaky:
    """Raises the queued exceptions in order, then returns ``result``."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class HttpFailure(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def test_server_errors_are_retried_until_success(retry, sleeps):
    op = Flaky(ServiceUnavailableError("503"), ServiceUnavailableError("503"))

    assert retry.run(op, name="load") == "ok"
    assert op.calls == 3
    assert len(sleeps.calls) == 2
    # rand=0.5 puts the jitter factor at exactly 1.0
    assert sleeps.calls == pytest.approx([0.5, 1.0])


def test_authentication_error_surfaces_without_retry(retry, sleeps):
    op = Flaky(AuthenticationError("expired token"))

    with pytest.raises(AuthenticationError):
        retry.run(op)
    assert op.calls == 1
    assert sleeps.calls == []


def test_validation_error_is_terminal(retry, sleeps):
    op = Flaky(ValidationError("bad input"))

    with pytest.raises(ValidationError):
        retry.run(op)
    assert op.calls == 1
    assert sleeps.calls == []


def test_unknown_errors_fail_closed(retry, sleeps):
    boom = RuntimeError("unexpected")
    op = Flaky(boom)

    with pytest.raises(ClassifiedError) as excinfo:
        retry.run(op, name="compute")
    assert excinfo.value.kind == ErrorKind.UNKNOWN
    assert excinfo.value.retryable is False
    assert excinfo.value.__cause__ is boom
    assert sleeps.calls == []


def test_exhausted_retries_raise_classified_network_error(retry, sleeps):
    op = Flaky(*[ConnectionError("reset")] * 10)

    with pytest.raises(ClassifiedError) as excinfo:
        retry.run(op, name="db.read")
    err = excinfo.value
    assert err.kind == ErrorKind.NETWORK
    assert err.attempts == 4
    assert err.operation == "db.read"
    assert op.calls == 4
    assert len(sleeps.calls) == 3


def test_http_status_drives_classification(sleeps):
    policy = RetryPolicy(RetryOptions(max_retries=2), sleep=sleeps, rand=lambda: 0.5)

    assert policy.run(Flaky(HttpFailure(429), HttpFailure(502))) == "ok"
    assert len(sleeps.calls) == 2

    with pytest.raises(ClassifiedError) as excinfo:
        policy.run(Flaky(HttpFailure(403)))
    assert excinfo.value.kind == ErrorKind.AUTHORIZATION
    assert len(sleeps.calls) == 2


def test_backoff_is_capped_and_jittered():
    opts = RetryOptions(initial_delay=0.5, max_delay=5.0, backoff_factor=2.0, jitter=0.2)

    assert compute_backoff(1, opts, rand=lambda: 0.5) == pytest.approx(0.5)
    assert compute_backoff(3, opts, rand=lambda: 0.5) == pytest.approx(2.0)
    assert compute_backoff(10, opts, rand=lambda: 0.5) == pytest.approx(5.0)
    assert compute_backoff(10, opts, rand=lambda: 0.0) == pytest.approx(4.0)
    assert compute_backoff(10, opts, rand=lambda: 1.0) == pytest.approx(6.0)


def test_deadline_stops_retrying_with_retryable_error():
    clock = FakeClock(start=0.0)
    policy = RetryPolicy(
        RetryOptions(max_retries=5, initial_delay=0.5, deadline=1.0),
        sleep=clock.advance,
        clock=clock,
        rand=lambda: 0.5,
    )
    op = Flaky(*[ConnectionError("slow")] * 10)

    with pytest.raises(ClassifiedError) as excinfo:
        policy.run(op, name="status")
    assert excinfo.value.code == "deadline_exceeded"
    assert excinfo.value.retryable is True
    # 0.5s slept after the first failure; the 1.0s second delay would cross the deadline
    assert op.calls == 2
    assert clock() == pytest.approx(0.5)


def test_zero_retries_means_single_attempt():
    sleeps = RecordingSleep()
    op = Flaky(ConnectionError("down"))

    with pytest.raises(ClassifiedError):
        with_retry(op, RetryOptions(max_retries=0), sleep=sleeps)
    assert op.calls == 1
    assert sleeps.calls == []


def test_failed_attempts_are_counted(retry):
    retry.run(Flaky(ServiceUnavailableError("busy")), name="load")

    assert retry_attempts_total.value({"operation": "load", "kind": "server"}) == 1.0
