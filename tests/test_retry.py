import io
import threading
import time

import pytest

from lexd.logger import init_logger
from lexd.models import ApplicationSettings, RetryPolicy
from lexd.retry import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_DELAY_SECONDS,
    DEFAULT_MAX_RETRIES,
    RetryCancelledError,
    merge_policies,
    run_with_retry,
)


@pytest.fixture(autouse=True)
def _quiet_logger():
    init_logger(ApplicationSettings(log_level="error", log_format="text"), io.StringIO())


DEFAULT_POLICY = RetryPolicy(max_retries=5, delay=1.0, backoff_factor=2.0)


@pytest.mark.parametrize(
    "specific, default, expected",
    [
        (RetryPolicy(max_retries=3, delay=0.5), DEFAULT_POLICY, (3, 0.5, 2.0)),
        (None, DEFAULT_POLICY, (5, 1.0, 2.0)),
        (RetryPolicy(), DEFAULT_POLICY, (5, 1.0, 2.0)),
        (RetryPolicy(backoff_factor=1.5), DEFAULT_POLICY, (5, 1.0, 1.5)),
        (None, None, (DEFAULT_MAX_RETRIES, DEFAULT_DELAY_SECONDS, DEFAULT_BACKOFF_FACTOR)),
        (RetryPolicy(), None, (DEFAULT_MAX_RETRIES, DEFAULT_DELAY_SECONDS, DEFAULT_BACKOFF_FACTOR)),
        (None, RetryPolicy(), (DEFAULT_MAX_RETRIES, DEFAULT_DELAY_SECONDS, DEFAULT_BACKOFF_FACTOR)),
        (RetryPolicy(max_retries=0, delay=0.0, backoff_factor=1.0), DEFAULT_POLICY, (0, 0.0, 1.0)),
    ],
)
def test_merge_policies(specific, default, expected):
    merged = merge_policies(specific, default)
    assert (merged.max_retries, merged.delay, merged.backoff_factor) == expected


def test_merge_does_not_modify_inputs():
    specific = RetryPolicy(max_retries=3)
    merge_policies(specific, DEFAULT_POLICY)
    assert specific == RetryPolicy(max_retries=3)
    assert DEFAULT_POLICY == RetryPolicy(5, 1.0, 2.0)


class MockOperation:
    def __init__(self, attempts_needed=1, fail_forever=False):
        self.attempts_needed = attempts_needed
        self.fail_forever = fail_forever
        self.call_count = 0

    def __call__(self):
        self.call_count += 1
        if self.fail_forever:
            raise RuntimeError(f"operation failed permanently (call {self.call_count})")
        if self.call_count >= self.attempts_needed:
            return "done"
        raise RuntimeError(f"operation failed temporarily (call {self.call_count})")


def test_success_first_try():
    op = MockOperation(attempts_needed=1)
    result = run_with_retry("first", RetryPolicy(max_retries=3, delay=0.01), op)
    assert result == "done"
    assert op.call_count == 1


def test_success_after_retries():
    op = MockOperation(attempts_needed=3)
    policy = RetryPolicy(max_retries=5, delay=0.01, backoff_factor=1.0)
    assert run_with_retry("retry", policy, op) == "done"
    assert op.call_count == 3


def test_failure_after_max_retries():
    op = MockOperation(fail_forever=True)
    policy = RetryPolicy(max_retries=2, delay=0.01, backoff_factor=1.0)
    start = time.monotonic()
    with pytest.raises(RuntimeError, match=r"operation failed permanently \(call 3\)"):
        run_with_retry("fail", policy, op)
    assert op.call_count == 3
    assert time.monotonic() - start >= 0.02


def test_zero_retries():
    op = MockOperation(fail_forever=True)
    with pytest.raises(RuntimeError, match=r"operation failed permanently \(call 1\)"):
        run_with_retry("zero", RetryPolicy(max_retries=0, delay=0.01), op)
    assert op.call_count == 1


def test_negative_retries_never_call_operation():
    op = MockOperation(fail_forever=True)
    assert run_with_retry("negative", RetryPolicy(max_retries=-1, delay=0.01), op) is None
    assert op.call_count == 0


def test_cancellation_during_wait():
    op = MockOperation(fail_forever=True)
    cancel = threading.Event()
    timer = threading.Timer(0.1, cancel.set)
    timer.start()
    start = time.monotonic()
    try:
        with pytest.raises(RetryCancelledError):
            run_with_retry("cancel_wait", RetryPolicy(max_retries=3, delay=1.0), op, cancel)
    finally:
        timer.cancel()
    assert op.call_count == 1
    assert time.monotonic() - start < 0.9
    assert cancel.is_set()


def test_cancellation_before_first_try():
    op = MockOperation(fail_forever=True)
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(RetryCancelledError):
        run_with_retry("cancel_before", RetryPolicy(max_retries=3, delay=0.01), op, cancel)
    assert op.call_count == 0


def test_nil_policy_uses_defaults():
    op = MockOperation(attempts_needed=2)
    start = time.monotonic()
    assert run_with_retry("nil_policy", None, op) == "done"
    assert op.call_count == 2
    assert time.monotonic() - start >= DEFAULT_DELAY_SECONDS * 0.95


def test_backoff_factor():
    op = MockOperation(fail_forever=True)
    policy = RetryPolicy(max_retries=2, delay=0.1, backoff_factor=2.0)
    start = time.monotonic()
    with pytest.raises(RuntimeError):
        run_with_retry("backoff", policy, op)
    duration = time.monotonic() - start
    assert op.call_count == 3
    assert duration >= 0.3
    assert duration < 1.0