import threading

import pytest

from markmaster.cancellation import RunCancellation
from markmaster.retry import RetryExhaustedError, run_with_retries


def test_returns_result_and_attempt_number() -> None:
    calls = {"count": 0}

    def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise OSError("busy")
        return "ok"

    result, attempts = run_with_retries(flaky, max_retries=2, backoff_seconds=0)

    assert result == "ok"
    assert attempts == 3


def test_backoff_grows_with_attempt() -> None:
    delays: list[float] = []

    def always_fails() -> None:
        raise OSError("busy")

    def record_sleep(seconds: float) -> bool:
        delays.append(seconds)
        return True

    with pytest.raises(RetryExhaustedError) as exc_info:
        run_with_retries(always_fails, max_retries=3, backoff_seconds=0.5, sleep=record_sleep)

    assert delays == [0.5, 1.0, 1.5]
    assert exc_info.value.attempts == 4
    assert isinstance(exc_info.value.last_error, OSError)


def test_non_retryable_error_stops_immediately() -> None:
    calls = {"count": 0}

    def invalid() -> None:
        calls["count"] += 1
        raise ValueError("bad data")

    with pytest.raises(RetryExhaustedError) as exc_info:
        run_with_retries(invalid, max_retries=5, backoff_seconds=0, should_retry=lambda exc: False)

    assert calls["count"] == 1
    assert exc_info.value.attempts == 1


def test_cancelled_wait_ends_retries() -> None:
    event = threading.Event()
    event.set()
    cancellation = RunCancellation(event)

    def always_fails() -> None:
        raise OSError("busy")

    with pytest.raises(RetryExhaustedError) as exc_info:
        run_with_retries(always_fails, max_retries=3, backoff_seconds=60, sleep=cancellation.wait)

    assert exc_info.value.cancelled is True
    assert exc_info.value.attempts == 1


def test_deadline_counts_as_cancellation() -> None:
    cancellation = RunCancellation(timeout_seconds=0.01)

    assert cancellation.wait(5) is False
    assert cancellation.timed_out
    assert cancellation.is_cancelled()


def test_wait_for_slot_gives_up_when_cancelled() -> None:
    gate = threading.BoundedSemaphore(1)
    gate.acquire()
    event = threading.Event()
    cancellation = RunCancellation(event)
    threading.Timer(0.05, event.set).start()

    assert cancellation.wait_for_slot(gate) is False
