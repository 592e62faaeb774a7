from collections.abc import Callable
import time
from typing import TypeVar


T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    def __init__(self, message: str, attempts: int, last_error: Exception | None, cancelled: bool = False) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
        self.cancelled = cancelled


def _sleep(seconds: float) -> bool:
    time.sleep(seconds)
    return True


def run_with_retries(
    fn: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], bool] = _sleep,
) -> tuple[T, int]:
    """Call ``fn`` until it succeeds, at most ``max_retries + 1`` times.

    Returns the result and the attempt number that produced it. ``sleep``
    waits out the backoff and returns False when the wait was interrupted,
    which ends the loop early.
    """
    last_error: Exception | None = None

    for attempt in range(1, max_retries + 2):
        try:
            return fn(), attempt
        except Exception as exc:
            last_error = exc
            if on_attempt_failure:
                on_attempt_failure(attempt, exc)

            retry_allowed = True if should_retry is None else should_retry(exc)
            if attempt > max_retries or not retry_allowed:
                break
            if not sleep(backoff_seconds * attempt):
                raise RetryExhaustedError(
                    f"cancelled during retry wait: {exc}", attempts=attempt, last_error=exc, cancelled=True
                ) from exc

    raise RetryExhaustedError(str(last_error), attempts=attempt, last_error=last_error) from last_error
