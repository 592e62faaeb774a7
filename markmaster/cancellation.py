import threading
import time


class RunCancellation:
    """External stop signal combined with an optional deadline.

    A timeout behaves exactly like an external cancel, it is only triggered
    by the clock.
    """

    def __init__(self, event: threading.Event | None = None, timeout_seconds: float | None = None) -> None:
        self._event = event if event is not None else threading.Event()
        self._deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

    @property
    def timed_out(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def is_cancelled(self) -> bool:
        return self._event.is_set() or self.timed_out

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return False if cancelled meanwhile."""
        remaining = self.remaining()
        timeout = seconds if remaining is None else min(seconds, remaining)
        if self._event.wait(timeout):
            return False
        return not self.is_cancelled()

    def wait_for_slot(self, gate: threading.Semaphore, poll_seconds: float = 0.05) -> bool:
        """Block on ``gate`` until a slot frees up or the run is cancelled.

        A slot obtained after the cancel landed is handed straight back.
        """
        while not self.is_cancelled():
            if gate.acquire(timeout=poll_seconds):
                if self.is_cancelled():
                    gate.release()
                    return False
                return True
        return False
