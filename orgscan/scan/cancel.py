"""
Cancellation shared by every task of a run.
"""
import threading
import time
from typing import Callable, Optional


class CancelToken:
    """A run-wide cancellation flag with an optional deadline.

    Workers check :attr:`cancelled` between remote calls and sleep through
    :meth:`wait` so that cancellation interrupts backoff and rate-limit pauses.
    """

    def __init__(self, deadline_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self._event = threading.Event()
        self._clock = clock
        self._deadline = clock() + deadline_seconds if deadline_seconds else None
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self.cancel("deadline reached")
            return True
        return False

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if the run was cancelled meanwhile."""
        if self.cancelled:
            return True
        if self._deadline is not None:
            seconds = min(seconds, max(0.0, self._deadline - self._clock()))
        self._event.wait(max(0.0, seconds))
        return self.cancelled
