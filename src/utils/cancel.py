from __future__ import annotations

import threading

from src.runtime.errors import CancellationError


class CancellationToken:
    """Thread-safe cancellation signal shared between a run and its executor.

    Executors poll `cancelled` or block on `wait()`; the first `request_cancel`
    wins and its reason is kept.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def request_cancel(self, reason: str = "cancelled") -> bool:
        """Signal cancellation. Returns False if it was already requested."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self._reason or "cancelled")
