from __future__ import annotations

import threading


class AdmissionController:
    """Process-wide cap on executions in flight.

    ``try_acquire`` never blocks: when the ceiling is reached it returns False
    and the caller is expected to report the rejection and let the client retry.
    Every successful acquire must be paired with exactly one ``release``.
    """

    def __init__(self, max_concurrency: int) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._max = max_concurrency
        self._in_flight = 0
        self._lock = threading.Lock()

    @property
    def max_concurrency(self) -> int:
        return self._max

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def try_acquire(self) -> bool:
        with self._lock:
            if self._in_flight >= self._max:
                return False
            self._in_flight += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._in_flight <= 0:
                raise RuntimeError("release() called without a matching acquire")
            self._in_flight -= 1
