from __future__ import annotations
import threading
import time
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from ..errors import RateLimitError

T = TypeVar("T")

Clock = Callable[[], float]


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class RateLimiter:
    """Fail-fast gate in front of a side-effecting call.

    usage:
        limiter = RateLimiter(min_interval=5000)
        run_key = await limiter.execute(lambda: gateway.start(payload))

    Rejections raise RateLimitError right away; nothing is queued.
    """

    def __init__(
        self,
        min_interval: float,
        max_concurrent: Optional[int] = None,
        clock: Clock = monotonic_ms,
    ) -> None:
        if min_interval is None or min_interval <= 0:
            raise ValueError("min_interval must be > 0 milliseconds")
        if max_concurrent is not None and max_concurrent < 1:
            raise ValueError("max_concurrent must be a positive integer")
        self.min_interval = float(min_interval)
        self.max_concurrent = max_concurrent
        self._clock = clock
        self._last_accepted: Optional[float] = None
        self._active = 0
        self._blocked = False
        self._lock = threading.Lock()

    # ---- state
    @property
    def active_requests(self) -> int:
        return self._active

    @property
    def blocked(self) -> bool:
        return self._blocked

    def _elapsed(self, now: float) -> float:
        if self._last_accepted is None:
            return float("inf")
        return now - self._last_accepted

    def _can_proceed(self, now: float) -> bool:
        interval_ok = self._elapsed(now) >= self.min_interval
        under_cap = (
            self.max_concurrent is None or self._active < self.max_concurrent
        )
        return interval_ok and under_cap and not self._blocked

    def _wait_ms(self, now: float) -> float:
        return max(0.0, self.min_interval - self._elapsed(now))

    def can_proceed(self) -> bool:
        with self._lock:
            return self._can_proceed(self._clock())

    def remaining_wait_time(self) -> float:
        with self._lock:
            now = self._clock()
            if self._can_proceed(now):
                return 0.0
            return self._wait_ms(now)

    def block(self) -> None:
        with self._lock:
            self._blocked = True

    def unblock(self) -> None:
        with self._lock:
            self._blocked = False

    # ---- gate
    def _acquire(self) -> None:
        with self._lock:
            now = self._clock()
            if not self._can_proceed(now):
                raise RateLimitError(self._wait_ms(now))
            self._last_accepted = now
            self._active += 1

    def _release(self) -> None:
        with self._lock:
            self._active -= 1

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._acquire()
        try:
            return await operation()
        finally:
            self._release()

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            now = self._clock()
            ok = self._can_proceed(now)
            return {
                "can_proceed": ok,
                "remaining_ms": 0.0 if ok else self._wait_ms(now),
                "active_requests": self._active,
                "max_concurrent": self.max_concurrent,
                "min_interval_ms": self.min_interval,
                "blocked": self._blocked,
            }
