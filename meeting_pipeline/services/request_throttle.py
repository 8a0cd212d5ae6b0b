from collections.abc import Callable
from threading import Lock
from time import monotonic, sleep


class RequestThrottle:
    """Token bucket shared by the workers that call a rate-limited API."""

    def __init__(
        self,
        rate_per_second: float,
        *,
        burst: int = 1,
        clock: Callable[[], float] = monotonic,
        sleeper: Callable[[float], None] = sleep,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        self.rate_per_second = rate_per_second
        self.burst = max(burst, 1)
        self._clock = clock
        self._sleeper = sleeper
        self._tokens = float(self.burst)
        self._updated_at = clock()
        self._lock = Lock()

    def acquire(self) -> float:
        """Blocks until a token is available and returns the seconds waited."""
        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return waited
                wait_seconds = (1 - self._tokens) / self.rate_per_second
            self._sleeper(wait_seconds)
            waited += wait_seconds

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._updated_at, 0.0)
        self._updated_at = now
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate_per_second)
