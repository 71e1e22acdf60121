"""In-process token bucket rate limiter."""
from dataclasses import dataclass
import threading
import time


@dataclass
class _Bucket:
    tokens: float
    updated_at: float
    per_seconds: float


class RateLimiter:
    """Per-key token buckets.

    Keys should include both scope and identity (e.g. "auth_refresh:1.2.3.4").
    Buckets idle for a whole window are dropped; a refilled bucket is the
    same as a fresh one.
    """

    def __init__(self, clock=time.monotonic, sweep_interval: float = 60.0) -> None:
        self._mem: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._mem)

    def allow(self, key: str, *, limit: int, per_seconds: int) -> bool:
        now = self._clock()
        rate = float(limit) / float(per_seconds)
        with self._lock:
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep(now)
            b = self._mem.get(key)
            if b is None:
                b = _Bucket(tokens=float(limit), updated_at=now, per_seconds=float(per_seconds))
                self._mem[key] = b
            # refill
            b.tokens = min(float(limit), b.tokens + (now - b.updated_at) * rate)
            b.updated_at = now
            if b.tokens < 1.0:
                return False
            b.tokens -= 1.0
            return True

    def _sweep(self, now: float) -> None:
        idle = [key for key, b in self._mem.items() if now - b.updated_at >= b.per_seconds]
        for key in idle:
            del self._mem[key]
        self._last_sweep = now
