"""Per-client request limits: sliding-window rate limit, concurrency gate and poll throttle."""
import math
import threading
import time
from collections import deque
from typing import Callable, Optional

from fileconv.config import (
    CONCURRENCY_PER_CLIENT,
    CONCURRENCY_TOTAL,
    MIN_POLL_INTERVAL_MS,
    RATE_LIMIT_MAX,
    RATE_LIMIT_WINDOW_SECONDS,
)


class RateLimiter:
    """At most max_requests per client within window seconds."""

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX,
        window: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._hits: dict[str, deque] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def check(self, client: str) -> tuple[bool, int]:
        """Record a hit. Returns (allowed, remaining)."""
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.window:
                self._sweep(now)
            hits = self._hits.setdefault(client, deque())
            self._trim(hits, now)
            if len(hits) >= self.max_requests:
                return False, 0
            hits.append(now)
            return True, self.max_requests - len(hits)

    def _trim(self, hits: deque, now: float) -> None:
        while hits and hits[0] < now - self.window:
            hits.popleft()

    def _sweep(self, now: float) -> None:
        """Forget clients with no hit inside the window."""
        for client in list(self._hits):
            hits = self._hits[client]
            self._trim(hits, now)
            if not hits:
                del self._hits[client]
        self._last_sweep = now

    @property
    def tracked_clients(self) -> int:
        return len(self._hits)

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.window))

    def status(self) -> dict:
        with self._lock:
            self._sweep(self._clock())
            return {
                "tracked_clients": len(self._hits),
                "max_requests": self.max_requests,
                "window_seconds": self.window,
            }


class ConcurrencyGate:
    """Counts in-flight synchronous conversions per client and in total."""

    def __init__(self, per_client: int = CONCURRENCY_PER_CLIENT, total: int = CONCURRENCY_TOTAL):
        self.per_client = per_client
        self.total = total
        self._running: dict[str, int] = {}
        self._total_running = 0
        self._lock = threading.Lock()

    def acquire(self, client: str) -> bool:
        with self._lock:
            if self._running.get(client, 0) >= self.per_client or self._total_running >= self.total:
                return False
            self._running[client] = self._running.get(client, 0) + 1
            self._total_running += 1
            return True

    def release(self, client: str) -> None:
        with self._lock:
            held = self._running.get(client, 0)
            if not held:
                return
            if held == 1:
                del self._running[client]
            else:
                self._running[client] = held - 1
            self._total_running -= 1

    @property
    def running(self) -> int:
        return self._total_running

    def status(self) -> dict:
        with self._lock:
            return {
                "running": self._total_running,
                "clients": len(self._running),
                "per_client": self.per_client,
                "total": self.total,
            }


class PollThrottle:
    """Minimum interval between status polls of one task by one client.

    check() returns None when the poll is allowed, else the milliseconds left.
    Rejected polls do not reset the interval.
    """

    def __init__(
        self,
        min_interval_ms: int = MIN_POLL_INTERVAL_MS,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10_000,
    ):
        self.min_interval_ms = min_interval_ms
        self._clock = clock
        self._max_entries = max_entries
        self._last: dict[tuple[str, str], float] = {}
        self._lock = threading.Lock()

    def check(self, client: str, task_id: str) -> Optional[int]:
        if self.min_interval_ms <= 0:
            return None
        now = self._clock()
        key = (client, task_id)
        with self._lock:
            last = self._last.get(key)
            if last is not None:
                elapsed_ms = (now - last) * 1000
                if elapsed_ms < self.min_interval_ms:
                    return max(1, math.ceil(self.min_interval_ms - elapsed_ms))
            if len(self._last) >= self._max_entries:
                self._prune(now)
            self._last[key] = now
        return None

    def _prune(self, now: float) -> None:
        horizon = max(self.min_interval_ms / 1000, 1.0)
        for key in [k for k, t in self._last.items() if now - t >= horizon]:
            del self._last[key]
        while len(self._last) >= self._max_entries:
            self._last.pop(next(iter(self._last)))


# Singletons
_rate_limiter: Optional[RateLimiter] = None
_concurrency_gate: Optional[ConcurrencyGate] = None
_poll_throttle: Optional[PollThrottle] = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def get_concurrency_gate() -> ConcurrencyGate:
    global _concurrency_gate
    if _concurrency_gate is None:
        _concurrency_gate = ConcurrencyGate()
    return _concurrency_gate


def get_poll_throttle() -> PollThrottle:
    global _poll_throttle
    if _poll_throttle is None:
        _poll_throttle = PollThrottle()
    return _poll_throttle
