"""Rolling request stats for the conversion routes, plus service alerts."""
import logging
import threading
import time
from collections import deque
from typing import Callable, Optional

from fileconv.config import HEALTH_MAX_ALERTS, HEALTH_WINDOW_SECONDS, SLOW_RESPONSE_MS

logger = logging.getLogger("fileconv.monitoring")

CONVERT_ROUTES = ("image", "doc", "vector")


def route_label(method: str, path: str) -> Optional[str]:
    """Name of the monitored route for a request, or None when it is not tracked."""
    if not path.startswith("/api/"):
        return None
    parts = path[len("/api/"):].strip("/").split("/")
    if method == "POST" and parts == ["tasks"]:
        return "tasks/create"
    if method == "GET" and len(parts) == 2 and parts[0] == "tasks":
        return "tasks/progress"
    if method == "POST" and len(parts) == 2 and parts[0] == "convert" and parts[1] in CONVERT_ROUTES:
        return f"convert/{parts[1]}"
    return None


class HealthMonitor:
    """Request count, error rate and mean response time per route over a sliding window."""

    def __init__(
        self,
        window: float = HEALTH_WINDOW_SECONDS,
        slow_ms: int = SLOW_RESPONSE_MS,
        max_alerts: int = HEALTH_MAX_ALERTS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window = window
        self.slow_ms = slow_ms
        self._clock = clock
        self._spans: dict[str, deque] = {}
        self._alerts: deque = deque(maxlen=max_alerts)
        self._lock = threading.Lock()

    def record(self, route: str, duration_ms: float, ok: bool) -> None:
        now = self._clock()
        with self._lock:
            spans = self._spans.setdefault(route, deque())
            spans.append((now, duration_ms, ok))
            self._trim(spans, now)
        if duration_ms > self.slow_ms:
            self.alert("Slow response", route=route, duration_ms=round(duration_ms))

    def alert(self, message: str, **context) -> None:
        logger.warning("Alert: %s %s", message, context)
        with self._lock:
            self._alerts.append({"message": message, "at": time.time(), **context})

    def _trim(self, spans: deque, now: float) -> None:
        while spans and spans[0][0] < now - self.window:
            spans.popleft()

    def route_stats(self) -> dict[str, dict]:
        now = self._clock()
        stats = {}
        with self._lock:
            for route in list(self._spans):
                spans = self._spans[route]
                self._trim(spans, now)
                if not spans:
                    del self._spans[route]
                    continue
                errors = sum(1 for _, _, ok in spans if not ok)
                stats[route] = {
                    "requests": len(spans),
                    "errors": errors,
                    "error_rate": round(errors / len(spans), 3),
                    "avg_response_ms": round(sum(d for _, d, _ in spans) / len(spans), 1),
                }
        return stats

    def report(self) -> dict:
        routes = self.route_stats()
        requests = sum(s["requests"] for s in routes.values())
        errors = sum(s["errors"] for s in routes.values())
        total_ms = sum(s["avg_response_ms"] * s["requests"] for s in routes.values())
        with self._lock:
            alerts = list(self._alerts)
        return {
            "window_seconds": self.window,
            "requests": requests,
            "error_rate": round(errors / requests, 3) if requests else 0.0,
            "avg_response_ms": round(total_ms / requests, 1) if requests else 0.0,
            "routes": routes,
            "alerts": alerts,
        }


# Singleton
_health_monitor: Optional[HealthMonitor] = None


def get_health_monitor() -> HealthMonitor:
    global _health_monitor
    if _health_monitor is None:
        _health_monitor = HealthMonitor()
    return _health_monitor
