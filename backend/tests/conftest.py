import io
import os
import time

os.environ["DATABASE_URL"] = "sqlite:///:memory:"

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from fileconv import monitoring
from fileconv.conversion.cache import ResultCache
from fileconv.conversion.scheduler import TaskScheduler, get_task_scheduler
from fileconv.conversion.store import TaskStore
from fileconv.conversion.tools import ToolAvailabilityProbe, get_tool_probe
from fileconv.db import init_db
from fileconv.limits import (
    ConcurrencyGate,
    PollThrottle,
    RateLimiter,
    get_concurrency_gate,
    get_poll_throttle,
    get_rate_limiter,
)
from fileconv.main import app
from fileconv.monitoring import HealthMonitor, get_health_monitor

DOCX_BYTES = b"PK\x03\x04" + b"\x14\x00\x06\x00" + b"word/document.xml" * 8
EPS_BYTES = b"%!PS-Adobe-3.0 EPSF-3.0\n%%BoundingBox: 0 0 10 10\nnewpath 0 0 moveto 10 10 lineto stroke\n%%EOF\n"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def image_bytes(fmt: str = "PNG", size=(64, 48), mode: str = "RGB") -> bytes:
    color = (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


def padded_jpeg(total_size: int) -> bytes:
    """A real JPEG (random noise) padded after its EOI marker to total_size bytes."""
    img = Image.frombytes("RGB", (640, 480), os.urandom(640 * 480 * 3))
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=90)
    data = buf.getvalue()
    assert len(data) < total_size
    return data + b"\x00" * (total_size - len(data))


def wait_terminal(store: TaskStore, task_id: str, timeout: float = 15.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        record = store.get(task_id)
        if record is not None and record.status.terminal:
            return record
        time.sleep(0.02)
    raise AssertionError(f"task {task_id} did not finish in {timeout}s")


@pytest.fixture(scope="session", autouse=True)
def database():
    init_db()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_tools_probe():
    return ToolAvailabilityProbe(which=lambda name: None)


@pytest.fixture
def monitor(monkeypatch):
    fresh = HealthMonitor()
    monkeypatch.setattr(monitoring, "_health_monitor", fresh)
    return fresh


@pytest.fixture
def scheduler(no_tools_probe, monitor):
    sched = TaskScheduler(
        store=TaskStore(), probe=no_tools_probe, cache=ResultCache(), max_workers=2, monitor=monitor
    )
    yield sched
    sched.shutdown()


@pytest.fixture
def throttle():
    return PollThrottle(min_interval_ms=0)


@pytest.fixture
def limiter():
    return RateLimiter()


@pytest.fixture
def client(scheduler, throttle, limiter):
    gate = ConcurrencyGate()
    app.dependency_overrides[get_task_scheduler] = lambda: scheduler
    app.dependency_overrides[get_tool_probe] = lambda: scheduler.probe
    app.dependency_overrides[get_poll_throttle] = lambda: throttle
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_concurrency_gate] = lambda: gate
    app.dependency_overrides[get_health_monitor] = lambda: scheduler.monitor
    yield TestClient(app)
    app.dependency_overrides.clear()
