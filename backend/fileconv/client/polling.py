"""Adaptive polling client for GET /api/tasks/{id}.

PollingClient is a small state machine (idle -> polling -> stopped) driven by a
timer scheduler. Every start() bumps a generation token; timer callbacks carry
the token they were scheduled under and do nothing once it is stale, so a
cancelled session can never deliver updates into a newer one.
"""
import base64
import logging
import mimetypes
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import requests

from fileconv.config import POLL_BASE_DELAY_MS, POLL_MAX_DELAY_MS

logger = logging.getLogger("fileconv.client")

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_TIMEOUT_MS = 30_000
HTTP_TIMEOUT = 30


class PollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    STOPPED = "stopped"


class ClientPollError(str, Enum):
    RATE_LIMITED = "rate_limited"
    TERMINAL = "terminal"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"


@dataclass(frozen=True)
class TaskProgress:
    status: str
    progress: Optional[int] = None
    message: Optional[str] = None
    data_base64: Optional[str] = None
    mime: Optional[str] = None
    file_name: Optional[str] = None
    file_url: Optional[str] = None
    retry_after_ms: Optional[int] = None
    # Set only on updates synthesized by the client.
    error: Optional[ClientPollError] = None

    @classmethod
    def from_dict(cls, body: dict[str, Any]) -> "TaskProgress":
        if not isinstance(body, dict) or not isinstance(body.get("status"), str):
            raise ValueError(f"not a task progress body: {body!r}")
        hint = body.get("retryAfterMs")
        if isinstance(hint, bool) or not isinstance(hint, (int, float)):
            hint = None
        return cls(
            status=body["status"],
            progress=body.get("progress"),
            message=body.get("message"),
            data_base64=body.get("dataBase64"),
            mime=body.get("mime"),
            file_name=body.get("fileName"),
            file_url=body.get("fileUrl"),
            retry_after_ms=hint,
        )

    @classmethod
    def failure(cls, error: ClientPollError, message: str) -> "TaskProgress":
        return cls(status="error", message=message, error=error)

    @property
    def terminal(self) -> bool:
        return self.status in ("done", "error")

    def content(self) -> bytes:
        if self.data_base64 is None:
            raise ValueError("task has no result data")
        return base64.b64decode(self.data_base64)


class ThreadingScheduler:
    """call_later/cancel over threading.Timer."""

    def call_later(self, delay: float, fn: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(delay, fn)
        timer.daemon = True
        timer.start()
        return timer

    def cancel(self, handle: threading.Timer) -> None:
        handle.cancel()


def _retry_after_ms(headers) -> Optional[float]:
    value = headers.get("Retry-After") if headers is not None else None
    if value is None:
        return None
    try:
        return max(0.0, float(value)) * 1000
    except ValueError:
        # HTTP-date form; fall back to the current backoff
        return None


class PollingClient:
    """Polls one task at a time until it is done, errors, times out or is cancelled.

    fetch(task_id) must return an object with status_code, headers and json();
    by default it is a requests GET against base_url. on_update receives
    TaskProgress instances, in order, and is never called after the session stops.
    """

    def __init__(
        self,
        fetch: Optional[Callable[[str], Any]] = None,
        base_url: str = DEFAULT_BASE_URL,
        scheduler=None,
        clock: Callable[[], float] = time.monotonic,
        initial_delay_ms: int = POLL_BASE_DELAY_MS,
        max_delay_ms: int = POLL_MAX_DELAY_MS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._fetch = fetch or self._http_fetch
        self._scheduler = scheduler or ThreadingScheduler()
        self._clock = clock
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max(max_delay_ms, initial_delay_ms)
        self.timeout_ms = timeout_ms

        self._lock = threading.RLock()
        self._stopped = threading.Event()
        self._state = PollState.IDLE
        self._generation = 0
        self._cancelled = False
        self._handle = None
        self._task_id: Optional[str] = None
        self._on_update: Optional[Callable[[TaskProgress], None]] = None
        self._started_at = 0.0
        self._delay_ms: float = initial_delay_ms
        self._last: Optional[TaskProgress] = None
        self._message: Optional[str] = None

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def delay_ms(self) -> float:
        return self._delay_ms

    @property
    def progress(self) -> Optional[TaskProgress]:
        """Last update delivered in the current session."""
        return self._last

    @property
    def message(self) -> Optional[str]:
        return self._message

    def _http_fetch(self, task_id: str):
        if self._session is None:
            self._session = requests.Session()
        return self._session.get(f"{self.base_url}/api/tasks/{task_id}", timeout=HTTP_TIMEOUT)

    def start(self, task_id: str, on_update: Callable[[TaskProgress], None]) -> None:
        with self._lock:
            self._cancel_timer()
            self._generation += 1
            self._cancelled = False
            self._task_id = task_id
            self._on_update = on_update
            self._started_at = self._clock()
            self._delay_ms = self.initial_delay_ms
            self._last = None
            self._message = None
            self._state = PollState.POLLING
            self._stopped.clear()
            self._schedule()
        logger.debug("Polling task %s (generation %s)", task_id, self._generation)

    def cancel(self) -> None:
        """Stop polling. A fetch already in flight completes but its result is dropped."""
        with self._lock:
            if self._state is not PollState.POLLING:
                return
            self._cancelled = True
            self._cancel_timer()
            self._state = PollState.STOPPED
            self._message = "polling cancelled"
            self._stopped.set()
        logger.debug("Polling of task %s cancelled", self._task_id)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the session stops. Returns False on timeout."""
        if self._state is PollState.IDLE:
            return True
        return self._stopped.wait(timeout)

    def _schedule(self) -> None:
        generation = self._generation
        self._handle = self._scheduler.call_later(self._delay_ms / 1000, lambda: self._poll(generation))

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._scheduler.cancel(self._handle)
            self._handle = None

    def _stale(self, generation: int) -> bool:
        return generation != self._generation or self._cancelled or self._state is not PollState.POLLING

    def _elapsed_ms(self) -> float:
        return (self._clock() - self._started_at) * 1000

    def _poll(self, generation: int) -> None:
        with self._lock:
            if self._stale(generation):
                return
            self._handle = None
            task_id = self._task_id
        try:
            response = self._fetch(task_id)
        except requests.RequestException as e:
            self._fail(generation, ClientPollError.NETWORK_ERROR, f"network error: {e}")
            return
        except Exception as e:
            logger.exception("Fetching task %s failed", task_id)
            self._fail(generation, ClientPollError.TERMINAL, f"unexpected error: {e}")
            return
        with self._lock:
            if self._stale(generation):
                logger.debug("Dropping response for task %s from a stopped session", task_id)
                return
            try:
                self._handle_response(response)
            except Exception as e:
                logger.exception("Handling the response for task %s failed", task_id)
                self._fail(generation, ClientPollError.TERMINAL, f"unexpected error: {e}")

    def _fail(self, generation: int, error: ClientPollError, message: str) -> None:
        with self._lock:
            if not self._stale(generation):
                self._stop(TaskProgress.failure(error, message))

    def _handle_response(self, response) -> None:
        code = response.status_code
        if code == 429:
            suggested = _retry_after_ms(response.headers)
            self._delay_ms = min(suggested if suggested is not None else self._delay_ms * 1.5, self.max_delay_ms)
            if self._elapsed_ms() > self.timeout_ms:
                self._stop(self._timeout_update())
                return
            logger.debug("Task %s: rate limited, next poll in %s ms", self._task_id, self._delay_ms)
            self._schedule()
            return
        if not 200 <= code < 300:
            self._stop(TaskProgress.failure(ClientPollError.TERMINAL, f"error ({code})"))
            return
        try:
            update = TaskProgress.from_dict(response.json())
        except ValueError as e:
            self._stop(TaskProgress.failure(ClientPollError.TERMINAL, f"invalid response: {e}"))
            return
        self._deliver(update)
        if update.terminal:
            self._stop()
            return
        if self._elapsed_ms() > self.timeout_ms:
            self._stop(self._timeout_update())
            return
        if update.retry_after_ms is not None:
            self._delay_ms = min(max(update.retry_after_ms, self.initial_delay_ms), self.max_delay_ms)
        self._schedule()

    def _timeout_update(self) -> TaskProgress:
        return TaskProgress.failure(ClientPollError.TIMEOUT, f"timed out after {self.timeout_ms} ms")

    def _deliver(self, update: TaskProgress) -> None:
        self._last = update
        self._message = update.message
        if self._on_update is not None:
            try:
                self._on_update(update)
            except Exception:
                # a callback that raised is not called again in this session
                self._on_update = None
                raise

    def _stop(self, final: Optional[TaskProgress] = None) -> None:
        self._cancel_timer()
        try:
            if final is not None:
                self._deliver(final)
        finally:
            self._state = PollState.STOPPED
            self._stopped.set()


class SubmissionError(Exception):
    """The server refused the upload (4xx/5xx on POST /api/tasks)."""

    def __init__(self, status_code: int, detail: Any):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"submission failed ({status_code}): {detail}")


def submit_file(
    base_url: str,
    path: Path,
    to: str,
    category: str = "image",
    session: Optional[requests.Session] = None,
) -> str:
    """Upload a file to the task queue. Returns the task id."""
    http = session or requests.Session()
    path = Path(path)
    content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    with open(path, "rb") as fh:
        resp = http.post(
            f"{base_url.rstrip('/')}/api/tasks",
            files={"file": (path.name, fh, content_type)},
            data={"to": to, "category": category},
            timeout=60,
        )
    if resp.status_code not in (200, 201):
        try:
            detail = resp.json().get("detail")
        except ValueError:
            detail = resp.text
        raise SubmissionError(resp.status_code, detail)
    return str(resp.json()["taskId"])


def convert_file(
    base_url: str,
    path: Path,
    to: str,
    category: str = "image",
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    on_update: Optional[Callable[[TaskProgress], None]] = None,
    session: Optional[requests.Session] = None,
) -> TaskProgress:
    """Submit a file, poll it to a terminal state and return the last TaskProgress."""
    http = session or requests.Session()
    task_id = submit_file(base_url, path, to, category, session=http)
    logger.info("Submitted %s as task %s", path, task_id)
    client = PollingClient(base_url=base_url, session=http, timeout_ms=timeout_ms)
    client.start(task_id, on_update or (lambda update: None))
    client.wait()
    return client.progress or TaskProgress.failure(ClientPollError.TERMINAL, client.message or "no update received")
