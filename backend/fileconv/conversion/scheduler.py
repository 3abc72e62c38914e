"""Admission and dispatch of conversions.

Both entry points share one core (execute: cache -> worker -> ledger). What differs
is the executor: InlineExecutor runs the core in the caller's thread and returns the
result, QueuedExecutor creates a pending TaskRecord and runs the core on the worker
pool, writing the outcome into the store exactly once.
"""
import dataclasses
import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import PurePath
from typing import Callable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from fileconv.config import MAX_WORKERS, POLL_BASE_DELAY_MS, POLL_MAX_DELAY_MS, QUEUE_SOFT_LIMIT
from fileconv.conversion.cache import ResultCache, cache_key
from fileconv.conversion.models import (
    Category,
    ConversionFailure,
    ConversionRequest,
    ConversionResult,
    ExecutionMode,
    FailureKind,
    TaskRecord,
    TaskStateError,
)
from fileconv.conversion.store import TaskStore
from fileconv.conversion.tools import ToolAvailabilityProbe, get_tool_probe
from fileconv.conversion.workers import ConversionWorker, build_workers
from fileconv.db import record_activity
from fileconv.monitoring import HealthMonitor, get_health_monitor

logger = logging.getLogger("fileconv.scheduler")

# Fast categories run inside the request; slow ones go through the task queue.
DEFAULT_MODES = {
    Category.IMAGE: ExecutionMode.INLINE,
    Category.DOC: ExecutionMode.QUEUED,
    Category.VECTOR: ExecutionMode.QUEUED,
}

FAILURE_LABELS = {
    FailureKind.UNSUPPORTED_FORMAT: "UnsupportedFormat",
    FailureKind.TOOL_UNAVAILABLE: "ToolUnavailable",
    FailureKind.INTERNAL_ERROR: "ConvertFailed",
}

_OUTPUT_EXT = {"jpeg": "jpg"}


def output_name(filename: str, target: str) -> str:
    stem = PurePath(filename or "converted").stem or "converted"
    return f"{stem}.{_OUTPUT_EXT.get(target, target)}"


def describe_failure(failure: ConversionFailure) -> str:
    return f"{FAILURE_LABELS[failure.kind]}: {failure.message}"


def _record_safely(**kwargs) -> None:
    try:
        record_activity(**kwargs)
    except SQLAlchemyError as e:
        logger.warning("Could not record activity for %s: %s", kwargs.get("filename"), e)


class InlineExecutor:
    mode = ExecutionMode.INLINE

    def __init__(self, scheduler: "TaskScheduler"):
        self._scheduler = scheduler

    def dispatch(self, request: ConversionRequest) -> ConversionResult:
        return self._scheduler.execute(request, mode=self.mode)


class QueuedExecutor:
    mode = ExecutionMode.QUEUED

    def __init__(self, scheduler: "TaskScheduler", pool: ThreadPoolExecutor):
        self._scheduler = scheduler
        self._pool = pool

    def dispatch(self, request: ConversionRequest) -> TaskRecord:
        scheduler = self._scheduler
        busy = scheduler.queued_count >= scheduler.soft_limit
        record = scheduler.store.create(
            request.category,
            message="Queue is busy, expect a longer wait" if busy else "Queued",
        )
        if busy:
            scheduler.monitor.alert(
                "Queue above soft limit", queued=scheduler.queued_count, soft_limit=scheduler.soft_limit
            )
        scheduler._mark_queued()
        self._pool.submit(scheduler._run_task, record.id, request)
        logger.info("Queued task %s (%s -> %s)", record.id, request.filename, request.target)
        return record

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)


class TaskScheduler:
    """Runs conversions inline or through the task queue, over the same validator/worker core."""

    def __init__(
        self,
        store: Optional[TaskStore] = None,
        workers: Optional[dict[Category, ConversionWorker]] = None,
        probe: Optional[ToolAvailabilityProbe] = None,
        cache: Optional[ResultCache] = None,
        max_workers: int = MAX_WORKERS,
        soft_limit: int = QUEUE_SOFT_LIMIT,
        recorder: Callable[..., None] = _record_safely,
        modes: Optional[dict[Category, ExecutionMode]] = None,
        rng: Optional[random.Random] = None,
        monitor: Optional[HealthMonitor] = None,
    ):
        self.store = store or TaskStore()
        self.probe = probe or get_tool_probe()
        self.workers = workers or build_workers(self.probe)
        self.cache = cache if cache is not None else ResultCache()
        self.max_workers = max_workers
        self.soft_limit = soft_limit
        self.modes = dict(modes or DEFAULT_MODES)
        self._recorder = recorder
        self._rng = rng or random.Random()
        self.monitor = monitor or get_health_monitor()
        self._lock = threading.Lock()
        self._queued = 0
        self._running = 0
        self.inline = InlineExecutor(self)
        self.queued = QueuedExecutor(
            self, ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fileconv-worker")
        )
        logger.info("TaskScheduler initialized with max_workers=%s", max_workers)

    @property
    def queued_count(self) -> int:
        return self._queued

    @property
    def running_count(self) -> int:
        return self._running

    def _mark_queued(self) -> None:
        with self._lock:
            self._queued += 1

    def executor_for(self, category: Category, mode: Optional[ExecutionMode] = None):
        mode = mode or self.modes.get(category, ExecutionMode.QUEUED)
        return self.inline if mode is ExecutionMode.INLINE else self.queued

    def submit(
        self, request: ConversionRequest, mode: Optional[ExecutionMode] = None
    ) -> Union[ConversionResult, TaskRecord]:
        return self.executor_for(request.category, mode).dispatch(request)

    def run_inline(self, request: ConversionRequest) -> ConversionResult:
        return self.inline.dispatch(request)

    def enqueue(self, request: ConversionRequest) -> TaskRecord:
        return self.queued.dispatch(request)

    def execute(
        self,
        request: ConversionRequest,
        on_progress: Optional[Callable[[int, str], None]] = None,
        *,
        mode: ExecutionMode = ExecutionMode.INLINE,
        task_id: Optional[str] = None,
    ) -> ConversionResult:
        """Convert one request. Raises ConversionFailure; any other exception is turned into one."""
        started = time.monotonic()
        name = output_name(request.filename, request.target)
        key = cache_key(request.data, request.category, request.target)
        try:
            result = self.cache.get(key)
            if result is not None:
                logger.info("Cache hit for %s -> %s", request.filename, request.target)
                result = dataclasses.replace(result, file_name=name, cached=True)
            else:
                worker = self.workers.get(request.category)
                if worker is None:
                    raise ConversionFailure(FailureKind.UNSUPPORTED_FORMAT, f"No converter for {request.category.value}")
                result = worker.convert(
                    request.data, request.target, source_ext=request.source_ext, on_progress=on_progress
                )
                result = dataclasses.replace(result, file_name=name)
                self.cache.set(key, dataclasses.replace(result, file_name=None))
        except ConversionFailure as e:
            self._record(request, mode, "error", started, task_id=task_id, error=describe_failure(e))
            raise
        except Exception as e:
            logger.exception("Unexpected failure converting %s: %s", request.filename, e)
            failure = ConversionFailure(FailureKind.INTERNAL_ERROR, f"Conversion failed: {e}")
            self._record(request, mode, "error", started, task_id=task_id, error=describe_failure(failure))
            raise failure
        self._record(request, mode, "done", started, task_id=task_id, output_bytes=len(result.data))
        return result

    def _record(self, request: ConversionRequest, mode: ExecutionMode, status: str, started: float, **extra) -> None:
        self._recorder(
            session_id=request.session_id,
            category=request.category.value,
            filename=request.filename,
            target=request.target,
            mode=mode.value,
            status=status,
            input_bytes=len(request.data),
            duration_seconds=round(time.monotonic() - started, 3),
            **extra,
        )

    def _report_progress(self, task_id: str, progress: int, message: str) -> None:
        try:
            self.store.advance(task_id, progress, message)
        except (KeyError, TaskStateError) as e:
            logger.debug("Progress for task %s dropped: %s", task_id, e)

    def _run_task(self, task_id: str, request: ConversionRequest) -> None:
        with self._lock:
            self._queued -= 1
            self._running += 1
        try:
            self._report_progress(task_id, 5, "Conversion started")
            try:
                result = self.execute(
                    request,
                    on_progress=lambda p, m: self._report_progress(task_id, p, m),
                    mode=ExecutionMode.QUEUED,
                    task_id=task_id,
                )
            except ConversionFailure as e:
                self.store.fail(task_id, describe_failure(e))
                logger.info("Task %s failed: %s", task_id, e.message)
                return
            self.store.complete(
                task_id,
                result.data,
                result.mime,
                file_name=result.file_name,
                message="Cache hit" if result.cached else "Done",
            )
            logger.info("Task %s done (%s bytes)", task_id, len(result.data))
        except (KeyError, TaskStateError) as e:
            logger.warning("Task %s could not be finalized: %s", task_id, e)
        finally:
            with self._lock:
                self._running -= 1

    def suggested_poll_delay_ms(self) -> int:
        """Pacing hint for pollers, scaled by queue depth and worker saturation, with jitter."""
        q_factor = min(self._queued / max(self.soft_limit, 1), 1.5)
        r_factor = min(self._running / max(self.max_workers, 1), 1.0)
        factor = 1 + 0.8 * q_factor + 0.7 * r_factor
        jitter = self._rng.uniform(-0.10, 0.15)
        suggested = round(POLL_BASE_DELAY_MS * factor * (1 + jitter))
        return max(POLL_BASE_DELAY_MS, min(suggested, POLL_MAX_DELAY_MS))

    def shutdown(self) -> None:
        self.queued.shutdown()
        logger.info("TaskScheduler shut down")


# Singleton
_scheduler: Optional[TaskScheduler] = None


def get_task_scheduler() -> TaskScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = TaskScheduler()
    return _scheduler


def shutdown_task_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown()
        _scheduler = None
