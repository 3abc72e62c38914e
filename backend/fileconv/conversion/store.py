"""In-memory task store. Single source of truth for task status, progress and result."""
import base64
import dataclasses
import logging
import threading
import time
import uuid
from typing import Callable, Optional

from fileconv.config import TASK_RETENTION_SECONDS, TASK_STALE_SECONDS
from fileconv.conversion.models import Category, TaskRecord, TaskStateError, TaskStatus

logger = logging.getLogger("fileconv.store")


class TaskStore:
    """Map of task id -> TaskRecord.

    Records are frozen; every write replaces the record under the lock. Writes to a
    terminal record raise TaskStateError. Progress never goes down while pending.
    Terminal records are evicted retention seconds after their last update and
    pending ones after stale_after seconds; eviction runs lazily on create().
    """

    def __init__(
        self,
        retention: float = TASK_RETENTION_SECONDS,
        stale_after: float = TASK_STALE_SECONDS,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = 30.0,
    ):
        self._records: dict[str, TaskRecord] = {}
        self._lock = threading.Lock()
        self._retention = retention
        self._stale_after = stale_after
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._records

    def create(self, category: Category, message: Optional[str] = None) -> TaskRecord:
        now = self._clock()
        if now - self._last_sweep >= self._sweep_interval:
            self.evict_expired(now)
        with self._lock:
            task_id = uuid.uuid4().hex
            while task_id in self._records:
                task_id = uuid.uuid4().hex
            record = TaskRecord(id=task_id, category=category, message=message, created_at=now, updated_at=now)
            self._records[task_id] = record
        return record

    def get(self, task_id: str) -> Optional[TaskRecord]:
        return self._records.get(task_id)

    def _replace(self, task_id: str, **changes) -> TaskRecord:
        with self._lock:
            current = self._records.get(task_id)
            if current is None:
                raise KeyError(task_id)
            if current.status.terminal:
                raise TaskStateError(f"Task {task_id} is already {current.status.value}")
            if "progress" in changes:
                changes["progress"] = max(current.progress, min(100, int(changes["progress"])))
            record = dataclasses.replace(current, updated_at=self._clock(), **changes)
            self._records[task_id] = record
            return record

    def advance(self, task_id: str, progress: int, message: Optional[str] = None) -> TaskRecord:
        changes = {"progress": progress}
        if message is not None:
            changes["message"] = message
        return self._replace(task_id, **changes)

    def complete(
        self,
        task_id: str,
        data: bytes,
        mime: str,
        file_name: Optional[str] = None,
        message: str = "Done",
    ) -> TaskRecord:
        return self._replace(
            task_id,
            status=TaskStatus.DONE,
            progress=100,
            data_base64=base64.b64encode(data).decode("ascii"),
            mime=mime,
            file_name=file_name,
            message=message,
        )

    def fail(self, task_id: str, message: str) -> TaskRecord:
        return self._replace(task_id, status=TaskStatus.ERROR, message=message)

    def evict_expired(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                tid for tid, r in self._records.items()
                if (r.status.terminal and now - r.updated_at >= self._retention)
                or (not r.status.terminal and now - r.created_at >= self._stale_after)
            ]
            for tid in expired:
                del self._records[tid]
            self._last_sweep = now
        if expired:
            logger.info("Evicted %s expired task(s)", len(expired))
        return len(expired)

    def stats(self) -> dict:
        counts = {s.value: 0 for s in TaskStatus}
        for r in list(self._records.values()):
            counts[r.status.value] += 1
        return counts
