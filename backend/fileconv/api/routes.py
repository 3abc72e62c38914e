"""API routes for conversion submission, task status and service metadata."""
import asyncio
import dataclasses
import logging
import math
import re
import time
import uuid
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile

from fileconv.config import MAX_UPLOAD_BYTES, MAX_UPLOAD_MB, POLL_BASE_DELAY_MS, POLL_MAX_DELAY_MS
from fileconv.conversion.models import Category, ConversionFailure, ConversionRequest, FailureKind
from fileconv.conversion.scheduler import FAILURE_LABELS, TaskScheduler, get_task_scheduler
from fileconv.conversion.tools import ToolAvailabilityProbe, get_tool_probe
from fileconv.conversion.validation import (
    ACCEPTED_EXTENSIONS,
    ACCEPTED_TARGETS,
    HEAD_BYTES,
    FileMeta,
    Outcome,
    normalize_target,
    parse_category,
    validate,
)
from fileconv.db import delete_session_data, get_session_activities, get_session_stats
from fileconv.limits import (
    ConcurrencyGate,
    PollThrottle,
    RateLimiter,
    get_concurrency_gate,
    get_poll_throttle,
    get_rate_limiter,
)
from fileconv.monitoring import HealthMonitor, get_health_monitor

logger = logging.getLogger("fileconv.api")
router = APIRouter(prefix="/api", tags=["converter"])

FAILURE_STATUS = {
    FailureKind.UNSUPPORTED_FORMAT: 400,
    FailureKind.TOOL_UNAVAILABLE: 503,
    FailureKind.INTERNAL_ERROR: 500,
}

READ_CHUNK = 1024 * 1024


def _error(status: int, error: str, message: str, headers: Optional[dict] = None) -> HTTPException:
    return HTTPException(status, detail={"error": error, "message": message}, headers=headers)


def get_or_create_session_id(request: Request) -> str:
    """Use X-Session-ID header or generate and attach to request for response header."""
    sid = (request.headers.get("X-Session-ID") or "").strip()
    if sid:
        return sid
    sid = str(uuid.uuid4())
    request.state.session_id = sid
    return sid


def client_id(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else "local")


def enforce_rate_limit(request: Request, limiter: RateLimiter = Depends(get_rate_limiter)) -> str:
    client = client_id(request)
    allowed, _ = limiter.check(client)
    if not allowed:
        raise _error(
            429, "RateLimitExceeded", "Too many requests",
            headers={"Retry-After": str(limiter.retry_after_seconds)},
        )
    return client


async def _read_upload(file: UploadFile, max_bytes: int) -> bytes:
    """Read the upload, stopping as soon as it is known to exceed max_bytes."""
    buf = bytearray()
    while chunk := await file.read(READ_CHUNK):
        buf.extend(chunk)
        if len(buf) > max_bytes:
            break
    return bytes(buf)


async def _admit(
    file: Optional[UploadFile],
    to: Optional[str],
    category: Category,
    session_id: Optional[str],
) -> ConversionRequest:
    """Run admission checks and build the request. Raises 400/413 before anything is queued."""
    if file is None:
        raise _error(400, "BadRequest", "A file must be uploaded in field 'file'")
    data = await _read_upload(file, MAX_UPLOAD_BYTES)
    size = max(len(data), file.size or 0)
    meta = FileMeta(filename=file.filename or "", size=size, content_type=file.content_type, head=data[:HEAD_BYTES])
    target = normalize_target(to)
    check = validate(meta, category, target=target)
    if not check.ok:
        logger.info("Rejected upload %s (%s bytes): %s", meta.filename, size, check.message)
    if check.outcome is Outcome.TOO_LARGE:
        raise _error(413, "PayloadTooLarge", check.message)
    if not check.ok:
        raise _error(400, "UnsupportedFormat", check.message)
    return ConversionRequest(
        data=data,
        filename=file.filename or "input",
        target=target,
        category=category,
        content_type=file.content_type,
        session_id=session_id,
    )


def _download_headers(file_name: str, duration_ms: int) -> dict[str, str]:
    ascii_name = re.sub(r"[^\x20-\x7E]", "_", file_name).replace('"', "_")
    return {
        "Content-Disposition": f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(file_name)}",
        "X-File-Name": quote(file_name),
        "X-Convert-Duration": str(duration_ms),
    }


async def _convert_now(
    category: Category,
    file: Optional[UploadFile],
    to: Optional[str],
    client: str,
    session_id: str,
    scheduler: TaskScheduler,
    gate: ConcurrencyGate,
) -> Response:
    conv = await _admit(file, to, category, session_id)
    if not gate.acquire(client):
        raise _error(503, "Busy", "Too many conversions in progress", headers={"Retry-After": "1"})
    started = time.monotonic()
    try:
        result = await asyncio.to_thread(scheduler.run_inline, conv)
    except ConversionFailure as e:
        raise _error(FAILURE_STATUS[e.kind], FAILURE_LABELS[e.kind], e.message)
    finally:
        gate.release(client)
    duration_ms = round((time.monotonic() - started) * 1000)
    return Response(
        content=result.data,
        media_type=result.mime,
        headers=_download_headers(result.file_name or "converted", duration_ms),
    )


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/metrics")
def get_metrics(
    monitor: HealthMonitor = Depends(get_health_monitor),
    scheduler: TaskScheduler = Depends(get_task_scheduler),
    limiter: RateLimiter = Depends(get_rate_limiter),
    gate: ConcurrencyGate = Depends(get_concurrency_gate),
):
    """Per-route request stats over the last window, alerts, and queue/limiter state."""
    report = monitor.report()
    report["queue"] = {
        "queued": scheduler.queued_count,
        "running": scheduler.running_count,
        "soft_limit": scheduler.soft_limit,
        "max_workers": scheduler.max_workers,
        "tasks": scheduler.store.stats(),
    }
    report["rate_limiter"] = limiter.status()
    report["concurrency"] = gate.status()
    return report


@router.get("/limits")
def get_limits(throttle: PollThrottle = Depends(get_poll_throttle), limiter: RateLimiter = Depends(get_rate_limiter)):
    """Upload and polling limits for the client."""
    return {
        "max_upload_mb": MAX_UPLOAD_MB,
        "max_upload_bytes": MAX_UPLOAD_BYTES,
        "min_poll_interval_ms": throttle.min_interval_ms,
        "poll_initial_delay_ms": POLL_BASE_DELAY_MS,
        "poll_max_delay_ms": POLL_MAX_DELAY_MS,
        "rate_limit_max": limiter.max_requests,
        "rate_limit_window_seconds": limiter.window,
    }


@router.get("/formats")
def get_formats():
    return {
        category.value: {
            "input": sorted(ACCEPTED_EXTENSIONS[category]),
            "output": list(ACCEPTED_TARGETS[category]),
        }
        for category in Category
    }


@router.get("/tools")
def get_tools(probe: ToolAvailabilityProbe = Depends(get_tool_probe)):
    """Availability of the external converters, per category."""
    return probe.snapshot()


@router.post("/tools/refresh")
def refresh_tools(probe: ToolAvailabilityProbe = Depends(get_tool_probe)):
    """Drop cached probe results, e.g. after installing a converter."""
    probe.invalidate()
    return probe.snapshot()


@router.post("/tasks")
async def create_task(
    file: Optional[UploadFile] = File(None),
    to: Optional[str] = Form("png"),
    category: Optional[str] = Form("image"),
    client: str = Depends(enforce_rate_limit),
    session_id: str = Depends(get_or_create_session_id),
    scheduler: TaskScheduler = Depends(get_task_scheduler),
):
    """Admit an upload and queue it. Worker failures surface later through GET /tasks/{id}."""
    parsed = parse_category(category)
    if parsed is None:
        raise _error(400, "UnsupportedFormat", f"Unknown category '{category}' (use image, doc or vector)")
    conv = await _admit(file, to, parsed, session_id)
    record = scheduler.enqueue(conv)
    return {"taskId": record.id}


@router.get("/tasks/{task_id}")
def get_task_progress(
    task_id: str,
    request: Request,
    scheduler: TaskScheduler = Depends(get_task_scheduler),
    throttle: PollThrottle = Depends(get_poll_throttle),
):
    """Current TaskProgress for a task. Read-only; polling too fast gets 429 + Retry-After."""
    wait_ms = throttle.check(client_id(request), task_id)
    if wait_ms is not None:
        raise HTTPException(
            429,
            detail={
                "error": "PollTooFrequent",
                "message": f"Poll at most every {throttle.min_interval_ms} ms",
                "retryAfterMs": wait_ms,
            },
            headers={"Retry-After": str(max(1, math.ceil(wait_ms / 1000)))},
        )
    record = scheduler.store.get(task_id)
    if record is None:
        raise _error(404, "NotFound", "Task not found")
    if not record.status.terminal:
        record = dataclasses.replace(record, retry_after_ms=scheduler.suggested_poll_delay_ms())
    return record.to_progress()


@router.post("/convert/image")
async def convert_image(
    file: Optional[UploadFile] = File(None),
    to: Optional[str] = Form(None),
    client: str = Depends(enforce_rate_limit),
    session_id: str = Depends(get_or_create_session_id),
    scheduler: TaskScheduler = Depends(get_task_scheduler),
    gate: ConcurrencyGate = Depends(get_concurrency_gate),
):
    """Re-encode an image and return the bytes."""
    return await _convert_now(Category.IMAGE, file, to, client, session_id, scheduler, gate)


@router.post("/convert/doc")
async def convert_doc(
    file: Optional[UploadFile] = File(None),
    to: Optional[str] = Form("pdf"),
    client: str = Depends(enforce_rate_limit),
    session_id: str = Depends(get_or_create_session_id),
    scheduler: TaskScheduler = Depends(get_task_scheduler),
    gate: ConcurrencyGate = Depends(get_concurrency_gate),
):
    """DOCX -> PDF through the office converter. 503 when it is not installed."""
    return await _convert_now(Category.DOC, file, to, client, session_id, scheduler, gate)


@router.post("/convert/vector")
async def convert_vector(
    file: Optional[UploadFile] = File(None),
    to: Optional[str] = Form(None),
    client: str = Depends(enforce_rate_limit),
    session_id: str = Depends(get_or_create_session_id),
    scheduler: TaskScheduler = Depends(get_task_scheduler),
    gate: ConcurrencyGate = Depends(get_concurrency_gate),
):
    """EPS/AI -> SVG/PNG through the vector converter. 503 when it is not installed."""
    return await _convert_now(Category.VECTOR, file, to, client, session_id, scheduler, gate)


@router.get("/session/stats")
def session_stats(session_id: str = Depends(get_or_create_session_id)):
    """Aggregated conversion stats for the current session."""
    return get_session_stats(session_id)


@router.get("/session/activities")
def session_activities(
    limit: int = Query(50, ge=1, le=200),
    session_id: str = Depends(get_or_create_session_id),
):
    """Recent conversions for the current session."""
    return {"activities": get_session_activities(session_id, limit=limit)}


@router.delete("/session/data")
def session_delete_data(session_id: str = Depends(get_or_create_session_id)):
    """Delete the session's conversion history."""
    removed = delete_session_data(session_id)
    return {"ok": True, "removed": removed}
