"""FastAPI application entry point."""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fileconv.api.routes import router
from fileconv.config import CORS_ORIGINS, logger as config_logger
from fileconv.conversion.scheduler import shutdown_task_scheduler
from fileconv.db import init_db
from fileconv.monitoring import get_health_monitor, route_label

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    config_logger.info("Converter API started")
    yield
    config_logger.info("Converter API shutting down")
    shutdown_task_scheduler()


app = FastAPI(
    title="File Converter API",
    description="Convert images, DOCX documents and EPS/AI vectors, inline or through a polled task queue.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-File-Name", "X-Convert-Duration", "X-Session-ID", "Retry-After"],
)


async def session_header_middleware(request, call_next):
    """Set X-Session-ID on response when the session was created by the dependency."""
    response = await call_next(request)
    if hasattr(request.state, "session_id"):
        response.headers["X-Session-ID"] = request.state.session_id
    return response


app.middleware("http")(session_header_middleware)


async def health_span_middleware(request, call_next):
    """Record duration and outcome of task and conversion requests. Throttled polls are not counted."""
    route = route_label(request.method, request.url.path)
    if route is None:
        return await call_next(request)
    started = time.monotonic()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        if status != 429:
            get_health_monitor().record(route, (time.monotonic() - started) * 1000, status < 400)


app.middleware("http")(health_span_middleware)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from fileconv.config import HOST, PORT
    uvicorn.run("fileconv.main:app", host=HOST, port=PORT, reload=True)
