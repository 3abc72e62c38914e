"""Application configuration. Loads from environment and .env file."""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
# Load .env from cwd, then backend/.env, then project root .env
load_dotenv()
load_dotenv(BASE_DIR / ".env")
load_dotenv(BASE_DIR.parent / ".env")


def _csv(name: str, default: str) -> list[str]:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


# Upload limits
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "10"))
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * 1024 * 1024

# Supported formats per category
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tif", ".tiff", ".webp", ".avif"}
DOC_EXTENSIONS = {".docx"}
VECTOR_EXTENSIONS = {".eps", ".ai"}
IMAGE_OUTPUT_FORMATS = ["png", "jpeg", "webp", "avif", "tiff"]
DOC_OUTPUT_FORMATS = ["pdf"]
VECTOR_OUTPUT_FORMATS = ["svg", "png"]

# Conversion options (env overrides)
DEFAULT_QUALITY = int(os.getenv("DEFAULT_QUALITY", "85"))
WEBP_METHOD = int(os.getenv("WEBP_METHOD", "4"))
AVIF_QUALITY = int(os.getenv("AVIF_QUALITY", "60"))
VECTOR_PNG_DENSITY = int(os.getenv("VECTOR_PNG_DENSITY", "300"))

# External tools: candidate binaries looked up on PATH, in order
DOC_CONVERTER_BINARIES = _csv("DOC_CONVERTER_BINARIES", "soffice,libreoffice")
VECTOR_CONVERTER_BINARIES = _csv("VECTOR_CONVERTER_BINARIES", "inkscape")
EXTERNAL_TOOL_TIMEOUT = int(os.getenv("EXTERNAL_TOOL_TIMEOUT", "30"))
TOOL_PROBE_TTL_SECONDS = float(os.getenv("TOOL_PROBE_TTL_SECONDS", "5"))

# Concurrency
MAX_WORKERS = int(os.getenv("MAX_WORKERS", str(min(8, (os.cpu_count() or 4)))))
QUEUE_SOFT_LIMIT = int(os.getenv("QUEUE_SOFT_LIMIT", "50"))

# Task store retention (seconds). Terminal records live TASK_RETENTION_SECONDS after
# their last update; pending records older than TASK_STALE_SECONDS are dropped too.
TASK_RETENTION_SECONDS = int(os.getenv("TASK_RETENTION_SECONDS", "900"))
TASK_STALE_SECONDS = int(os.getenv("TASK_STALE_SECONDS", "3600"))

# Result cache
RESULT_CACHE_TTL_SECONDS = int(os.getenv("RESULT_CACHE_TTL_SECONDS", "3600"))
RESULT_CACHE_MAX_ENTRIES = int(os.getenv("RESULT_CACHE_MAX_ENTRIES", "64"))

# Polling
MIN_POLL_INTERVAL_MS = int(os.getenv("MIN_POLL_INTERVAL_MS", "500"))
POLL_BASE_DELAY_MS = int(os.getenv("POLL_BASE_DELAY_MS", "800"))
POLL_MAX_DELAY_MS = int(os.getenv("POLL_MAX_DELAY_MS", "2000"))

# Request limits per client IP
RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "30"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
CONCURRENCY_PER_CLIENT = int(os.getenv("CONCURRENCY_PER_CLIENT", "2"))
CONCURRENCY_TOTAL = int(os.getenv("CONCURRENCY_TOTAL", "8"))

# Health monitoring: rolling window for per-route stats, slow-response alert threshold
HEALTH_WINDOW_SECONDS = int(os.getenv("HEALTH_WINDOW_SECONDS", "60"))
SLOW_RESPONSE_MS = int(os.getenv("SLOW_RESPONSE_MS", "2000"))
HEALTH_MAX_ALERTS = int(os.getenv("HEALTH_MAX_ALERTS", "20"))

# Database – SQLite by default; any SQLAlchemy URL works via DATABASE_URL.
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
if not DATABASE_URL:
    DATABASE_URL = f"sqlite:///{BASE_DIR / 'data' / 'fileconv.db'}"

# Server (for uvicorn)
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
# CORS: comma-separated origins, e.g. "http://localhost:3000,http://127.0.0.1:3000"
CORS_ORIGINS = _csv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("fileconv")
