"""Conversion request/response models and task state."""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Category(str, Enum):
    IMAGE = "image"
    DOC = "doc"
    VECTOR = "vector"


class TaskStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self is not TaskStatus.PENDING


class FailureKind(str, Enum):
    UNSUPPORTED_FORMAT = "unsupported_format"
    TOOL_UNAVAILABLE = "tool_unavailable"
    INTERNAL_ERROR = "internal_error"


class ExecutionMode(str, Enum):
    INLINE = "inline"
    QUEUED = "queued"


class ConversionFailure(Exception):
    """Categorized worker failure. Never escapes the scheduler as anything else."""

    def __init__(self, kind: FailureKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class TaskStateError(Exception):
    """Raised when a write would break a TaskRecord invariant."""


@dataclass(frozen=True)
class ConversionRequest:
    data: bytes
    filename: str
    target: str
    category: Category
    content_type: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def source_ext(self) -> str:
        name = self.filename.lower()
        return name.rsplit(".", 1)[-1] if "." in name else ""


@dataclass(frozen=True)
class ConversionResult:
    data: bytes
    mime: str
    file_name: Optional[str] = None
    cached: bool = False


@dataclass(frozen=True)
class TaskRecord:
    """Server-held lifecycle state for one conversion job. Replaced, never edited."""

    id: str
    category: Category
    status: TaskStatus = TaskStatus.PENDING
    progress: int = 0
    message: Optional[str] = None
    mime: Optional[str] = None
    data_base64: Optional[str] = None
    file_name: Optional[str] = None
    file_url: Optional[str] = None
    retry_after_ms: Optional[int] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_progress(self) -> dict:
        """TaskProgress projection; unset fields are left out."""
        out = {
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "dataBase64": self.data_base64,
            "mime": self.mime,
            "fileName": self.file_name,
            "fileUrl": self.file_url,
            "retryAfterMs": self.retry_after_ms,
        }
        return {k: v for k, v in out.items() if v is not None}
