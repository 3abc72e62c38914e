"""Admission checks for uploads: size, extension, MIME and leading bytes.

Everything here is pure. The route reads at most MAX_UPLOAD_BYTES + 1 bytes,
builds a FileMeta and calls validate() before any tool is probed or any task
is created.
"""
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePath
from typing import Optional

from fileconv.config import (
    DOC_EXTENSIONS,
    DOC_OUTPUT_FORMATS,
    IMAGE_EXTENSIONS,
    IMAGE_OUTPUT_FORMATS,
    MAX_UPLOAD_BYTES,
    VECTOR_EXTENSIONS,
    VECTOR_OUTPUT_FORMATS,
)
from fileconv.conversion.models import Category

GENERIC_MIME = {"application/octet-stream", "binary/octet-stream", ""}

ACCEPTED_EXTENSIONS = {
    Category.IMAGE: IMAGE_EXTENSIONS,
    Category.DOC: DOC_EXTENSIONS,
    Category.VECTOR: VECTOR_EXTENSIONS,
}

ACCEPTED_TARGETS = {
    Category.IMAGE: IMAGE_OUTPUT_FORMATS,
    Category.DOC: DOC_OUTPUT_FORMATS,
    Category.VECTOR: VECTOR_OUTPUT_FORMATS,
}

ACCEPTED_MIME = {
    Category.IMAGE: {
        "image/jpeg", "image/pjpeg", "image/png", "image/gif", "image/bmp", "image/x-ms-bmp",
        "image/tiff", "image/webp", "image/avif",
    },
    Category.DOC: {
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/zip",
    },
    Category.VECTOR: {
        "application/postscript", "application/eps", "application/x-eps", "image/eps",
        "image/x-eps", "application/illustrator", "application/pdf",
    },
}

# Leading-byte signatures per extension (.webp and .avif are container formats,
# checked in _matches_signature).
_ZIP = (b"PK\x03\x04",)
_EPS = (b"%!PS", b"\xc5\xd0\xd3\xc6")
SIGNATURES: dict[str, tuple[bytes, ...]] = {
    ".jpg": (b"\xff\xd8\xff",),
    ".jpeg": (b"\xff\xd8\xff",),
    ".png": (b"\x89PNG\r\n\x1a\n",),
    ".gif": (b"GIF87a", b"GIF89a"),
    ".bmp": (b"BM",),
    ".tif": (b"II*\x00", b"MM\x00*"),
    ".tiff": (b"II*\x00", b"MM\x00*"),
    ".docx": _ZIP,
    ".eps": _EPS,
    ".ai": _EPS + (b"%PDF",),
}
HEAD_BYTES = 16


class Outcome(str, Enum):
    OK = "ok"
    TOO_LARGE = "too_large"
    UNSUPPORTED_FORMAT = "unsupported_format"


@dataclass(frozen=True)
class FileMeta:
    filename: str
    size: int
    content_type: Optional[str] = None
    head: bytes = b""

    @property
    def extension(self) -> str:
        return PurePath(self.filename or "").suffix.lower()


@dataclass(frozen=True)
class Validation:
    outcome: Outcome
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


def _unsupported(message: str) -> Validation:
    return Validation(Outcome.UNSUPPORTED_FORMAT, message)


def _matches_signature(ext: str, head: bytes) -> bool:
    if ext == ".webp":
        return head[:4] == b"RIFF" and head[8:12] == b"WEBP"
    if ext == ".avif":
        return head[4:8] == b"ftyp" and head[8:12] in (b"avif", b"avis")
    signatures = SIGNATURES.get(ext)
    if signatures is None:
        return True
    return any(head.startswith(sig) for sig in signatures)


def parse_category(value: Optional[str]) -> Optional[Category]:
    try:
        return Category((value or "").strip().lower())
    except ValueError:
        return None


def validate(meta: FileMeta, category, target: Optional[str] = None, max_bytes: int = MAX_UPLOAD_BYTES) -> Validation:
    """Admit or reject an upload. Size is checked first so oversized files are always 413."""
    if meta.size > max_bytes:
        limit = f"{max_bytes // (1024 * 1024)} MB" if max_bytes >= 1024 * 1024 else f"{max_bytes} bytes"
        return Validation(Outcome.TOO_LARGE, f"File exceeds {limit}")
    if not isinstance(category, Category):
        category = parse_category(category)
        if category is None:
            return _unsupported("Unknown category")

    ext = meta.extension
    accepted = ACCEPTED_EXTENSIONS[category]
    if ext not in accepted:
        return _unsupported(f"{category.value} accepts {', '.join(sorted(accepted))}; got '{ext or 'no extension'}'")

    mime = (meta.content_type or "").split(";", 1)[0].strip().lower()
    if mime not in GENERIC_MIME and mime not in ACCEPTED_MIME[category]:
        return _unsupported(f"Content type {mime} is not accepted for {category.value}")

    if not _matches_signature(ext, meta.head[:HEAD_BYTES]):
        return _unsupported(f"File content does not look like {ext}")

    if target is not None:
        target = normalize_target(target)
        if target not in ACCEPTED_TARGETS[category]:
            return _unsupported(
                f"Target format '{target}' not supported for {category.value} "
                f"(use {', '.join(ACCEPTED_TARGETS[category])})"
            )
    return Validation(Outcome.OK)


def normalize_target(target: Optional[str]) -> str:
    target = (target or "").strip().lower()
    return "jpeg" if target == "jpg" else target
