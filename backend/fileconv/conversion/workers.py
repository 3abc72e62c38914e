"""Per-category converters: Pillow for images, external binaries for doc and vector."""
import io
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Optional

from PIL import Image, UnidentifiedImageError

from fileconv.config import (
    AVIF_QUALITY,
    DEFAULT_QUALITY,
    EXTERNAL_TOOL_TIMEOUT,
    VECTOR_PNG_DENSITY,
    WEBP_METHOD,
)
from fileconv.conversion.models import Category, ConversionFailure, ConversionResult, FailureKind
from fileconv.conversion.tools import ToolAvailabilityProbe

logger = logging.getLogger("fileconv.workers")

ProgressCallback = Callable[[int, str], None]

MIME_TYPES = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "avif": "image/avif",
    "tiff": "image/tiff",
    "pdf": "application/pdf",
    "svg": "image/svg+xml",
}


def _noop_progress(progress: int, message: str) -> None:
    pass


class ToolError(RuntimeError):
    """An external tool exited non-zero, timed out or left no output."""


def run_tool(cmd: list[str], timeout: int = EXTERNAL_TOOL_TIMEOUT) -> None:
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise ToolError(f"{Path(cmd[0]).name} timed out after {timeout}s")
    if result.returncode != 0:
        raise ToolError(result.stderr or result.stdout or f"{Path(cmd[0]).name} failed")


class ConversionWorker:
    """Base worker. convert() is the only entry point and only ever raises ConversionFailure."""

    category: Category
    targets: tuple[str, ...] = ()

    def __init__(self, probe: Optional[ToolAvailabilityProbe] = None):
        self.probe = probe

    def convert(
        self,
        data: bytes,
        target: str,
        *,
        source_ext: str = "",
        on_progress: Optional[ProgressCallback] = None,
    ) -> ConversionResult:
        on_progress = on_progress or _noop_progress
        target = target.lower()
        if target not in self.targets:
            raise ConversionFailure(
                FailureKind.UNSUPPORTED_FORMAT,
                f"Target format '{target}' not supported for {self.category.value}",
            )
        if self.probe is not None and not self.probe.available(self.category):
            raise ConversionFailure(FailureKind.TOOL_UNAVAILABLE, f"Converter for {self.category.value} is not installed")
        on_progress(15, "Preparing conversion")
        try:
            out = self._convert(data, target, source_ext.lower().lstrip("."), on_progress)
        except ConversionFailure:
            raise
        except FileNotFoundError as e:
            logger.error("Converter binary disappeared for %s: %s", self.category.value, e)
            if self.probe is not None:
                self.probe.invalidate()
            raise ConversionFailure(FailureKind.TOOL_UNAVAILABLE, f"Converter for {self.category.value} is not installed")
        except Exception as e:
            logger.exception("%s conversion to %s failed: %s", self.category.value, target, e)
            raise ConversionFailure(FailureKind.INTERNAL_ERROR, f"Conversion failed: {e}")
        on_progress(80, "Encoding output")
        return ConversionResult(data=out, mime=MIME_TYPES[target])

    def _convert(self, data: bytes, target: str, source_ext: str, on_progress: ProgressCallback) -> bytes:
        raise NotImplementedError


class ImageWorker(ConversionWorker):
    category = Category.IMAGE
    targets = ("png", "jpeg", "webp", "avif", "tiff")

    def _convert(self, data: bytes, target: str, source_ext: str, on_progress: ProgressCallback) -> bytes:
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
        except UnidentifiedImageError:
            raise ConversionFailure(FailureKind.UNSUPPORTED_FORMAT, "File is not a readable image")
        with img:
            if img.mode in ("RGBA", "LA", "P") and target == "jpeg":
                work = img.convert("RGB")
            elif "transparency" in img.info and img.mode in ("P", "L", "RGB") and target != "jpeg":
                # palette or colour-key transparency becomes a real alpha channel
                work = img.convert("RGBA")
            elif img.mode not in ("RGB", "RGBA", "L"):
                work = img.convert("RGBA" if "A" in img.getbands() else "RGB")
            else:
                work = img
            if target == "webp":
                save_kw = {"format": "WEBP", "quality": DEFAULT_QUALITY, "method": WEBP_METHOD}
            elif target == "jpeg":
                save_kw = {"format": "JPEG", "quality": DEFAULT_QUALITY, "optimize": True}
            elif target == "png":
                save_kw = {"format": "PNG", "optimize": True, "compress_level": 9}
            elif target == "avif":
                save_kw = {"format": "AVIF", "quality": AVIF_QUALITY}
            else:
                save_kw = {"format": "TIFF", "compression": "tiff_lzw"}
            on_progress(50, f"Encoding {target}")
            buf = io.BytesIO()
            work.save(buf, **save_kw)
        logger.info("Converted image (%s bytes) -> %s (%s bytes)", len(data), target, buf.tell())
        return buf.getvalue()


class DocWorker(ConversionWorker):
    category = Category.DOC
    targets = ("pdf",)

    def _convert(self, data: bytes, target: str, source_ext: str, on_progress: ProgressCallback) -> bytes:
        binary = (self.probe.resolve(self.category) if self.probe else None) or "soffice"
        with tempfile.TemporaryDirectory(prefix="fileconv-") as tmp:
            src = Path(tmp) / "input.docx"
            src.write_bytes(data)
            on_progress(30, "Running office converter")
            # a private profile per run, so parallel conversions do not lock each other out
            profile = Path(tmp, "profile").as_uri()
            run_tool([
                binary, f"-env:UserInstallation={profile}",
                "--headless", "--convert-to", "pdf", "--outdir", tmp, str(src),
            ])
            out = Path(tmp) / "input.pdf"
            if not out.is_file():
                raise ToolError("Office converter produced no PDF")
            return out.read_bytes()


class VectorWorker(ConversionWorker):
    category = Category.VECTOR
    targets = ("svg", "png")

    def _convert(self, data: bytes, target: str, source_ext: str, on_progress: ProgressCallback) -> bytes:
        binary = (self.probe.resolve(self.category) if self.probe else None) or "inkscape"
        source_ext = source_ext if source_ext in ("eps", "ai") else "eps"
        with tempfile.TemporaryDirectory(prefix="fileconv-") as tmp:
            src = Path(tmp) / f"input.{source_ext}"
            out = Path(tmp) / f"output.{target}"
            src.write_bytes(data)
            on_progress(30, "Running vector converter")
            try:
                run_tool([binary, str(src), f"--export-type={target}", f"--export-filename={out}"])
                if not out.is_file():
                    raise ToolError("Vector converter produced no output")
            except ToolError as e:
                logger.warning("inkscape failed (%s); trying fallback pipeline", e)
                on_progress(50, "Running fallback pipeline")
                self._fallback(src, out, target)
            return out.read_bytes()

    def _fallback(self, src: Path, out: Path, target: str) -> None:
        helper = self.probe.resolve_helper if self.probe else None
        if target == "svg":
            gs = helper("ghostscript") if helper else "gs"
            pdf2svg = helper("pdf2svg") if helper else "pdf2svg"
            if not gs or not pdf2svg:
                raise ToolError("Vector converter failed and no Ghostscript/pdf2svg fallback is installed")
            pdf = src.with_name("fallback.pdf")
            run_tool([gs, "-dSAFER", "-dBATCH", "-dNOPAUSE", "-sDEVICE=pdfwrite", f"-sOutputFile={pdf}", str(src)])
            run_tool([pdf2svg, str(pdf), str(out)])
        else:
            magick = helper("imagemagick") if helper else "magick"
            if not magick:
                raise ToolError("Vector converter failed and no ImageMagick fallback is installed")
            run_tool([
                magick, "-density", str(VECTOR_PNG_DENSITY), str(src),
                "-background", "white", "-alpha", "remove", "-alpha", "off", str(out),
            ])
        if not out.is_file():
            raise ToolError("Fallback pipeline produced no output")


def build_workers(probe: ToolAvailabilityProbe) -> dict[Category, ConversionWorker]:
    return {
        Category.IMAGE: ImageWorker(probe),
        Category.DOC: DocWorker(probe),
        Category.VECTOR: VectorWorker(probe),
    }
