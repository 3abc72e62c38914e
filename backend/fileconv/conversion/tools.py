"""Lookup of external converter binaries on PATH, cached for a short TTL."""
import logging
import shutil
import threading
import time
from typing import Callable, Optional

from fileconv.config import DOC_CONVERTER_BINARIES, TOOL_PROBE_TTL_SECONDS, VECTOR_CONVERTER_BINARIES
from fileconv.conversion.models import Category

logger = logging.getLogger("fileconv.tools")

# Helpers used by the vector fallback pipeline
FALLBACK_BINARIES = {
    "ghostscript": ("gs",),
    "pdf2svg": ("pdf2svg",),
    "imagemagick": ("magick", "convert"),
}


class ToolAvailabilityProbe:
    """Answers "is the binary for this category reachable?" without spawning anything.

    Results (including negative ones) are kept for ttl seconds and shared by all
    requests; invalidate() drops them.
    """

    def __init__(
        self,
        binaries: Optional[dict[Category, list[str]]] = None,
        ttl: float = TOOL_PROBE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        if binaries is None:
            binaries = {
                Category.IMAGE: [],
                Category.DOC: list(DOC_CONVERTER_BINARIES),
                Category.VECTOR: list(VECTOR_CONVERTER_BINARIES),
            }
        self._binaries = binaries
        self._ttl = ttl
        self._clock = clock
        self._which = which
        self._cache: dict[str, tuple[float, Optional[str]]] = {}
        self._lock = threading.Lock()

    def _lookup(self, name: str) -> Optional[str]:
        try:
            return self._which(name)
        except OSError as e:
            logger.warning("PATH lookup for %s failed: %s", name, e)
            return None

    def _resolve_names(self, key: str, names) -> Optional[str]:
        now = self._clock()
        with self._lock:
            hit = self._cache.get(key)
            if hit is not None and now - hit[0] < self._ttl:
                return hit[1]
        path = None
        for name in names:
            path = self._lookup(name)
            if path:
                break
        with self._lock:
            self._cache[key] = (now, path)
        if path is None:
            logger.info("No binary found for %s (tried %s)", key, ", ".join(names) or "nothing")
        return path

    def resolve(self, category: Category) -> Optional[str]:
        """Path of the binary for the category, or None. Image needs no binary and resolves to None."""
        names = self._binaries.get(category) or []
        if not names:
            return None
        return self._resolve_names(category.value, names)

    def available(self, category: Category) -> bool:
        if not self._binaries.get(category):
            return True
        return self.resolve(category) is not None

    def resolve_helper(self, helper: str) -> Optional[str]:
        return self._resolve_names(f"helper:{helper}", FALLBACK_BINARIES.get(helper, ()))

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()
        logger.info("Tool probe cache invalidated")

    def snapshot(self) -> dict:
        out = {}
        for category in Category:
            names = self._binaries.get(category) or []
            out[category.value] = {
                "required": names,
                "available": self.available(category),
                "path": self.resolve(category),
            }
        return out


# Singleton
_probe: Optional[ToolAvailabilityProbe] = None


def get_tool_probe() -> ToolAvailabilityProbe:
    global _probe
    if _probe is None:
        _probe = ToolAvailabilityProbe()
    return _probe
