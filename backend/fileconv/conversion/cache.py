"""Content-addressed cache of finished conversions (in memory, TTL + size bound)."""
import hashlib
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from fileconv.config import RESULT_CACHE_MAX_ENTRIES, RESULT_CACHE_TTL_SECONDS
from fileconv.conversion.models import Category, ConversionResult


def cache_key(data: bytes, category: Category, target: str) -> str:
    h = hashlib.sha256()
    h.update(data)
    h.update(category.value.encode())
    h.update(target.encode())
    return f"conv:{h.hexdigest()}"


class ResultCache:
    def __init__(
        self,
        ttl: float = RESULT_CACHE_TTL_SECONDS,
        max_entries: int = RESULT_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl
        self._max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[float, ConversionResult]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[ConversionResult]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, result = entry
            if self._clock() > expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return result

    def set(self, key: str, result: ConversionResult) -> None:
        if self._max_entries <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + self._ttl, result)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
