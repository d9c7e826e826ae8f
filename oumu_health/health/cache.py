"""TTL cache for check results, keyed by (category, config hash)."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .models import Category, CheckConfig, CheckResult

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0


@dataclass
class CacheEntry:
    result: CheckResult
    created_at: float
    ttl: float  # seconds

    def expired(self, now: float) -> bool:
        return now > self.created_at + self.ttl

    def remaining(self, now: float) -> float:
        return max(0.0, self.created_at + self.ttl - now)


def cache_key(category: Category, config: CheckConfig | dict[str, Any] | None = None) -> str:
    """Stable key: category plus a SHA-1 of the canonical config JSON."""
    if config is None:
        payload = ""
    else:
        data = config.to_dict() if isinstance(config, CheckConfig) else config
        payload = json.dumps(data, sort_keys=True, default=str)
    digest = hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]
    return f"{category.value}:{digest}"


class ResultCache:
    """In-memory result store. Expired entries are evicted lazily on get()."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> CheckResult | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(now):
                del self._entries[key]
                return None
            return entry.result

    def set(self, key: str, result: CheckResult, ttl: float | None = None) -> None:
        entry = CacheEntry(
            result=result,
            created_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup(self) -> int:
        """Evict every expired entry; return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expired(now)]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug("Cache cleanup evicted %d entries", len(expired))
        return len(expired)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            entries = [
                {
                    "key": key,
                    "category": entry.result.category.value,
                    "ttl": entry.ttl,
                    "remaining_ttl": round(entry.remaining(now), 3),
                }
                for key, entry in self._entries.items()
            ]
        return {"size": len(entries), "entries": entries}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
