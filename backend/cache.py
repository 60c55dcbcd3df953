"""Short-lived memo of successful workflow outcomes.

Repeated submissions of the same request for the same project within the TTL
return the cached outcome without provisioning a sandbox or calling the LLM.
"""

import hashlib
import json
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger()


def request_fingerprint(project_id: str, raw_prompt: str) -> str:
    """Cache key for a request.

    Whitespace runs in the prompt are collapsed so formatting-only
    differences map to the same key.
    """
    normalized = " ".join(raw_prompt.split())
    canonical = json.dumps(
        {"projectId": project_id, "value": normalized},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    key: str
    value: Any
    timestamp: float


class ResponseCache:
    """TTL and capacity bounded cache, safe to share across runs.

    Args:
        ttl_seconds: Lifetime of an entry.
        capacity: Maximum number of entries; the oldest inserted entry is
            evicted first.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        capacity: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.capacity = capacity
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        """Return the live value for ``key``; stale entries are dropped."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.timestamp >= self.ttl_seconds:
                del self._entries[key]
                logger.debug("cache_entry_expired", key=key[:12])
                return None
            return entry.value

    def set(self, key: str, value: Any) -> None:
        """Insert or refresh ``key``, evicting the oldest entry when full."""
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(key=key, value=value, timestamp=self._clock())
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("cache_entry_evicted", key=evicted[:12])

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
