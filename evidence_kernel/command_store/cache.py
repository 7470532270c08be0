"""
Command record cache.

Bounded, thread-safe LRU of command records in front of the durable
command ledger. A cache hit only saves a store round trip; the ledger
remains the source of truth, so losing the cache loses nothing.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from evidence_kernel.canonical import digest_record
from evidence_kernel.storage.base import CommandRecord

logger = logging.getLogger(__name__)


def make_command_key(tenant_id: str, command_id: str) -> str:
    """Cache key for a tenant-scoped command id."""
    return f"cmd:{digest_record([tenant_id, command_id])}"


class CommandCache:
    """
    Thread-safe LRU cache of command records.

    Entries expire with the record they hold (`expires_at`), judged
    against the injected clock.
    """

    def __init__(self, max_size: int, clock: Optional[Callable[[], datetime]] = None):
        self.max_size = max_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cache: OrderedDict[str, CommandRecord] = OrderedDict()
        self._lock = threading.Lock()

        # Metrics
        self.hits = 0
        self.misses = 0

    def get(self, tenant_id: str, command_id: str) -> Optional[CommandRecord]:
        """Live record for the command, or None."""
        key = make_command_key(tenant_id, command_id)
        with self._lock:
            record = self._cache.get(key)
            if record is None:
                self.misses += 1
                return None

            if record.is_expired(self._clock()):
                del self._cache[key]
                self.misses += 1
                return None

            self._cache.move_to_end(key)
            self.hits += 1
            return record

    def put(self, record: CommandRecord) -> None:
        if self.max_size <= 0:
            return
        key = make_command_key(record.tenant_id, record.command_id)
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            self._cache[key] = record

            while len(self._cache) > self.max_size:
                self._cache.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self.hits = 0
            self.misses = 0

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns count of removed entries."""
        now = self._clock()
        with self._lock:
            expired = [k for k, r in self._cache.items() if r.is_expired(now)]
            for key in expired:
                del self._cache[key]
        return len(expired)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def size(self) -> int:
        return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 4),
        }
