"""TTL-bounded in-memory cache of aggregated envelopes."""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from snaxel.tools.search.schema import Envelope
from snaxel.tools.search.sources import Source

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class CacheEntry:
    envelope: Envelope
    stored_at: float


def normalize_query(query: str) -> str:
    return query.strip().casefold()


class ResultCache:
    """Maps a (query, source set) pair to the envelope computed for it.

    Entries older than `ttl_seconds` are never returned; they are evicted
    lazily on access or by `cleanup()`. Keys ignore source order and query
    case. Writes replace the whole entry.

    `max_entries` optionally bounds the cache, evicting the least recently
    used entry on overflow. `clock` must be monotonic; tests inject a fake one.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeper = threading.Event()

    @staticmethod
    def key(query: str, sources: Iterable) -> str:
        ids = sorted({s.value if isinstance(s, Source) else str(s) for s in sources})
        return f"{normalize_query(query)}|{','.join(ids)}"

    def get(self, query: str, sources: Iterable) -> Optional[Envelope]:
        key = self.key(query, sources)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry.envelope

    def put(self, query: str, sources: Iterable, envelope: Envelope) -> None:
        key = self.key(query, sources)
        with self._lock:
            self._entries[key] = CacheEntry(envelope=envelope, stored_at=self._clock())
            self._entries.move_to_end(key)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    logger.debug("Evicted least recently used cache entry %r", evicted)

    def has(self, query: str, sources: Iterable) -> bool:
        return self.get(query, sources) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        """Entries currently stored, including stale ones not yet swept."""
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def cleanup(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [
                key for key, entry in self._entries.items()
                if now - entry.stored_at > self.ttl_seconds
            ]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Cache sweep removed %d expired entries", len(expired))
        return len(expired)

    def start_sweeper(self, interval_seconds: float) -> None:
        """Run `cleanup()` every `interval_seconds` on a daemon thread."""
        if interval_seconds <= 0 or (self._sweeper and self._sweeper.is_alive()):
            return
        self._stop_sweeper.clear()

        def _sweep():
            while not self._stop_sweeper.wait(interval_seconds):
                self.cleanup()

        self._sweeper = threading.Thread(target=_sweep, name="snaxel-cache-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop_sweeper.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None
