"""
Response cache for read operations.

Entries are keyed by a fingerprint of the operation name plus the request
body with mapping keys sorted, so semantically identical requests share one
entry. The key is a URL-safe base64 encoding of that canonical JSON, which
lets table invalidation decode a key back into its request body.
"""

import asyncio
import base64
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Operations whose responses may be cached. Everything else is a write or
# has side effects and always goes to the server.
CACHEABLE_OPERATIONS = frozenset({
    "select",
    "get_by_hash",
    "get_by_hashes",
    "search_by_hash",
    "search_by_value",
    "search_by_conditions",
    "describe_table",
    "describe_schema",
    "describe_all",
    "list_tables",
    "list_schemas",
    "list_attributes",
    "list_users",
    "sql",
})

READ_SQL_PREFIXES = ("SELECT", "SHOW", "DESCRIBE", "WITH")


@dataclass(frozen=True)
class CacheEntry:
    """A cached response and the moment it was stored."""

    fingerprint: str
    payload: Any
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl


def canonicalize(value: Any) -> Any:
    """Recursively sort mapping keys; sequences keep their order."""
    if isinstance(value, dict):
        return {str(k): canonicalize(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    return value


def is_cacheable(operation: str, body: Any) -> bool:
    """Whether responses to this request may be served from cache."""
    op = (operation or "").lower()
    if op not in CACHEABLE_OPERATIONS:
        return False
    if op == "sql":
        statement = body.get("sql") if isinstance(body, dict) else None
        if not isinstance(statement, str):
            return False
        return statement.lstrip().upper().startswith(READ_SQL_PREFIXES)
    return True


def compute_fingerprint(operation: str, body: Any) -> str:
    """
    Compute the cache key for a request.

    Args:
        operation: Operation name (e.g. "search_by_value")
        body: Request body without the operation field

    Returns:
        Cache key, or "" when the request must not be cached
    """
    if not is_cacheable(operation, body):
        return ""
    try:
        canonical = json.dumps(
            {"operation": operation, "body": canonicalize(body)},
            separators=(",", ":"),
            ensure_ascii=False,
        )
    except (TypeError, ValueError):
        return ""
    return base64.urlsafe_b64encode(canonical.encode("utf-8")).decode("ascii")


def decode_fingerprint(key: str) -> dict[str, Any] | None:
    """Decode a cache key back to {"operation", "body"}; None if malformed."""
    try:
        decoded = json.loads(base64.urlsafe_b64decode(key.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None
    return decoded if isinstance(decoded, dict) else None


class QueryCache:
    """
    Bounded TTL cache of operation responses.

    Eviction at capacity removes the oldest inserted entry (FIFO); reads do
    not refresh an entry's position. Expired entries are dropped when read
    and by a periodic background sweep.

    All methods are synchronous and never raise, so the cache can sit on the
    request path without adding failure modes.
    """

    def __init__(
        self,
        enabled: bool = False,
        ttl: float = 5.0,
        max_size: int = 1000,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            enabled: Whether lookups and stores are active
            ttl: Default entry lifetime in seconds
            max_size: Maximum number of live entries
            sweep_interval: Seconds between background sweeps
            clock: Monotonic time source (injectable for tests)
        """
        self.enabled = enabled
        self.ttl = ttl
        self.max_size = max_size
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

        self.hits = 0
        self.misses = 0
        self.evictions = 0

        self._sweeper_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    @classmethod
    def from_config(cls, cache_config, **kwargs) -> "QueryCache":
        """Build a cache from a CacheConfig."""
        return cls(
            enabled=cache_config.enabled,
            ttl=cache_config.ttl,
            max_size=cache_config.max_size,
            sweep_interval=cache_config.sweep_interval,
            **kwargs,
        )

    compute_fingerprint = staticmethod(compute_fingerprint)

    def get(self, key: str) -> CacheEntry | None:
        """Return the live entry for key, or None."""
        if not key or not self.enabled:
            return None

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry

    def put(self, key: str, payload: Any, ttl: float | None = None) -> None:
        """Store payload under key, evicting the oldest entry at capacity."""
        if not key or not self.enabled:
            return

        effective_ttl = ttl if ttl is not None and ttl > 0 else self.ttl
        with self._lock:
            if key in self._entries:
                # Replacement is a fresh insertion
                del self._entries[key]
            elif len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug(f"Cache at capacity ({self.max_size}), evicted oldest entry")
            self._entries[key] = CacheEntry(
                fingerprint=key,
                payload=payload,
                stored_at=self._clock(),
                ttl=effective_ttl,
            )

    def invalidate(self, table: str, schema: str | None = None) -> int:
        """
        Remove entries whose request body names this table.

        An entry matches when its body's table equals `table` and either
        `schema` is None, the body carries no schema, or the schemas are equal.

        Returns:
            Number of entries removed
        """
        removed = 0
        with self._lock:
            for key in list(self._entries):
                decoded = decode_fingerprint(key)
                if decoded is None:
                    continue
                body = decoded.get("body")
                if not isinstance(body, dict) or body.get("table") != table:
                    continue
                body_schema = body.get("schema")
                if schema is None or not body_schema or body_schema == schema:
                    del self._entries[key]
                    removed += 1

        if removed:
            logger.debug(f"Invalidated {removed} cached responses for {schema or '*'}.{table}")
        return removed

    def clear(self) -> None:
        """Drop all entries."""
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics for monitoring."""
        total = self.hits + self.misses
        return {
            "enabled": self.enabled,
            "size": len(self),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": self.hits / total if total > 0 else 0.0,
        }

    # ------------------------------------------------------------------
    # Background sweeper
    # ------------------------------------------------------------------

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper_task is not None and not self._sweeper_task.done()

    def start_sweeper(self) -> asyncio.Task | None:
        """
        Start the periodic sweep task on the running event loop.

        Returns:
            The sweeper task, or None when caching is disabled
        """
        if not self.enabled:
            return None
        if self.sweeper_running:
            return self._sweeper_task

        self._stop_event = asyncio.Event()
        self._sweeper_task = asyncio.create_task(self._sweep_loop(self._stop_event))
        logger.debug(f"Cache sweeper started (interval={self.sweep_interval}s)")
        return self._sweeper_task

    async def _sweep_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.sweep_interval)
            except asyncio.TimeoutError:
                self.sweep()

    async def stop_sweeper(self, timeout: float | None = 5.0) -> bool:
        """
        Stop the sweeper task gracefully.

        Args:
            timeout: Maximum time to wait (seconds)

        Returns:
            True if stopped cleanly, False if it had to be cancelled
        """
        if self._sweeper_task is None:
            return True

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._sweeper_task, timeout=timeout)
            return True
        except asyncio.TimeoutError:
            self._sweeper_task.cancel()
            return False
        finally:
            self._sweeper_task = None
            self._stop_event = None
