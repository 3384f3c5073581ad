"""
Tests for the response cache (fingerprints, TTL, eviction, invalidation, sweeper).
"""

import asyncio
import threading

import pytest

from vertector_harperdb.cache import (
    QueryCache,
    compute_fingerprint,
    decode_fingerprint,
    is_cacheable,
)


# ============================================================================
# Fingerprint Tests
# ============================================================================

@pytest.mark.unit
class TestFingerprint:
    """Test cache key computation."""

    def test_key_order_does_not_matter(self):
        """Test that bodies differing only in key order share a key."""
        a = compute_fingerprint("search_by_value", {"schema": "dev", "table": "dog", "search_value": 1})
        b = compute_fingerprint("search_by_value", {"search_value": 1, "table": "dog", "schema": "dev"})
        assert a != ""
        assert a == b

    def test_nested_key_order_does_not_matter(self):
        """Test that nested mappings are canonicalized too."""
        a = compute_fingerprint("search_by_conditions", {"table": "t", "conditions": [{"a": 1, "b": 2}]})
        b = compute_fingerprint("search_by_conditions", {"conditions": [{"b": 2, "a": 1}], "table": "t"})
        assert a == b

    def test_list_order_matters(self):
        """Test that sequences keep their order in the key."""
        a = compute_fingerprint("search_by_hash", {"table": "t", "hash_values": [1, 2]})
        b = compute_fingerprint("search_by_hash", {"table": "t", "hash_values": [2, 1]})
        assert a != b

    def test_writes_are_not_cacheable(self):
        """Test that write operations produce an empty key."""
        for operation in ("insert", "update", "upsert", "delete", "create_table", "drop_table"):
            assert compute_fingerprint(operation, {"table": "t"}) == ""

    def test_write_sql_is_not_cacheable(self):
        """Test that only read SQL statements are cacheable."""
        assert compute_fingerprint("sql", {"sql": "UPDATE dev.dog SET a = 1"}) == ""
        assert compute_fingerprint("sql", {"sql": "DELETE FROM dev.dog"}) == ""
        assert compute_fingerprint("sql", {"sql": "  select * from dev.dog"}) != ""

    def test_unserializable_body_is_not_cacheable(self):
        """Test that a body that cannot be encoded yields an empty key."""
        assert compute_fingerprint("search_by_value", {"table": "t", "search_value": object()}) == ""

    def test_decode_round_trip(self):
        """Test that a key decodes back to operation and body."""
        key = compute_fingerprint("describe_table", {"schema": "dev", "table": "dog"})
        decoded = decode_fingerprint(key)
        assert decoded == {"operation": "describe_table", "body": {"schema": "dev", "table": "dog"}}

    def test_decode_garbage(self):
        """Test that malformed keys decode to None."""
        assert decode_fingerprint("not base64 !!") is None

    def test_is_cacheable_case_insensitive_operation(self):
        """Test that operation names are matched case-insensitively."""
        assert is_cacheable("DESCRIBE_TABLE", {}) is True


# ============================================================================
# Get / Put Tests
# ============================================================================

@pytest.mark.unit
class TestQueryCache:
    """Test cache storage semantics."""

    def test_disabled_cache_is_inert(self, clock):
        """Test that a disabled cache never stores or returns entries."""
        cache = QueryCache(enabled=False, clock=clock)
        cache.put("k", "payload")
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_empty_key_is_ignored(self, clock):
        """Test that empty keys are never stored."""
        cache = QueryCache(enabled=True, clock=clock)
        cache.put("", "payload")
        assert len(cache) == 0
        assert cache.get("") is None

    def test_get_within_ttl(self, clock):
        """Test that a fresh entry is returned."""
        cache = QueryCache(enabled=True, ttl=5.0, clock=clock)
        cache.put("k", "payload")
        clock.advance(4.9)
        entry = cache.get("k")
        assert entry is not None
        assert entry.payload == "payload"

    def test_expired_at_ttl_boundary(self, clock):
        """Test that an entry is expired once age reaches the TTL, and is removed on read."""
        cache = QueryCache(enabled=True, ttl=5.0, clock=clock)
        cache.put("k", "payload")
        clock.advance(5.0)
        assert cache.get("k") is None
        assert "k" not in cache

    def test_per_entry_ttl(self, clock):
        """Test that put() can override the default TTL."""
        cache = QueryCache(enabled=True, ttl=5.0, clock=clock)
        cache.put("k", "payload", ttl=60.0)
        clock.advance(30.0)
        assert cache.get("k") is not None

    def test_fifo_eviction_at_capacity(self, clock):
        """Test that the oldest inserted entry is evicted, even if recently read."""
        cache = QueryCache(enabled=True, max_size=2, clock=clock)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)
        assert "a" not in cache
        assert "b" in cache
        assert "c" in cache
        assert len(cache) == 2
        assert cache.evictions == 1

    def test_replacing_key_does_not_evict(self, clock):
        """Test that re-putting an existing key at capacity evicts nothing."""
        cache = QueryCache(enabled=True, max_size=2, clock=clock)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("a", 10)
        assert len(cache) == 2
        assert cache.get("a").payload == 10
        assert cache.get("b").payload == 2
        assert cache.evictions == 0

    def test_stats(self, clock):
        """Test hit/miss accounting."""
        cache = QueryCache(enabled=True, clock=clock)
        cache.put("a", 1)
        cache.get("a")
        cache.get("missing")
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["size"] == 1

    def test_sweep_removes_only_expired(self, clock):
        """Test that sweep() drops expired entries and keeps fresh ones."""
        cache = QueryCache(enabled=True, ttl=5.0, clock=clock)
        cache.put("old", 1)
        clock.advance(3.0)
        cache.put("new", 2)
        clock.advance(3.0)
        assert cache.sweep() == 1
        assert "old" not in cache
        assert "new" in cache

    def test_clear(self, clock):
        """Test that clear() drops every entry."""
        cache = QueryCache(enabled=True, clock=clock)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.clear()
        assert len(cache) == 0

    def test_size_and_membership_wait_for_lock(self, clock):
        """Test that len() and `in` do not read entries while another thread holds the lock."""
        cache = QueryCache(enabled=True, clock=clock)
        cache.put("a", 1)
        seen = []

        with cache._lock:
            reader = threading.Thread(target=lambda: seen.append((len(cache), "a" in cache)))
            reader.start()
            reader.join(timeout=0.1)
            assert reader.is_alive()
            assert seen == []

        reader.join(timeout=1.0)
        assert seen == [(1, True)]


# ============================================================================
# Invalidation Tests
# ============================================================================

@pytest.mark.unit
class TestInvalidation:
    """Test table-scoped invalidation."""

    def _cache_with(self, clock, *bodies):
        cache = QueryCache(enabled=True, clock=clock)
        keys = []
        for body in bodies:
            key = compute_fingerprint("search_by_value", body)
            cache.put(key, body)
            keys.append(key)
        return cache, keys

    def test_invalidate_matching_schema_and_table(self, clock):
        """Test that only entries for the named schema/table are removed."""
        cache, keys = self._cache_with(
            clock,
            {"schema": "dev", "table": "dog", "search_value": 1},
            {"schema": "prod", "table": "dog", "search_value": 1},
            {"schema": "dev", "table": "cat", "search_value": 1},
        )
        assert cache.invalidate("dog", "dev") == 1
        assert keys[0] not in cache
        assert keys[1] in cache
        assert keys[2] in cache

    def test_invalidate_without_schema_matches_all_schemas(self, clock):
        """Test that schema=None removes the table from every schema."""
        cache, keys = self._cache_with(
            clock,
            {"schema": "dev", "table": "dog"},
            {"schema": "prod", "table": "dog"},
        )
        assert cache.invalidate("dog") == 2
        assert len(cache) == 0

    def test_entry_without_schema_matches(self, clock):
        """Test that an entry whose body names no schema is invalidated."""
        cache, keys = self._cache_with(clock, {"table": "dog"})
        assert cache.invalidate("dog", "dev") == 1

    def test_unknown_table_is_noop(self, clock):
        """Test that invalidating an unknown table removes nothing."""
        cache, _ = self._cache_with(clock, {"schema": "dev", "table": "dog"})
        assert cache.invalidate("unknown", "dev") == 0
        assert len(cache) == 1

    def test_malformed_keys_are_skipped(self, clock):
        """Test that keys which do not decode are left alone."""
        cache = QueryCache(enabled=True, clock=clock)
        cache.put("not-a-fingerprint", 1)
        assert cache.invalidate("dog") == 0
        assert "not-a-fingerprint" in cache


# ============================================================================
# Sweeper Tests
# ============================================================================

@pytest.mark.unit
class TestSweeper:
    """Test the background sweep task."""

    @pytest.mark.asyncio
    async def test_sweeper_not_started_when_disabled(self):
        """Test that a disabled cache starts no task."""
        cache = QueryCache(enabled=False)
        assert cache.start_sweeper() is None
        assert cache.sweeper_running is False

    @pytest.mark.asyncio
    async def test_sweeper_removes_expired_entries(self, clock):
        """Test that the periodic sweep drops expired entries."""
        cache = QueryCache(enabled=True, ttl=1.0, sweep_interval=0.01, clock=clock)
        cache.put("k", 1)
        clock.advance(2.0)

        cache.start_sweeper()
        assert cache.sweeper_running is True
        for _ in range(100):
            if "k" not in cache:
                break
            await asyncio.sleep(0.01)

        assert "k" not in cache
        assert await cache.stop_sweeper() is True
        assert cache.sweeper_running is False

    @pytest.mark.asyncio
    async def test_start_twice_returns_same_task(self):
        """Test that starting an already running sweeper is idempotent."""
        cache = QueryCache(enabled=True, sweep_interval=60.0)
        first = cache.start_sweeper()
        second = cache.start_sweeper()
        assert first is second
        await cache.stop_sweeper()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        """Test that stopping a sweeper that never started is a no-op."""
        cache = QueryCache(enabled=True)
        assert await cache.stop_sweeper() is True
