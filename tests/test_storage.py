"""Tests for the Store interface (MemoryBackend) and the QueryResult cache."""

import logging

import pytest

from ethevents.common.crypto import cache_key, cache_key_prefix
from ethevents.common.types import QueryResult
from ethevents.storage.memory_backend import MemoryBackend
from ethevents.storage.store import ResultCache

from tests.fixtures.endpoints import make_log

SIGNATURE = '{"address":[],"topics":[]}'


@pytest.fixture
def store():
    return MemoryBackend()


@pytest.fixture
def cache(store):
    return ResultCache(store, 1, SIGNATURE)


# ---------------------------------------------------------------------------
# MemoryBackend
# ---------------------------------------------------------------------------

class TestMemoryBackend:
    def test_get_missing(self, store):
        assert store.get(b"missing") is None

    def test_put_get_delete(self, store):
        store.put(b"k", b"v")
        assert store.get(b"k") == b"v"
        store.delete(b"k")
        assert store.get(b"k") is None

    def test_delete_missing_is_noop(self, store):
        store.delete(b"nothing")
        assert len(store) == 0

    def test_scan_prefix_ordered(self, store):
        store.put(b"ab2", b"2")
        store.put(b"ab1", b"1")
        store.put(b"ac0", b"x")
        store.put(b"a", b"y")
        assert list(store.scan_prefix(b"ab")) == [(b"ab1", b"1"), (b"ab2", b"2")]

    def test_scan_allows_mutation(self, store):
        for i in range(5):
            store.put(b"p" + bytes([i]), b"v")
        for key, _ in store.scan_prefix(b"p"):
            store.delete(key)
        assert len(store) == 0

    def test_ready_flag(self):
        store = MemoryBackend(ready=False)
        assert not store.ready
        store.set_ready()
        assert store.ready


# ---------------------------------------------------------------------------
# Cache keys
# ---------------------------------------------------------------------------

class TestCacheKeys:
    def test_deterministic(self):
        assert cache_key(1, SIGNATURE, 100) == cache_key(1, SIGNATURE, 100)

    def test_prefix_shared(self):
        prefix = cache_key_prefix(1, SIGNATURE)
        assert cache_key(1, SIGNATURE, 0).startswith(prefix)
        assert cache_key(1, SIGNATURE, 10**12).startswith(prefix)

    def test_chain_and_filter_separate(self):
        assert cache_key_prefix(1, SIGNATURE) != cache_key_prefix(10, SIGNATURE)
        assert cache_key_prefix(1, SIGNATURE) != cache_key_prefix(1, SIGNATURE + " ")

    def test_keys_sort_by_block(self):
        keys = [cache_key(1, SIGNATURE, b) for b in (5, 300, 70_000)]
        assert keys == sorted(keys)


# ---------------------------------------------------------------------------
# ResultCache
# ---------------------------------------------------------------------------

class TestResultCache:
    def test_save_and_load(self, cache):
        result = QueryResult(0, 99, [make_log(5), make_log(50, 1, 2)], 80)
        cache.save(result)

        (loaded,) = cache.load_all()
        assert (loaded.from_block, loaded.to_block, loaded.finalized_block) == (0, 99, 80)
        assert loaded.logs == result.logs
        assert loaded.stats == []

    def test_same_from_overwrites(self, cache):
        cache.save(QueryResult(0, 99, [], 10))
        cache.save(QueryResult(0, 199, [], 20))
        (loaded,) = cache.load_all()
        assert loaded.to_block == 199

    def test_load_sorted_by_from(self, cache):
        for start in (500, 0, 200):
            cache.save(QueryResult(start, start + 99, [], 1_000))
        assert [r.from_block for r in cache.load_all()] == [0, 200, 500]

    def test_other_filters_invisible(self, store, cache):
        other = ResultCache(store, 1, '{"address":["0x01"],"topics":[]}')
        other.save(QueryResult(0, 9, [], 0))
        cache.save(QueryResult(100, 109, [], 0))
        assert [r.from_block for r in cache.load_all()] == [100]
        assert [r.from_block for r in other.load_all()] == [0]

    def test_undecodable_entry_skipped(self, store, cache, caplog):
        cache.save(QueryResult(0, 9, [], 0))
        store.put(cache.key_for(50), b"not json")
        store.put(cache.key_for(60), b'{"fromBlock": 70, "toBlock": 60, "finalizedBlock": 0}')

        with caplog.at_level(logging.WARNING):
            results = cache.load_all()

        assert [r.from_block for r in results] == [0]
        assert caplog.text.count("Skipping undecodable") == 2

    def test_entry_under_wrong_key_skipped(self, store, cache):
        store.put(cache.key_for(5), QueryResult(6, 9, [], 0).to_json())
        assert cache.load_all() == []

    def test_delete(self, cache):
        cache.save(QueryResult(0, 9, [], 0))
        cache.delete(0)
        assert cache.load_all() == []

    def test_replace_all(self, store, cache):
        for start in (0, 100, 200):
            cache.save(QueryResult(start, start + 99, [], 1_000))

        removed = cache.replace_all([QueryResult(0, 299, [], 1_000)])

        assert removed == 2
        (loaded,) = cache.load_all()
        assert (loaded.from_block, loaded.to_block) == (0, 299)
