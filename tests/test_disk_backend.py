"""Tests specific to DiskBackend: persistence, prefix scans, close/reopen."""

import pytest

from ethevents.common.types import QueryResult
from ethevents.storage.disk_backend import DiskBackend
from ethevents.storage.store import ResultCache

from tests.fixtures.endpoints import make_log

SIGNATURE = '{"address":["0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"],"topics":[]}'


@pytest.fixture
def disk_store(tmp_path):
    backend = DiskBackend(tmp_path)
    yield backend
    backend.close()


# ---------------------------------------------------------------------------
# Key-value operations
# ---------------------------------------------------------------------------

class TestKeyValue:
    def test_put_get(self, disk_store):
        disk_store.put(b"key", b"value")
        assert disk_store.get(b"key") == b"value"

    def test_get_missing(self, disk_store):
        assert disk_store.get(b"missing") is None

    def test_delete(self, disk_store):
        disk_store.put(b"key", b"value")
        disk_store.delete(b"key")
        assert disk_store.get(b"key") is None

    def test_delete_missing_is_noop(self, disk_store):
        disk_store.delete(b"missing")

    def test_scan_prefix(self, disk_store):
        disk_store.put(b"aa\x02", b"2")
        disk_store.put(b"aa\x01", b"1")
        disk_store.put(b"ab\x00", b"x")
        disk_store.put(b"a", b"y")
        assert list(disk_store.scan_prefix(b"aa")) == [(b"aa\x01", b"1"), (b"aa\x02", b"2")]

    def test_scan_prefix_past_end(self, disk_store):
        disk_store.put(b"aa", b"1")
        assert list(disk_store.scan_prefix(b"zz")) == []

    def test_scan_allows_deletes(self, disk_store):
        for i in range(3):
            disk_store.put(b"p" + bytes([i]), b"v")
        for key, _ in disk_store.scan_prefix(b"p"):
            disk_store.delete(key)
        assert list(disk_store.scan_prefix(b"p")) == []


# ---------------------------------------------------------------------------
# Persistence: write → close → reopen → verify
# ---------------------------------------------------------------------------

class TestPersistence:
    def test_ready_until_closed(self, tmp_path):
        store = DiskBackend(tmp_path)
        assert store.ready
        store.close()
        assert not store.ready
        store.close()

    def test_value_persists(self, tmp_path):
        store = DiskBackend(tmp_path)
        store.put(b"k", b"v")
        store.close()

        store2 = DiskBackend(tmp_path)
        assert store2.get(b"k") == b"v"
        store2.close()

    def test_query_results_persist(self, tmp_path):
        store = DiskBackend(tmp_path)
        cache = ResultCache(store, 1, SIGNATURE)
        cache.save(QueryResult(0, 999, [make_log(10), make_log(500, 3, 7)], 900))
        cache.save(QueryResult(1_000, 1_999, [], 900))
        store.close()

        store2 = DiskBackend(tmp_path)
        loaded = ResultCache(store2, 1, SIGNATURE).load_all()
        assert [(r.from_block, r.to_block) for r in loaded] == [(0, 999), (1_000, 1_999)]
        assert [log.sort_key for log in loaded[0].logs] == [(10, 0, 0), (500, 3, 7)]
        assert ResultCache(store2, 5, SIGNATURE).load_all() == []
        store2.close()
