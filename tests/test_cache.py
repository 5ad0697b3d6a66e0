"""Unit tests for cache/store.py -- SQLite CVE record cache with TTL."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from cache.store import CVECache
from core.errors import CacheError


@pytest.fixture()
def cache(tmp_path):
    c = CVECache(db_path=tmp_path / "cve.db", ttl=60)
    yield c
    c.close()


class TestCVECache:
    def test_set_then_get(self, cache):
        cache.set("cve-2024-0001", {"cveMetadata": {"cveId": "CVE-2024-0001"}})
        assert cache.get("CVE-2024-0001") == {"cveMetadata": {"cveId": "CVE-2024-0001"}}

    def test_miss_returns_none(self, cache):
        assert cache.get("CVE-2024-9999") is None

    def test_set_replaces(self, cache):
        cache.set("CVE-2024-0001", {"v": 1})
        cache.set("CVE-2024-0001", {"v": 2})
        assert cache.get("CVE-2024-0001") == {"v": 2}

    def test_expired_entry_dropped(self, tmp_path):
        cache = CVECache(db_path=tmp_path / "expired.db", ttl=0)
        cache.set("CVE-2024-0001", {"v": 1})
        cache._conn.execute("UPDATE cve_records SET fetched_at = fetched_at - 10")
        assert cache.get("CVE-2024-0001") is None
        cache.close()

    def test_purge_expired(self, cache):
        cache.set("CVE-2024-0001", {"v": 1})
        cache.set("CVE-2024-0002", {"v": 2})
        cache._conn.execute("UPDATE cve_records SET fetched_at = fetched_at - 3600 WHERE cve_id = 'CVE-2024-0001'")
        assert cache.purge_expired() == 1
        assert cache.get("CVE-2024-0002") == {"v": 2}

    def test_unopenable_path_raises_cache_error(self, tmp_path):
        with pytest.raises(CacheError):
            CVECache(db_path=tmp_path / "missing-dir" / "cve.db")

    def test_concurrent_reads_and_writes(self, cache):
        def work(n):
            cve_id = f"CVE-2024-{n:04d}"
            cache.set(cve_id, {"n": n})
            return cache.get(cve_id)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(work, range(64)))
        assert results == [{"n": n} for n in range(64)]

    def test_read_on_closed_cache_raises_cache_error(self, tmp_path):
        cache = CVECache(db_path=tmp_path / "closed.db")
        cache.close()
        with pytest.raises(CacheError, match="cache read failed"):
            cache.get("CVE-2024-0001")
