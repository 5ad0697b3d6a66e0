"""
cache/store.py -- SQLite-backed cache for raw CVE records.

CVE.org records for kernel CVEs change rarely once published, and a Yocto
image can list several hundred of them. Records are kept here verbatim
(the JSON exactly as the CVE Services API returned it) and expire after a
configurable TTL, 24 hours by default. The CLI and the API open the same
file unless CVE_CACHE_PATH points them elsewhere.

Usage:
    cache = CVECache()
    record = cache.get("CVE-2024-26581")   # dict, or None on miss/expiry
    cache.set("CVE-2024-26581", record)
    cache.purge_expired()

sqlite3 errors surface as core.errors.CacheError so fetch callers can treat
a broken cache as one more per-CVE failure.
"""

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Optional, Union

from core.errors import CacheError

_DEFAULT_DB = Path(__file__).parent / "kcfgvex.db"
_DEFAULT_TTL = 60 * 60 * 24

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cve_records (
    cve_id      TEXT PRIMARY KEY,
    record      TEXT NOT NULL,
    fetched_at  REAL NOT NULL
);
"""


class CVECache:
    def __init__(self, db_path: Union[Path, str] = _DEFAULT_DB, ttl: int = _DEFAULT_TTL) -> None:
        self.ttl = ttl
        # fetch_many() shares one cache across worker threads
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise CacheError(f"cannot open CVE cache at {db_path}: {e}") from e

    def _run(self, sql: str, params: tuple, what: str) -> int:
        """Execute a write and return the number of rows it touched."""
        try:
            with self._lock:
                cursor = self._conn.execute(sql, params)
                self._conn.commit()
                return cursor.rowcount
        except sqlite3.Error as e:
            raise CacheError(f"cache {what} failed: {e}") from e

    def get(self, cve_id: str) -> Optional[dict]:
        """Return the stored record, or None when absent or older than the TTL."""
        key = cve_id.upper()
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT record, fetched_at FROM cve_records WHERE cve_id = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            raise CacheError(f"cache read failed: {e}") from e
        if row is None:
            return None
        record, fetched_at = row
        if time.time() - fetched_at > self.ttl:
            self._run("DELETE FROM cve_records WHERE cve_id = ?", (key,), "delete")
            return None
        return json.loads(record)

    def set(self, cve_id: str, record: dict) -> None:
        self._run(
            "INSERT OR REPLACE INTO cve_records (cve_id, record, fetched_at) VALUES (?, ?, ?)",
            (cve_id.upper(), json.dumps(record), time.time()),
            "write",
        )

    def purge_expired(self) -> int:
        """Drop every expired record; returns how many were removed."""
        cutoff = time.time() - self.ttl
        return self._run("DELETE FROM cve_records WHERE fetched_at < ?", (cutoff,), "purge")

    def close(self) -> None:
        self._conn.close()
