"""Unit tests for core/fetcher.py -- CVE.org fetching and CVE JSON 5 extraction.

No network: every test hands CveFetcher a MagicMock session. The cache is a
MagicMock too, except where the real SQLite cache is the point of the test.
"""

from unittest.mock import MagicMock

import pytest
import requests

from cache.store import CVECache
from core.errors import CacheError, FetchError
from core.fetcher import (
    CveFetcher,
    extract_cve_id,
    extract_description,
    extract_program_files,
    extract_version_ranges,
    validate_cve_id,
)
from core.models import VersionRange

# ---------------------------------------------------------------------------
# Shared test data
# ---------------------------------------------------------------------------

_CVE_ID = "CVE-2024-26581"

_RAW = {
    "cveMetadata": {"cveId": "cve-2024-26581"},
    "containers": {
        "cna": {
            "descriptions": [
                {"lang": "es", "value": "Descripcion."},
                {"lang": "en", "value": " netfilter: nft_set_rbtree: skip end interval element from gc \n"},
            ],
            "affected": [
                {
                    "product": "Linux",
                    "programFiles": ["./net/netfilter/nft_set_rbtree.c", "net/netfilter/nft_set_rbtree.c"],
                    "versions": [
                        {"version": "0", "lessThan": "6.8", "status": "affected"},
                        {"version": "6.1.78", "lessThanOrEqual": "6.1.*", "status": "unaffected"},
                    ],
                },
                {
                    "product": "Linux",
                    "programFiles": ["net/netfilter/nf_tables_api.c"],
                    "versions": [{"version": "0", "lessThan": "6.8", "status": "affected"}],
                },
            ],
        }
    },
}


def _response(status=200, payload=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload if payload is not None else _RAW
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return resp


def _fetcher(resp=None, cache=None):
    session = MagicMock()
    session.get.return_value = resp or _response()
    return CveFetcher(base_url="https://cve.test/api/cve/", timeout=5, cache=cache, session=session), session


# ---------------------------------------------------------------------------
# TestValidateCveId
# ---------------------------------------------------------------------------


class TestValidateCveId:
    def test_normalizes_case_and_whitespace(self):
        assert validate_cve_id("  cve-2024-26581 ") == _CVE_ID

    @pytest.mark.parametrize("bad", ["", "CVE-24-1", "CVE-2024-123", "2024-26581", "CVE-2024-26581; rm"])
    def test_rejects_malformed(self, bad):
        with pytest.raises(ValueError, match="Invalid CVE ID format"):
            validate_cve_id(bad)


# ---------------------------------------------------------------------------
# TestFetch
# ---------------------------------------------------------------------------


class TestFetch:
    def test_success_returns_record_and_caches(self):
        cache = MagicMock()
        cache.get.return_value = None
        fetcher, session = _fetcher(cache=cache)

        assert fetcher.fetch("cve-2024-26581") == _RAW

        session.get.assert_called_once_with(f"https://cve.test/api/cve/{_CVE_ID}", timeout=5)
        cache.set.assert_called_once_with(_CVE_ID, _RAW)

    def test_cache_hit_skips_network(self):
        cache = MagicMock()
        cache.get.return_value = {"cached": True}
        fetcher, session = _fetcher(cache=cache)

        assert fetcher.fetch(_CVE_ID) == {"cached": True}
        session.get.assert_not_called()

    def test_force_refresh_bypasses_cache_lookup(self):
        cache = MagicMock()
        cache.get.return_value = {"cached": True}
        fetcher, session = _fetcher(cache=cache)

        assert fetcher.fetch(_CVE_ID, force_refresh=True) == _RAW
        cache.get.assert_not_called()
        cache.set.assert_called_once()

    def test_cache_only_miss_raises(self):
        cache = MagicMock()
        cache.get.return_value = None
        fetcher, session = _fetcher(cache=cache)

        with pytest.raises(FetchError, match="cache-only"):
            fetcher.fetch(_CVE_ID, cache_only=True)
        session.get.assert_not_called()

    def test_not_found(self):
        fetcher, _ = _fetcher(_response(404))
        with pytest.raises(FetchError) as exc:
            fetcher.fetch(_CVE_ID)
        assert exc.value.status_code == 404
        assert exc.value.cve_id == _CVE_ID

    def test_server_error(self):
        fetcher, _ = _fetcher(_response(503))
        with pytest.raises(FetchError, match="HTTP 503"):
            fetcher.fetch(_CVE_ID)

    def test_network_error(self):
        fetcher, session = _fetcher()
        session.get.side_effect = requests.ConnectionError("boom")
        with pytest.raises(FetchError, match="request failed"):
            fetcher.fetch(_CVE_ID)

    def test_invalid_json(self):
        resp = _response()
        resp.json.side_effect = ValueError("not json")
        fetcher, _ = _fetcher(resp)
        with pytest.raises(FetchError, match="not valid JSON"):
            fetcher.fetch(_CVE_ID)

    def test_non_object_payload(self):
        fetcher, _ = _fetcher(_response(payload=["a", "b"]))
        with pytest.raises(FetchError, match="not a CVE record"):
            fetcher.fetch(_CVE_ID)

    def test_invalid_id_never_hits_network(self):
        fetcher, session = _fetcher()
        with pytest.raises(FetchError):
            fetcher.fetch("not-a-cve")
        session.get.assert_not_called()

    def test_broken_cache_falls_back_to_network(self):
        cache = MagicMock()
        cache.get.side_effect = CacheError("disk gone")
        cache.set.side_effect = CacheError("disk gone")
        fetcher, _ = _fetcher(cache=cache)
        assert fetcher.fetch(_CVE_ID) == _RAW

    def test_real_cache_round_trip(self, tmp_path):
        cache = CVECache(db_path=tmp_path / "cache.db")
        fetcher, session = _fetcher(cache=cache)

        fetcher.fetch(_CVE_ID)
        fetcher.fetch(_CVE_ID)

        assert session.get.call_count == 1


# ---------------------------------------------------------------------------
# TestFetchMany
# ---------------------------------------------------------------------------


class TestFetchMany:
    def test_input_order_and_dedupe(self):
        fetcher, _ = _fetcher()
        results = fetcher.fetch_many(["cve-2024-0002", "CVE-2024-0001", "CVE-2024-0002"], workers=2)
        assert list(results) == ["CVE-2024-0002", "CVE-2024-0001"]

    def test_failures_returned_not_raised(self):
        fetcher, _ = _fetcher(_response(404))
        results = fetcher.fetch_many([_CVE_ID], workers=1)
        assert isinstance(results[_CVE_ID], FetchError)

    def test_empty(self):
        fetcher, session = _fetcher()
        assert fetcher.fetch_many([]) == {}
        session.get.assert_not_called()


# ---------------------------------------------------------------------------
# TestExtractors
# ---------------------------------------------------------------------------


class TestExtractors:
    def test_cve_id_upper_cased(self):
        assert extract_cve_id(_RAW) == _CVE_ID
        assert extract_cve_id({}) is None

    def test_program_files_unique_sorted(self):
        assert extract_program_files(_RAW) == [
            "net/netfilter/nf_tables_api.c",
            "net/netfilter/nft_set_rbtree.c",
        ]

    def test_program_files_missing(self):
        assert extract_program_files({"containers": {"cna": {}}}) == []

    def test_version_ranges(self):
        assert extract_version_ranges(_RAW) == [
            VersionRange(introduced=None, fixed="6.8", status="affected"),
            VersionRange(introduced="6.1.78", fixed="6.1.*", status="unaffected"),
        ]

    def test_english_description_preferred(self):
        assert extract_description(_RAW) == "netfilter: nft_set_rbtree: skip end interval element from gc"

    def test_description_fallback(self):
        raw = {"containers": {"cna": {"descriptions": [{"lang": "fr", "value": "Texte."}]}}}
        assert extract_description(raw) == "Texte."
        assert extract_description({}) == ""

    @pytest.mark.parametrize(
        "raw",
        [
            None,
            [],
            {"containers": None},
            {"containers": {"cna": "text"}},
            {"containers": {"cna": {"affected": ["bogus", None], "descriptions": "text"}}},
            {"containers": {"cna": {"affected": [{"programFiles": "a.c", "versions": [3]}]}}},
            {"cveMetadata": {"cveId": 42}},
        ],
    )
    def test_malformed_shapes_yield_empty_values(self, raw):
        assert extract_cve_id(raw) is None
        assert extract_program_files(raw) == []
        assert extract_version_ranges(raw) == []
        assert extract_description(raw) == ""

    def test_junk_entries_skipped_beside_good_ones(self):
        raw = {
            "containers": {
                "cna": {
                    "affected": ["bogus", {"programFiles": ["./net/core/dev.c", 7, ""]}],
                    "descriptions": [None, {"lang": None, "value": "Plain."}, {"lang": "en", "value": 3}],
                }
            }
        }
        assert extract_program_files(raw) == ["net/core/dev.c"]
        assert extract_description(raw) == "Plain."
