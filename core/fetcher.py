"""
fetcher.py -- CVE record fetching from the CVE.org (cveawg) API.

Records are fetched in the CVE JSON 5 format, which is where kernel.org's CNA
publishes programFiles and git/semver affected ranges. Results go through the
optional CVECache; the core evaluator never sees the network.

Failures never return None here: every problem becomes a FetchError that
carries the CVE id, so a batch can still emit one entry per requested CVE.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable, Optional, Union

import requests

from cache.store import CVECache
from core.config import get_settings
from core.errors import CacheError, FetchError
from core.models import CVE_PATTERN, VersionRange

logger = logging.getLogger("kcfgvex.fetcher")

_CVE_RE = re.compile(CVE_PATTERN)

# Module-level session shared across all fetcher calls for connection pooling.
# max_redirects=3 replaces the requests default of 30 -- cveawg is a known
# public API, 3 hops is generous and protects against redirect chains.
_session = requests.Session()
_session.max_redirects = 3


def validate_cve_id(cve_id: str) -> str:
    """Return the normalized (stripped, upper-case) id.

    Raises ValueError if cve_id does not match the expected format.
    """
    normalized = cve_id.strip().upper()
    if not _CVE_RE.match(normalized):
        raise ValueError(f"Invalid CVE ID format: {cve_id}")
    return normalized


class CveFetcher:
    """Fetch raw CVE JSON records, consulting the cache first.

    base_url and timeout default to CVE_API_URL / REQUEST_TIMEOUT from
    settings. cache is optional; without one every fetch hits the network.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        cache: Optional[CVECache] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.cve_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.cache = cache
        self.session = session or _session

    def _from_cache(self, cve_id: str) -> Optional[dict[str, Any]]:
        if self.cache is None:
            return None
        try:
            return self.cache.get(cve_id)
        except CacheError as e:
            logger.warning("CVE cache unavailable for %s: %s", cve_id, e)
            return None

    def _to_cache(self, cve_id: str, data: dict[str, Any]) -> None:
        if self.cache is None:
            return
        try:
            self.cache.set(cve_id, data)
        except CacheError as e:
            logger.warning("could not cache %s: %s", cve_id, e)

    def fetch(self, cve_id: str, force_refresh: bool = False, cache_only: bool = False) -> dict[str, Any]:
        """Return the raw CVE JSON record for cve_id.

        force_refresh skips the cache lookup (the fresh record is still
        stored). cache_only never touches the network. Raises FetchError.
        """
        try:
            cve_id = validate_cve_id(cve_id)
        except ValueError as e:
            raise FetchError(cve_id, str(e)) from e

        if not force_refresh:
            cached = self._from_cache(cve_id)
            if cached is not None:
                logger.debug("cache hit for %s", cve_id)
                return cached
        if cache_only:
            raise FetchError(cve_id, "not in cache (cache-only mode)")

        url = f"{self.base_url}/{cve_id}"
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("CVE fetch failed for %s: %s", cve_id, e)
            raise FetchError(cve_id, f"request failed: {e}") from e

        if resp.status_code == 404:
            raise FetchError(cve_id, "CVE not found", 404)
        try:
            resp.raise_for_status()
            data = resp.json()
        except requests.HTTPError as e:
            logger.warning("CVE fetch failed for %s: %s", cve_id, e)
            raise FetchError(cve_id, f"HTTP {resp.status_code}", resp.status_code) from e
        except ValueError as e:
            raise FetchError(cve_id, "response is not valid JSON", resp.status_code) from e

        if not isinstance(data, dict):
            raise FetchError(cve_id, "response is not a CVE record", resp.status_code)

        self._to_cache(cve_id, data)
        return data

    def _fetch_or_error(self, cve_id: str, force_refresh: bool, cache_only: bool) -> Union[dict[str, Any], FetchError]:
        try:
            return self.fetch(cve_id, force_refresh=force_refresh, cache_only=cache_only)
        except FetchError as e:
            return e

    def fetch_many(
        self,
        cve_ids: Iterable[str],
        force_refresh: bool = False,
        cache_only: bool = False,
        workers: Optional[int] = None,
    ) -> dict[str, Union[dict[str, Any], FetchError]]:
        """Fetch several records over a bounded thread pool.

        Returns {cve_id: record or FetchError} in first-occurrence input order,
        with ids normalized to upper case. Duplicates are fetched once.
        """
        ids = list(dict.fromkeys(c.strip().upper() for c in cve_ids))
        if not ids:
            return {}
        workers = workers or get_settings().fetch_workers

        with ThreadPoolExecutor(max_workers=min(workers, len(ids))) as pool:
            results = list(pool.map(lambda c: self._fetch_or_error(c, force_refresh, cache_only), ids))

        failed = sum(1 for r in results if isinstance(r, FetchError))
        logger.info("fetched %d CVE record(s), %d failed", len(ids) - failed, failed)
        return dict(zip(ids, results))


# ---------------------------------------------------------------------------
# Record field extraction (CVE JSON 5)
# ---------------------------------------------------------------------------


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _dict_items(value: Any) -> list[dict[str, Any]]:
    """The dict elements of a JSON array; anything else in it is skipped."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _cna(raw: Any) -> dict[str, Any]:
    return _as_dict(_as_dict(_as_dict(raw).get("containers")).get("cna"))


def extract_cve_id(raw: dict[str, Any]) -> Optional[str]:
    cve_id = _as_dict(_as_dict(raw).get("cveMetadata")).get("cveId")
    return cve_id.upper() if isinstance(cve_id, str) else None


def extract_program_files(raw: dict[str, Any]) -> list[str]:
    """Every affected[].programFiles entry, leading "./" removed, sorted and unique."""
    files: set[str] = set()
    for affected in _dict_items(_cna(raw).get("affected")):
        paths = affected.get("programFiles")
        for path in paths if isinstance(paths, list) else []:
            if isinstance(path, str) and path.strip():
                clean = path.strip()
                while clean.startswith("./"):
                    clean = clean[2:]
                files.add(clean)
    return sorted(files)


def extract_version_ranges(raw: dict[str, Any]) -> list[VersionRange]:
    """Affected ranges as published: version -> introduced, lessThan(OrEqual) -> fixed."""
    ranges: list[VersionRange] = []
    for affected in _dict_items(_cna(raw).get("affected")):
        for v in _dict_items(affected.get("versions")):
            introduced = v.get("version")
            fixed = v.get("lessThan") or v.get("lessThanOrEqual")
            rng = VersionRange(
                introduced=introduced if introduced not in (None, "0") else None,
                fixed=fixed if fixed not in (None, "*") else None,
                status=v.get("status", "affected"),
            )
            if rng not in ranges:
                ranges.append(rng)
    return ranges


def extract_description(raw: dict[str, Any]) -> str:
    """English description from the CNA container, or the first one present."""
    descriptions = [d for d in _dict_items(_cna(raw).get("descriptions")) if isinstance(d.get("value"), str)]
    for d in descriptions:
        lang = d.get("lang")
        if isinstance(lang, str) and lang.lower().startswith("en"):
            return d["value"].strip()
    return descriptions[0]["value"].strip() if descriptions else ""
