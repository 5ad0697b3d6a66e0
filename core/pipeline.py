"""
core/pipeline.py -- CVE batch pipeline: fetch, trace, evaluate, synthesize.

No side effects beyond the fetcher's cache. No print statements. Designed to
be called by both the CLI (via main.py) and the REST API (via
api/routes/v1/vex.py).

A batch always yields one VEX entry per requested CVE: ids that fail
validation or fetching travel through as FetchError items and come out as
under_investigation entries.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from core.build_state import BuildState
from core.errors import FetchError
from core.evaluator import EvaluateFn, evaluate, normalize_targets
from core.fetcher import (
    CveFetcher,
    extract_cve_id,
    extract_description,
    extract_program_files,
    extract_version_ranges,
    validate_cve_id,
)
from core.graph import DependencyGraph
from core.kbuild import implicated_symbols
from core.models import DEFAULT_COMPONENT, CveRecord, TraceResult
from core.vex import SbomLookup, VexDocument, synthesize

logger = logging.getLogger("kcfgvex.pipeline")

BatchItem = Union[CveRecord, FetchError]


def record_from_raw(
    raw: dict[str, Any],
    src_root: Optional[Union[str, Path]] = None,
    cve_id: Optional[str] = None,
    component: str = DEFAULT_COMPONENT,
) -> CveRecord:
    """Turn a raw CVE JSON 5 record into a CveRecord.

    Implicated symbols come from tracing the record's programFiles through
    the Kbuild Makefiles under src_root. Without a source tree, or when no
    file can be traced, the record carries no symbols and a note saying why.
    """
    cve_id = cve_id or extract_cve_id(raw) or ""
    files = extract_program_files(raw)
    notes: list[str] = []
    symbols: tuple[str, ...] = ()

    if not files:
        notes.append("Record lists no programFiles")
    elif src_root is None:
        notes.append("No kernel source tree given to trace programFiles")
    else:
        symbols, traces = implicated_symbols(files, src_root)
        for trace in traces:
            if trace.error is not None:
                notes.append(f"{trace.file} not found in kernel source tree")
            elif not trace.symbols:
                notes.append(f"{trace.file} is not gated by any CONFIG symbol")

    return CveRecord(
        cve_id=cve_id,
        description=extract_description(raw),
        implicated_symbols=symbols,
        affected_versions=tuple(extract_version_ranges(raw)),
        program_files=tuple(files),
        component=component,
        notes=tuple(notes),
    )


def build_records(
    cve_ids: Iterable[str],
    fetched: Mapping[str, Union[dict[str, Any], FetchError]],
    src_root: Optional[Union[str, Path]] = None,
) -> list[BatchItem]:
    """One item per requested id, in input order.

    Ids that fail validation, have no fetch result, or whose record cannot be
    processed become FetchError items.
    """
    items: list[BatchItem] = []
    for raw_id in cve_ids:
        try:
            cve_id = validate_cve_id(raw_id)
        except ValueError as e:
            items.append(FetchError(raw_id.strip(), str(e)))
            continue
        result = fetched.get(cve_id)
        if result is None:
            items.append(FetchError(cve_id, "no fetch result"))
        elif isinstance(result, FetchError):
            items.append(result)
        else:
            try:
                items.append(record_from_raw(result, src_root, cve_id=cve_id))
            except Exception as exc:
                logger.warning("could not build a record for %s: %s", cve_id, exc)
                items.append(FetchError(cve_id, f"record could not be processed: {exc}"))
    return items


def evaluate_batch(
    records: Sequence[CveRecord],
    graph: DependencyGraph,
    state: BuildState,
    workers: int = 1,
) -> list[Union[TraceResult, Exception]]:
    """Evaluate every record's implicated symbols, optionally on a thread pool.

    The graph and state are read-only for the duration of the batch and every
    evaluation builds its own resolver, so no locking is needed. Results are
    aligned with records; an evaluation that fails for any reason yields its
    exception instead of aborting the rest of the batch.
    """

    def _one(record: CveRecord) -> Union[TraceResult, Exception]:
        try:
            return evaluate(record.implicated_symbols, graph, state)
        except Exception as e:
            logger.warning("evaluation of %s failed: %s", record.cve_id, e)
            return e

    if workers <= 1 or len(records) <= 1:
        return [_one(r) for r in records]
    with ThreadPoolExecutor(max_workers=min(workers, len(records))) as pool:
        return list(pool.map(_one, records))


def _precomputed(records: Sequence[CveRecord], results: Sequence[Union[TraceResult, Exception]]) -> EvaluateFn:
    by_targets = {normalize_targets(r.implicated_symbols): res for r, res in zip(records, results)}

    def _lookup(targets: Iterable[str]) -> TraceResult:
        result = by_targets[normalize_targets(targets)]
        if isinstance(result, Exception):
            raise result
        return result

    return _lookup


def collect_records(
    cve_ids: Sequence[str],
    fetcher: CveFetcher,
    src_root: Optional[Union[str, Path]] = None,
    force_refresh: bool = False,
    cache_only: bool = False,
) -> list[BatchItem]:
    """Fetch and trace cve_ids. One item per requested id, in input order."""
    valid = []
    for raw_id in cve_ids:
        try:
            valid.append(validate_cve_id(raw_id))
        except ValueError:
            continue
    fetched = fetcher.fetch_many(valid, force_refresh=force_refresh, cache_only=cache_only)
    return build_records(cve_ids, fetched, src_root)


def vex_from_items(
    items: Sequence[BatchItem],
    graph: DependencyGraph,
    state: BuildState,
    sbom: Optional[SbomLookup] = None,
    workers: int = 1,
    spec_version: Optional[str] = None,
) -> VexDocument:
    """Evaluate already collected batch items and synthesize the VEX document."""
    records = [i for i in items if isinstance(i, CveRecord) and i.implicated_symbols]
    results = evaluate_batch(records, graph, state, workers)
    document = synthesize(items, _precomputed(records, results), sbom, spec_version=spec_version)
    logger.info("batch of %d CVE(s) -> %d VEX entries", len(items), len(document.vulnerabilities))
    return document


def run_batch(
    cve_ids: Sequence[str],
    graph: DependencyGraph,
    state: BuildState,
    fetcher: CveFetcher,
    src_root: Optional[Union[str, Path]] = None,
    sbom: Optional[SbomLookup] = None,
    force_refresh: bool = False,
    cache_only: bool = False,
    workers: int = 1,
    spec_version: Optional[str] = None,
) -> VexDocument:
    """Fetch, trace, evaluate and synthesize a VEX document for cve_ids."""
    items = collect_records(cve_ids, fetcher, src_root, force_refresh, cache_only)
    return vex_from_items(items, graph, state, sbom, workers, spec_version)
