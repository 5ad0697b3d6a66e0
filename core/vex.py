"""
core/vex.py -- CycloneDX VEX document synthesis.

synthesize() is a pure fold over CVE records: one vulnerability entry per
input item, in input order. Items that cannot be evaluated (a fetch that
failed, a record with no implicated symbols, an evaluator error) are never
dropped; they become under_investigation entries that say why.

Verdict mapping:

  affected                              -> exploitable
  not_affected / code_not_reachable     -> not_affected, code_not_reachable
  not_affected / requires_configuration -> not_affected, requires_configuration
  under_investigation                   -> under_investigation

The serial number and timestamp are assigned once per document, before the
fold, so entries are identical for identical inputs.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence, Union

from .errors import FetchError
from .evaluator import EvaluateFn
from .models import CveRecord, Justification, TraceResult, Verdict

logger = logging.getLogger("kcfgvex.vex")

BOM_FORMAT = "CycloneDX"
DEFAULT_SPEC_VERSION = "1.4"
TOOL_NAME = "kcfg-vex"
TOOL_VERSION = "0.1.0"

VULN_SOURCE_NAME = "NVD"
VULN_SOURCE_URL = "https://nvd.nist.gov/vuln/detail/{cve_id}"

# component key -> BOM reference(s)
SbomLookup = Mapping[str, Union[str, Sequence[str]]]


class VexState(str, Enum):
    EXPLOITABLE = "exploitable"
    NOT_AFFECTED = "not_affected"
    UNDER_INVESTIGATION = "under_investigation"


_STATE_FOR_VERDICT = {
    Verdict.AFFECTED: VexState.EXPLOITABLE,
    Verdict.NOT_AFFECTED: VexState.NOT_AFFECTED,
    Verdict.UNDER_INVESTIGATION: VexState.UNDER_INVESTIGATION,
}


# ---------------------------------------------------------------------------
# Document model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VexSource:
    name: str
    url: str


@dataclass(frozen=True)
class VexAnalysis:
    state: VexState
    detail: str
    justification: Optional[Justification] = None


@dataclass(frozen=True)
class VexVulnerability:
    id: str
    source: VexSource
    analysis: VexAnalysis
    affects: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        analysis: dict = {"state": self.analysis.state.value}
        if self.analysis.justification is not None:
            analysis["justification"] = self.analysis.justification.value
        analysis["detail"] = self.analysis.detail

        out: dict = {
            "id": self.id,
            "source": {"name": self.source.name, "url": self.source.url},
            "analysis": analysis,
        }
        if self.affects:
            out["affects"] = [{"ref": ref} for ref in self.affects]
        return out


@dataclass(frozen=True)
class VexDocument:
    serial_number: str
    timestamp: str
    vulnerabilities: tuple[VexVulnerability, ...] = ()
    spec_version: str = DEFAULT_SPEC_VERSION
    version: int = 1

    def with_vulnerabilities(self, entries: Iterable[VexVulnerability]) -> "VexDocument":
        """Return a copy with entries appended. The document itself never changes."""
        return VexDocument(
            serial_number=self.serial_number,
            timestamp=self.timestamp,
            vulnerabilities=self.vulnerabilities + tuple(entries),
            spec_version=self.spec_version,
            version=self.version,
        )

    def by_state(self) -> dict[VexState, tuple[VexVulnerability, ...]]:
        grouped: dict[VexState, list[VexVulnerability]] = {state: [] for state in VexState}
        for vuln in self.vulnerabilities:
            grouped[vuln.analysis.state].append(vuln)
        return {state: tuple(entries) for state, entries in grouped.items()}

    def to_dict(self) -> dict:
        return {
            "bomFormat": BOM_FORMAT,
            "specVersion": self.spec_version,
            "version": self.version,
            "serialNumber": self.serial_number,
            "metadata": {
                "timestamp": self.timestamp,
                "tools": [{"name": TOOL_NAME, "version": TOOL_VERSION}],
            },
            "vulnerabilities": [v.to_dict() for v in self.vulnerabilities],
        }


def new_document(spec_version: Optional[str] = None, serial_number: Optional[str] = None) -> VexDocument:
    """An empty document with its serial number and timestamp fixed."""
    return VexDocument(
        serial_number=serial_number or f"urn:uuid:{uuid.uuid4()}",
        timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        spec_version=spec_version or DEFAULT_SPEC_VERSION,
    )


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


def _format_values(values: Iterable[tuple[str, str]]) -> str:
    return ", ".join(f"CONFIG_{name}={value}" for name, value in values)


def _detail(result: TraceResult) -> str:
    if result.verdict is Verdict.AFFECTED:
        enabled = [(n, v) for n, v in result.values if v in ("y", "m")]
        headline = f"Enabled in the build configuration: {_format_values(enabled)}"
    elif result.verdict is Verdict.UNDER_INVESTIGATION:
        missing = ", ".join(f"CONFIG_{name}" for name in result.missing)
        headline = f"Symbols not found in the parsed Kconfig tree, needs review: {missing}"
    elif result.justification is Justification.REQUIRES_CONFIGURATION:
        headline = f"Required symbols are off by default and never selected: {_format_values(result.values)}"
    else:
        headline = (
            f"Required symbols present in source but not enabled in provided .config: "
            f"{_format_values(result.values)}"
        )

    if not result.evidence:
        return headline
    return f"{headline}. Evidence: " + "; ".join(str(step) for step in result.evidence)


def _lookup_refs(sbom: Optional[SbomLookup], component: str) -> tuple[str, ...]:
    if sbom is None:
        return ()
    refs = sbom.get(component)
    if not refs:
        return ()
    if isinstance(refs, str):
        return (refs,)
    return tuple(refs)


def _entry(
    cve_id: str,
    state: VexState,
    detail: str,
    justification: Optional[Justification] = None,
    affects: tuple[str, ...] = (),
) -> VexVulnerability:
    return VexVulnerability(
        id=cve_id,
        source=VexSource(VULN_SOURCE_NAME, VULN_SOURCE_URL.format(cve_id=cve_id)),
        analysis=VexAnalysis(state=state, detail=detail, justification=justification),
        affects=affects,
    )


def analyse_record(
    item: Union[CveRecord, FetchError],
    evaluate_fn: EvaluateFn,
    sbom: Optional[SbomLookup] = None,
) -> VexVulnerability:
    """Turn one record (or the error that replaced it) into a vulnerability entry."""
    if isinstance(item, FetchError):
        return _entry(item.cve_id, VexState.UNDER_INVESTIGATION, f"CVE record could not be fetched: {item.reason}")

    affects = _lookup_refs(sbom, item.component)
    notes = "".join(f" {note}." for note in item.notes)

    if not item.implicated_symbols:
        detail = "Could not infer enabling symbols for listed programFiles." + notes
        return _entry(item.cve_id, VexState.UNDER_INVESTIGATION, detail, affects=affects)

    try:
        result = evaluate_fn(item.implicated_symbols)
    except Exception as exc:
        logger.warning("evaluation of %s failed: %s", item.cve_id, exc)
        return _entry(item.cve_id, VexState.UNDER_INVESTIGATION, f"Evaluation failed: {exc}", affects=affects)

    justification = result.justification if result.verdict is Verdict.NOT_AFFECTED else None
    return _entry(
        item.cve_id,
        _STATE_FOR_VERDICT[result.verdict],
        _detail(result),
        justification=justification,
        affects=affects,
    )


def synthesize(
    records: Iterable[Union[CveRecord, FetchError]],
    evaluate_fn: EvaluateFn,
    sbom: Optional[SbomLookup] = None,
    spec_version: Optional[str] = None,
    serial_number: Optional[str] = None,
) -> VexDocument:
    """Fold records into a single VEX document, one entry per record in input order."""
    document = new_document(spec_version, serial_number)
    entries = [analyse_record(item, evaluate_fn, sbom) for item in records]
    logger.info("synthesized %d VEX entries", len(entries))
    return document.with_vulnerabilities(entries)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def to_json(document: VexDocument) -> str:
    return json.dumps(document.to_dict(), indent=2)


def save_vex(document: VexDocument, dest: Union[str, Path]) -> Path:
    """Write document as pretty-printed JSON, creating parent directories."""
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_text(to_json(document) + "\n", encoding="utf-8")
    return dest


def write_split_vex(document: VexDocument, out: Union[str, Path]) -> list[tuple[VexState, Path, int]]:
    """Write one document per VEX state as vex_<state>.json.

    out may be a directory or a file path, in which case its parent directory
    is used. States with no entries are skipped. Each split document keeps
    the parent's timestamp and gets its own serial number.
    """
    out = Path(out)
    out_dir = out if out.is_dir() or not out.suffix else out.parent
    out_dir.mkdir(parents=True, exist_ok=True)

    written: list[tuple[VexState, Path, int]] = []
    for state, entries in document.by_state().items():
        if not entries:
            continue
        split = VexDocument(
            serial_number=f"urn:uuid:{uuid.uuid4()}",
            timestamp=document.timestamp,
            vulnerabilities=entries,
            spec_version=document.spec_version,
            version=document.version,
        )
        path = save_vex(split, out_dir / f"vex_{state.value}.json")
        written.append((state, path, len(entries)))

    if written:
        logger.info(
            "wrote VEX state files: %s -> %s",
            ", ".join(f"{state.value}:{count}" for state, _, count in written),
            out_dir,
        )
    else:
        logger.info("no VEX entries to write")
    return written
