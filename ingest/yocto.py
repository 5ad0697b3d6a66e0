"""
ingest/yocto.py -- Yocto cve-check summary parser and CVE/CONFIG pair export.

Yocto's cve-check class writes a JSON summary of every package it checked:

{
  "version": "1",
  "package": [
    {
      "name": "linux-yocto",
      "products": [{"product": "linux_kernel", "cvesInRecord": "Yes"}],
      "issue": [
        {"id": "CVE-2024-26581", "status": "Unpatched", ...},
        {"id": "CVE-2023-1234",  "status": "Patched",   ...}
      ]
    }
  ]
}

Only packages whose products include linux_kernel are considered. Patched
issues are reported separately; everything else is left for evaluation.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Union

from core.errors import FetchError, YoctoFormatError
from core.expr import symbol_key
from core.models import DEFAULT_COMPONENT, CveRecord

logger = logging.getLogger("kcfgvex.ingest")

PATCHED_STATUS = "Patched"


@dataclass
class YoctoSummary:
    """CVE ids from a cve-check summary, each list sorted and de-duplicated."""

    remaining: list[str] = field(default_factory=list)
    patched: list[str] = field(default_factory=list)


def _has_product(package: dict, product: str) -> bool:
    return any((p or {}).get("product") == product for p in package.get("products") or [])


def parse_yocto_summary(content: str, product: str = DEFAULT_COMPONENT) -> YoctoSummary:
    """Extract kernel CVE ids from a Yocto cve-check JSON summary.

    Raises YoctoFormatError if content is not a JSON object.
    """
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, ValueError) as e:
        raise YoctoFormatError(f"Yocto summary is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise YoctoFormatError("Yocto summary must be a JSON object")

    remaining: set[str] = set()
    patched: set[str] = set()
    for package in data.get("package") or []:
        if not isinstance(package, dict) or not _has_product(package, product):
            continue
        for issue in package.get("issue") or []:
            cve_id = str((issue or {}).get("id") or "").strip().upper()
            if not cve_id.startswith("CVE-"):
                continue
            if issue.get("status") == PATCHED_STATUS:
                patched.add(cve_id)
            else:
                remaining.add(cve_id)

    logger.info("Yocto summary: %d remaining, %d patched kernel CVEs", len(remaining), len(patched))
    return YoctoSummary(remaining=sorted(remaining), patched=sorted(patched))


# ---------------------------------------------------------------------------
# CVE / CONFIG pair export
# ---------------------------------------------------------------------------


def config_pairs(items: Iterable[Union[CveRecord, FetchError]]) -> list[tuple[str, str]]:
    """(CVE id, CONFIG_ symbol) for every implicated symbol of every record."""
    pairs = set()
    for item in items:
        if isinstance(item, CveRecord):
            for sym in item.implicated_symbols:
                pairs.add((item.cve_id, f"CONFIG_{symbol_key(sym)}"))
    return sorted(pairs)


def write_config_pairs(pairs: Iterable[tuple[str, str]], path: Union[str, Path]) -> int:
    """Write sorted ``CVE CONFIG_SYMBOL`` lines to path. Returns the line count."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = sorted(set(pairs))
    path.write_text("".join(f"{cve_id} {config}\n" for cve_id, config in lines), encoding="utf-8")
    logger.info("wrote %d CVE-config pairs to %s", len(lines), path)
    return len(lines)
