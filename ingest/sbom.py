"""
ingest/sbom.py -- CycloneDX SBOM parser producing VEX "affects" references.

Every component is indexed under its name, its bom-ref and its purl, each
pointing at a BOM-Link (CycloneDX 1.4+):

    urn:cdx:<serial-number-uuid>/<bom-version>#<bom-ref>

The VEX synthesizer looks records up by component key (``linux_kernel`` by
default). An SBOM without that component produces no reference for it, and
the kernel VEX entries are then written without ``affects``.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

from core.errors import SbomFormatError
from core.models import DEFAULT_COMPONENT

logger = logging.getLogger("kcfgvex.ingest")


@dataclass
class SbomIndex:
    """Lookup table: component identifier -> BOM-Link references."""

    serial: str
    version: int
    references: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def get(self, key: str, default: Optional[tuple[str, ...]] = None) -> Optional[tuple[str, ...]]:
        return self.references.get(key, default)

    def __contains__(self, key: object) -> bool:
        return key in self.references

    def __iter__(self) -> Iterator[str]:
        return iter(self.references)

    def __len__(self) -> int:
        return len(self.references)

    def bom_link(self, ref: str) -> str:
        return f"urn:cdx:{self.serial}/{self.version}#{ref}"

    def add(self, key: str, link: str) -> None:
        existing = self.references.get(key, ())
        if link not in existing:
            self.references[key] = existing + (link,)


def _serial_uuid(serial: str) -> str:
    return serial.rsplit(":", 1)[-1] if serial else "unknown"


def _walk_components(components: list) -> Iterator[dict]:
    for comp in components or []:
        if not isinstance(comp, dict):
            continue
        yield comp
        # nested assemblies
        yield from _walk_components(comp.get("components") or [])


def parse_cyclonedx_sbom(content: Union[str, bytes], kernel_component: str = DEFAULT_COMPONENT) -> SbomIndex:
    """Build an SbomIndex from CycloneDX JSON.

    Raises SbomFormatError if content is not JSON or not a CycloneDX BOM.
    """
    try:
        doc = json.loads(content)
    except (json.JSONDecodeError, ValueError) as e:
        raise SbomFormatError(f"SBOM is not valid JSON: {e}") from e
    if not isinstance(doc, dict) or doc.get("bomFormat") != "CycloneDX":
        raise SbomFormatError("SBOM is not CycloneDX JSON")

    version = doc.get("version")
    index = SbomIndex(
        serial=_serial_uuid(str(doc.get("serialNumber") or "")),
        version=version if isinstance(version, int) else 1,
    )

    for comp in _walk_components(doc.get("components") or []):
        ref = comp.get("bom-ref") or comp.get("bomRef") or comp.get("purl") or comp.get("name")
        if not ref:
            continue
        link = index.bom_link(str(ref))
        for key in (comp.get("name"), comp.get("bom-ref") or comp.get("bomRef"), comp.get("purl")):
            if key:
                index.add(str(key), link)

    if kernel_component not in index:
        logger.warning("No %s component in SBOM; kernel VEX entries will omit affects", kernel_component)

    logger.info("SBOM %s: %d lookup keys", index.serial, len(index))
    return index
