"""
core/models.py -- Domain dataclasses for the kcfg-vex engine.

Pure data containers. Parsing lives in core/kconfig.py, resolution in
core/build_state.py and core/evaluator.py, document assembly in core/vex.py.

Everything here is frozen: symbols are created once per parse pass, trace
results once per query, and both are shared read-only afterwards.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .expr import BoolExpr

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Canonical CVE ID format. Shared by the fetcher, the CLI and the API layer.
CVE_PATTERN = r"^CVE-\d{4}-\d{4,}$"

# SBOM lookup key used when a CVE record does not name its component.
DEFAULT_COMPONENT = "linux_kernel"


# ---------------------------------------------------------------------------
# Kconfig symbol table
# ---------------------------------------------------------------------------


class SymbolKind(str, Enum):
    BOOL = "bool"
    TRISTATE = "tristate"
    INT = "int"
    HEX = "hex"
    STRING = "string"
    # Referenced but never given a type (or never defined at all)
    UNKNOWN = "unknown"


BOOL_KINDS = (SymbolKind.BOOL, SymbolKind.TRISTATE)

ZERO_VALUES = {
    SymbolKind.BOOL: "n",
    SymbolKind.TRISTATE: "n",
    SymbolKind.INT: "0",
    SymbolKind.HEX: "0x0",
    SymbolKind.STRING: "",
    SymbolKind.UNKNOWN: "n",
}


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int

    def __str__(self) -> str:
        return f"{self.file}:{self.line}"


@dataclass(frozen=True)
class DefaultRule:
    """One ``default <value> [if <guard>]`` clause.

    value is an expression for bool/tristate symbols (usually just a Const)
    and a literal or symbol reference for int/hex/string ones.
    """

    value: BoolExpr
    guard: Optional[BoolExpr] = None
    location: Optional[SourceLocation] = None


@dataclass(frozen=True)
class ConfigSymbol:
    """A configuration symbol after all of its definitions have been merged.

    name is stored without the CONFIG_ prefix. locations lists every
    definition site in parse order.
    """

    name: str
    kind: SymbolKind = SymbolKind.UNKNOWN
    prompt: Optional[str] = None
    defaults: tuple[DefaultRule, ...] = ()
    locations: tuple[SourceLocation, ...] = ()
    help: str = ""
    choice: Optional[str] = None  # name of the owning ChoiceGroup


@dataclass(frozen=True)
class ChoiceGroup:
    """A ``choice`` block. Members are mutually exclusive bool symbols."""

    name: str
    members: tuple[str, ...]
    defaults: tuple[DefaultRule, ...] = ()
    guard: Optional[BoolExpr] = None
    optional: bool = False
    prompt: Optional[str] = None
    location: Optional[SourceLocation] = None


# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DependsOn:
    """source may only exceed "n" while guard holds."""

    source: str
    guard: BoolExpr
    location: Optional[SourceLocation] = None


@dataclass(frozen=True)
class Select:
    """source, when enabled and guard holds, forces target to at least force_value.

    The raise is capped by the target's own depends-on guard.
    """

    source: str
    target: str
    guard: Optional[BoolExpr] = None
    force_value: str = "y"
    location: Optional[SourceLocation] = None


@dataclass(frozen=True)
class Imply:
    """Weak select: only raises an unset target whose dependencies are met."""

    source: str
    target: str
    guard: Optional[BoolExpr] = None
    location: Optional[SourceLocation] = None


@dataclass(frozen=True)
class ParseDiagnostic:
    file: str
    line: int
    message: str
    severity: str = "warning"  # "warning" | "error"

    def __str__(self) -> str:
        return f"{self.file}:{self.line}: {self.severity}: {self.message}"


# ---------------------------------------------------------------------------
# Trace results
# ---------------------------------------------------------------------------


class Verdict(str, Enum):
    AFFECTED = "affected"
    NOT_AFFECTED = "not_affected"
    UNDER_INVESTIGATION = "under_investigation"


class Justification(str, Enum):
    CODE_NOT_REACHABLE = "code_not_reachable"
    REQUIRES_CONFIGURATION = "requires_configuration"


class EvidenceKind(str, Enum):
    EXPLICIT = "explicit"
    STALE_EXPLICIT = "stale_explicit"
    DEFAULT = "default"
    NO_DEFAULT = "no_default"
    DEPENDS_UNMET = "depends_unmet"
    SELECT_FORCED = "select_forced"
    CEILING_APPLIED = "ceiling_applied"
    IMPLY = "imply"
    CHOICE = "choice"
    PROMOTED = "promoted"
    CYCLE_BROKEN = "cycle_broken"
    UNRESOLVED = "unresolved_reference"
    NOT_FOUND = "not_found"
    CONDITION = "condition"


@dataclass(frozen=True)
class EvidenceStep:
    symbol: str
    value: str
    reason: str
    kind: EvidenceKind

    def __str__(self) -> str:
        return f"{self.symbol}={self.value}: {self.reason}"


@dataclass(frozen=True)
class TraceResult:
    """Verdict for one query plus the causal chain that produced it.

    values holds (target, resolved value) pairs in evaluation order; targets
    absent from the graph are listed in missing instead.
    """

    targets: tuple[str, ...]
    verdict: Verdict
    justification: Optional[Justification] = None
    evidence: tuple[EvidenceStep, ...] = ()
    values: tuple[tuple[str, str], ...] = ()
    missing: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# CVE records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VersionRange:
    """An affected range as published by the CNA: [introduced, fixed)."""

    introduced: Optional[str] = None
    fixed: Optional[str] = None
    status: str = "affected"


@dataclass(frozen=True)
class CveRecord:
    """A CVE ready for evaluation.

    implicated_symbols are the configuration symbols whose enablement exposes
    the vulnerable code. component is the SBOM lookup key for the affected
    artifact.
    """

    cve_id: str
    description: str = ""
    implicated_symbols: tuple[str, ...] = ()
    affected_versions: tuple[VersionRange, ...] = ()
    program_files: tuple[str, ...] = ()
    component: str = DEFAULT_COMPONENT
    notes: tuple[str, ...] = ()
