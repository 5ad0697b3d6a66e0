"""
API request and response models for the kcfg-vex REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.build_state import SymbolResolver
from core.graph import DependencyGraph
from core.models import CVE_PATTERN, TraceResult

# Annotated type that applies the CVE pattern to every element in a list.
_CveId = Annotated[str, Field(pattern=CVE_PATTERN)]

_Symbol = Annotated[str, Field(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_]+$")]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class TraceRequest(BaseModel):
    """Request body for POST /api/v1/trace.

    Exactly one of targets (CONFIG symbols, prefix optional) or expr
    (a Kconfig condition such as "NET && !BPF") must be given.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    targets: list[_Symbol] = Field(default_factory=list, max_length=100)
    expr: Optional[str] = Field(default=None, min_length=1, max_length=2000)

    @model_validator(mode="after")
    def one_query(self) -> "TraceRequest":
        if bool(self.targets) == bool(self.expr):
            raise ValueError("Give either targets or expr, not both.")
        return self


class VexRequest(BaseModel):
    """Request body for POST /api/v1/vex.

    The field_validator normalizes entries (uppercase, deduplicate) before
    Pydantic applies the per-item CVE_PATTERN check.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    ids: list[_CveId] = Field(
        min_length=1,
        max_length=50,
        description="CVE IDs to analyse against the loaded kernel configuration. Max 50 per request.",
    )

    @field_validator("ids", mode="before")
    @classmethod
    def normalize_ids(cls, values: list) -> list[str]:
        """Uppercase and deduplicate CVE IDs while preserving original order."""
        seen: set[str] = set()
        result: list[str] = []
        for v in values:
            normalized = str(v).strip().upper()
            if normalized not in seen:
                seen.add(normalized)
                result.append(normalized)
        return result


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class EvidenceStepModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    value: str
    reason: str
    kind: str


class TraceResponse(BaseModel):
    """Verdict plus evidence trail for one trace query."""

    model_config = ConfigDict(frozen=True)

    targets: list[str]
    verdict: str
    justification: Optional[str] = None
    values: dict[str, str] = Field(default_factory=dict)
    missing: list[str] = Field(default_factory=list)
    evidence: list[EvidenceStepModel] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: TraceResult) -> "TraceResponse":
        return cls(
            targets=list(result.targets),
            verdict=result.verdict.value,
            justification=result.justification.value if result.justification else None,
            values=dict(result.values),
            missing=list(result.missing),
            evidence=[
                EvidenceStepModel(symbol=s.symbol, value=s.value, reason=s.reason, kind=s.kind.value)
                for s in result.evidence
            ],
        )


class SymbolResponse(BaseModel):
    """Response for GET /api/v1/graph/{symbol}: one node and its direct edges."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: str
    prompt: Optional[str] = None
    defined_at: list[str] = Field(default_factory=list)
    choice: Optional[str] = None
    depends_on: Optional[str] = None
    value: Optional[str] = None
    dependencies: list[str] = Field(default_factory=list)
    dependents: list[str] = Field(default_factory=list)
    selects: list[str] = Field(default_factory=list)
    selected_by: list[str] = Field(default_factory=list)
    implies: list[str] = Field(default_factory=list)
    implied_by: list[str] = Field(default_factory=list)

    @classmethod
    def from_graph(
        cls, graph: DependencyGraph, name: str, resolver: Optional[SymbolResolver] = None
    ) -> "SymbolResponse":
        sym = graph.symbol(name)
        guard = graph.depends_guard(name)
        return cls(
            name=name,
            kind=sym.kind.value,
            prompt=sym.prompt,
            defined_at=[str(loc) for loc in sym.locations],
            choice=sym.choice,
            depends_on=str(guard) if guard is not None else None,
            value=resolver.value_of(name) if resolver is not None else None,
            dependencies=graph.dependencies_of(name),
            dependents=graph.dependents_of(name),
            selects=sorted({e.target for e in graph.selects_of(name)}),
            selected_by=sorted({e.source for e in graph.selectors_of(name)}),
            implies=sorted({e.target for e in graph.implies_of(name)}),
            implied_by=sorted({e.source for e in graph.impliers_of(name)}),
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    kconfig_loaded: bool = False
    symbols: int = 0
    dotconfig_entries: int = 0
