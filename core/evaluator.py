"""
core/evaluator.py -- Reachability verdicts for a CVE's implicated symbols.

evaluate() resolves every target through a fresh SymbolResolver (explicit
value, depends-on guard, defaults, forced selection capped by depends on,
imply, promotion) and folds the per-target values into a verdict:

  any target y or m                          -> affected
  else any target missing from the graph     -> under_investigation
  else every target off only because nothing
       enabled it by default or forced it     -> not_affected / requires_configuration
  else                                       -> not_affected / code_not_reachable

A missing symbol is never read as "not affected": the code may simply have
moved, so it goes to a human.

Graph anomalies (cycles, unresolved references) are recovered in place and
show up only in the evidence trail. The only exception raised here is
InvalidQueryError for an empty target set.
"""

import logging
from typing import Callable, Iterable, Union

from .build_state import BuildState, SymbolResolver
from .errors import InvalidQueryError
from .expr import expr_symbols, parse_expr, symbol_key
from .graph import DependencyGraph
from .models import EvidenceKind, Justification, TraceResult, Verdict

logger = logging.getLogger("kcfgvex.evaluator")

EvaluateFn = Callable[[Iterable[str]], TraceResult]

_OFF_BY_DEFAULT = (EvidenceKind.NO_DEFAULT, EvidenceKind.DEFAULT)


def normalize_targets(targets: Union[str, Iterable[str]]) -> tuple[str, ...]:
    """Canonical target tuple: prefix stripped, duplicates dropped.

    Sets have no order of their own and are sorted; any other iterable keeps
    its order so the evidence trail follows the caller's listing.
    """
    if isinstance(targets, str):
        targets = [targets]
    elif isinstance(targets, (set, frozenset)):
        targets = sorted(targets)
    names = (symbol_key(t) for t in targets)
    return tuple(dict.fromkeys(n for n in names if n))


def _off_by_default(resolver: SymbolResolver, name: str) -> bool:
    return resolver.origins.get(name) in _OFF_BY_DEFAULT and name not in resolver.forced


def evaluate(targets: Union[str, Iterable[str]], graph: DependencyGraph, state: BuildState) -> TraceResult:
    """Decide whether the code gated by targets is built under state.

    Raises InvalidQueryError if targets is empty, and ResolutionError when a
    target sits on a dependency cycle too large to resolve.
    """
    names = normalize_targets(targets)
    if not names:
        raise InvalidQueryError("target symbol set is empty")

    resolver = SymbolResolver(graph, state)
    values: list[tuple[str, str]] = []
    missing: list[str] = []

    for name in names:
        if graph.symbol(name) is None:
            missing.append(name)
            resolver.note(
                name, "n", "not defined anywhere in the parsed Kconfig tree", EvidenceKind.NOT_FOUND
            )
            continue
        values.append((name, resolver.value_of(name)))

    if any(value in ("y", "m") for _, value in values):
        verdict, justification = Verdict.AFFECTED, None
    elif missing:
        verdict, justification = Verdict.UNDER_INVESTIGATION, None
    elif all(_off_by_default(resolver, name) for name, _ in values):
        verdict, justification = Verdict.NOT_AFFECTED, Justification.REQUIRES_CONFIGURATION
    else:
        verdict, justification = Verdict.NOT_AFFECTED, Justification.CODE_NOT_REACHABLE

    logger.debug("evaluate %s -> %s", ",".join(names), verdict.value)
    return TraceResult(
        targets=names,
        verdict=verdict,
        justification=justification,
        evidence=resolver.evidence,
        values=tuple(values),
        missing=tuple(missing),
    )


def evaluate_expression(text: str, graph: DependencyGraph, state: BuildState) -> TraceResult:
    """Evaluate a free-form condition such as ``NET && !BPF``.

    The condition is treated as a single target: y or m is affected, n is
    not_affected (code_not_reachable), and a condition naming an undefined
    symbol that comes out n is under_investigation.

    Raises InvalidQueryError for blank text and ExprSyntaxError when the
    condition does not parse.
    """
    if not text or not text.strip():
        raise InvalidQueryError("condition is empty")
    expr = parse_expr(text)
    names = tuple(expr_symbols(expr))

    resolver = SymbolResolver(graph, state)
    missing = tuple(name for name in names if graph.symbol(name) is None)
    for name in missing:
        resolver.note(name, "n", "not defined anywhere in the parsed Kconfig tree", EvidenceKind.NOT_FOUND)
    value = resolver.eval(expr)
    resolver.note(str(expr), value, "condition value", EvidenceKind.CONDITION)

    if value != "n":
        verdict, justification = Verdict.AFFECTED, None
    elif missing:
        verdict, justification = Verdict.UNDER_INVESTIGATION, None
    else:
        verdict, justification = Verdict.NOT_AFFECTED, Justification.CODE_NOT_REACHABLE

    return TraceResult(
        targets=names,
        verdict=verdict,
        justification=justification,
        evidence=resolver.evidence,
        values=((str(expr), value),),
        missing=missing,
    )


def make_evaluator(graph: DependencyGraph, state: BuildState) -> EvaluateFn:
    """Bind graph and state into the single-argument callable synthesize() takes."""

    def _evaluate(targets: Iterable[str]) -> TraceResult:
        return evaluate(targets, graph, state)

    return _evaluate
