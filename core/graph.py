"""
core/graph.py -- Immutable dependency graph over parsed Kconfig symbols.

Symbols live in a name-keyed arena; edges refer to symbols by name only, so
mutually-referencing symbols never own each other. The graph is built once
per parse and shared read-only by every evaluation that runs against it.

Forward traversal follows what a symbol depends on, selects and implies.
Reverse traversal follows who selects / implies it and who depends on it;
the evaluator uses the reverse select index to apply forced selection.

Every symbol referenced from an expression or edge must be defined. Those
that are not are collected at construction time as "unresolved", reported
as diagnostics, and evaluate to "n" for the life of the graph.
"""

from collections import deque
from typing import Iterable, Iterator, Mapping, Optional

from .expr import BoolExpr, conjoin, expr_symbols, symbol_key
from .models import (
    ChoiceGroup,
    ConfigSymbol,
    DependsOn,
    Imply,
    ParseDiagnostic,
    Select,
    SourceLocation,
)

FORWARD = "forward"
REVERSE = "reverse"


class DependencyGraph:
    def __init__(
        self,
        symbols: Iterable[ConfigSymbol],
        depends: Iterable[DependsOn] = (),
        selects: Iterable[Select] = (),
        implies: Iterable[Imply] = (),
        choices: Iterable[ChoiceGroup] = (),
        modules_symbol: Optional[str] = None,
        diagnostics: Iterable[ParseDiagnostic] = (),
    ) -> None:
        self._symbols: dict[str, ConfigSymbol] = {s.name: s for s in symbols}
        self._depends: dict[str, tuple[DependsOn, ...]] = _group(depends, lambda e: e.source)
        self._selects: dict[str, tuple[Select, ...]] = _group(selects, lambda e: e.source)
        self._selectors: dict[str, tuple[Select, ...]] = _group(
            (e for edges in self._selects.values() for e in edges), lambda e: e.target
        )
        self._implies: dict[str, tuple[Imply, ...]] = _group(implies, lambda e: e.source)
        self._impliers: dict[str, tuple[Imply, ...]] = _group(
            (e for edges in self._implies.values() for e in edges), lambda e: e.target
        )
        self._choices: dict[str, ChoiceGroup] = {c.name: c for c in choices}
        self._modules = modules_symbol

        self._guards: dict[str, Optional[BoolExpr]] = {
            name: conjoin(e.guard for e in edges) for name, edges in self._depends.items()
        }
        self._dependents: dict[str, list[str]] = {}
        for name, guard in self._guards.items():
            for ref in expr_symbols(guard):
                self._dependents.setdefault(ref, []).append(name)

        unresolved = self._find_unresolved()
        self._unresolved = frozenset(unresolved)
        self._diagnostics = tuple(diagnostics) + tuple(
            ParseDiagnostic(
                loc.file if loc else "<graph>",
                loc.line if loc else 0,
                f"reference to undefined symbol {name}",
            )
            for name, loc in sorted(unresolved.items())
        )

    # -- construction-time checks -------------------------------------------

    def _references(self) -> Iterator[tuple[str, Optional[SourceLocation]]]:
        for sym in self._symbols.values():
            for rule in sym.defaults:
                for ref in expr_symbols(rule.value) + expr_symbols(rule.guard):
                    yield ref, rule.location
        for edges in self._depends.values():
            for dep in edges:
                for ref in expr_symbols(dep.guard):
                    yield ref, dep.location
        for edges in self._selects.values():
            for sel in edges:
                yield sel.target, sel.location
                for ref in expr_symbols(sel.guard):
                    yield ref, sel.location
        for edges in self._implies.values():
            for imp in edges:
                yield imp.target, imp.location
                for ref in expr_symbols(imp.guard):
                    yield ref, imp.location
        for choice in self._choices.values():
            for ref in expr_symbols(choice.guard):
                yield ref, choice.location
            for rule in choice.defaults:
                for ref in expr_symbols(rule.value) + expr_symbols(rule.guard):
                    yield ref, rule.location

    def _find_unresolved(self) -> dict[str, Optional[SourceLocation]]:
        found: dict[str, Optional[SourceLocation]] = {}
        for name, loc in self._references():
            if name not in self._symbols and name not in found:
                found[name] = loc
        return found

    # -- symbol table -------------------------------------------------------

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and symbol_key(name) in self._symbols

    def __len__(self) -> int:
        return len(self._symbols)

    def __iter__(self) -> Iterator[str]:
        return iter(self._symbols)

    @property
    def symbols(self) -> Mapping[str, ConfigSymbol]:
        return self._symbols

    def symbol(self, name: str) -> Optional[ConfigSymbol]:
        return self._symbols.get(symbol_key(name))

    @property
    def unresolved(self) -> frozenset[str]:
        return self._unresolved

    def is_unresolved(self, name: str) -> bool:
        return symbol_key(name) in self._unresolved

    @property
    def diagnostics(self) -> tuple[ParseDiagnostic, ...]:
        return self._diagnostics

    @property
    def modules_symbol(self) -> Optional[str]:
        return self._modules

    # -- edges --------------------------------------------------------------

    def depends_edges(self, name: str) -> tuple[DependsOn, ...]:
        return self._depends.get(symbol_key(name), ())

    def depends_guard(self, name: str) -> Optional[BoolExpr]:
        """Every ``depends on`` clause of name, AND-ed. None when there are none."""
        return self._guards.get(symbol_key(name))

    def selects_of(self, name: str) -> tuple[Select, ...]:
        return self._selects.get(symbol_key(name), ())

    def selectors_of(self, name: str) -> tuple[Select, ...]:
        return self._selectors.get(symbol_key(name), ())

    def implies_of(self, name: str) -> tuple[Imply, ...]:
        return self._implies.get(symbol_key(name), ())

    def impliers_of(self, name: str) -> tuple[Imply, ...]:
        return self._impliers.get(symbol_key(name), ())

    def dependencies_of(self, name: str) -> list[str]:
        return expr_symbols(self.depends_guard(name))

    def dependents_of(self, name: str) -> list[str]:
        return list(self._dependents.get(symbol_key(name), ()))

    @property
    def choices(self) -> Mapping[str, ChoiceGroup]:
        return self._choices

    def choice_of(self, name: str) -> Optional[ChoiceGroup]:
        sym = self.symbol(name)
        if sym is None or sym.choice is None:
            return None
        return self._choices.get(sym.choice)

    # -- traversal ----------------------------------------------------------

    def neighbours(self, name: str, direction: str = FORWARD) -> list[str]:
        name = symbol_key(name)
        if direction == FORWARD:
            out = self.dependencies_of(name)
            out += [e.target for e in self.selects_of(name)]
            out += [e.target for e in self.implies_of(name)]
        elif direction == REVERSE:
            out = [e.source for e in self.selectors_of(name)]
            out += [e.source for e in self.impliers_of(name)]
            out += self.dependents_of(name)
        else:
            raise ValueError(f"direction must be {FORWARD!r} or {REVERSE!r}, got {direction!r}")
        return list(dict.fromkeys(out))

    def walk(self, name: str, direction: str = FORWARD, max_depth: Optional[int] = None) -> list[tuple[str, int]]:
        """Breadth-first walk from name. Returns (symbol, depth) pairs, start excluded.

        Each symbol is visited once, so cyclic graphs terminate.
        """
        start = symbol_key(name)
        seen = {start}
        order: list[tuple[str, int]] = []
        queue = deque([(start, 0)])
        while queue:
            current, depth = queue.popleft()
            if max_depth is not None and depth >= max_depth:
                continue
            for nxt in self.neighbours(current, direction):
                if nxt in seen:
                    continue
                seen.add(nxt)
                order.append((nxt, depth + 1))
                queue.append((nxt, depth + 1))
        return order


def _group(edges, key) -> dict:
    grouped: dict = {}
    for edge in edges:
        grouped.setdefault(key(edge), []).append(edge)
    return {k: tuple(v) for k, v in grouped.items()}
