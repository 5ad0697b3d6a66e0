"""
core/build_state.py -- Concrete .config snapshot and per-query symbol resolution.

BuildState holds only what the .config file says explicitly. Everything else
is resolved lazily by a SymbolResolver, which applies Kconfig's
non-interactive rules on top of the snapshot:

  explicit value  ->  depends-on guard  ->  first satisfied default
                  ->  forced selection (capped by depends on)  ->  imply
                  ->  bool / no-MODULES promotion

A SymbolResolver is created per evaluation and thrown away afterwards. Its
memo is never shared, so concurrent evaluations against the same graph and
state cannot interfere with each other.
"""

import logging
import os
import re
from typing import Iterator, Mapping, Optional, Union

from .errors import ResolutionError
from .expr import BoolExpr, Const, Sym, eval_expr, expr_symbols, is_tristate_value, symbol_key, tri_max, tri_min
from .graph import DependencyGraph
from .models import (
    BOOL_KINDS,
    ZERO_VALUES,
    ChoiceGroup,
    ConfigSymbol,
    EvidenceKind,
    EvidenceStep,
    SymbolKind,
)

logger = logging.getLogger("kcfgvex.state")

_SET_RE = re.compile(r"^CONFIG_([A-Za-z0-9_]+)=(.*)$")
_UNSET_RE = re.compile(r"^#\s*CONFIG_([A-Za-z0-9_]+) is not set\s*$")

_NO_TAINT = float("inf")

# dependency closures larger than this are resolved bottom-up first
_WARM_THRESHOLD = 64


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


# ---------------------------------------------------------------------------
# Build state
# ---------------------------------------------------------------------------


class BuildState:
    """Explicit symbol values from a kernel .config, keyed by bare symbol name."""

    def __init__(self, values: Optional[Mapping[str, str]] = None) -> None:
        self._values: dict[str, str] = {symbol_key(k): v for k, v in (values or {}).items()}

    @classmethod
    def from_text(cls, text: str) -> "BuildState":
        """Parse .config text.

        ``CONFIG_X=y`` / ``=m`` / ``=123`` / ``="str"`` set a value and
        ``# CONFIG_X is not set`` sets ``n``. Anything else is ignored. A later
        line overrides an earlier one for the same symbol.
        """
        values: dict[str, str] = {}
        for line in text.splitlines():
            line = line.strip()
            m = _SET_RE.match(line)
            if m:
                values[m.group(1)] = _unquote(m.group(2))
                continue
            m = _UNSET_RE.match(line)
            if m:
                values[m.group(1)] = "n"
        return cls(values)

    @classmethod
    def from_path(cls, path: Union[str, os.PathLike]) -> "BuildState":
        with open(path, encoding="utf-8", errors="replace") as fh:
            state = cls.from_text(fh.read())
        logger.info("loaded %d explicit values from %s", len(state), path)
        return state

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and symbol_key(name) in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def items(self):
        return self._values.items()

    def explicit(self, name: str) -> Optional[str]:
        return self._values.get(symbol_key(name))

    def is_enabled(self, name: str, include_modules: bool = True) -> bool:
        value = self.explicit(name)
        return value == "y" or (include_modules and value == "m")

    def enabled_set(self, include_modules: bool = True) -> set[str]:
        return {name for name in self._values if self.is_enabled(name, include_modules)}


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class SymbolResolver:
    """Resolve symbol values for a single evaluation.

    Cycles (``A select B``, ``B select A``) are broken with a visiting stack:
    re-entering a symbol already being resolved contributes "n" to that
    branch and leaves a cycle_broken note. A value computed while a cycle
    was cut below it never reaches the memo; it is cached only until the
    symbol where that cycle closed finishes resolving, so later queries
    cannot see a value that depended on which symbol was entered first, and
    a cycle feeding a diamond is still walked once per symbol.

    Top-level lookups with a large dependency closure first resolve that
    closure bottom-up (one symbol per strongly connected component), which
    keeps recursion bounded by the largest cycle rather than by the longest
    dependency chain.
    """

    def __init__(self, graph: DependencyGraph, state: BuildState) -> None:
        self.graph = graph
        self.state = state
        self._memo: dict[str, str] = {}
        self._choice_memo: dict[str, Optional[str]] = {}
        self._choices_active: set[str] = set()
        self._stack: list[str] = []
        self._index: dict[str, int] = {}
        self._taint = _NO_TAINT
        self._scoped: dict[str, tuple[int, str]] = {}
        self._scoped_by_root: dict[int, list[str]] = {}
        self._warming = False
        self._evidence: list[EvidenceStep] = []
        self._seen: set[EvidenceStep] = set()
        self.origins: dict[str, EvidenceKind] = {}
        self.forced: set[str] = set()

    # -- evidence -----------------------------------------------------------

    @property
    def evidence(self) -> tuple[EvidenceStep, ...]:
        return tuple(self._evidence)

    def note(self, symbol: str, value: str, reason: str, kind: EvidenceKind) -> None:
        step = EvidenceStep(symbol, value, reason, kind)
        if step not in self._seen:
            self._seen.add(step)
            self._evidence.append(step)

    # -- expression hooks ---------------------------------------------------

    def _lookup(self, name: str) -> tuple[str, bool]:
        sym = self.graph.symbol(name)
        is_bool = sym is None or sym.kind in BOOL_KINDS or sym.kind is SymbolKind.UNKNOWN
        return self.value_of(name), is_bool

    def eval(self, expr: Optional[BoolExpr]) -> str:
        """Tristate value of expr under this resolution; a missing guard is "y"."""
        if expr is None:
            return "y"
        return eval_expr(expr, self._lookup)

    def _scalar(self, expr: BoolExpr) -> str:
        if isinstance(expr, Const):
            return expr.value
        if isinstance(expr, Sym):
            return self.value_of(expr.name)
        return self.eval(expr)

    # -- public -------------------------------------------------------------

    def value_of(self, name: str) -> str:
        """Resolved value of name: "n"/"m"/"y" for bool and tristate, raw text otherwise.

        Raises ResolutionError when the symbol's dependencies nest too deeply
        for the interpreter stack even after warming.
        """
        name = symbol_key(name)
        if name in self._memo:
            return self._memo[name]
        if self._stack or self._warming:
            return self._resolve_symbol(name)
        try:
            self._warm_upstream(name)
            return self._resolve_symbol(name)
        except RecursionError as e:
            raise ResolutionError(f"dependencies of {name} nest too deeply to resolve") from e

    def _resolve_symbol(self, name: str) -> str:
        if name in self._memo:
            return self._memo[name]

        scoped = self._scoped.get(name)
        if scoped is not None:
            root_pos, value = scoped
            self._taint = min(self._taint, root_pos)
            return value

        if name in self._index:
            pos = self._index[name]
            self._taint = min(self._taint, pos)
            path = " -> ".join(self._stack[pos:] + [name])
            self.note(name, "n", f"dependency cycle {path}; branch contributes n", EvidenceKind.CYCLE_BROKEN)
            return "n"

        sym = self.graph.symbol(name)
        if sym is None:
            if self.graph.is_unresolved(name):
                self.note(name, "n", "referenced but never defined; treated as n", EvidenceKind.UNRESOLVED)
            self._memo[name] = "n"
            return "n"

        pos = len(self._stack)
        outer_taint = self._taint
        self._taint = _NO_TAINT
        self._stack.append(name)
        self._index[name] = pos
        try:
            value = self._resolve(sym)
        finally:
            self._stack.pop()
            del self._index[name]
            for stale in self._scoped_by_root.pop(pos, ()):
                self._scoped.pop(stale, None)

        inner_taint = self._taint
        if inner_taint >= pos:
            self._memo[name] = value
            inner_taint = _NO_TAINT
        else:
            # valid only while the cycle root at inner_taint stays open
            root_pos = int(inner_taint)
            self._scoped[name] = (root_pos, value)
            self._scoped_by_root.setdefault(root_pos, []).append(name)
        self._taint = min(outer_taint, inner_taint)
        return value

    def depends_value(self, name: str) -> str:
        return self.eval(self.graph.depends_guard(name))

    # -- warming ------------------------------------------------------------

    def _inputs(self, name: str) -> list[str]:
        """Every symbol resolving name may read, in roughly the order it reads them."""
        sym = self.graph.symbol(name)
        if sym is None:
            return []
        refs = expr_symbols(self.graph.depends_guard(name))
        choice = self.graph.choice_of(name)
        if choice is not None:
            refs += expr_symbols(choice.guard)
            for rule in choice.defaults:
                refs += expr_symbols(rule.guard)
            for member in choice.members:
                refs += expr_symbols(self.graph.depends_guard(member))
        for rule in sym.defaults:
            refs += expr_symbols(rule.guard) + expr_symbols(rule.value)
        for edge in self.graph.selectors_of(name):
            refs += [edge.source] + expr_symbols(edge.guard)
        for edge in self.graph.impliers_of(name):
            refs += [edge.source] + expr_symbols(edge.guard)
        if sym.kind is SymbolKind.TRISTATE and self.graph.modules_symbol:
            refs.append(self.graph.modules_symbol)
        return [ref for ref in dict.fromkeys(refs) if ref != name]

    def _upstream_order(self, name: str) -> Optional[list[str]]:
        """One symbol per strongly connected component upstream of name, inputs first.

        Iterative Tarjan over the unresolved part of the dependency closure.
        Returns None when that closure is small enough to resolve recursively.
        """
        index: dict[str, int] = {name: 0}
        low: dict[str, int] = {name: 0}
        open_set = {name}
        component_stack = [name]
        work = [(name, iter(self._inputs(name)))]
        order: list[str] = []

        while work:
            node, inputs = work[-1]
            for nxt in inputs:
                if nxt in self._memo or self.graph.symbol(nxt) is None:
                    continue
                if nxt not in index:
                    index[nxt] = low[nxt] = len(index)
                    open_set.add(nxt)
                    component_stack.append(nxt)
                    work.append((nxt, iter(self._inputs(nxt))))
                    break
                if nxt in open_set:
                    low[node] = min(low[node], index[nxt])
            else:
                work.pop()
                if work:
                    parent = work[-1][0]
                    low[parent] = min(low[parent], low[node])
                if low[node] == index[node]:
                    while True:
                        member = component_stack.pop()
                        open_set.discard(member)
                        if member == node:
                            break
                    order.append(node)

        return order if len(index) > _WARM_THRESHOLD else None

    def _warm_upstream(self, name: str) -> None:
        """Resolve name's inputs bottom-up so no single resolution recurses deeply."""
        order = self._upstream_order(name)
        if order is None:
            return
        self._warming = True
        try:
            for dep in order:
                if dep != name:
                    self._resolve_symbol(dep)
        finally:
            self._warming = False

    # -- resolution steps ---------------------------------------------------

    def _resolve(self, sym: ConfigSymbol) -> str:
        if sym.kind in BOOL_KINDS or sym.kind is SymbolKind.UNKNOWN:
            return self._resolve_tristate(sym)
        return self._resolve_scalar(sym)

    def _resolve_scalar(self, sym: ConfigSymbol) -> str:
        name = sym.name
        explicit = self.state.explicit(name)
        if explicit is not None:
            self.origins[name] = EvidenceKind.EXPLICIT
            self.note(name, explicit, "set in .config", EvidenceKind.EXPLICIT)
            return explicit

        zero = ZERO_VALUES[sym.kind]
        if self.depends_value(name) == "n":
            self.origins[name] = EvidenceKind.DEPENDS_UNMET
            return zero
        for rule in sym.defaults:
            if self.eval(rule.guard) == "n":
                continue
            self.origins[name] = EvidenceKind.DEFAULT
            return self._scalar(rule.value)
        self.origins[name] = EvidenceKind.NO_DEFAULT
        return zero

    def _resolve_tristate(self, sym: ConfigSymbol) -> str:
        name = sym.name
        guard = self.graph.depends_guard(name)
        dep = self.eval(guard)
        explicit = self.state.explicit(name)
        choice = self.graph.choice_of(name)

        if explicit is not None:
            value = explicit if is_tristate_value(explicit) else "n"
            self.origins[name] = EvidenceKind.EXPLICIT
            if dep == "n" and value != "n":
                self.note(
                    name,
                    value,
                    f"set to {value} in .config although 'depends on {guard}' is n",
                    EvidenceKind.STALE_EXPLICIT,
                )
            else:
                self.note(name, value, "set in .config", EvidenceKind.EXPLICIT)
        elif choice is not None:
            value = self._choice_member_value(name, choice)
        elif dep == "n":
            value = "n"
            self.origins[name] = EvidenceKind.DEPENDS_UNMET
            self.note(name, "n", f"'depends on {guard}' is n", EvidenceKind.DEPENDS_UNMET)
        else:
            value = self._default_value(sym, dep)

        if value != "y":
            value = self._apply_selects(name, value, dep, guard)
        if explicit is None and choice is None and value != "y" and dep != "n":
            value = self._apply_implies(name, value, dep)
        return self._promote(sym, value)

    def _default_value(self, sym: ConfigSymbol, dep: str) -> str:
        name = sym.name
        for rule in sym.defaults:
            cond = self.eval(rule.guard)
            if cond == "n":
                continue
            value = tri_min(self.eval(rule.value), cond, dep)
            clause = f"default {rule.value}" + (f" if {rule.guard}" if rule.guard is not None else "")
            where = f" ({rule.location})" if rule.location else ""
            self.origins[name] = EvidenceKind.DEFAULT
            self.note(name, value, f"{clause}{where}", EvidenceKind.DEFAULT)
            return value
        self.origins[name] = EvidenceKind.NO_DEFAULT
        self.note(name, "n", "no default applies", EvidenceKind.NO_DEFAULT)
        return "n"

    def _apply_selects(self, name: str, value: str, dep: str, guard: Optional[BoolExpr]) -> str:
        forced, by = "n", None
        for edge in self.graph.selectors_of(name):
            src = self.value_of(edge.source)
            if src == "n":
                continue
            raised = tri_min(src, self.eval(edge.guard), edge.force_value)
            if raised != "n" and tri_max(forced, raised) != forced:
                forced, by = raised, edge.source
        if by is None or tri_max(forced, value) == value:
            return value

        capped = tri_min(forced, dep)
        if capped != forced:
            self.note(
                name,
                capped,
                f"selected by {by} ({forced}) but 'depends on {guard}' is {dep}; capped to {capped}",
                EvidenceKind.CEILING_APPLIED,
            )
        if tri_max(capped, value) == value:
            return value
        self.forced.add(name)
        self.note(name, capped, f"selected by {by}", EvidenceKind.SELECT_FORCED)
        return capped

    def _apply_implies(self, name: str, value: str, dep: str) -> str:
        for edge in self.graph.impliers_of(name):
            src = self.value_of(edge.source)
            if src == "n":
                continue
            raised = tri_min(src, self.eval(edge.guard), dep)
            if tri_max(raised, value) != value:
                value = raised
                self.forced.add(name)
                self.note(name, value, f"implied by {edge.source}", EvidenceKind.IMPLY)
        return value

    def _promote(self, sym: ConfigSymbol, value: str) -> str:
        if value != "m":
            return value
        if sym.kind is SymbolKind.BOOL:
            self.note(sym.name, "y", "bool symbol cannot be m; promoted to y", EvidenceKind.PROMOTED)
            return "y"
        modules = self.graph.modules_symbol
        if modules is not None and modules != sym.name and self.value_of(modules) == "n":
            self.note(sym.name, "y", f"{modules} is n; m promoted to y", EvidenceKind.PROMOTED)
            return "y"
        return value

    # -- choices ------------------------------------------------------------

    def _choice_member_value(self, name: str, choice: ChoiceGroup) -> str:
        selected = self._choice_selection(choice)
        self.origins[name] = EvidenceKind.CHOICE
        if selected == name:
            self.note(name, "y", f"selected member of choice {choice.name}", EvidenceKind.CHOICE)
            return "y"
        if selected is None:
            self.note(name, "n", f"choice {choice.name} has no selection", EvidenceKind.CHOICE)
        else:
            self.note(name, "n", f"choice {choice.name} selects {selected}", EvidenceKind.CHOICE)
        return "n"

    def _choice_selection(self, choice: ChoiceGroup) -> Optional[str]:
        if choice.name in self._choice_memo:
            return self._choice_memo[choice.name]
        if choice.name in self._choices_active:
            # a member's dependencies lead back into its own choice
            self._taint = 0
            self.note(choice.name, "n", f"dependency cycle through choice {choice.name}", EvidenceKind.CYCLE_BROKEN)
            return None

        outer_taint = self._taint
        self._taint = _NO_TAINT
        self._choices_active.add(choice.name)
        try:
            selected = self._pick_choice_member(choice)
        finally:
            self._choices_active.discard(choice.name)
        if self._taint == _NO_TAINT:
            self._choice_memo[choice.name] = selected
        self._taint = min(outer_taint, self._taint)
        return selected

    def _pick_choice_member(self, choice: ChoiceGroup) -> Optional[str]:
        if self.eval(choice.guard) == "n":
            return None
        for member in choice.members:
            if self.state.explicit(member) == "y":
                return member
        if choice.optional:
            return None
        for rule in choice.defaults:
            if isinstance(rule.value, Sym) and rule.value.name in choice.members and self.eval(rule.guard) != "n":
                if self.depends_value(rule.value.name) != "n":
                    return rule.value.name
        for member in choice.members:
            if self.depends_value(member) != "n":
                return member
        return None
