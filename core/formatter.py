"""
formatter.py -- Renders trace results, dependency graphs and VEX summaries.

render_*() functions return strings; print_*() wrappers write them to stdout.
All of them are read-only projections of TraceResult / DependencyGraph /
VexDocument data.
"""

import json
import os
import re
import sys
import textwrap
from dataclasses import asdict
from typing import Optional

from .build_state import BuildState, SymbolResolver
from .expr import symbol_key
from .graph import FORWARD, REVERSE, DependencyGraph
from .models import TraceResult, Verdict
from .vex import VexDocument, VexState

W = 68  # output width


# ---------------------------------------------------------------------------
# ANSI color control
# ---------------------------------------------------------------------------

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")

# None means decide per call from NO_COLOR / FORCE_COLOR / isatty()
_color_override: Optional[bool] = None


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def disable_color() -> None:
    """Turn color off for the rest of the process (--no-color)."""
    global _color_override
    _color_override = False


def _color_active() -> bool:
    if _color_override is not None:
        return _color_override
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _ansi(code: str) -> str:
    return code if _color_active() else ""


VERDICT_COLORS = {
    Verdict.AFFECTED: "\033[91m",  # red
    Verdict.UNDER_INVESTIGATION: "\033[93m",  # yellow
    Verdict.NOT_AFFECTED: "\033[92m",  # green
}

STATE_COLORS = {
    VexState.EXPLOITABLE: "\033[91m",
    VexState.UNDER_INVESTIGATION: "\033[93m",
    VexState.NOT_AFFECTED: "\033[92m",
}


def _reset() -> str:
    return _ansi("\033[0m")


def _bold() -> str:
    return _ansi("\033[1m")


def _dim() -> str:
    return _ansi("\033[2m")


def _v_color(verdict: Verdict) -> str:
    return _ansi(VERDICT_COLORS.get(verdict, ""))


def _s_color(state: VexState) -> str:
    return _ansi(STATE_COLORS.get(state, ""))


# ---------------------------------------------------------------------------
# Layout helpers
# ---------------------------------------------------------------------------

_RULE = "═" * W


def _section(title: str) -> str:
    return f"\n  {_bold()}{title}{_reset()}\n  {'─' * (W - 2)}"


def _wrap(text: str, indent: int = 4, width: int = W) -> str:
    pad = " " * indent
    return textwrap.fill(text, width=width, initial_indent=pad, subsequent_indent=pad, break_long_words=False)


# ---------------------------------------------------------------------------
# Trace renderer
# ---------------------------------------------------------------------------


def render_trace(result: TraceResult, title: Optional[str] = None) -> str:
    bold = _bold()
    reset = _reset()
    v_color = _v_color(result.verdict)
    out: list[str] = []

    out.append(f"\n{bold}{_RULE}{reset}")
    heading = title or ", ".join(f"CONFIG_{t}" for t in result.targets)
    out.append(f"  {bold}{heading}{reset}")
    out.append(f"{bold}{_RULE}{reset}")

    out.append(_section("VERDICT"))
    verdict = result.verdict.value
    if result.justification is not None:
        verdict += f" ({result.justification.value})"
    out.append(f"    {v_color}{bold}{verdict}{reset}")

    if result.values:
        out.append(_section("RESOLVED VALUES"))
        for name, value in result.values:
            out.append(f"    {name:<40} {value}")
    if result.missing:
        out.append(_section("NOT FOUND IN KCONFIG TREE"))
        for name in result.missing:
            out.append(f"    • {name}")

    if result.evidence:
        out.append(_section("EVIDENCE"))
        for i, step in enumerate(result.evidence, 1):
            out.append(_wrap(f"{i}. [{step.kind.value}] {step}", indent=4))

    out.append(f"\n{_RULE}\n")
    return "\n".join(out)


def print_trace(result: TraceResult, title: Optional[str] = None) -> None:
    print(render_trace(result, title))


# ---------------------------------------------------------------------------
# Graph renderer
# ---------------------------------------------------------------------------


def render_graph(
    graph: DependencyGraph,
    name: str,
    state: Optional[BuildState] = None,
    max_depth: Optional[int] = 2,
) -> str:
    """Describe one symbol and its neighbourhood in both directions.

    With a state, resolved values are shown next to each symbol.
    """
    name = symbol_key(name)
    bold = _bold()
    reset = _reset()
    dim = _dim()
    sym = graph.symbol(name)
    resolver = SymbolResolver(graph, state) if state is not None else None

    def label(n: str) -> str:
        if resolver is None or graph.symbol(n) is None:
            return n if graph.symbol(n) is not None else f"{n} {dim}(undefined){reset}"
        return f"{n} = {resolver.value_of(n)}"

    out = [f"\n{bold}{_RULE}{reset}", f"  {bold}{label(name)}{reset}", f"{bold}{_RULE}{reset}"]
    if sym is None:
        out.append(f"\n    {name} is not defined in the parsed Kconfig tree.")
        out.append(f"\n{_RULE}\n")
        return "\n".join(out)

    out.append(_section("DEFINITION"))
    out.append(f"    Type           {sym.kind.value}")
    if sym.prompt:
        out.append(f"    Prompt         {sym.prompt}")
    for loc in sym.locations:
        out.append(f"    Defined at     {loc}")
    if sym.choice:
        out.append(f"    Choice         {sym.choice}")

    guard = graph.depends_guard(name)
    if guard is not None:
        out.append(_section("DEPENDS ON"))
        out.append(_wrap(str(guard)))
    if sym.defaults:
        out.append(_section("DEFAULTS"))
        for rule in sym.defaults:
            cond = f" if {rule.guard}" if rule.guard is not None else ""
            out.append(f"    • {rule.value}{cond}")

    selects = graph.selects_of(name)
    selectors = graph.selectors_of(name)
    implies = graph.implies_of(name)
    impliers = graph.impliers_of(name)
    if selects or implies:
        out.append(_section("SELECTS / IMPLIES"))
        for e in selects:
            out.append(f"    select {label(e.target)}" + (f" if {e.guard}" if e.guard is not None else ""))
        for e in implies:
            out.append(f"    imply  {label(e.target)}" + (f" if {e.guard}" if e.guard is not None else ""))
    if selectors or impliers:
        out.append(_section("SELECTED / IMPLIED BY"))
        for e in selectors:
            out.append(f"    {label(e.source)}" + (f" if {e.guard}" if e.guard is not None else ""))
        for e in impliers:
            out.append(f"    {label(e.source)} (imply)")

    for direction, title in ((FORWARD, "FORWARD REACH"), (REVERSE, "REVERSE REACH")):
        reached = graph.walk(name, direction, max_depth)
        if reached:
            out.append(_section(f"{title} (depth ≤ {max_depth})" if max_depth else title))
            for n, depth in reached:
                out.append(f"    {'  ' * (depth - 1)}{label(n)}")

    out.append(f"\n{_RULE}\n")
    return "\n".join(out)


def print_graph(graph: DependencyGraph, name: str, state: Optional[BuildState] = None, max_depth: Optional[int] = 2) -> None:
    print(render_graph(graph, name, state, max_depth))


# ---------------------------------------------------------------------------
# VEX summary renderer
# ---------------------------------------------------------------------------


def print_vex_summary(document: VexDocument) -> None:
    """Print one line per vulnerability, grouped by VEX state."""
    bold = _bold()
    reset = _reset()

    print(f"\n{bold}{_RULE}{reset}")
    print(f"  {bold}VEX SUMMARY — {len(document.vulnerabilities)} CVEs analysed{reset}")
    print(f"{bold}{_RULE}{reset}")

    for state, entries in document.by_state().items():
        if not entries:
            continue
        s_color = _s_color(state)
        print(f"\n  {s_color}{bold}{state.value:<46}({len(entries)}){reset}")
        print(f"  {'─' * (W - 2)}")
        for vuln in entries:
            just = vuln.analysis.justification.value if vuln.analysis.justification else ""
            print(f"  {vuln.id:<18} {just}")

    print(f"\n{_RULE}\n")


# ---------------------------------------------------------------------------
# JSON export
# ---------------------------------------------------------------------------


def to_json(result: TraceResult) -> str:
    """Return a trace result as indented JSON."""
    d = asdict(result)
    d["verdict"] = result.verdict.value
    d["justification"] = result.justification.value if result.justification else None
    d["evidence"] = [{**asdict(step), "kind": step.kind.value} for step in result.evidence]
    return json.dumps(d, indent=2)


# ---------------------------------------------------------------------------
# Markdown export
# ---------------------------------------------------------------------------


def to_markdown(document: VexDocument) -> str:
    """Render a VEX document as a Markdown summary table.

    Suitable for GitHub issues and release notes.
    """
    header = "| CVE ID | State | Justification | Detail |"
    separator = "|--------|-------|---------------|--------|"
    lines = [header, separator]

    for v in document.vulnerabilities:
        just = v.analysis.justification.value if v.analysis.justification else "-"
        # Escape pipe characters in any free-text field to avoid breaking table layout.
        detail = v.analysis.detail.split(". Evidence:")[0].replace("|", "\\|")
        cve_id = v.id.replace("|", "\\|")
        lines.append(f"| {cve_id} | {v.analysis.state.value} | {just} | {detail} |")

    return "\n".join(lines) + "\n"
