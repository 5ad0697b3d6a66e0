"""
core/kconfig.py -- Kconfig source parser.

Reads a root Kconfig file and everything it sources, and produces the symbol
table plus the DependencyGraph the evaluator walks.

Parsing is fail-soft. A malformed entry (unknown directive, unparsable
expression, property with no owning entry, unterminated block) is skipped and
recorded as a ParseDiagnostic; the rest of the tree still parses. The only
fatal condition is an unreadable root file (KconfigReadError).

Duplicate definitions of a symbol -- common in real trees, where a symbol is
redefined per architecture -- are merged:
  - type, prompt and help: last definition wins
  - defaults: accumulate in declaration order (first satisfied guard wins
    at evaluation time)
  - depends on / select / imply: every clause from every definition is kept

Source resolution is delegated to a resolver so the same parser runs over a
kernel checkout (FileSystemResolver) or an in-memory tree (MappingResolver).
"""

import fnmatch
import glob
import logging
import os
import posixpath
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol, Union

from .errors import ExprSyntaxError, KconfigReadError
from .expr import (
    BoolExpr,
    Const,
    conjoin,
    parse_expr,
    parse_prompt_and_condition,
    parse_symbol_and_condition,
    parse_value_and_condition,
    symbol_key,
)
from .graph import DependencyGraph
from .models import (
    ChoiceGroup,
    ConfigSymbol,
    DefaultRule,
    DependsOn,
    Imply,
    ParseDiagnostic,
    Select,
    SourceLocation,
    SymbolKind,
)

logger = logging.getLogger("kcfgvex.kconfig")

# Guard against pathological include chains.
_MAX_SOURCE_DEPTH = 64

_TYPE_KEYWORDS = {
    "bool": SymbolKind.BOOL,
    "boolean": SymbolKind.BOOL,
    "tristate": SymbolKind.TRISTATE,
    "int": SymbolKind.INT,
    "hex": SymbolKind.HEX,
    "string": SymbolKind.STRING,
}

_DEF_KEYWORDS = {
    "def_bool": SymbolKind.BOOL,
    "def_tristate": SymbolKind.TRISTATE,
    "def_int": SymbolKind.INT,
    "def_hex": SymbolKind.HEX,
    "def_string": SymbolKind.STRING,
}

_SOURCE_KEYWORDS = {
    # keyword: (relative to including file, optional)
    "source": (False, False),
    "rsource": (True, False),
    "osource": (False, True),
    "orsource": (True, True),
}

_SIMPLE_VAR_RE = re.compile(r"\$(?:\(([A-Za-z_][A-Za-z0-9_]*)\)|([A-Za-z_][A-Za-z0-9_]*))")


# ---------------------------------------------------------------------------
# Source resolvers
# ---------------------------------------------------------------------------


class SourceResolver(Protocol):
    def read(self, path: str) -> str:
        """Return the text of path. Raises KconfigReadError if it cannot be read."""
        ...

    def resolve(self, pattern: str) -> list[str]:
        """Return every path matching pattern (a glob), sorted."""
        ...


class FileSystemResolver:
    """Resolve sources against a kernel source tree on disk.

    Paths are relative to srctree, the way the kernel's own tooling treats
    them. env supplies values for $(VAR) / $VAR references in source lines;
    it defaults to the process environment.
    """

    def __init__(self, srctree: Union[str, os.PathLike], env: Optional[Mapping[str, str]] = None) -> None:
        self.srctree = os.fspath(srctree)
        self.env = dict(os.environ if env is None else env)

    def _abs(self, path: str) -> str:
        return path if os.path.isabs(path) else os.path.join(self.srctree, path)

    def read(self, path: str) -> str:
        try:
            with open(self._abs(path), encoding="utf-8", errors="replace") as fh:
                return fh.read()
        except OSError as exc:
            raise KconfigReadError(f"cannot read {path}: {exc.strerror or exc}") from exc

    def resolve(self, pattern: str) -> list[str]:
        matches = glob.glob(self._abs(pattern))
        if os.path.isabs(pattern):
            return sorted(matches)
        return sorted(os.path.relpath(m, self.srctree) for m in matches)


class MappingResolver:
    """Resolve sources from an in-memory {path: text} mapping."""

    def __init__(self, files: Mapping[str, str], env: Optional[Mapping[str, str]] = None) -> None:
        self.files = {posixpath.normpath(k): v for k, v in files.items()}
        self.env = dict(env or {})

    def read(self, path: str) -> str:
        try:
            return self.files[posixpath.normpath(path)]
        except KeyError:
            raise KconfigReadError(f"cannot read {path}: no such file") from None

    def resolve(self, pattern: str) -> list[str]:
        pattern = posixpath.normpath(pattern)
        return sorted(p for p in self.files if fnmatch.fnmatchcase(p, pattern))


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParseResult:
    symbols: Mapping[str, ConfigSymbol]
    graph: DependencyGraph
    diagnostics: tuple[ParseDiagnostic, ...]
    files: tuple[str, ...]


# ---------------------------------------------------------------------------
# Parser state
# ---------------------------------------------------------------------------


@dataclass
class _SymbolEntry:
    name: str
    location: SourceLocation
    parent_dep: Optional[BoolExpr]
    choice: Optional[str]
    kind: Optional[SymbolKind] = None
    prompt: Optional[str] = None
    help: str = ""
    defaults: list[DefaultRule] = field(default_factory=list)
    depends: list[BoolExpr] = field(default_factory=list)
    selects: list[Select] = field(default_factory=list)
    implies: list[Imply] = field(default_factory=list)


@dataclass
class _ChoiceEntry:
    name: str
    location: SourceLocation
    parent_dep: Optional[BoolExpr]
    kind: Optional[SymbolKind] = None
    prompt: Optional[str] = None
    optional: bool = False
    defaults: list[DefaultRule] = field(default_factory=list)
    depends: list[BoolExpr] = field(default_factory=list)
    members: list[str] = field(default_factory=list)


@dataclass
class _MenuEntry:
    location: SourceLocation
    depends: list[BoolExpr] = field(default_factory=list)


_Entry = Union[_SymbolEntry, _ChoiceEntry, _MenuEntry]


@dataclass
class _Block:
    keyword: str  # "menu" | "if" | "choice"
    location: SourceLocation
    entry: Optional[Union[_ChoiceEntry, _MenuEntry]] = None
    cond: Optional[BoolExpr] = None

    def dep(self) -> Optional[BoolExpr]:
        if self.entry is not None:
            return conjoin(self.entry.depends)
        return self.cond


_BLOCK_ENDS = {"endmenu": "menu", "endif": "if", "endchoice": "choice"}


class _KconfigParser:
    def __init__(self, resolver: SourceResolver, env: Mapping[str, str]) -> None:
        self.resolver = resolver
        self.env = dict(env)
        self.definitions: dict[str, list[_SymbolEntry]] = {}
        self.choices: list[_ChoiceEntry] = []
        self.diagnostics: list[ParseDiagnostic] = []
        self.files: list[str] = []
        self.blocks: list[_Block] = []
        self.entry: Optional[_Entry] = None
        self.modules_symbol: Optional[str] = None
        self._source_stack: list[str] = []
        self._choice_seq = 0

    # -- diagnostics --------------------------------------------------------

    def warn(self, loc: SourceLocation, message: str, severity: str = "warning") -> None:
        self.diagnostics.append(ParseDiagnostic(loc.file, loc.line, message, severity))

    # -- file handling ------------------------------------------------------

    def parse_file(self, path: str, text: str) -> None:
        if path in self._source_stack:
            return
        self._source_stack.append(path)
        if path not in self.files:
            self.files.append(path)
        depth = len(self.blocks)
        try:
            self._parse_lines(path, text.splitlines())
        finally:
            self._finish_entry()
            while len(self.blocks) > depth:
                block = self.blocks.pop()
                self.warn(block.location, f"unterminated '{block.keyword}' block", "error")
                if block.keyword == "choice" and isinstance(block.entry, _ChoiceEntry):
                    self.choices.append(block.entry)
            self._source_stack.pop()

    def _parse_lines(self, path: str, lines: list[str]) -> None:
        i = 0
        while i < len(lines):
            lineno = i + 1
            line = lines[i]
            i += 1
            while line.endswith("\\") and i < len(lines):
                line = line[:-1] + " " + lines[i]
                i += 1
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue

            loc = SourceLocation(path, lineno)
            parts = stripped.split(None, 1)
            keyword = parts[0]
            rest = parts[1].strip() if len(parts) > 1 else ""

            if keyword in ("help", "---help---"):
                i = self._read_help(lines, i, loc)
                continue

            try:
                self._dispatch(keyword, rest, loc)
            except ExprSyntaxError as exc:
                self.warn(loc, f"malformed '{keyword}': {exc}")

    def _read_help(self, lines: list[str], i: int, loc: SourceLocation) -> int:
        body: list[str] = []
        indent = None
        while i < len(lines):
            raw = lines[i].expandtabs(8)
            if not raw.strip():
                body.append("")
                i += 1
                continue
            cur = len(raw) - len(raw.lstrip())
            if indent is None:
                if cur == 0:
                    break
                indent = cur
            elif cur < indent:
                break
            body.append(raw[indent:].rstrip())
            i += 1

        text = "\n".join(body).strip("\n")
        if isinstance(self.entry, _SymbolEntry):
            self.entry.help = text
        elif self.entry is None:
            self.warn(loc, "help text outside of an entry")
        return i

    # -- entries ------------------------------------------------------------

    def _parent_dep(self) -> Optional[BoolExpr]:
        return conjoin(block.dep() for block in self.blocks)

    def _current_choice(self) -> Optional[_ChoiceEntry]:
        if self.blocks and self.blocks[-1].keyword == "choice":
            entry = self.blocks[-1].entry
            if isinstance(entry, _ChoiceEntry):
                return entry
        return None

    def _finish_entry(self) -> None:
        entry = self.entry
        self.entry = None
        if isinstance(entry, _SymbolEntry):
            self.definitions.setdefault(entry.name, []).append(entry)

    def _dispatch(self, keyword: str, rest: str, loc: SourceLocation) -> None:
        if keyword in ("config", "menuconfig"):
            self._finish_entry()
            words = rest.split()
            if len(words) != 1:
                self.warn(loc, f"'{keyword}' expects exactly one symbol name")
                return
            choice = self._current_choice()
            name = symbol_key(words[0])
            self.entry = _SymbolEntry(name, loc, self._parent_dep(), choice.name if choice else None)
            if choice is not None and name not in choice.members:
                choice.members.append(name)
            return

        if keyword == "choice":
            self._finish_entry()
            if rest:
                name = symbol_key(rest.split()[0])
            else:
                self._choice_seq += 1
                name = f"<choice-{self._choice_seq}>"
            entry = _ChoiceEntry(name, loc, self._parent_dep())
            self.entry = entry
            self.blocks.append(_Block("choice", loc, entry=entry))
            return

        if keyword == "menu":
            self._finish_entry()
            entry = _MenuEntry(loc)
            self.entry = entry
            self.blocks.append(_Block("menu", loc, entry=entry))
            return

        if keyword == "if":
            self._finish_entry()
            try:
                cond = parse_expr(rest, self.env)
            except ExprSyntaxError as exc:
                # still push the block so the matching endif balances
                self.blocks.append(_Block("if", loc, cond=None))
                self.warn(loc, f"malformed 'if': {exc}")
                return
            self.blocks.append(_Block("if", loc, cond=cond))
            return

        if keyword in _BLOCK_ENDS:
            self._finish_entry()
            self._close_block(_BLOCK_ENDS[keyword], keyword, loc)
            return

        if keyword == "comment":
            self._finish_entry()
            self.entry = _MenuEntry(loc)
            return

        if keyword == "mainmenu":
            self._finish_entry()
            return

        if keyword in _SOURCE_KEYWORDS:
            self._finish_entry()
            self._source(keyword, rest, loc)
            return

        self._property(keyword, rest, loc)

    def _close_block(self, opener: str, keyword: str, loc: SourceLocation) -> None:
        if not self.blocks or self.blocks[-1].keyword != opener:
            self.warn(loc, f"'{keyword}' without matching '{opener}'", "error")
            return
        block = self.blocks.pop()
        if opener == "choice" and isinstance(block.entry, _ChoiceEntry):
            self.choices.append(block.entry)

    def _source(self, keyword: str, rest: str, loc: SourceLocation) -> None:
        relative, optional = _SOURCE_KEYWORDS[keyword]
        pattern = rest.strip().strip('"').strip("'")
        if not pattern:
            self.warn(loc, f"'{keyword}' without a path")
            return
        expanded = self._expand_vars(pattern, loc)
        if expanded is None:
            return
        if relative:
            expanded = posixpath.join(posixpath.dirname(loc.file), expanded)

        if len(self._source_stack) >= _MAX_SOURCE_DEPTH:
            self.warn(loc, f"source nesting too deep at {expanded}", "error")
            return

        matches = self.resolver.resolve(expanded)
        if not matches:
            if not optional:
                self.warn(loc, f"sourced file not found: {expanded}", "error")
            return

        for path in matches:
            if path in self._source_stack:
                self.warn(loc, f"recursive source of {path}", "error")
                continue
            try:
                text = self.resolver.read(path)
            except KconfigReadError as exc:
                self.warn(loc, str(exc), "error")
                continue
            logger.debug("sourcing %s from %s", path, loc)
            self.parse_file(path, text)

    def _expand_vars(self, text: str, loc: SourceLocation) -> Optional[str]:
        missing: list[str] = []

        def repl(m: re.Match) -> str:
            name = m.group(1) or m.group(2)
            if name in self.env:
                return self.env[name]
            missing.append(name)
            return m.group(0)

        expanded = _SIMPLE_VAR_RE.sub(repl, text)
        if missing:
            self.warn(loc, f"cannot expand {', '.join(missing)} in {text!r}")
            return None
        return expanded

    # -- properties ---------------------------------------------------------

    def _property(self, keyword: str, rest: str, loc: SourceLocation) -> None:
        entry = self.entry

        if keyword == "depends":
            words = rest.split(None, 1)
            if not words or words[0] != "on":
                self.warn(loc, "expected 'depends on'")
                return
            if entry is None:
                self.warn(loc, "'depends on' outside of an entry")
                return
            entry.depends.append(parse_expr(words[1] if len(words) > 1 else "", self.env))
            return

        if keyword == "visible":
            # prompt visibility only; it never affects the resolved value
            if entry is None:
                self.warn(loc, "'visible if' outside of an entry")
            return

        if isinstance(entry, _MenuEntry):
            self.warn(loc, f"'{keyword}' is not valid inside a menu or comment")
            return

        if entry is None:
            if keyword in _TYPE_KEYWORDS or keyword in _DEF_KEYWORDS or keyword in _PROPERTY_KEYWORDS:
                self.warn(loc, f"'{keyword}' outside of an entry")
            else:
                self.warn(loc, f"unknown directive '{keyword}'")
            return

        if keyword in _TYPE_KEYWORDS:
            entry.kind = _TYPE_KEYWORDS[keyword]
            if rest:
                prompt, _cond = parse_prompt_and_condition(rest, self.env)
                if prompt is not None:
                    entry.prompt = prompt
            return

        if keyword in _DEF_KEYWORDS:
            value, cond = parse_value_and_condition(rest, self.env)
            entry.kind = _DEF_KEYWORDS[keyword]
            entry.defaults.append(DefaultRule(value, cond, loc))
            return

        if keyword == "default":
            value, cond = parse_value_and_condition(rest, self.env)
            entry.defaults.append(DefaultRule(value, cond, loc))
            return

        if keyword == "prompt":
            prompt, _cond = parse_prompt_and_condition(rest, self.env)
            entry.prompt = prompt
            return

        if keyword == "optional":
            if isinstance(entry, _ChoiceEntry):
                entry.optional = True
            else:
                self.warn(loc, "'optional' is only valid inside a choice")
            return

        if isinstance(entry, _ChoiceEntry) and keyword in ("select", "imply", "range", "modules"):
            self.warn(loc, f"'{keyword}' is not valid on a choice")
            return

        if keyword in ("select", "imply"):
            target, cond = parse_symbol_and_condition(rest, self.env)
            if keyword == "select":
                entry.selects.append(Select(entry.name, target, cond, "y", loc))
            else:
                entry.implies.append(Imply(entry.name, target, cond, loc))
            return

        if keyword == "range":
            # validated for syntax; ranges never change reachability
            bounds, _, cond = rest.partition(" if ")
            if len(bounds.split()) != 2:
                self.warn(loc, "'range' expects two bounds")
            elif cond:
                parse_expr(cond, self.env)
            return

        if keyword == "modules":
            self.modules_symbol = entry.name
            return

        if keyword == "option":
            self._option(entry, rest, loc)
            return

        if keyword == "transitional":
            return

        self.warn(loc, f"unknown directive '{keyword}'")

    def _option(self, entry: Union[_SymbolEntry, _ChoiceEntry], rest: str, loc: SourceLocation) -> None:
        name, _, value = rest.partition("=")
        name = name.strip()
        if name == "modules" and isinstance(entry, _SymbolEntry):
            self.modules_symbol = entry.name
        elif name == "env":
            var = value.strip().strip('"')
            if var in self.env:
                entry.defaults.append(DefaultRule(Const(self.env[var]), None, loc))
        elif name in ("defconfig_list", "allnoconfig_y"):
            pass
        else:
            self.warn(loc, f"unknown option '{name}'")

    # -- assembly -----------------------------------------------------------

    def build(self) -> tuple[dict[str, ConfigSymbol], DependencyGraph]:
        symbols: dict[str, ConfigSymbol] = {}
        depends: list[DependsOn] = []
        selects: list[Select] = []
        implies: list[Imply] = []

        for name, defs in self.definitions.items():
            kind = next((d.kind for d in reversed(defs) if d.kind is not None), None)
            if kind is None:
                self.warn(defs[-1].location, f"symbol {name} has no type")
                kind = SymbolKind.UNKNOWN
            prompt = next((d.prompt for d in reversed(defs) if d.prompt is not None), None)
            help_text = next((d.help for d in reversed(defs) if d.help), "")
            choice = next((d.choice for d in reversed(defs) if d.choice is not None), None)

            symbols[name] = ConfigSymbol(
                name=name,
                kind=kind,
                prompt=prompt,
                defaults=tuple(rule for d in defs for rule in d.defaults),
                locations=tuple(d.location for d in defs),
                help=help_text,
                choice=choice,
            )
            for d in defs:
                guard = conjoin(d.depends + [d.parent_dep])
                if guard is not None:
                    depends.append(DependsOn(name, guard, d.location))
                selects.extend(d.selects)
                implies.extend(d.implies)

        choices = [
            ChoiceGroup(
                name=c.name,
                members=tuple(c.members),
                defaults=tuple(c.defaults),
                guard=conjoin(c.depends + [c.parent_dep]),
                optional=c.optional,
                prompt=c.prompt,
                location=c.location,
            )
            for c in self.choices
        ]

        modules = self.modules_symbol
        if modules is None and "MODULES" in symbols:
            modules = "MODULES"

        graph = DependencyGraph(
            symbols.values(),
            depends=depends,
            selects=selects,
            implies=implies,
            choices=choices,
            modules_symbol=modules,
            diagnostics=self.diagnostics,
        )
        return symbols, graph


_PROPERTY_KEYWORDS = {
    "default",
    "prompt",
    "select",
    "imply",
    "range",
    "option",
    "modules",
    "optional",
    "transitional",
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_kconfig(
    root: Union[str, os.PathLike],
    resolver: Optional[SourceResolver] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ParseResult:
    """Parse the Kconfig tree rooted at root.

    Without a resolver, root is a path on disk and sources are resolved
    relative to its directory (the kernel's srctree convention). env supplies
    $(VAR) values; when omitted, the resolver's env is used.

    Raises KconfigReadError only if root itself cannot be read.
    """
    root_path = os.fspath(root)
    if resolver is None:
        srctree = os.path.dirname(os.path.abspath(root_path))
        resolver = FileSystemResolver(srctree, env)
        root_path = os.path.basename(root_path)
    if env is None:
        env = getattr(resolver, "env", {})

    text = resolver.read(root_path)

    parser = _KconfigParser(resolver, env)
    parser.parse_file(root_path, text)
    symbols, graph = parser.build()

    logger.info(
        "parsed %d Kconfig file(s): %d symbols, %d diagnostics",
        len(parser.files),
        len(symbols),
        len(graph.diagnostics),
    )
    return ParseResult(
        symbols=symbols,
        graph=graph,
        diagnostics=graph.diagnostics,
        files=tuple(parser.files),
    )


def parse_kconfig_text(
    text: str,
    files: Optional[Mapping[str, str]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ParseResult:
    """Parse Kconfig text held in memory. files supplies anything it sources."""
    tree = dict(files or {})
    tree["Kconfig"] = text
    return parse_kconfig("Kconfig", MappingResolver(tree, env))


def load_kernel_tree(
    srctree: Union[str, os.PathLike],
    srcarch: str,
    root: str = "Kconfig",
) -> ParseResult:
    """Parse a kernel checkout's Kconfig tree with the kbuild variables set.

    SRCARCH and ARCH both expand to srcarch; srctree to the checkout itself.
    """
    srctree = os.fspath(srctree)
    env = {"SRCARCH": srcarch, "ARCH": srcarch, "srctree": srctree}
    result = parse_kconfig(root, FileSystemResolver(srctree, env))
    errors = [d for d in result.diagnostics if d.severity == "error"]
    if errors:
        logger.warning("%d Kconfig error(s) under %s; first: %s", len(errors), srctree, errors[0])
    return result
