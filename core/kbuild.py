"""
core/kbuild.py -- Map kernel source files to the CONFIG symbols that build them.

CVE records name the files a fix touches (programFiles). Kbuild decides
whether a file is compiled through Makefile rules, so tracing a file means
walking Makefiles outward from the file's directory:

  obj-$(CONFIG_FOO) += foo.o               file gated by a symbol
  bar-$(CONFIG_BAZ) += foo.o               file pulled into container bar.o
  bar-y / bar-m / bar-objs := foo.o        container without its own gate
  bar-objs-$(CONFIG_QUX) += foo.o          container member gated by a symbol
  obj-$(CONFIG_DIR) += subdir/             parent directory gates a subtree

Containers found along the way are traced in turn (breadth-first) until no
new container appears. This is Makefile parsing only; C sources are never
read.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Union

logger = logging.getLogger("kcfgvex.kbuild")

_CONTAINER = r"[A-Za-z0-9_-]+"
_CONFIG = r"(CONFIG_[A-Z0-9_]+)"
_WS_RE = re.compile(r"\s+")

# Kbuild list variables that look like <name>-y but are not composite objects
_KBUILD_LISTS = frozenset({"obj", "lib", "subdir", "always", "extra", "targets", "hostprogs", "userprogs"})

VIA_RULE = "makefile rule"
VIA_PARENT_GATE = "parent directory gate"
VIA_CONTAINER = "container includes target"
VIA_PARENT_CONTAINER = "parent container includes target"


@dataclass(frozen=True)
class TraceEdge:
    src: str
    dst: str
    via: str


@dataclass
class KbuildTrace:
    file: str
    objects: set[str] = field(default_factory=set)
    symbols: set[str] = field(default_factory=set)
    edges: list[TraceEdge] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class _ScanResult:
    configs: set[str] = field(default_factory=set)
    containers: set[str] = field(default_factory=set)


# ---------------------------------------------------------------------------
# Makefile reading
# ---------------------------------------------------------------------------


def read_makefile_lines(path: Path) -> list[str]:
    """Return the logical lines of a Makefile.

    Backslash continuations are joined and runs of whitespace collapsed.
    A missing file yields no lines.
    """
    if not path.is_file():
        return []

    joined: list[str] = []
    buf = ""
    for raw in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = raw.rstrip()
        if line.endswith("\\"):
            buf += line[:-1] + " "
            continue
        joined.append(buf + line)
        buf = ""
    if buf:
        joined.append(buf)

    lines = []
    for line in joined:
        compact = _WS_RE.sub(" ", line).strip()
        if compact:
            lines.append(compact)
    return lines


def scan_makefile(lines: list[str], target: str, subdir: Optional[str] = None) -> _ScanResult:
    """Find the CONFIG symbols and containers that pull target into the build."""
    result = _ScanResult()
    if not target:
        return result

    mentioned = any(target in line for line in lines)
    if not mentioned and subdir is None:
        return result

    t = re.escape(target)
    obj_config = re.compile(rf"\bobj-\$\({_CONFIG}\)\s*\+?=\s.*\b{t}\b")
    container_config = re.compile(rf"\b({_CONTAINER})-(?:y|m|\$\({_CONFIG}\))\s*[:+]?=\s.*\b{t}\b")
    container_objs = re.compile(rf"\b({_CONTAINER})-objs\s*[:+]?=\s.*\b{t}\b")
    container_objs_config = re.compile(rf"\b({_CONTAINER})-objs-\$\({_CONFIG}\)\s*[:+]?=\s.*\b{t}\b")
    dir_gate = None
    if subdir is not None:
        d = re.escape(subdir.rstrip("/") + "/")
        dir_gate = re.compile(rf"\bobj-\$\({_CONFIG}\)\s*[:+]?=\s(?:.*\s)?{d}(?=\s|$)")

    for line in lines:
        if mentioned:
            m = obj_config.search(line)
            if m:
                result.configs.add(m.group(1))

            m = container_config.search(line)
            if m and m.group(1) not in _KBUILD_LISTS:
                result.containers.add(f"{m.group(1)}.o")
                if m.group(2):
                    result.configs.add(m.group(2))

            m = container_objs.search(line)
            if m:
                result.containers.add(f"{m.group(1)}.o")

            m = container_objs_config.search(line)
            if m:
                result.containers.add(f"{m.group(1)}.o")
                result.configs.add(m.group(2))

        if dir_gate is not None:
            m = dir_gate.search(line)
            if m:
                result.configs.add(m.group(1))

    return result


# ---------------------------------------------------------------------------
# Tracing
# ---------------------------------------------------------------------------


def trace_source_file(rel_file: str, src_root: Union[str, Path]) -> KbuildTrace:
    """Trace which CONFIG symbols gate compilation of rel_file.

    rel_file is relative to src_root (a leading ``./`` is ignored). A file
    that does not exist under src_root yields a trace with error set and no
    symbols.
    """
    root = Path(src_root).resolve()
    rel = rel_file.strip()
    if rel.startswith("./"):
        rel = rel[2:]
    src_path = root / rel

    if not src_path.is_file():
        logger.debug("file not found: %s (checked %s)", rel_file, src_path)
        return KbuildTrace(file=rel_file, error=f"File not found in source tree: {src_path}")

    obj_name = src_path.with_suffix(".o").name
    file_dir = src_path.parent
    trace = KbuildTrace(file=rel_file, objects={obj_name})

    # (target, directory, subdir hint for parent gates, originating object)
    queue: list[tuple[str, Path, Optional[str], str]] = [(obj_name, file_dir, None, obj_name)]

    child = file_dir
    parent = child.parent
    while parent != child and parent != root and root in parent.parents:
        rel_target = src_path.with_suffix(".o").relative_to(parent).as_posix()
        queue.append((rel_target, parent, child.name, obj_name))
        child, parent = parent, parent.parent

    visited: set[str] = set()
    makefiles: dict[Path, list[str]] = {}

    while queue:
        batch, queue = queue, []
        for target, directory, subdir, origin in batch:
            key = f"{target}@{directory}"
            if key in visited:
                continue
            visited.add(key)

            makefile = directory / "Makefile"
            if makefile not in makefiles:
                makefiles[makefile] = read_makefile_lines(makefile)
            lines = makefiles[makefile]
            if not lines:
                continue

            scan = scan_makefile(lines, target, subdir)
            for config in sorted(scan.configs):
                trace.symbols.add(config)
                trace.edges.append(
                    TraceEdge(
                        src=f"{origin}@{file_dir}",
                        dst=f"CONFIG:{config}",
                        via=VIA_PARENT_GATE if subdir is not None else VIA_RULE,
                    )
                )
            for container in sorted(scan.containers):
                if container in trace.objects:
                    continue
                trace.objects.add(container)
                trace.edges.append(
                    TraceEdge(
                        src=f"{target}@{directory}",
                        dst=f"{container}@{directory}",
                        via=VIA_PARENT_CONTAINER if subdir is not None else VIA_CONTAINER,
                    )
                )
                queue.append((container, directory, None, origin))

    logger.info(
        "trace %s: %d symbols, %d objects, %d edges",
        rel_file,
        len(trace.symbols),
        len(trace.objects),
        len(trace.edges),
    )
    return trace


def implicated_symbols(files: Iterable[str], src_root: Union[str, Path]) -> tuple[tuple[str, ...], list[KbuildTrace]]:
    """Union the gating symbols of every file. Returns (sorted symbols, traces)."""
    traces = [trace_source_file(f, src_root) for f in files]
    symbols = sorted({s for t in traces for s in t.symbols})
    return tuple(symbols), traces
