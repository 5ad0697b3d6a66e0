#!/usr/bin/env python3
"""
kcfg-vex -- Kernel configuration reachability and VEX generation for CVEs.

Usage:
  python main.py trace cves/CVE-2024-26581.json ~/src/linux
  python main.py eval ~/src/linux --dotconfig .config CONFIG_NF_TABLES
  python main.py eval ~/src/linux --dotconfig .config --expr "NET && !BPF"
  python main.py graph ~/src/linux NF_TABLES --dotconfig .config
  python main.py cve-fetch CVE-2024-26581 CVE-2023-52447 --outdir cves
  python main.py yocto-scan cve-summary.json ~/src/linux --dotconfig .config --vex-out vex/
  python main.py yocto-scan cve-summary.json ~/src/linux --sbom sbom.json --split --config-out pairs.txt

Environment variables (or .env):
  CVE_API_URL       CVE record API (default: https://cveawg.mitre.org/api/cve)
  CVE_CACHE_PATH    SQLite cache location
  CVE_CACHE_TTL     Cache lifetime in seconds (default: 86400)
  FETCH_WORKERS     Concurrent CVE downloads (default: 4)
  EVAL_WORKERS      Concurrent evaluations (default: 4)
  SRCARCH           Architecture used to expand $(SRCARCH) in Kconfig (default: x86)
  LOG_LEVEL         DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

import argparse
import json
import logging
from pathlib import Path
from typing import Optional

from cache.store import CVECache
from core.build_state import BuildState
from core.config import get_settings
from core.errors import (
    ExprSyntaxError,
    FetchError,
    InvalidQueryError,
    KconfigReadError,
    KcfgVexError,
    ResolutionError,
)
from core.evaluator import evaluate, evaluate_expression
from core.fetcher import CveFetcher, extract_program_files
from core.formatter import disable_color, print_graph, print_trace, print_vex_summary, to_json, to_markdown
from core.graph import DependencyGraph
from core.kbuild import trace_source_file
from core.kconfig import load_kernel_tree
from core.pipeline import collect_records, vex_from_items
from core.vex import save_vex, write_split_vex
from ingest.sbom import SbomIndex, parse_cyclonedx_sbom
from ingest.yocto import config_pairs, parse_yocto_summary, write_config_pairs

logger = logging.getLogger("kcfgvex.cli")


# ---------------------------------------------------------------------------
# Shared loaders
# ---------------------------------------------------------------------------


def _load_file(path: str) -> list[str]:
    """Read CVE IDs from a file -- one per line, # comments and blank lines ignored."""
    file_path = Path(path).resolve()
    if not file_path.is_file():
        print(f"  [!] '{path}' is not a readable file.")
        return []
    try:
        lines = file_path.read_text().splitlines()
    except OSError as e:
        print(f"  [!] Could not read file '{path}': {e}")
        return []
    return [line.strip() for line in lines if line.strip() and not line.strip().startswith("#")]


def load_graph(linux_src: str, kconfig: Optional[str] = None, srcarch: Optional[str] = None) -> DependencyGraph:
    """Parse the Kconfig tree of a kernel checkout.

    Raises KconfigReadError if the root Kconfig file cannot be read.
    """
    result = load_kernel_tree(linux_src, srcarch or get_settings().srcarch, kconfig or "Kconfig")
    return result.graph


def load_state(dotconfig: Optional[str]) -> BuildState:
    if not dotconfig:
        return BuildState()
    return BuildState.from_path(dotconfig)


def _make_cache(no_cache: bool) -> Optional[CVECache]:
    if no_cache:
        return None
    settings = get_settings()
    if settings.cve_cache_path:
        return CVECache(Path(settings.cve_cache_path), ttl=settings.cve_cache_ttl)
    return CVECache(ttl=settings.cve_cache_ttl)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_trace(args: argparse.Namespace) -> int:
    """Print the CONFIG symbols gating the programFiles of a CVE JSON record."""
    try:
        raw = json.loads(Path(args.cve).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        print(f"  [!] Could not read CVE record '{args.cve}': {e}")
        return 1

    files = extract_program_files(raw)
    if not files:
        print("  [!] CVE record lists no programFiles.")
        return 1

    symbols: set[str] = set()
    for path in files:
        trace = trace_source_file(path, args.linux_src)
        if trace.error is not None:
            print(f"  [!] {path}: {trace.error}")
            continue
        symbols |= trace.symbols
        if args.verbose:
            print(f"  {path}")
            for edge in trace.edges:
                print(f"      {edge.src} -> {edge.dst}  ({edge.via})")

    print("CONFIG symbols found:")
    for sym in sorted(symbols):
        print(f"  {sym}")
    return 0


def cmd_eval(args: argparse.Namespace) -> int:
    if not args.symbols and not args.expr:
        print("  [!] Give one or more CONFIG symbols or --expr.")
        return 2

    graph = load_graph(args.linux_src, args.kconfig, args.srcarch)
    state = load_state(args.dotconfig)
    try:
        if args.expr:
            result = evaluate_expression(args.expr, graph, state)
        else:
            result = evaluate(args.symbols, graph, state)
    except (InvalidQueryError, ExprSyntaxError) as e:
        print(f"  [!] {e}")
        return 2
    except ResolutionError as e:
        print(f"  [!] {e}")
        return 1

    if args.json:
        print(to_json(result))
    else:
        print_trace(result, title=args.expr or None)
    return 0


def cmd_graph(args: argparse.Namespace) -> int:
    graph = load_graph(args.linux_src, args.kconfig, args.srcarch)
    state = load_state(args.dotconfig) if args.dotconfig else None
    print_graph(graph, args.symbol, state, max_depth=args.depth)
    if args.diagnostics:
        for diag in graph.diagnostics:
            print(f"  {diag}")
    return 0


def cmd_cve_fetch(args: argparse.Namespace) -> int:
    cve_ids = list(args.cves)
    if args.file:
        cve_ids.extend(_load_file(args.file))
    if not cve_ids:
        print("  [!] No CVE IDs given.")
        return 2

    fetcher = CveFetcher(cache=_make_cache(args.no_cache))
    results = fetcher.fetch_many(cve_ids, force_refresh=args.force_refresh)

    outdir = Path(args.outdir)
    outdir.mkdir(parents=True, exist_ok=True)
    failed = 0
    for cve_id, result in results.items():
        if isinstance(result, FetchError):
            failed += 1
            print(f"  [!] {result}")
            continue
        (outdir / f"{cve_id}.json").write_text(json.dumps(result, indent=2), encoding="utf-8")
        if not args.quiet:
            print(f"  Saved {cve_id}")

    if failed:
        print(f"  [!] {failed} CVE(s) could not be retrieved.\n")
    return 1 if failed == len(results) else 0


def cmd_yocto_scan(args: argparse.Namespace) -> int:
    settings = get_settings()
    try:
        summary = parse_yocto_summary(Path(args.yocto_json).read_text(encoding="utf-8"))
    except (OSError, KcfgVexError) as e:
        print(f"  [!] Could not load Yocto summary: {e}")
        return 1

    print("\nkcfg-vex — Yocto CVE scan")
    print("─" * 40)
    print(f"{len(summary.remaining)} kernel CVE(s) to evaluate, {len(summary.patched)} already patched.\n")
    if not summary.remaining:
        return 0

    sbom: Optional[SbomIndex] = None
    if args.sbom:
        try:
            sbom = parse_cyclonedx_sbom(Path(args.sbom).read_text(encoding="utf-8"))
        except (OSError, KcfgVexError) as e:
            print(f"  [!] Could not load SBOM: {e}")
            return 1

    graph = load_graph(args.linux_src, args.kconfig, args.srcarch)
    state = load_state(args.dotconfig)
    fetcher = CveFetcher(cache=_make_cache(args.no_cache))

    items = collect_records(
        summary.remaining,
        fetcher,
        src_root=args.linux_src,
        force_refresh=args.force_refresh,
        cache_only=args.cache_only,
    )
    for item in items:
        if isinstance(item, FetchError):
            print(f"  [!] {item}")
    document = vex_from_items(
        items,
        graph,
        state,
        sbom=sbom,
        workers=settings.eval_workers,
        spec_version=settings.vex_spec_version,
    )

    if args.vex_out:
        if args.split:
            for state_name, path, count in write_split_vex(document, args.vex_out):
                print(f"  Wrote {count} {state_name.value} entr{'y' if count == 1 else 'ies'} to {path}")
        else:
            out = Path(args.vex_out)
            if out.is_dir() or not out.suffix:
                out = out / "vex.json"
            print(f"  Wrote VEX document to {save_vex(document, out)}")

    if args.config_out:
        count = write_config_pairs(config_pairs(items), args.config_out)
        print(f"  Wrote {count} CVE-config pair(s) to {args.config_out}")

    if args.format == "markdown":
        print(to_markdown(document))
    else:
        print_vex_summary(document)
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _add_tree_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("linux_src", metavar="LINUX_SRC", help="Linux kernel source directory")
    p.add_argument("--kconfig", metavar="PATH", help="Root Kconfig relative to LINUX_SRC (default: Kconfig)")
    p.add_argument("--srcarch", metavar="ARCH", help="Value for $(SRCARCH) (default: SRCARCH setting)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kcfg-vex",
        description="Kernel configuration reachability tracing and VEX generation.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--no-color", action="store_true", help="Disable ANSI color codes in terminal output")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("trace", help="Map a CVE record's programFiles to gating CONFIG symbols")
    p.add_argument("cve", metavar="CVE_JSON", help="CVE JSON 5 record file")
    p.add_argument("linux_src", metavar="LINUX_SRC", help="Linux kernel source directory")
    p.add_argument("-v", "--verbose", action="store_true", help="Show the Makefile edges for each file")
    p.set_defaults(func=cmd_trace)

    p = sub.add_parser("eval", help="Evaluate CONFIG symbols or an expression against a .config")
    _add_tree_args(p)
    p.add_argument("symbols", nargs="*", metavar="CONFIG_SYMBOL", help="Target symbols (CONFIG_ prefix optional)")
    p.add_argument("--dotconfig", metavar="PATH", help="Kernel .config (default: defaults only)")
    p.add_argument("--expr", metavar="EXPR", help='Evaluate a condition instead, e.g. "NET && !BPF"')
    p.add_argument("--json", action="store_true", help="Output the trace result as JSON")
    p.set_defaults(func=cmd_eval)

    p = sub.add_parser("graph", help="Show a symbol's dependency neighbourhood")
    _add_tree_args(p)
    p.add_argument("symbol", metavar="SYMBOL")
    p.add_argument("--dotconfig", metavar="PATH", help="Show resolved values from this .config")
    p.add_argument("--depth", type=int, default=2, help="Traversal depth (default: 2)")
    p.add_argument("--diagnostics", action="store_true", help="Also list Kconfig parse diagnostics")
    p.set_defaults(func=cmd_graph)

    p = sub.add_parser("cve-fetch", help="Download CVE JSON records")
    p.add_argument("cves", nargs="*", metavar="CVE-ID")
    p.add_argument("--file", metavar="PATH", help="Text file with one CVE ID per line (# comments supported)")
    p.add_argument("--outdir", default="cves", metavar="DIR", help="Output directory (default: cves)")
    p.add_argument("--force-refresh", action="store_true", help="Ignore cached records")
    p.add_argument("--no-cache", action="store_true", help="Do not read or write the local cache")
    p.add_argument("--quiet", action="store_true", help="Only report failures")
    p.set_defaults(func=cmd_cve_fetch)

    p = sub.add_parser("yocto-scan", help="Generate VEX for the kernel CVEs in a Yocto cve-check summary")
    p.add_argument("yocto_json", metavar="YOCTO_JSON", help="Yocto cve-check summary JSON")
    _add_tree_args(p)
    p.add_argument("--dotconfig", metavar="PATH", help="Kernel .config")
    p.add_argument("--sbom", metavar="PATH", help="CycloneDX SBOM for component references")
    p.add_argument("--vex-out", metavar="PATH", help="VEX output file or directory")
    p.add_argument("--split", action="store_true", help="Write one VEX file per state into --vex-out")
    p.add_argument("--config-out", metavar="PATH", help="Write sorted 'CVE CONFIG_SYMBOL' pairs here")
    p.add_argument("--force-refresh", action="store_true", help="Ignore cached records")
    p.add_argument("--cache-only", action="store_true", help="Never hit the network")
    p.add_argument("--no-cache", action="store_true", help="Do not read or write the local cache")
    p.add_argument("--format", choices=["terminal", "markdown"], default="terminal", help="Summary format")
    p.set_defaults(func=cmd_yocto_scan)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.no_color:
        disable_color()

    if not getattr(args, "func", None):
        parser.print_help()
        return 2

    try:
        return args.func(args)
    except KconfigReadError as e:
        print(f"  [!] {e}")
        return 1
    except OSError as e:
        print(f"  [!] {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
