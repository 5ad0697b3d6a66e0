"""Unit tests for core/kconfig.py -- parsing, merging, sourcing, diagnostics.

Trees are held in memory via parse_kconfig_text(); the filesystem resolver is
covered with tmp_path at the bottom.
"""

import textwrap

import pytest

from core.errors import KconfigReadError
from core.expr import And, Const, Sym
from core.kconfig import FileSystemResolver, MappingResolver, load_kernel_tree, parse_kconfig, parse_kconfig_text
from core.models import SymbolKind


def _parse(text, files=None, env=None):
    files = {k: textwrap.dedent(v) for k, v in (files or {}).items()}
    return parse_kconfig_text(textwrap.dedent(text), files=files, env=env)


def _messages(result):
    return [d.message for d in result.diagnostics]


# ---------------------------------------------------------------------------
# TestBasicEntries
# ---------------------------------------------------------------------------


class TestBasicEntries:
    def test_config_with_type_prompt_default(self):
        result = _parse(
            """
            config NET
            \tbool "Networking support"
            \tdefault y
            """
        )
        sym = result.symbols["NET"]
        assert sym.kind is SymbolKind.BOOL
        assert sym.prompt == "Networking support"
        assert sym.defaults[0].value == Const("y")
        assert sym.locations[0].line == 2

    def test_def_bool_sets_type_and_default(self):
        result = _parse(
            """
            config HAVE_FOO
            \tdef_bool y if NET
            """
        )
        sym = result.symbols["HAVE_FOO"]
        assert sym.kind is SymbolKind.BOOL
        assert sym.defaults[0].guard == Sym("NET")

    def test_menuconfig_is_a_symbol(self):
        result = _parse(
            """
            menuconfig NETFILTER
            \ttristate "Netfilter"
            """
        )
        assert result.symbols["NETFILTER"].kind is SymbolKind.TRISTATE

    def test_depends_on_recorded_in_graph(self):
        result = _parse(
            """
            config FOO
            \tbool
            \tdepends on BAR && BAZ
            """
        )
        assert result.graph.depends_guard("FOO") == And(Sym("BAR"), Sym("BAZ"))

    def test_select_and_imply_edges(self):
        result = _parse(
            """
            config FOO
            \ttristate
            \tselect CRC32 if NET
            \timply CRYPTO
            config CRC32
            \ttristate
            config CRYPTO
            \ttristate
            config NET
            \tbool
            """
        )
        (select,) = result.graph.selects_of("FOO")
        assert select.target == "CRC32"
        assert select.guard == Sym("NET")
        assert [e.target for e in result.graph.implies_of("FOO")] == ["CRYPTO"]

    def test_help_text_captured_and_skipped(self):
        result = _parse(
            """
            config FOO
            \tbool "Foo"
            \thelp
            \t  This text mentions config BAR and depends on nothing.

            \t  Second paragraph.
            config BAZ
            \tbool
            """
        )
        assert "BAR" not in result.symbols
        assert "Second paragraph." in result.symbols["FOO"].help
        assert "BAZ" in result.symbols

    def test_int_hex_string_types(self):
        result = _parse(
            """
            config NR_CPUS
            \tint "Max CPUs"
            \trange 2 512
            \tdefault 64
            config PHYS_START
            \thex
            \tdefault 0x1000000
            config LOCALVERSION
            \tstring
            """
        )
        assert result.symbols["NR_CPUS"].kind is SymbolKind.INT
        assert result.symbols["PHYS_START"].kind is SymbolKind.HEX
        assert result.symbols["LOCALVERSION"].kind is SymbolKind.STRING

    def test_line_continuation_joined(self):
        result = _parse(
            """
            config FOO
            \tbool
            \tdepends on A && \\
            \t\tB
            """
        )
        assert result.graph.depends_guard("FOO") == And(Sym("A"), Sym("B"))


# ---------------------------------------------------------------------------
# TestBlocks
# ---------------------------------------------------------------------------


class TestBlocks:
    def test_if_block_adds_parent_dependency(self):
        result = _parse(
            """
            config NET
            \tbool
            if NET
            config INET
            \tbool
            endif
            """
        )
        assert result.graph.depends_guard("INET") == Sym("NET")

    def test_menu_depends_propagates_to_children(self):
        result = _parse(
            """
            menu "Crypto"
            \tdepends on CRYPTO
            config CRYPTO_AES
            \ttristate
            \tdepends on NET
            endmenu
            """
        )
        assert result.graph.depends_guard("CRYPTO_AES") == And(Sym("NET"), Sym("CRYPTO"))

    def test_choice_members_recorded(self):
        result = _parse(
            """
            choice
            \tprompt "Preemption model"
            \tdefault PREEMPT_VOLUNTARY
            config PREEMPT_NONE
            \tbool "No forced preemption"
            config PREEMPT_VOLUNTARY
            \tbool "Voluntary"
            endchoice
            """
        )
        (choice,) = result.graph.choices.values()
        assert choice.members == ("PREEMPT_NONE", "PREEMPT_VOLUNTARY")
        assert choice.defaults[0].value == Sym("PREEMPT_VOLUNTARY")
        assert result.symbols["PREEMPT_NONE"].choice == choice.name
        assert result.graph.choice_of("PREEMPT_VOLUNTARY") is choice

    def test_optional_choice(self):
        result = _parse(
            """
            choice
            \toptional
            config A
            \tbool
            endchoice
            """
        )
        (choice,) = result.graph.choices.values()
        assert choice.optional

    def test_unterminated_block_is_error_diagnostic(self):
        result = _parse(
            """
            if NET
            config FOO
            \tbool
            """
        )
        assert "FOO" in result.symbols
        errors = [d for d in result.diagnostics if d.severity == "error"]
        assert any("unterminated 'if'" in d.message for d in errors)

    def test_stray_end_is_reported(self):
        result = _parse("endmenu\n")
        assert any("without matching 'menu'" in m for m in _messages(result))


# ---------------------------------------------------------------------------
# TestMerging
# ---------------------------------------------------------------------------


class TestMerging:
    def test_duplicate_definitions_accumulate_depends(self):
        result = _parse(
            """
            config FOO
            \tbool "Foo"
            \tdepends on A
            \tdefault y if A
            config FOO
            \tbool "Foo again"
            \tdepends on B
            \tdefault m
            """
        )
        sym = result.symbols["FOO"]
        assert sym.prompt == "Foo again"
        assert len(sym.locations) == 2
        assert [r.value for r in sym.defaults] == [Const("y"), Const("m")]
        assert result.graph.depends_guard("FOO") == And(Sym("A"), Sym("B"))

    def test_selects_from_every_definition_kept(self):
        result = _parse(
            """
            config FOO
            \tbool
            \tselect A
            config FOO
            \tselect B
            config A
            \tbool
            config B
            \tbool
            """
        )
        assert sorted(e.target for e in result.graph.selects_of("FOO")) == ["A", "B"]

    def test_symbol_without_type_is_unknown(self):
        result = _parse(
            """
            config FOO
            \tdefault y
            """
        )
        assert result.symbols["FOO"].kind is SymbolKind.UNKNOWN
        assert any("has no type" in m for m in _messages(result))


# ---------------------------------------------------------------------------
# TestFailSoft
# ---------------------------------------------------------------------------


class TestFailSoft:
    def test_unknown_directive_skipped(self):
        result = _parse(
            """
            config FOO
            \tbool
            \tfrobnicate harder
            config BAR
            \tbool
            """
        )
        assert {"FOO", "BAR"} <= set(result.symbols)
        assert any("unknown directive 'frobnicate'" in m for m in _messages(result))

    def test_malformed_expression_skipped(self):
        result = _parse(
            """
            config FOO
            \tbool
            \tdepends on (A ||
            config BAR
            \tbool
            \tdepends on A
            """
        )
        assert result.graph.depends_guard("FOO") is None
        assert result.graph.depends_guard("BAR") == Sym("A")
        assert any("malformed 'depends'" in m for m in _messages(result))

    def test_preprocessor_function_becomes_diagnostic(self):
        result = _parse(
            """
            config CC_HAS_FOO
            \tdef_bool $(success,true)
            """
        )
        assert "CC_HAS_FOO" in result.symbols
        assert result.diagnostics

    def test_property_outside_entry(self):
        result = _parse("default y\n")
        assert any("outside of an entry" in m for m in _messages(result))

    def test_unresolved_reference_diagnostic(self):
        result = _parse(
            """
            config FOO
            \tbool
            \tdepends on GHOST
            """
        )
        assert result.graph.is_unresolved("GHOST")
        assert any("GHOST" in m for m in _messages(result))

    def test_unreadable_root_is_fatal(self):
        with pytest.raises(KconfigReadError):
            parse_kconfig("Kconfig", MappingResolver({}))


# ---------------------------------------------------------------------------
# TestSource
# ---------------------------------------------------------------------------


class TestSource:
    def test_source_relative_to_srctree(self):
        result = _parse(
            'source "net/Kconfig"\n',
            files={"net/Kconfig": "config NET\n\tbool\n"},
        )
        assert "NET" in result.symbols
        assert "net/Kconfig" in result.files

    def test_rsource_relative_to_including_file(self):
        result = _parse(
            'source "drivers/Kconfig"\n',
            files={
                "drivers/Kconfig": 'rsource "usb/Kconfig"\n',
                "drivers/usb/Kconfig": "config USB\n\ttristate\n",
            },
        )
        assert "USB" in result.symbols

    def test_source_expands_variables(self):
        result = _parse(
            'source "arch/$(SRCARCH)/Kconfig"\n',
            files={"arch/x86/Kconfig": "config X86\n\tdef_bool y\n"},
            env={"SRCARCH": "x86"},
        )
        assert "X86" in result.symbols

    def test_source_glob(self):
        result = _parse(
            'source "drivers/*/Kconfig"\n',
            files={
                "drivers/a/Kconfig": "config A\n\tbool\n",
                "drivers/b/Kconfig": "config B\n\tbool\n",
            },
        )
        assert {"A", "B"} <= set(result.symbols)

    def test_missing_source_is_error_but_parse_continues(self):
        result = _parse('source "nope/Kconfig"\nconfig FOO\n\tbool\n')
        assert "FOO" in result.symbols
        assert any("sourced file not found" in m for m in _messages(result))

    def test_osource_missing_is_silent(self):
        result = _parse('osource "nope/Kconfig"\n')
        assert result.diagnostics == ()

    def test_recursive_source_does_not_loop(self):
        result = _parse(
            'source "a/Kconfig"\n',
            files={"a/Kconfig": 'config A\n\tbool\nsource "a/Kconfig"\n'},
        )
        assert "A" in result.symbols
        assert any("recursive source" in m for m in _messages(result))

    def test_parent_block_applies_across_source(self):
        result = _parse(
            'if NET\nsource "net/Kconfig"\nendif\nconfig NET\n\tbool\n',
            files={"net/Kconfig": "config INET\n\tbool\n"},
        )
        assert result.graph.depends_guard("INET") == Sym("NET")


# ---------------------------------------------------------------------------
# TestModules
# ---------------------------------------------------------------------------


class TestModules:
    def test_modules_keyword_marks_symbol(self):
        result = _parse(
            """
            config MY_MODULES
            \tbool
            \tmodules
            """
        )
        assert result.graph.modules_symbol == "MY_MODULES"

    def test_option_modules_legacy_form(self):
        result = _parse(
            """
            config MODS
            \tbool
            \toption modules
            """
        )
        assert result.graph.modules_symbol == "MODS"

    def test_falls_back_to_modules_symbol_name(self):
        result = _parse("config MODULES\n\tbool\n")
        assert result.graph.modules_symbol == "MODULES"


# ---------------------------------------------------------------------------
# TestFileSystemResolver
# ---------------------------------------------------------------------------


class TestFileSystemResolver:
    def test_parse_from_disk(self, tmp_path):
        (tmp_path / "Kconfig").write_text('source "net/Kconfig"\n')
        (tmp_path / "net").mkdir()
        (tmp_path / "net" / "Kconfig").write_text("config NET\n\tbool\n")
        result = parse_kconfig(tmp_path / "Kconfig")
        assert "NET" in result.symbols

    def test_resolve_returns_relative_paths(self, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "a" / "Kconfig").write_text("")
        resolver = FileSystemResolver(tmp_path, env={})
        assert resolver.resolve("a/Kconfig") == ["a/Kconfig"]

    def test_missing_root_raises(self, tmp_path):
        with pytest.raises(KconfigReadError):
            parse_kconfig(tmp_path / "Kconfig")

    def test_load_kernel_tree_sets_srcarch(self, tmp_path):
        (tmp_path / "Kconfig").write_text('source "arch/$(SRCARCH)/Kconfig"\n')
        (tmp_path / "arch" / "arm64").mkdir(parents=True)
        (tmp_path / "arch" / "arm64" / "Kconfig").write_text("config ARM64\n\tdef_bool y\n")
        result = load_kernel_tree(tmp_path, "arm64")
        assert "ARM64" in result.symbols
