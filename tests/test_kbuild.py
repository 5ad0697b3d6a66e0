"""Unit tests for core/kbuild.py -- Makefile rule tracing over a temporary source tree."""

import textwrap

from core.kbuild import (
    VIA_CONTAINER,
    VIA_PARENT_GATE,
    implicated_symbols,
    read_makefile_lines,
    scan_makefile,
    trace_source_file,
)


def _write(root, rel, text=""):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text))
    return path


# ---------------------------------------------------------------------------
# TestReadMakefile
# ---------------------------------------------------------------------------


class TestReadMakefile:
    def test_continuations_joined_and_whitespace_collapsed(self, tmp_path):
        mk = _write(tmp_path, "Makefile", "obj-$(CONFIG_A) += a.o \\\n\t\tb.o\n\n\nobj-y  +=   c.o\n")
        assert read_makefile_lines(mk) == ["obj-$(CONFIG_A) += a.o b.o", "obj-y += c.o"]

    def test_missing_makefile_is_empty(self, tmp_path):
        assert read_makefile_lines(tmp_path / "Makefile") == []


# ---------------------------------------------------------------------------
# TestScanMakefile
# ---------------------------------------------------------------------------


class TestScanMakefile:
    def test_direct_rule(self):
        scan = scan_makefile(["obj-$(CONFIG_FOO) += foo.o"], "foo.o")
        assert scan.configs == {"CONFIG_FOO"}
        assert scan.containers == set()

    def test_obj_y_is_not_a_container(self):
        assert scan_makefile(["obj-y += module.o"], "module.o").containers == set()

    def test_word_boundary_respected(self):
        scan = scan_makefile(["obj-$(CONFIG_FOO) += foobar.o"], "bar.o")
        assert scan.configs == set()

    def test_gated_container_member(self):
        scan = scan_makefile(["nft-$(CONFIG_NFT_CT) += nft_ct.o"], "nft_ct.o")
        assert scan.configs == {"CONFIG_NFT_CT"}
        assert scan.containers == {"nft.o"}

    def test_ungated_container_member(self):
        scan = scan_makefile(["nf_tables-y := nf_tables_core.o nft_set.o"], "nft_set.o")
        assert scan.containers == {"nf_tables.o"}
        assert scan.configs == set()

    def test_objs_config_container(self):
        scan = scan_makefile(["drv-objs-$(CONFIG_EXTRA) += extra.o"], "extra.o")
        assert scan.containers == {"drv.o"}
        assert scan.configs == {"CONFIG_EXTRA"}

    def test_directory_gate(self):
        scan = scan_makefile(["obj-$(CONFIG_NET) += core/ ethernet/"], "core/dev.o", subdir="core")
        assert scan.configs == {"CONFIG_NET"}

    def test_empty_target(self):
        scan = scan_makefile(["obj-$(CONFIG_FOO) += foo.o"], "")
        assert scan.configs == set()


# ---------------------------------------------------------------------------
# TestTraceSourceFile
# ---------------------------------------------------------------------------


class TestTraceSourceFile:
    def test_basic_rule(self, tmp_path):
        _write(tmp_path, "drivers/net/test_driver.c")
        _write(
            tmp_path,
            "drivers/net/Makefile",
            """
            obj-$(CONFIG_TEST_DRIVER) += test_driver.o
            obj-$(CONFIG_ANOTHER_DRIVER) += another_driver.o
            """,
        )

        trace = trace_source_file("drivers/net/test_driver.c", tmp_path)

        assert trace.file == "drivers/net/test_driver.c"
        assert trace.objects == {"test_driver.o"}
        assert trace.symbols == {"CONFIG_TEST_DRIVER"}
        assert trace.error is None
        assert trace.edges and trace.edges[0].dst == "CONFIG:CONFIG_TEST_DRIVER"

    def test_container_objects(self, tmp_path):
        _write(tmp_path, "drivers/complex/component.c")
        _write(
            tmp_path,
            "drivers/complex/Makefile",
            """
            obj-$(CONFIG_COMPLEX_DRIVER) += complex-driver.o
            complex-driver-objs := component.o helper.o
            complex-driver-objs-$(CONFIG_FEATURE_X) += feature_x.o
            """,
        )

        trace = trace_source_file("drivers/complex/component.c", tmp_path)

        assert trace.objects == {"component.o", "complex-driver.o"}
        assert trace.symbols == {"CONFIG_COMPLEX_DRIVER"}
        assert any(e.via == VIA_CONTAINER and "complex-driver.o" in e.dst for e in trace.edges)

    def test_parent_directory_gate(self, tmp_path):
        _write(tmp_path, "drivers/submodule/module.c")
        _write(tmp_path, "drivers/submodule/Makefile", "obj-y += module.o\n")
        _write(tmp_path, "drivers/Makefile", "obj-$(CONFIG_PARENT_MODULE) += submodule/\n")

        trace = trace_source_file("drivers/submodule/module.c", tmp_path)

        assert trace.symbols == {"CONFIG_PARENT_MODULE"}
        assert any(e.via == VIA_PARENT_GATE for e in trace.edges)

    def test_root_makefile_not_consulted(self, tmp_path):
        _write(tmp_path, "drivers/thing.c")
        _write(tmp_path, "drivers/Makefile", "obj-$(CONFIG_THING) += thing.o\n")
        _write(tmp_path, "Makefile", "obj-$(CONFIG_TOP) += drivers/\n")

        assert trace_source_file("./drivers/thing.c", tmp_path).symbols == {"CONFIG_THING"}

    def test_missing_file(self, tmp_path):
        trace = trace_source_file("nonexistent/file.c", tmp_path)

        assert "File not found" in trace.error
        assert trace.symbols == set()
        assert trace.objects == set()

    def test_file_without_makefile_has_no_symbols(self, tmp_path):
        _write(tmp_path, "lib/orphan.c")
        trace = trace_source_file("lib/orphan.c", tmp_path)
        assert trace.error is None
        assert trace.symbols == set()


# ---------------------------------------------------------------------------
# TestImplicatedSymbols
# ---------------------------------------------------------------------------


class TestImplicatedSymbols:
    def test_union_sorted(self, tmp_path):
        _write(tmp_path, "net/a.c")
        _write(tmp_path, "net/b.c")
        _write(tmp_path, "net/Makefile", "obj-$(CONFIG_NET_B) += b.o\nobj-$(CONFIG_NET_A) += a.o\n")

        symbols, traces = implicated_symbols(["net/b.c", "net/a.c", "net/gone.c"], tmp_path)

        assert symbols == ("CONFIG_NET_A", "CONFIG_NET_B")
        assert len(traces) == 3
        assert traces[2].error is not None
