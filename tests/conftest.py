"""
tests/conftest.py -- Shared fixtures for kcfg-vex API integration tests.

This module provides:
  - _write_kernel_tree(): lays out a tiny kernel source tree (Kconfig, one
    Makefile, one driver source) under a temporary directory
  - _patch_lifespan(): wires a parsed graph, a .config and mocked cache and
    fetcher into app.state, bypassing real startup
  - api_client: TestClient with a kernel tree loaded
  - unloaded_client: TestClient with no kernel tree, as when KERNEL_SRC is unset

The fetcher is a MagicMock: tests set fetcher.fetch_many.return_value to the
raw CVE records they want the pipeline to see, so no test touches the network.
"""

from __future__ import annotations

import asyncio
from collections.abc import Generator
from contextlib import asynccontextmanager
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from core.build_state import BuildState
from core.kconfig import load_kernel_tree

# ---------------------------------------------------------------------------
# Kernel tree helpers
# ---------------------------------------------------------------------------

KCONFIG = """\
config MODULES
\tbool "Enable loadable module support"

config NET
\tbool "Networking support"
\tdefault y

config NETFILTER
\tbool "Network packet filtering framework"
\tdepends on NET

config NF_TABLES
\ttristate "Netfilter nf_tables support"
\tdepends on NETFILTER
\tselect NETFILTER_NETLINK

config NETFILTER_NETLINK
\ttristate

config USB_ACM
\ttristate "USB modem (CDC ACM) support"
"""

DOTCONFIG = """\
CONFIG_MODULES=y
CONFIG_NET=y
CONFIG_NETFILTER=y
CONFIG_NF_TABLES=m
# CONFIG_USB_ACM is not set
"""


def _write_kernel_tree(root: Path) -> Path:
    """Create Kconfig, net/netfilter/Makefile and the sources it builds."""
    files = {
        "Kconfig": KCONFIG,
        "net/netfilter/Makefile": "obj-$(CONFIG_NF_TABLES) += nf_tables.o\nnf_tables-objs := nf_tables_api.o\n",
        "net/netfilter/nf_tables_api.c": "/* nf_tables */\n",
        "drivers/usb/class/Makefile": "obj-$(CONFIG_USB_ACM) += cdc-acm.o\n",
        "drivers/usb/class/cdc-acm.c": "/* cdc-acm */\n",
    }
    for rel, text in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
    return root


def _patch_lifespan(state: SimpleNamespace):
    """Return an async context manager that replaces the real lifespan.

    Copies every attribute of state onto app.state. The purge_task is a
    long-sleeping coroutine (a real asyncio.Task is required; MagicMock
    would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        for key, value in vars(state).items():
            setattr(app.state, key, value)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def kernel_src(tmp_path_factory) -> Path:
    return _write_kernel_tree(tmp_path_factory.mktemp("linux"))


@pytest.fixture(scope="module")
def dotconfig(kernel_src: Path) -> Path:
    path = kernel_src / ".config"
    path.write_text(DOTCONFIG)
    return path


@pytest.fixture(scope="module")
def api_client(kernel_src: Path) -> Generator[tuple[TestClient, MagicMock], None, None]:
    """Yield (client, fetcher) with the sample tree and .config loaded."""
    fetcher = MagicMock()
    state = SimpleNamespace(
        graph=load_kernel_tree(kernel_src, "x86").graph,
        build_state=BuildState.from_text(DOTCONFIG),
        kernel_src=str(kernel_src),
        cache=MagicMock(),
        fetcher=fetcher,
    )
    app.router.lifespan_context = _patch_lifespan(state)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, fetcher


@pytest.fixture(scope="module")
def unloaded_client() -> Generator[TestClient, None, None]:
    """Yield a client whose app has no Kconfig tree loaded."""
    state = SimpleNamespace(
        graph=None,
        build_state=BuildState(),
        kernel_src=None,
        cache=MagicMock(),
        fetcher=MagicMock(),
    )
    app.router.lifespan_context = _patch_lifespan(state)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    """Rate-limit counters are process-wide; start every test from zero."""
    limiter.reset()
    yield
