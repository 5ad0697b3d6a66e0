"""
api/dependencies.py -- FastAPI Depends() helpers for the loaded kernel tree.

The lifespan in api/main.py parses KERNEL_SRC once at startup and stores the
result on app.state. Routes that evaluate anything depend on get_graph(),
which raises HTTP 503 when no tree was loaded so callers get a clear answer
instead of every symbol coming back as missing.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from api.models import ErrorDetail
from core.build_state import BuildState
from core.graph import DependencyGraph


def get_graph(request: Request) -> DependencyGraph:
    graph = getattr(request.app.state, "graph", None)
    if graph is None:
        raise HTTPException(
            status_code=503,
            detail=ErrorDetail(
                code="kconfig_not_loaded",
                message="No Kconfig tree is loaded.",
                detail="Set KERNEL_SRC to a kernel source directory and restart the server.",
            ).model_dump(),
        )
    return graph


def get_state(request: Request) -> BuildState:
    """The loaded .config, or an empty state (defaults only) when none was given."""
    return getattr(request.app.state, "build_state", None) or BuildState()
