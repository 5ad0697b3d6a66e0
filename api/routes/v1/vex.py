"""
api/routes/v1/vex.py -- VEX generation route.

POST /vex fetches each requested CVE, traces its programFiles through the
loaded kernel tree's Makefiles, evaluates the implicated symbols and returns
a CycloneDX VEX document. Every requested id produces exactly one entry;
CVEs that cannot be fetched come back as under_investigation.

The @limiter.limit() decorator must sit ABOVE @router.post so that slowapi can
attach the limit string to the function object before FastAPI wraps it.
"""

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_graph, get_state
from api.limiter import limiter
from api.models import VexRequest
from core.build_state import BuildState
from core.config import get_settings
from core.graph import DependencyGraph
from core.pipeline import run_batch

router = APIRouter()


@limiter.limit("5/minute")
@router.post("/vex")
def post_vex(
    request: Request,
    body: VexRequest,
    force_refresh: bool = False,
    graph: DependencyGraph = Depends(get_graph),
    state: BuildState = Depends(get_state),
) -> dict:
    """Return a CycloneDX VEX document for body.ids.

    Query params:
        force_refresh -- bypass the CVE cache for this request
    """
    settings = get_settings()
    document = run_batch(
        body.ids,
        graph,
        state,
        request.app.state.fetcher,
        src_root=request.app.state.kernel_src,
        force_refresh=force_refresh,
        workers=settings.eval_workers,
        spec_version=settings.vex_spec_version,
    )
    return document.to_dict()
