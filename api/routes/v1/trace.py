"""
api/routes/v1/trace.py -- Symbol evaluation and graph introspection routes.

POST /trace evaluates CONFIG symbols (or a Kconfig condition) against the
loaded .config and returns the verdict with its evidence trail.
GET /graph/{symbol} describes one node of the dependency graph.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from api.dependencies import get_graph, get_state
from api.limiter import limiter
from api.models import ErrorDetail, SymbolResponse, TraceRequest, TraceResponse
from core.build_state import BuildState, SymbolResolver
from core.errors import ExprSyntaxError, InvalidQueryError, ResolutionError
from core.evaluator import evaluate, evaluate_expression
from core.expr import symbol_key
from core.graph import DependencyGraph

router = APIRouter()


@limiter.limit("60/minute")
@router.post("/trace", response_model=TraceResponse)
def post_trace(
    request: Request,
    body: TraceRequest,
    graph: DependencyGraph = Depends(get_graph),
    state: BuildState = Depends(get_state),
) -> TraceResponse:
    """Evaluate body.targets (or body.expr) against the loaded configuration."""
    try:
        if body.expr:
            result = evaluate_expression(body.expr, graph, state)
        else:
            result = evaluate(body.targets, graph, state)
    except ExprSyntaxError as exc:
        raise HTTPException(
            status_code=400,
            detail=ErrorDetail(code="invalid_expression", message=str(exc)).model_dump(),
        ) from exc
    except InvalidQueryError as exc:
        raise HTTPException(
            status_code=400,
            detail=ErrorDetail(code="invalid_query", message=str(exc)).model_dump(),
        ) from exc
    except ResolutionError as exc:
        raise HTTPException(
            status_code=422,
            detail=ErrorDetail(code="unresolvable_dependencies", message=str(exc)).model_dump(),
        ) from exc
    return TraceResponse.from_result(result)


@limiter.limit("60/minute")
@router.get("/graph/{symbol}", response_model=SymbolResponse)
def get_symbol(
    request: Request,
    symbol: str,
    resolve: bool = True,
    graph: DependencyGraph = Depends(get_graph),
    state: BuildState = Depends(get_state),
) -> SymbolResponse:
    """Return a symbol's definition and direct edges.

    Query params:
        resolve -- include the symbol's value under the loaded .config (default: true)
    """
    name = symbol_key(symbol[:128])
    if graph.symbol(name) is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(
                code="symbol_not_found",
                message=f"{name} is not defined in the loaded Kconfig tree.",
            ).model_dump(),
        )
    resolver = SymbolResolver(graph, state) if resolve else None
    return SymbolResponse.from_graph(graph, name, resolver)
