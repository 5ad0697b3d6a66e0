"""
api/main.py -- FastAPI application entry point for kcfg-vex.

Exposes the evaluation engine over HTTP so CI jobs and dashboards can ask
"is this CVE reachable in our kernel configuration?" without running the CLI.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (Kconfig tree parse, .config load, cache init, purge
task) and shutdown (cancel purge task, close DB connection) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.trace import router as trace_router
from api.routes.v1.vex import router as vex_router
from cache.store import CVECache
from core.build_state import BuildState
from core.config import get_settings
from core.errors import KcfgVexError
from core.fetcher import CveFetcher
from core.kconfig import load_kernel_tree
from core.vex import TOOL_VERSION

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("kcfgvex.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired cache entries every 6 hours."""
    while True:
        await asyncio.sleep(6 * 60 * 60)
        app.state.cache.purge_expired()


# ---------------------------------------------------------------------------
# Kernel tree loading
# ---------------------------------------------------------------------------


def _load_tree(app: FastAPI) -> None:
    """Parse KERNEL_SRC and KERNEL_DOTCONFIG into app.state.

    Failures are logged, not raised: the server still starts so /health can
    report what is missing, and evaluation routes answer 503.
    """
    settings = get_settings()
    app.state.graph = None
    app.state.build_state = BuildState()
    app.state.kernel_src = settings.kernel_src

    if not settings.kernel_src:
        logger.warning("KERNEL_SRC not set -- trace and VEX routes are disabled")
        return
    try:
        app.state.graph = load_kernel_tree(settings.kernel_src, settings.srcarch).graph
    except KcfgVexError as e:
        logger.error("Could not load Kconfig tree from %s: %s", settings.kernel_src, e)
        return
    logger.info("Kconfig tree loaded (%d symbols)", len(app.state.graph))

    if settings.kernel_dotconfig:
        try:
            app.state.build_state = BuildState.from_path(settings.kernel_dotconfig)
        except OSError as e:
            logger.error("Could not read %s: %s -- evaluating defaults only", settings.kernel_dotconfig, e)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Kernel tree first -- every evaluation route depends on it.
      2. Cache second -- the fetcher and the purge task both reference it.
      3. Purge task last.
    """
    logger.info("kcfg-vex API starting up")
    _load_tree(app)

    settings = get_settings()
    if settings.cve_cache_path:
        app.state.cache = CVECache(Path(settings.cve_cache_path), ttl=settings.cve_cache_ttl)
    else:
        app.state.cache = CVECache(ttl=settings.cve_cache_ttl)
    app.state.fetcher = CveFetcher(cache=app.state.cache)
    logger.info("Cache initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.cache.close()
    logger.info("kcfg-vex API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="kcfg-vex API",
    description="Kernel configuration reachability tracing and CycloneDX VEX generation for Linux kernel CVEs.",
    version=TOOL_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(trace_router, prefix="/api/v1", tags=["Trace"])
app.include_router(vex_router, prefix="/api/v1", tags=["VEX"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error body is {"error": {"code", "message", "detail"}}; _error() builds
# it so the handlers below only decide status and code.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with a Retry-After header; VEX batches are the usual trigger."""
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Pass route-built ErrorDetail dicts through; wrap plain string details."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(KcfgVexError)
async def engine_error_handler(request: Request, exc: KcfgVexError) -> JSONResponse:
    """Engine errors a route did not map itself, e.g. an unreadable CVE cache."""
    logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return _error(500, "engine_error", "The evaluation engine failed.", type(exc).__name__)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything else. The exception is logged, never echoed to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and what kernel data is loaded."""
    graph = getattr(request.app.state, "graph", None)
    state = getattr(request.app.state, "build_state", None)
    return HealthResponse(
        version=TOOL_VERSION,
        kconfig_loaded=graph is not None,
        symbols=len(graph) if graph is not None else 0,
        dotconfig_entries=len(state) if state is not None else 0,
    )
