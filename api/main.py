"""
api/main.py -- FastAPI application entry point for SmartVal.

Run with:  uvicorn api.main:app --reload

Settings are loaded when this module is imported. A missing or short
SECRET_KEY raises here, before the server accepts a single request.

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency, client host
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. EdgeGuardMiddleware   -- signature-only cookie check on protected page
                              paths; redirects to /login before routing

Lifespan builds the one Engine for the process, the stores that share it, and
the housekeeping task, and tears them down symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.projects import router as projects_router
from auth.audit import AuditLog
from auth.dependencies import get_session
from auth.edge import EdgeGuard, EdgeGuardMiddleware
from auth.errors import StoreUnavailableError
from auth.models import AuthContext
from auth.ratelimit import RateLimiter
from auth.sessions import SessionManager, SessionStore
from auth.store import TenantStore, UserStore
from core.config import Settings, get_settings
from core.db import create_db_engine
from projects.store import ProjectStore

__version__ = "0.1.0"

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("smartval.api")

# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------


def init_state(app: FastAPI, engine: Engine, cfg: Settings, clock: Callable[[], float] = time.time) -> None:
    """Build every store on one shared engine and attach them to app.state.

    Called by the lifespan at startup, and by tests with an in-memory engine
    and a fake clock.
    """
    app.state.settings = cfg
    app.state.engine = engine
    app.state.tenant_store = TenantStore(engine)
    app.state.user_store = UserStore(engine)
    app.state.session_manager = SessionManager(
        SessionStore(engine),
        app.state.user_store,
        secret=cfg.secret_key,
        ttl_seconds=cfg.session_ttl_seconds,
        cookie_name=cfg.session_cookie_name,
        secure_cookies=cfg.secure_cookies,
        clock=clock,
    )
    app.state.rate_limiter = RateLimiter(
        engine,
        clock=clock,
        max_failures=cfg.max_login_failures,
        lockout_seconds=cfg.lockout_seconds,
    )
    app.state.audit = AuditLog(engine)
    app.state.projects = ProjectStore(engine)


def purge_once(app: FastAPI) -> tuple[int, int]:
    """Delete expired sessions and stale limiter rows. Returns (sessions, limiter rows)."""
    cfg: Settings = app.state.settings
    window_ms = max(cfg.login_rate_window_seconds, cfg.register_rate_window_seconds) * 1000
    sessions = app.state.session_manager.purge_expired()
    limiter_rows = app.state.rate_limiter.purge_stale(window_ms)
    return sessions, limiter_rows


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired sessions and stale limiter rows every purge_interval_seconds.

    Runs as a background asyncio task started in lifespan startup. The purge
    itself is blocking SQL, so it runs in a worker thread. A failed round is
    logged and the loop carries on; expired rows are already inert to readers.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(app.state.settings.purge_interval_seconds)
        try:
            sessions, limiter_rows = await asyncio.to_thread(purge_once, app)
        except (SQLAlchemyError, StoreUnavailableError):
            logger.exception("Housekeeping purge failed")
            continue
        logger.info("Housekeeping purge removed %d sessions, %d limiter rows", sessions, limiter_rows)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Engine first -- every store shares it.
      2. Stores second -- each creates the tables it owns.
      3. Purge task last -- references the session manager and rate limiter.
    """
    logger.info("SmartVal API starting up")
    engine = create_db_engine(settings.database_url)
    init_state(app, engine, settings)
    logger.info("Stores initialized on %s", engine.url.render_as_string(hide_password=True))
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    engine.dispose()
    logger.info("SmartVal API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SmartVal API",
    description="Sessions, tenant-scoped access control, and project management for SmartVal.",
    version=__version__,
    lifespan=lifespan,
    # Disable built-in /docs and /redoc so we can add auth protection.
    # Auth-protected equivalents are registered below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette wraps middleware in reverse registration order: the last
# add_middleware() call is the outermost layer. Register innermost first:
# EdgeGuard -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

app.add_middleware(
    EdgeGuardMiddleware,
    guard=EdgeGuard(
        secret=settings.secret_key,
        protected_prefixes=settings.edge_protected_prefixes,
        public_paths=settings.edge_public_paths,
        cookie_name=settings.session_cookie_name,
        login_path=settings.login_path,
    ),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Registered after the
# add_middleware() calls, so it is the outermost layer and also sees edge
# redirects and host rejections.
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(projects_router, prefix="/api/v1", tags=["Projects"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(ctx: AuthContext = Depends(get_session)):
    """Swagger UI -- requires a session."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="SmartVal API")


@app.get("/redoc", include_in_schema=False)
async def redoc(ctx: AuthContext = Depends(get_session)):
    """ReDoc UI -- requires a session."""
    return get_redoc_html(openapi_url="/openapi.json", title="SmartVal API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _field_name(loc: tuple) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path")]
    return ".".join(parts) or "body"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one message per offending field.

    Messages from our own validators are passed through as written; pydantic's
    "Value error, " prefix is dropped.
    """
    fields: dict[str, str] = {}
    for err in exc.errors():
        cause = (err.get("ctx") or {}).get("error")
        message = str(cause) if isinstance(cause, ValueError) else err.get("msg", "Invalid value.")
        fields.setdefault(_field_name(tuple(err.get("loc", ()))), message)
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=fields,
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all HTTP exceptions.

    Registered for Starlette's HTTPException so it also covers the 404 and
    405 raised by the router itself, not only the ones raised by handlers.

    Route handlers raise HTTPException with a dict detail. When detail is
    already a structured dict, use it directly as the error field rather than
    stringifying it -- str(dict) produces a Python repr, not JSON.
    """
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code="not_found" if exc.status_code == 404 else f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=headers,
    )


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    """Fail closed with 503 when the shared store cannot answer.

    The underlying error was already logged with its traceback by the store.
    """
    logger.warning("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="unavailable",
                message="Service temporarily unavailable. Try again shortly.",
            )
        ).model_dump(),
        headers={"Cache-Control": "no-store"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    The client receives only a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. Not rate limited -- health checks
# from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and whether the shared store answers."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=__version__,
        components={"app": "ok", "database": database},
    )
