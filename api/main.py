"""
api/main.py -- FastAPI application entry point for the subgate gateway.

Run with:      uvicorn asgi:app
               python main.py serve

Request flow:
  /api/v1/...     -- gateway REST routes (auth, self-service, admin)
  /dashboard/...  -- prebuilt dashboard bundle (StaticFiles, if configured)
  everything else -- api/routes/proxy.py -> PathRouter -> ProxyForwarder

Middleware stack (outermost to innermost; add_middleware() prepends, so
registration below runs innermost-first):
  1. log_requests          -- one access-log line per request with latency
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- only when Settings.cors_origins is non-empty
  4. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every component once and hangs it on app.state (store,
token service, login guard, path router, forwarder, sync gate, scheduler)
and starts the sync timer. Shutdown cancels the timer and closes the
upstream client and the DB engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.proxy import router as proxy_router
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.self_service import router as self_router
from auth.guard import LoginGuard
from auth.store import UserStore
from auth.tokens import COOKIE_NAME, TokenService
from core.config import Settings, get_settings
from core.errors import ExpiredTokenError, GatewayError, MalformedTokenError, RateLimitedError, SignatureError
from core.router import DASHBOARD_PREFIX, PathRouter
from core.sync_gate import SyncGate
from proxy.forwarder import ProxyForwarder
from sync.scheduler import SyncScheduler, sync_loop

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("subgate.api")

settings = get_settings()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def build_state(app: FastAPI, settings: Settings) -> None:
    """Construct the gateway components and attach them to app.state."""
    store = UserStore(settings.database_url)
    store.ensure_default_admin(settings.default_admin_username, settings.default_admin_password)
    tokens = TokenService(settings.secret_key, default_ttl=settings.token_expire_seconds)
    path_router = PathRouter(store)
    forwarder = ProxyForwarder(
        settings.upstream_api_url,
        settings.upstream_ui_url,
        timeout=settings.proxy_timeout_seconds,
    )
    gate = SyncGate(settings.sync_state_path, default_interval_hours=settings.default_sync_interval_hours)

    app.state.settings = settings
    app.state.user_store = store
    app.state.tokens = tokens
    app.state.login_guard = LoginGuard(
        max_failures=settings.login_max_failures,
        lockout_seconds=settings.login_lockout_seconds,
        max_entries=settings.login_guard_max_entries,
    )
    app.state.path_router = path_router
    app.state.forwarder = forwarder
    app.state.sync_gate = gate
    app.state.scheduler = SyncScheduler(
        gate,
        store,
        tokens,
        path_router,
        forwarder,
        token_ttl=settings.sync_token_ttl_seconds,
        batch_size=settings.sync_batch_size,
        time_budget_seconds=settings.sync_time_budget_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build components on startup; stop the timer and release clients on shutdown."""
    logger.info("subgate %s starting up (upstream api=%s ui=%s)", VERSION, settings.upstream_api_url, settings.upstream_ui_url)
    build_state(app, settings)
    app.state.sync_task = asyncio.create_task(sync_loop(app.state.scheduler, settings.sync_tick_seconds))
    logger.info("Sync timer started (tick %ss, interval %sh)", settings.sync_tick_seconds, app.state.sync_gate.get_settings()["interval_hours"])

    yield

    app.state.sync_task.cancel()
    await asyncio.gather(app.state.sync_task, return_exceptions=True)
    await app.state.forwarder.aclose()
    app.state.user_store.close()
    logger.info("subgate shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="subgate",
    description="Multi-tenant gateway in front of a subscription-management engine.",
    version=VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url="/api/v1/openapi.json",
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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
# Exception handlers
#
# Every failure leaves the gateway in the same ErrorResponse envelope.
# Responses streamed from the upstream are passed through untouched and
# never reach these handlers.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    response = _error_response(exc.status_code, exc.code, exc.message, exc.detail)
    if isinstance(exc, RateLimitedError):
        response.headers["Retry-After"] = str(exc.retry_after)
    elif isinstance(exc, (ExpiredTokenError, MalformedTokenError, SignatureError)) and COOKIE_NAME in request.cookies:
        # The browser would keep presenting a cookie that can never verify.
        response.delete_cookie(COOKIE_NAME, path="/")
    if exc.status_code >= 500:
        logger.warning("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.code)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 from the slowapi request cap. Retry-After falls back to 60s."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected errors. The traceback goes to the log, never the body."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Liveness plus a store round-trip. No auth, no rate limit."""
    components = {"app": "ok"}
    try:
        request.app.state.user_store.has_tenants()
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)


# ---------------------------------------------------------------------------
# Router registration
#
# Order matters: the proxy catch-all must come after every gateway route and
# the dashboard mount, or it would shadow them.
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(self_router, prefix="/api/v1", tags=["Self-service"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])

if settings.dashboard_dir and Path(settings.dashboard_dir).is_dir():
    app.mount(DASHBOARD_PREFIX, StaticFiles(directory=settings.dashboard_dir, html=True), name="dashboard")
else:
    logger.info("No dashboard bundle configured; /dashboard will return 404")

app.include_router(proxy_router)
