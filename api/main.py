"""
api/main.py -- FastAPI application entry point for the back-office portal.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the stores, the token service, the audit logger, and the
background dispatcher on startup, then tears them down in reverse order.

Every error leaves the API in one envelope:
    {"error": {"code": str, "message": str, "detail": any | null}}
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit_logs import router as audit_logs_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.organizations import router as organizations_router
from api.routes.v1.sections import router as sections_router
from api.routes.v1.stats import router as stats_router
from api.routes.v1.users import router as users_router
from audit.logger import AuditLogger
from audit.store import AuditStore
from auth.sessions import TokenService
from auth.store import UserStore
from auth.tokens import clear_refresh_cookie
from core.config import get_settings
from core.errors import PortalError, RefreshRejected
from core.tasks import BackgroundDispatcher
from tenancy.store import TenancyStore

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("portal.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired refresh tokens and invites every 6 hours.

    Expired rows are already unusable; purging only keeps the tables small.
    CancelledError from task.cancel() during shutdown unwinds the loop.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        tokens, invites = app.state.user_store.purge_expired()
        logger.info("Purged %d expired refresh token(s) and %d invite(s)", tokens, invites)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create application-level resources on startup and release them on shutdown.

    Startup order matters:
      1. Stores -- UserStore seeds roles and permissions on first run.
      2. Services over the stores -- TokenService, AuditLogger.
      3. Dispatcher and purge task last; both reference the stores.
    """
    logger.info("Portal API starting up")
    app.state.user_store = UserStore(settings.database_url)
    app.state.tenancy_store = TenancyStore(settings.database_url)
    app.state.audit_store = AuditStore(settings.database_url)
    logger.info("Stores initialized")

    app.state.token_service = TokenService(app.state.user_store, settings.refresh_token_expire_days)
    app.state.audit = AuditLogger(app.state.audit_store)
    app.state.dispatcher = BackgroundDispatcher(settings.background_workers)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.dispatcher.shutdown(wait=True)
    app.state.audit_store.close()
    app.state.tenancy_store.close()
    app.state.user_store.close()
    logger.info("Portal API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Back-Office Portal API",
    description="Multi-tenant accounting back office: sessions, staff, sections, organizations, audit trail.",
    version=API_VERSION,
    lifespan=lifespan,
    # Interactive docs are a development aid only.
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    # Refresh cookie must reach /auth/refresh from the SPA origin.
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(sections_router, prefix="/api/v1", tags=["Sections"])
app.include_router(organizations_router, prefix="/api/v1", tags=["Organizations"])
app.include_router(stats_router, prefix="/api/v1", tags=["Stats"])
app.include_router(audit_logs_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _envelope(status_code: int, code: str, message: str, detail=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    """Render any PortalError subclass. RefreshRejected also expires the refresh cookie."""
    response = _envelope(exc.status_code, exc.code, exc.message, exc.detail)
    if isinstance(exc, RefreshRejected):
        clear_refresh_cookie(response)
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Plain def: SlowAPIMiddleware calls this handler directly and uses its
    return value. Routes decorated with @limiter.limit raise from inside the
    endpoint and reach it through the regular exception middleware.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _envelope(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 listing the failing fields.

    Only location, message, and type are echoed. pydantic's "input" entry is
    dropped so a rejected password never comes back in a response body.
    """
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")} for e in exc.errors()]
    return _envelope(400, "validation_error", "Request validation failed.", errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for framework-raised HTTP errors (unknown route, bad method)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _envelope(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _envelope(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=API_VERSION)
