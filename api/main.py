"""
api/main.py -- FastAPI application entry point for PulseHours.

Owns the application object, its lifespan, the middleware stack, the JSON
error envelope and the small JSON API. The HTML pages live in web/routes.py
and are mounted by asgi.py.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  3. log_requests          -- one access-log line per request
  4. setup_redirect        -- first-run redirect to /setup
  5. session_context       -- SessionManager.init() before the handler,
                              commit() and Set-Cookie after it

Lifespan builds the single Engine (connection pool) and the auth components
on startup, runs the housekeeping task, and disposes the pool on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse, MeResponse
from auth.components import build_auth_components
from auth.dependencies import require_login
from auth.errors import AuthError
from auth.models import User
from core.config import get_settings
from core.database import create_db_engine, ping

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pulsehours.api")

# Requests that never need a session (and must not create session rows).
_SESSIONLESS_PATHS = ("/api/v1/health",)

# ---------------------------------------------------------------------------
# Background housekeeping task
# ---------------------------------------------------------------------------


async def _housekeeping_loop(app: FastAPI) -> None:
    """Purge idle sessions and expired login attempts on a fixed interval.

    The store calls are blocking, so they run in the threadpool. A failed
    pass is logged and retried on the next tick; CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep.
    """
    interval = app.state.settings.housekeeping_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            sessions, attempts = await run_in_threadpool(app.state.auth.housekeeping)
        except SQLAlchemyError:
            logger.exception("Housekeeping pass failed")
            continue
        logger.info("Housekeeping removed %d idle session(s), %d old login attempt(s)", sessions, attempts)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The Engine is created here and passed explicitly to every
    store -- there is no module-level database handle.
    """
    settings = get_settings()
    logger.info("PulseHours starting up")
    app.state.settings = settings
    app.state.engine = create_db_engine(settings.database_url)
    app.state.auth = build_auth_components(app.state.engine, settings)
    app.state.setup_required = not app.state.auth.users.has_users()
    logger.info("Auth initialized (setup_required=%s)", app.state.setup_required)
    app.state.housekeeping_task = asyncio.create_task(_housekeeping_loop(app))

    yield

    app.state.housekeeping_task.cancel()
    app.state.engine.dispose()
    logger.info("PulseHours shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="PulseHours",
    description="Time tracking for small teams.",
    version=__version__,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Every @app.middleware and add_middleware() call wraps the stack built so
# far, so the LAST registration is the OUTERMOST layer. Registered here from
# innermost to outermost.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def session_context(request: Request, call_next):
    """Attach the SessionContext for this request and persist it afterwards.

    Store failures while loading the session fail closed with a 503 -- the
    request never reaches a handler without a valid session context.
    """
    if request.url.path in _SESSIONLESS_PATHS:
        return await call_next(request)

    settings = request.app.state.settings
    sessions = request.app.state.auth.sessions
    try:
        ctx = await run_in_threadpool(sessions.init, request.cookies.get(settings.session_cookie_name))
    except SQLAlchemyError:
        logger.exception("Session store unavailable on %s %s", request.method, request.url.path)
        return PlainTextResponse("A system error occurred. Please try again later.", status_code=503)
    request.state.session = ctx

    response = await call_next(request)

    try:
        await run_in_threadpool(sessions.commit, ctx)
    except SQLAlchemyError:
        logger.exception("Session commit failed on %s %s", request.method, request.url.path)
    if ctx.issued and not ctx.stale:
        response.set_cookie(
            settings.session_cookie_name,
            value=ctx.session_id,
            httponly=True,
            samesite="lax",
            secure=settings.secure_cookies,
            path="/",
        )
    return response


@app.middleware("http")
async def setup_redirect(request: Request, call_next):
    """Redirect all requests to /setup when no users exist (first-run state).

    The setup_required flag is set in lifespan and cleared by POST /setup
    once the first admin is created. POST /setup re-checks at the DB level to
    guard against two concurrent requests both passing this flag check [M1].
    """
    path = request.url.path
    if getattr(request.app.state, "setup_required", False):
        exempt = ("/setup",) + _SESSIONLESS_PATHS
        if path not in exempt:
            return RedirectResponse("/setup", status_code=302)
    return await call_next(request)


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


app.add_middleware(SlowAPIMiddleware)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=get_settings().allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# JSON API
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version and database reachability. No auth required."""
    db_ok = await run_in_threadpool(ping, request.app.state.engine)
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=__version__,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )


@app.get("/api/v1/auth/me", tags=["Auth"])
def me(user: User = Depends(require_login)) -> MeResponse:
    """Return identity information for the session's user."""
    return MeResponse(
        user_id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role.value,
    )


# ---------------------------------------------------------------------------
# Exception handlers
#
# All JSON handlers return the same ErrorResponse envelope so API clients can
# parse errors uniformly. asgi.py replaces the AuthError handler with the web
# one, which renders pages for browser routes and falls back to this shape
# under /api/.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.outcome.value, message=exc.message)).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a slowapi limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
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
