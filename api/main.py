"""
api/main.py -- FastAPI application entry point for Gatekeeper.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency, client
  2. page_gating           -- redirect rules for page routes (auth/gating.py)
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. TrustedHostMiddleware -- rejects requests with unexpected Host headers

Lifespan handles startup (stores, purge task) and shutdown (cancel purge
task, dispose engines) symmetrically.

Every JSON response uses one of two envelopes:
  {"success": true,  "data": ...}
  {"success": false, "error": {"code", "message", "detail"}}
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
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from admin.maintenance import purge_expired
from admin.store import AdminStore
from api.models import HealthComponents, HealthResponse
from api.responses import app_error_response, error_response
from api.routes.admin import router as admin_router
from api.routes.auth import router as auth_router
from api.routes.users import router as users_router
from auth.gating import decide_redirect
from auth.store import UserStore
from auth.tokens import ACCESS_COOKIE, TokenError, decode_access_token
from core.config import get_settings
from core.errors import AppError

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatekeeper.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired rows every PURGE_INTERVAL_SECONDS.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A database error is
    logged and the loop keeps going.
    """
    while True:
        await asyncio.sleep(_settings.purge_interval_seconds)
        try:
            purge_expired(app.state.user_store, app.state.admin_store)
        except SQLAlchemyError:
            logger.exception("Purge of expired rows failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the stores, then start the purge task (it references both)."""
    logger.info("Gatekeeper API starting up")
    app.state.user_store = UserStore(_settings.database_url)
    app.state.admin_store = AdminStore(_settings.database_url)
    if not app.state.user_store.has_super_admin():
        logger.warning("No SUPER_ADMIN exists -- run `python main.py seed` to create one")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.admin_store.close()
    app.state.user_store.close()
    logger.info("Gatekeeper API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title=f"{_settings.app_name} API",
    description="Authentication service with an admin console.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the last one added is the
# outermost of these two. @app.middleware functions wrap everything added
# before them in the same way.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


@app.middleware("http")
async def page_gating(request: Request, call_next):
    """Apply the page redirect rules using the access token's role claim.

    Only a signature-valid, unexpired access token counts as a session here;
    API routes enforce their own checks against the live user record.
    """
    role = None
    token = request.cookies.get(ACCESS_COOKIE)
    if token:
        try:
            role = decode_access_token(token)["role"]
        except TokenError:
            role = None
    target = decide_redirect(request.url.path, role, _settings.admin_base_path)
    if target is not None:
        return RedirectResponse(target, status_code=302)
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


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(users_router, prefix="/api", tags=["Users"])
app.include_router(admin_router, prefix="/api", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same error envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return app_error_response(exc)


def _field_errors(exc: RequestValidationError) -> list[dict]:
    """Flatten pydantic errors to [{"field": "password", "message": "..."}]."""
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        message = str(err.get("msg", "Invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        errors.append({"field": ".".join(loc), "message": message})
    return errors


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with per-field messages when the body or query fails validation."""
    errors = _field_errors(exc)
    message = errors[0]["message"] if errors else "Request validation failed."
    return error_response(422, "validation_error", message, errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Structured error for framework HTTP exceptions (unknown route, bad method)."""
    return error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Report liveness and database reachability. 503 when the database is down."""
    try:
        request.app.state.user_store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        body = HealthResponse(
            status="degraded", version=VERSION, components=HealthComponents(database="error")
        )
        return JSONResponse(status_code=503, content=body.model_dump())
    return JSONResponse(content=HealthResponse(version=VERSION).model_dump())
