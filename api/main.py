"""
api/main.py -- FastAPI application entry point for the storefront auth service.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware   -- adds CORS headers for the storefront web client
  2. log_requests     -- method, path, status, latency for every request

Lifespan handles startup (settings validation, stores, codec, session
manager, purge task) and shutdown (cancel purge task, close stores)
symmetrically. Missing signing keys fail here, before the first request.
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
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.models import ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from auth.errors import AuthServiceError
from auth.sessions import SessionManager
from auth.store import IdentityStore
from auth.tokens import CredentialCodec
from core.config import get_settings
from otp.delivery import LogCodeDelivery
from otp.store import OneTimeCodeStore

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("storefront.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired one-time codes and refresh-token rows every 10 minutes.

    Expiry is always enforced at verification time; this only keeps the
    tables from growing with entries nobody will come back for.
    """
    while True:
        await asyncio.sleep(10 * 60)
        codes = app.state.codes.purge_expired()
        tokens = app.state.identities.purge_expired_refresh_tokens()
        if codes or tokens:
            logger.info("Purged %d expired codes, %d expired refresh tokens", codes, tokens)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the auth core once per process and tear it down on shutdown.

    Startup order matters:
      1. Settings first -- a missing signing key aborts startup here.
      2. Stores and codec -- the session manager needs all of them.
      3. Purge task last -- references both stores.
    """
    settings = get_settings()
    logger.info("Storefront auth API starting up (debug=%s)", settings.debug)
    app.state.identities = IdentityStore(db_url=settings.auth_db_url, max_refresh_tokens=settings.max_refresh_tokens)
    app.state.codes = OneTimeCodeStore(
        db_path=settings.code_db_path,
        ttl=settings.code_ttl_seconds,
        digits=settings.code_digits,
    )
    app.state.codec = CredentialCodec.from_settings(settings)
    app.state.sessions = SessionManager(
        identities=app.state.identities,
        codes=app.state.codes,
        codec=app.state.codec,
        delivery=LogCodeDelivery(reveal_codes=settings.debug),
        settings=settings,
    )
    logger.info("Auth core initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.codes.close()
    app.state.identities.close()
    logger.info("Storefront auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Storefront Auth API",
    description="Password and one-time-code login with revocable refresh tokens.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://localhost:5173", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


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

app.include_router(auth_router, prefix="/api", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same {success: false, message} envelope so clients
# can parse errors uniformly.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthServiceError)
async def auth_error_handler(request: Request, exc: AuthServiceError) -> JSONResponse:
    """Render an auth-core failure with its own status code.

    InternalError was already logged with its traceback where it was caught;
    the client only gets the generic message.
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(message=exc.message, errors=exc.errors or None).to_json(),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with the field errors when a request body fails validation."""
    errors = [{"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")} for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(message="Validation error", errors=errors).to_json(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Wrap FastAPI/Starlette HTTP exceptions (404 route, 405 method) in the envelope."""
    message = exc.detail if isinstance(exc.detail, str) else "Request failed."
    if exc.status_code == 404:
        message = "Route not found"
    return JSONResponse(status_code=exc.status_code, content=ErrorResponse(message=message).to_json())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(message="Something went wrong!").to_json(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
