"""
api/main.py -- FastAPI application entry point for AuthGate.

Run with:      uvicorn asgi:app --reload
               python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the engine, the stores and the AuthenticationService once and
parks them on app.state; shutdown disposes the engine. Nothing is held in
module globals -- route handlers get the service through Depends().

Error rendering:
  AuthError, StorageError and request validation failures all go through
  ErrorClassifier, so every failure response is the same envelope
  {"error": true, "message": ...} with the classified status. The specific
  kind is logged; Internal failures log the full traceback.
"""

from __future__ import annotations

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
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import Envelope, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, ErrorClassifier, InvalidInputError, StorageError
from auth.service import AuthenticationService
from auth.store import TokenStore, UserStore, check_connection, create_db_engine
from auth.tokens import PasswordHasher, TokenGenerator
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")

_settings = get_settings()
_classifier = ErrorClassifier()


def build_auth_service(engine, settings=_settings) -> AuthenticationService:
    """Wire stores, hasher and generator around one engine."""
    return AuthenticationService(
        UserStore(engine),
        TokenStore(engine),
        PasswordHasher(rounds=settings.bcrypt_rounds),
        TokenGenerator(),
        token_ttl=settings.token_ttl,
        single_session=settings.single_session,
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown, even if a request handler raised.
    """
    logger.info("AuthGate API starting up")
    app.state.engine = create_db_engine(_settings.database_url, timeout=_settings.db_timeout_seconds)
    app.state.auth_service = build_auth_service(app.state.engine)
    if not app.state.auth_service.users.has_users():
        logger.warning("No users exist yet. Create one with: python main.py create-user <email>")
    logger.info(
        "Auth initialized (session_policy=%s, token_ttl=%ss, db_timeout=%ss)",
        _settings.session_policy,
        _settings.token_ttl_seconds,
        _settings.db_timeout_seconds,
    )

    yield

    app.state.engine.dispose()
    logger.info("AuthGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthGate API",
    description="Password login and opaque bearer-token sessions.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same Envelope so API clients can parse errors
# uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(request: Request, exc: BaseException) -> JSONResponse:
    result = _classifier.classify(exc)
    if not result.is_client_error:
        # Raw exception goes to the log only, never to the response body.
        logger.error(
            "Internal failure on %s %s",
            request.method,
            request.url.path,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, result.kind.value, exc)
    response = JSONResponse(
        status_code=result.status,
        content=Envelope(error=True, message=result.message).to_json(),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return _error_response(request, exc)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    return _error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed JSON or failed field validation -> 400 invalid input.

    Only location and message are echoed; pydantic's "input" key would repeat
    the submitted password back to the client.
    """
    summary = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
    invalid = InvalidInputError(f"invalid request: {summary}")
    invalid.__cause__ = exc
    return _error_response(request, invalid)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=Envelope(error=True, message="too many requests").to_json(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap framework HTTP errors (404 unknown route, 405 wrong method) in the envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content=Envelope(error=True, message=str(exc.detail)).to_json(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. Classified as Internal."""
    return _error_response(request, exc)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and whether the database answers."""
    db_ok = check_connection(request.app.state.engine)
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
