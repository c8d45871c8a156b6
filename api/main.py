"""
api/main.py -- FastAPI application entry point for the identity service.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. log_requests          -- method, path, status, latency for every request

Lifespan handles startup (database, stores, services, overdue-code sweep)
and shutdown (cancel sweep, dispose engine) symmetrically.

Error envelope: every failure is {"error": {"code", "message", "detail"}}.
IdentityError kinds map to HTTP statuses in _STATUS_BY_KIND, in one place.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.account import router as account_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.codes import router as codes_router
from auth.accounts import AccountService
from auth.codes import EmailVerificationService, ForgotPasswordService
from auth.external import ExternalAuthService
from auth.oauth import GoogleIdTokenVerifier
from auth.passwords import PasswordHasher
from auth.store import AccountDetailStore, AccountStore, CodeStore, Database, ExternalAuthStore
from auth.tokens import TokenService
from core.config import Settings, get_settings
from core.errors import ErrorKind, IdentityError

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("identity.api")

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.INVALID_CODE: 400,
    ErrorKind.EXPIRED_CODE: 410,
    ErrorKind.INVALID_TOKEN: 401,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.INTERNAL: 500,
}


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, settings: Settings, db: Database) -> None:
    """Build every store and service from settings and attach them to app.state.

    This is the only place the signing secret is read; TokenService keeps it
    for the process lifetime. Tests call this directly with an in-memory db.
    """
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    tokens = TokenService(settings.secret_key, settings.token_expire_seconds, hasher)
    accounts = AccountService(
        db,
        AccountStore(db),
        AccountDetailStore(db),
        tokens,
        hasher,
        default_role=settings.default_role,
        phone_country_code=settings.phone_country_code,
    )
    app.state.settings = settings
    app.state.db = db
    app.state.tokens = tokens
    app.state.accounts = accounts
    app.state.email_verification = EmailVerificationService(
        accounts, CodeStore(db, "email_verification"), ttl_seconds=settings.code_ttl_seconds
    )
    app.state.forgot_password = ForgotPasswordService(
        accounts, CodeStore(db, "forgot_password"), ttl_seconds=settings.code_ttl_seconds
    )
    app.state.external_auth = None
    if settings.google_client_id:
        verifier = GoogleIdTokenVerifier(settings.google_client_id, timeout=settings.external_verify_timeout)
        app.state.external_auth = ExternalAuthService(accounts, ExternalAuthStore(db), tokens, verifier)
        logger.info("Google sign-in enabled")


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _expire_loop(app: FastAPI, interval: int) -> None:
    """Flag overdue single-use codes on a fixed interval.

    Validation already rejects stale codes on its own; the sweep only keeps
    the active set small. A failed pass is logged and retried on the next
    tick. CancelledError from task.cancel() during shutdown propagates out
    of asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(interval)
        for service in (app.state.email_verification, app.state.forgot_password):
            try:
                await asyncio.to_thread(service.expire_overdue)
            except IdentityError:
                # Already logged by the store error translation.
                continue
            except Exception:
                logger.exception("Overdue-code sweep failed (%s)", service.kind)


# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    settings = get_settings()
    logger.info("Identity API starting up")
    db = Database(settings.database_url)
    wire_services(app, settings, db)
    logger.info("Database initialized")
    app.state.sweep_task = asyncio.create_task(_expire_loop(app, settings.code_purge_interval_seconds))

    yield

    app.state.sweep_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await app.state.sweep_task
    app.state.db.close()
    logger.info("Identity API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Identity API",
    description="Accounts, password and Google sign-in, bearer tokens, email verification and password reset.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


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
app.include_router(account_router, prefix="/api/v1", tags=["Account"])
app.include_router(codes_router, prefix="/api/v1", tags=["Codes"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(IdentityError)
async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
    """Map a classified domain failure to its HTTP status.

    internal_error details were logged where they happened; the client only
    sees the generic message.
    """
    status_code = _STATUS_BY_KIND[exc.kind]
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(**exc.to_dict())).model_dump(),
    )
    if exc.kind in (ErrorKind.UNAUTHORIZED, ErrorKind.INVALID_TOKEN):
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code=ErrorKind.VALIDATION.value,
                message="Request validation failed.",
                # input is dropped: it may be a rejected password.
                detail=str([{"loc": e["loc"], "msg": e["msg"]} for e in exc.errors()]),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404 routes, 405, ...)."""
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

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code=ErrorKind.INTERNAL.value,
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and whether the database answers."""
    try:
        db_status = "ok" if request.app.state.db.ping() else "error"
    except Exception:
        logger.exception("Health check: database ping failed")
        db_status = "error"
    return HealthResponse(
        status="healthy",
        version=__version__,
        components={"app": "ok", "database": db_status},
    )
