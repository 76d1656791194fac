"""
api/main.py -- FastAPI application entry point for the identity service.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the credential and audit stores, wires the services onto
app.state and closes the stores on shutdown.

Error mapping: services return Result values; route handlers call unwrap(),
which raises the carried AccountError. account_error_handler turns the error
class into a status code and the shared ErrorResponse envelope. Authentication
and token errors only ever carry their generic message.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, FieldErrorModel, HealthResponse
from api.routes.v1.account import router as account_router
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from audit.logger import AuditLogger
from audit.store import AuditStore
from auth.account import AccountSelfService
from auth.admin import UserAdminService
from auth.authentication import AuthenticationService
from auth.password_reset import PasswordResetFlow
from auth.results import (
    AccountError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TokenError,
    ValidationError,
)
from auth.roles import RoleAssignmentService
from auth.store import CredentialStore
from core.config import get_settings
from mail.service import MailService

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("restaurant.api")


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI, credential_store: CredentialStore, audit_store: AuditStore, mailer: MailService
) -> None:
    """Build every service over the given stores and publish them on app.state.

    Shared by the real lifespan and the test lifespan so both run the same
    object graph.
    """
    audit = AuditLogger(audit_store)
    roles = RoleAssignmentService(credential_store, audit)
    authentication = AuthenticationService(credential_store, audit)
    accounts = AccountSelfService(credential_store, authentication, roles, audit)

    app.state.credential_store = credential_store
    app.state.audit_store = audit_store
    app.state.mailer = mailer
    app.state.audit = audit
    app.state.roles = roles
    app.state.authentication = authentication
    app.state.password_reset = PasswordResetFlow(credential_store, mailer, audit)
    app.state.accounts = accounts
    app.state.user_admin = UserAdminService(credential_store, roles, accounts, audit)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the stores on startup, close them on shutdown."""
    logger.info("Identity API starting up")
    settings = get_settings()
    credential_store = CredentialStore(settings.auth_db_url)
    audit_store = AuditStore(settings.audit_db_url)
    mailer = MailService(settings)
    if not mailer.configured:
        logger.warning("SMTP not configured -- password reset mails will not be delivered")
    wire_services(app, credential_store, audit_store, mailer)
    logger.info("Stores initialized (users=%d)", credential_store.count_users())

    yield

    credential_store.close()
    audit_store.close()
    logger.info("Identity API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Restaurant Identity API",
    description="Accounts, roles, password reset and audit trail for the restaurant application.",
    version=VERSION,
    lifespan=lifespan,
)

_settings = get_settings()

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

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
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(account_router, prefix="/api/v1", tags=["Account"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: list[tuple[type[AccountError], int]] = [
    (ValidationError, 422),
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (TokenError, 400),
]


def status_for(exc: AccountError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 400


@app.exception_handler(AccountError)
async def account_error_handler(request: Request, exc: AccountError) -> JSONResponse:
    """Map the identity error taxonomy onto HTTP statuses."""
    if isinstance(exc, (AuthenticationError, TokenError)):
        field_errors: list[FieldErrorModel] = []
    else:
        field_errors = [FieldErrorModel.from_error(e) for e in exc.errors]
    headers = {"Cache-Control": "no-store"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(
        status_code=status_for(exc),
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, field_errors=field_errors)
        ).model_dump(),
        headers=headers,
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
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
    field_errors = [
        FieldErrorModel(field=".".join(str(p) for p in err.get("loc", ())[1:]), message=err.get("msg", ""))
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                field_errors=field_errors,
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
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


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


def _component_status(check) -> str:
    try:
        check()
    except SQLAlchemyError:
        logger.exception("Health check failed")
        return "error"
    return "ok"


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and per-store status."""
    components = {
        "app": "ok",
        "database": _component_status(request.app.state.credential_store.ping),
        "audit": _component_status(request.app.state.audit_store.ping),
    }
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
