"""Lurus IAE API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from lurus_api.auth.oidc_auth import init_oidc, shutdown_oidc
from lurus_api.auth.service_key_auth import key_usage_recorder
from lurus_api.config.env import get_sync_frequency
from lurus_api.config.options import option_store
from lurus_api.context import clear_log_context, request_id_var
from lurus_api.credentials.api_keys import audit_wildcard_keys
from lurus_api.db import session as db_session
from lurus_api.errors import ErrorCode, IAEError
from lurus_api.routers import admin, auth, health, internal, relay, subscriptions, webhooks
from lurus_api.routers.health import VERSION
from lurus_api.tenancy.tenants import ensure_default_tenant
from lurus_api.utils import configure_json_logging

app = FastAPI(
    title="Lurus Identity, Access & Entitlement API",
    description="Principal resolution, tenant binding, subscriptions and daily quota for the Lurus platform.",
    version=VERSION,
    docs_url="/api-docs",
    redoc_url="/redoc",
)

# Set LURUS_JSON_LOGS=false to disable (defaults to true for production)
if os.getenv("LURUS_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))

logger = logging.getLogger(__name__)

# Credentials mode cannot use wildcard origins
cors_origins_env = os.getenv("CORS_ALLOWED_ORIGINS", "")
if cors_origins_env:
    allowed_origins = [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
else:
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:8000",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:8000",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "X-API-Key",
        "X-Idempotency-Key",
        "X-Target-Tenant-ID",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "Retry-After"],
)


# ============================================================================
# Request Completion Logging Middleware
# ============================================================================


@app.middleware("http")
async def http_completion_logging_middleware(request: Request, call_next):
    """Emit one "http.request.completed" record per request.

    Per-request context vars are cleared at start and end so they never leak
    across requests sharing an async task.
    """
    clear_log_context()
    start_time = time.perf_counter()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "http.request.completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
        clear_log_context()


# ============================================================================
# Request ID Middleware (MUST BE OUTERMOST)
# ============================================================================


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Accept X-Request-ID or generate a UUID v4; echo it on the response.

    Registered last so it wraps every other middleware and the context var is
    set in the parent async context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ============================================================================
# Error envelope handlers
# ============================================================================


def _envelope(status_code: int, message: str, code: str, data=None, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "error_code": code, "data": data},
        headers=headers,
    )


_STATUS_CODES = {
    400: ErrorCode.VALIDATION_FAILED,
    401: ErrorCode.AUTH_FAILED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.CONFLICT,
    429: ErrorCode.RATE_LIMITED,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


@app.exception_handler(IAEError)
async def iae_error_handler(request: Request, exc: IAEError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            exc.message,
            extra={"event": "request.failed", "error_code": exc.code.value, "path": request.url.path},
        )
    return _envelope(exc.status_code, exc.message, exc.code.value, exc.data, exc.headers or None)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _STATUS_CODES.get(exc.status_code, ErrorCode.VALIDATION_FAILED)
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return _envelope(exc.status_code, message, code.value, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed body or parameters: 400 VALIDATION_FAILED naming the first bad field."""
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []) if loc != "body")
    msg = first_error.get("msg", "Validation error")
    message = f"Invalid field '{field}': {msg}" if field else "Invalid request"
    return _envelope(status.HTTP_400_BAD_REQUEST, message, ErrorCode.VALIDATION_FAILED.value)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception",
        extra={"event": "request.unhandled", "path": request.url.path, "error_type": type(exc).__name__},
        exc_info=True,
    )
    return _envelope(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Please try again later.",
        ErrorCode.UPSTREAM_ERROR.value,
    )


# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(auth.router)
app.include_router(subscriptions.router)
app.include_router(relay.router)
app.include_router(internal.router)
app.include_router(admin.router)
app.include_router(webhooks.router)


# ============================================================================
# Application Lifecycle
# ============================================================================


@app.on_event("startup")
async def startup_event():
    """Seed the default tenant, load options and start background helpers."""
    db = db_session.SessionLocal()
    try:
        ensure_default_tenant(db)
        count = option_store.load(db)
        audit_wildcard_keys(db)
    finally:
        db.close()
    logger.info("Options loaded", extra={"event": "options.loaded", "count": count})

    option_store.start_sync(db_session.SessionLocal, get_sync_frequency())
    init_oidc()
    key_usage_recorder.start()


@app.on_event("shutdown")
async def shutdown_event():
    key_usage_recorder.stop()
    shutdown_oidc()
    option_store.stop_sync()
    logger.info("API shutdown complete", extra={"event": "api.shutdown"})
