"""Health check endpoints."""

import logging

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import text

from lurus_api.auth import oidc_auth
from lurus_api.config.env import is_zitadel_enabled
from lurus_api.db.session import engine

router = APIRouter()
logger = logging.getLogger(__name__)

VERSION = "0.3.0"


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database() -> str:
    """Check database connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        logger.error("Database health check failed", extra={"event": "health.database.down", "error": str(e)})
        return f"down: {str(e)[:50]}"


def check_oidc() -> str:
    """JWKS cache state; "disabled" when OIDC is off."""
    if not is_zitadel_enabled():
        return "disabled"
    verifier = oidc_auth._verifier
    if verifier is None:
        return "down: not initialised"
    if len(verifier.jwks) == 0:
        return "down: no signing keys"
    return "up"


def _services() -> dict[str, str]:
    return {
        "api": "up",
        "database": check_database(),
        "oidc": check_oidc(),
    }


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Always returns 200 OK (use /readyz for dependency checks).
    """
    return HealthResponse(status="healthy", version=VERSION, services=_services())


@router.get("/readyz", response_model=HealthResponse)
async def readiness_check(response: Response) -> HealthResponse:
    """Returns 503 if any dependency is down."""
    services = _services()
    if any(svc_status.startswith("down") for svc_status in services.values()):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", version=VERSION, services=services)
    return HealthResponse(status="ready", version=VERSION, services=services)
