"""Cookie session plane.

The session cookie holds an HS256 JWT signed with SESSION_SECRET:

    {"sub": "<user id>", "tid": "<tenant id>", "iat": ..., "exp": ...}

Role and status are re-read from the user row on every request, so demoting
or disabling a user takes effect immediately.

Cookie: name "session", HttpOnly, SameSite=Lax, 90-day max age.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request, Response
from sqlalchemy.orm import Session

from lurus_api.auth.principal import PLANE_SESSION, Principal
from lurus_api.config.env import get_session_secret, is_production
from lurus_api.db.models import UserStatus
from lurus_api.db.session import get_db
from lurus_api.entitlements.store import get_user
from lurus_api.errors import AuthError, ErrorCode
from lurus_api.tenancy.scoped import tenant_scope
from lurus_api.tenancy.tenants import get_tenant, require_enabled

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session"
SESSION_MAX_AGE_SECONDS = 7_776_000  # 90 days
SESSION_ALGORITHM = "HS256"


def issue_session_token(user_id: int, tenant_id: str, *, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "tid": tenant_id,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=SESSION_MAX_AGE_SECONDS)).timestamp()),
    }
    return jwt.encode(claims, get_session_secret(), algorithm=SESSION_ALGORITHM)


def decode_session_token(token: str) -> tuple[int, str]:
    """
    Returns:
        Tuple of (user_id, tenant_id)

    Raises:
        AuthError(EXPIRED): Token past exp
        AuthError(INVALID_SIGNATURE): Tampered or malformed token
    """
    try:
        claims = jwt.decode(
            token,
            get_session_secret(),
            algorithms=[SESSION_ALGORITHM],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthError("Session expired", ErrorCode.EXPIRED) from e
    except jwt.InvalidTokenError as e:
        raise AuthError("Invalid session", ErrorCode.INVALID_SIGNATURE) from e
    try:
        return int(claims["sub"]), str(claims.get("tid") or "")
    except (TypeError, ValueError) as e:
        raise AuthError("Invalid session", ErrorCode.INVALID_SIGNATURE) from e


def set_session_cookie(response: Response, user_id: int, tenant_id: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE,
        value=issue_session_token(user_id, tenant_id),
        max_age=SESSION_MAX_AGE_SECONDS,
        httponly=True,
        samesite="lax",
        secure=is_production(),
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/")


def resolve_session(db: Session, token: Optional[str]) -> Principal:
    """Resolve a session cookie to a principal.

    Raises:
        AuthError: Missing/invalid cookie, unknown or disabled user
        TenantDisabledError: The user's tenant is disabled
    """
    if not token:
        raise AuthError("Not logged in")
    user_id, tenant_id = decode_session_token(token)
    require_enabled(get_tenant(db, tenant_id))
    user = get_user(tenant_scope(db, tenant_id), user_id)
    if user is None:
        raise AuthError("Not logged in")
    if user.status != UserStatus.ENABLED:
        raise AuthError("User is disabled", ErrorCode.USER_DISABLED)
    return Principal(
        auth_plane=PLANE_SESSION,
        tenant_id=user.tenant_id,
        user_id=user.id,
        role=user.role,
        username=user.username,
        email=user.email or None,
    )


def get_session_principal(request: Request, db: Session = Depends(get_db)) -> Principal:
    """FastAPI dependency for cookie-authenticated routes."""
    return resolve_session(db, request.cookies.get(SESSION_COOKIE))
