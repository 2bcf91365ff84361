"""Relay-token plane (Authorization: Bearer sk-...)."""

import logging
from dataclasses import dataclass

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from lurus_api.auth.principal import PLANE_RELAY_TOKEN, Principal
from lurus_api.credentials.relay_tokens import lookup_token
from lurus_api.db.models import UserStatus
from lurus_api.db.session import get_db
from lurus_api.entitlements.store import get_user
from lurus_api.errors import AuthError, ErrorCode
from lurus_api.tenancy.scoped import tenant_scope
from lurus_api.tenancy.tenants import get_tenant, require_enabled

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayPrincipal:
    principal: Principal
    token_id: int
    unlimited_quota: bool
    remain_quota: int


def resolve_relay_token(db: Session, authorization: str) -> RelayPrincipal:
    """
    Raises:
        AuthError: Missing header, unknown/disabled/expired token
        AuthError(USER_DISABLED): Token owner disabled
        TenantDisabledError: Owner's tenant disabled
    """
    scheme, _, raw = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not raw.strip():
        raise AuthError("Missing relay token")
    token = lookup_token(db, raw.strip())
    if token is None:
        logger.warning("Relay token authentication failed", extra={"event": "relay_token.auth.failed"})
        raise AuthError("Invalid or expired token")

    require_enabled(get_tenant(db, token.tenant_id))
    user = get_user(tenant_scope(db, token.tenant_id), token.user_id)
    if user is None:
        raise AuthError("Invalid or expired token")
    if user.status != UserStatus.ENABLED:
        raise AuthError("User is disabled", ErrorCode.USER_DISABLED)

    return RelayPrincipal(
        principal=Principal(
            auth_plane=PLANE_RELAY_TOKEN,
            tenant_id=token.tenant_id,
            user_id=user.id,
            role=user.role,
            username=user.username,
        ),
        token_id=token.id,
        unlimited_quota=token.unlimited_quota,
        remain_quota=token.remain_quota,
    )


def get_relay_principal(request: Request, db: Session = Depends(get_db)) -> RelayPrincipal:
    return resolve_relay_token(db, request.headers.get("Authorization", ""))
