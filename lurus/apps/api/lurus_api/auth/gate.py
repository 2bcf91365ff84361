"""Scope & role gate.

Each route declares exactly one gate dependency. The gate resolves the
principal for its plane, binds the tenant (tenancy.binder), checks the
capability and hands the handler a BoundRequest:

- require_scope("user:read")      service-key plane, scope or "*"
- require_role("billing")         bearer-jwt plane, IdP role (admin/platform_admin superset)
- require_any_role("a", "b")      bearer-jwt plane, any of the roles
- require_session(UserRole.ADMIN) session plane, minimum role level
- require_platform_admin()        session plane, platform admin only

Failures: 403 FORBIDDEN naming the missing capability.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from lurus_api.auth.oidc_auth import get_oidc_principal
from lurus_api.auth.principal import (
    ADMIN_ROLE,
    PLANE_PUBLIC,
    PLATFORM_ADMIN_ROLE,
    Principal,
)
from lurus_api.auth.service_key_auth import get_service_principal
from lurus_api.auth.session_auth import get_session_principal
from lurus_api.context import RequestContext, bind_log_context, request_id_var
from lurus_api.credentials.api_keys import has_scope
from lurus_api.db.models import Tenant, UserRole
from lurus_api.db.session import get_db
from lurus_api.errors import ForbiddenError
from lurus_api.tenancy.binder import TARGET_TENANT_HEADER, resolve_tenant
from lurus_api.tenancy.scoped import TenantScope, tenant_scope

logger = logging.getLogger(__name__)

ROLE_NAMES = {UserRole.COMMON: "common", UserRole.ADMIN: "admin", UserRole.ROOT: "root"}


@dataclass
class BoundRequest:
    """What a gated handler receives: who, which tenant, and a scoped handle."""

    ctx: RequestContext
    principal: Optional[Principal]
    tenant: Tenant
    scope: TenantScope

    @property
    def db(self) -> Session:
        return self.scope.session


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def bind_request(
    request: Request,
    db: Session,
    principal: Optional[Principal],
    *,
    path_slug: Optional[str] = None,
) -> BoundRequest:
    tenant = resolve_tenant(
        db,
        principal,
        path_slug=path_slug,
        target_tenant_id=request.headers.get(TARGET_TENANT_HEADER) or None,
    )
    ctx = RequestContext(
        request_id=request_id_var.get(),
        tenant_id=tenant.id,
        auth_plane=principal.auth_plane if principal else PLANE_PUBLIC,
        user_id=principal.user_id if principal else None,
        role=principal.role if principal else 0,
        scopes=principal.scopes if principal else frozenset(),
        roles=principal.roles if principal else frozenset(),
        key_name=principal.key_name if principal else None,
        client_ip=client_ip(request),
    )
    bind_log_context(tenant_id=ctx.tenant_id, user_id=ctx.user_id, auth_plane=ctx.auth_plane)
    request.state.ctx = ctx
    return BoundRequest(ctx=ctx, principal=principal, tenant=tenant, scope=tenant_scope(db, tenant.id))


def role_satisfied(roles: frozenset[str], required: str) -> bool:
    return required in roles or ADMIN_ROLE in roles or PLATFORM_ADMIN_ROLE in roles


def require_scope(required: str) -> Callable[..., BoundRequest]:
    def dependency(
        request: Request,
        db: Session = Depends(get_db),
        principal: Principal = Depends(get_service_principal),
    ) -> BoundRequest:
        if not has_scope(principal.scopes, required):
            logger.warning(
                "Service key lacks scope",
                extra={"event": "gate.scope.denied", "required": required, "key_name": principal.key_name},
            )
            raise ForbiddenError(f"Insufficient permissions. Required scope: {required}")
        return bind_request(request, db, principal)

    return dependency


def require_role(required: str) -> Callable[..., BoundRequest]:
    def dependency(
        request: Request,
        db: Session = Depends(get_db),
        principal: Principal = Depends(get_oidc_principal),
    ) -> BoundRequest:
        if not role_satisfied(principal.roles, required):
            raise ForbiddenError(f"Insufficient permissions. Required role: {required}")
        return bind_request(request, db, principal)

    return dependency


def require_any_role(*required: str) -> Callable[..., BoundRequest]:
    def dependency(
        request: Request,
        db: Session = Depends(get_db),
        principal: Principal = Depends(get_oidc_principal),
    ) -> BoundRequest:
        if not any(role_satisfied(principal.roles, role) for role in required):
            raise ForbiddenError(f"Insufficient permissions. Required one of roles: {', '.join(required)}")
        return bind_request(request, db, principal)

    return dependency


def require_oidc() -> Callable[..., BoundRequest]:
    def dependency(
        request: Request,
        db: Session = Depends(get_db),
        principal: Principal = Depends(get_oidc_principal),
    ) -> BoundRequest:
        return bind_request(request, db, principal)

    return dependency


def require_session(min_role: int = UserRole.COMMON) -> Callable[..., BoundRequest]:
    def dependency(
        request: Request,
        db: Session = Depends(get_db),
        principal: Principal = Depends(get_session_principal),
    ) -> BoundRequest:
        if principal.role < min_role:
            raise ForbiddenError(
                f"Insufficient permissions. Required role: {ROLE_NAMES.get(min_role, str(min_role))}"
            )
        return bind_request(request, db, principal)

    return dependency


def require_platform_admin() -> Callable[..., BoundRequest]:
    def dependency(
        request: Request,
        db: Session = Depends(get_db),
        principal: Principal = Depends(get_session_principal),
    ) -> BoundRequest:
        if not principal.is_platform_admin:
            raise ForbiddenError("Insufficient permissions. Required role: platform admin")
        return bind_request(request, db, principal)

    return dependency


def public_request(request: Request, db: Session, tenant_slug: Optional[str] = None) -> BoundRequest:
    """Bind an unauthenticated request (default tenant unless a slug is given)."""
    return bind_request(request, db, None, path_slug=tenant_slug)
