"""Tenant binding: which tenant does this request act on?

Resolution order:
1. IdP organisation of an OIDC principal (already mapped by the resolver)
2. Explicit slug in the URL path (/api/t/{slug}/...)
3. X-Target-Tenant-ID header, platform admins only
4. The principal's home tenant (session user, tenant-bound service key)
5. The built-in default tenant

The bound tenant must be enabled.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from lurus_api.auth.principal import PLANE_BEARER_JWT, Principal
from lurus_api.db.models import DEFAULT_TENANT_ID, Tenant
from lurus_api.errors import ForbiddenError, NotFoundError
from lurus_api.tenancy.tenants import get_tenant, get_tenant_by_slug, require_enabled

logger = logging.getLogger(__name__)

TARGET_TENANT_HEADER = "X-Target-Tenant-ID"


def resolve_tenant(
    db: Session,
    principal: Optional[Principal] = None,
    *,
    path_slug: Optional[str] = None,
    target_tenant_id: Optional[str] = None,
) -> Tenant:
    """
    Raises:
        NotFoundError: Slug, target or home tenant does not exist
        ForbiddenError: Target header sent by a non platform admin
        TenantDisabledError: Bound tenant is disabled or suspended
    """
    if principal is not None and principal.auth_plane == PLANE_BEARER_JWT and principal.tenant_id:
        tenant = get_tenant(db, principal.tenant_id)
        if target_tenant_id and target_tenant_id != principal.tenant_id:
            if not principal.is_platform_admin:
                raise ForbiddenError(f"{TARGET_TENANT_HEADER} requires the platform admin role")
            tenant = _target(db, principal, target_tenant_id)
        return require_enabled(tenant)

    if path_slug:
        tenant = get_tenant_by_slug(db, path_slug)
        if tenant is None:
            raise NotFoundError("Tenant not found")
        if principal is not None and principal.tenant_id and principal.tenant_id != tenant.id:
            if not principal.is_platform_admin:
                raise ForbiddenError("Principal does not belong to this tenant")
        return require_enabled(tenant)

    if target_tenant_id:
        if principal is None or not principal.is_platform_admin:
            raise ForbiddenError(f"{TARGET_TENANT_HEADER} requires the platform admin role")
        return require_enabled(_target(db, principal, target_tenant_id))

    home = principal.tenant_id if principal is not None and principal.tenant_id else DEFAULT_TENANT_ID
    return require_enabled(get_tenant(db, home))


def _target(db: Session, principal: Principal, target_tenant_id: str) -> Tenant:
    tenant = get_tenant(db, target_tenant_id)
    if tenant is None:
        raise NotFoundError("Target tenant not found")
    logger.info(
        "Platform admin targeting tenant",
        extra={
            "event": "tenant.target",
            "target_tenant": target_tenant_id,
            "auth_plane": principal.auth_plane,
            "key_name": principal.key_name,
        },
    )
    return tenant
