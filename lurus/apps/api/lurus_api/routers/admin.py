"""Administrative endpoints (session plane, admin role or above).

Tenant administrators act on their own tenant. Platform administrators
(root sessions) see every tenant and may target one with X-Target-Tenant-ID;
the /api/admin/tenants routes are theirs alone.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends

from lurus_api.auth.gate import BoundRequest, require_platform_admin, require_session
from lurus_api.credentials.api_keys import (
    available_scopes,
    create_api_key,
    delete_api_key,
    get_api_key,
    list_api_keys,
    set_api_key_enabled,
    update_api_key,
)
from lurus_api.credentials.invitations import (
    create_codes,
    delete_code,
    delete_expired,
    list_codes,
    stats,
    validate_code,
)
from lurus_api.db.models import UserRole
from lurus_api.entitlements.daily_quota import reset_user
from lurus_api.entitlements.store import list_quota_logs, list_users, require_user
from lurus_api.errors import ForbiddenError, NotFoundError, ValidationFailedError
from lurus_api.schemas import (
    AdminGrantRequest,
    CreateApiKeyRequest,
    CreateInvitationsRequest,
    CreateTenantRequest,
    RefundRequest,
    SetTenantConfigRequest,
    TenantStatusRequest,
    UpdateApiKeyRequest,
    UpdateTenantRequest,
    api_key_dict,
    invitation_dict,
    ok,
    quota_log_dict,
    self_dict,
    subscription_detail,
    tenant_config_dict,
    tenant_dict,
)
from lurus_api.subscriptions.machine import (
    admin_activate,
    expire_subscription,
    get_subscription,
    grant,
    list_subscriptions,
    refund_by_payment_id,
)
from lurus_api.subscriptions.plans import plan_catalogue
from lurus_api.tenancy.configs import TenantConfigService
from lurus_api.tenancy.tenants import (
    create_tenant,
    delete_tenant,
    get_tenant,
    list_tenants,
    set_tenant_status,
    update_tenant,
)

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)

admin_gate = require_session(UserRole.ADMIN)


def _page(page: int, page_size: int) -> tuple[int, int]:
    page = max(page, 1)
    if page_size < 1 or page_size > 100:
        page_size = 20
    return page, page_size


def _key_tenant(bound: BoundRequest) -> Optional[str]:
    """Key visibility: platform admins see all keys, tenant admins their own."""
    if bound.principal is not None and bound.principal.is_platform_admin:
        return None
    return bound.tenant.id


def _audit(bound: BoundRequest, action: str, **fields: Any) -> None:
    logger.info(
        "Admin action",
        extra={"event": f"admin.{action}", "actor": bound.ctx.user_id, "tenant": bound.tenant.id, **fields},
    )


# ============================================================================
# Users
# ============================================================================


@router.get("/users")
def list_users_route(
    page: int = 1,
    page_size: int = 20,
    keyword: str = "",
    bound: BoundRequest = Depends(admin_gate),
) -> dict:
    page, page_size = _page(page, page_size)
    rows, total = list_users(bound.scope, page=page, page_size=page_size, keyword=keyword.strip())
    return ok({"items": [self_dict(u) for u in rows], "total": total, "page": page, "page_size": page_size})


@router.get("/users/{user_id}/quota-logs")
def quota_logs_route(user_id: int, limit: int = 50, bound: BoundRequest = Depends(admin_gate)) -> dict:
    require_user(bound.scope, user_id)
    limit = limit if 0 < limit <= 200 else 50
    return ok([quota_log_dict(row) for row in list_quota_logs(bound.scope, user_id, limit=limit)])


@router.post("/users/{user_id}/reset-daily")
def reset_daily_route(user_id: int, bound: BoundRequest = Depends(admin_gate)) -> dict:
    require_user(bound.scope, user_id)
    performed = reset_user(bound.scope, user_id)
    _audit(bound, "daily_quota.reset", user=user_id, performed=performed)
    return ok({"reset_performed": performed})


# ============================================================================
# Internal API keys
# ============================================================================


@router.get("/api-keys")
def list_api_keys_route(bound: BoundRequest = Depends(admin_gate)) -> dict:
    rows = list_api_keys(bound.db, tenant_id=_key_tenant(bound))
    return ok([api_key_dict(row) for row in rows])


@router.get("/api-keys/scopes")
def list_scopes_route(bound: BoundRequest = Depends(admin_gate)) -> dict:
    return ok(available_scopes())


@router.post("/api-keys")
def create_api_key_route(body: CreateApiKeyRequest, bound: BoundRequest = Depends(admin_gate)) -> dict:
    if body.tenant_id is not None:
        if _key_tenant(bound) is not None:
            raise ForbiddenError("Only platform admins can bind keys to another tenant")
        if body.tenant_id and get_tenant(bound.db, body.tenant_id) is None:
            raise NotFoundError("Target tenant not found")
        tenant_id = body.tenant_id or None
    else:
        tenant_id = bound.tenant.id

    row, raw = create_api_key(
        bound.db,
        name=body.name,
        scopes=body.scopes,
        created_by=bound.ctx.user_id or 0,
        actor_role=bound.ctx.role,
        tenant_id=tenant_id,
        description=body.description,
        expires_at=body.expires_at,
    )
    data = api_key_dict(row)
    data["key"] = raw
    return ok(data, "API key created successfully. Please save the key now - it won't be shown again!")


@router.put("/api-keys/{key_id}")
def update_api_key_route(key_id: int, body: UpdateApiKeyRequest, bound: BoundRequest = Depends(admin_gate)) -> dict:
    row = update_api_key(
        bound.db,
        key_id,
        actor_role=bound.ctx.role,
        tenant_id=_key_tenant(bound),
        name=body.name,
        description=body.description,
        scopes=body.scopes,
        expires_at=body.expires_at,
    )
    return ok(api_key_dict(row), "API key updated")


@router.post("/api-keys/{key_id}/toggle")
def toggle_api_key_route(key_id: int, bound: BoundRequest = Depends(admin_gate)) -> dict:
    tenant_id = _key_tenant(bound)
    row = get_api_key(bound.db, key_id, tenant_id=tenant_id)
    row = set_api_key_enabled(bound.db, key_id, not row.enabled, tenant_id=tenant_id)
    return ok(api_key_dict(row), "API key enabled" if row.enabled else "API key disabled")


@router.delete("/api-keys/{key_id}")
def delete_api_key_route(key_id: int, bound: BoundRequest = Depends(admin_gate)) -> dict:
    delete_api_key(bound.db, key_id, tenant_id=_key_tenant(bound))
    _audit(bound, "api_key.deleted", key_id=key_id)
    return ok(message="API key deleted")


# ============================================================================
# Invitation codes
# ============================================================================


@router.get("/invitations")
def list_invitations_route(page: int = 1, page_size: int = 20, bound: BoundRequest = Depends(admin_gate)) -> dict:
    page, page_size = _page(page, page_size)
    rows, total = list_codes(bound.db, page=page, page_size=page_size)
    return ok({"items": [invitation_dict(r) for r in rows], "total": total, "page": page, "page_size": page_size})


@router.post("/invitations")
def create_invitations_route(body: CreateInvitationsRequest, bound: BoundRequest = Depends(admin_gate)) -> dict:
    rows = create_codes(bound.db, count=body.count, created_by=bound.ctx.user_id or 0, expires_in=body.expires_in)
    return ok([invitation_dict(r) for r in rows], f"Created {len(rows)} invitation codes")


@router.get("/invitations/stats")
def invitation_stats_route(bound: BoundRequest = Depends(admin_gate)) -> dict:
    return ok(stats(bound.db).to_dict())


@router.get("/invitations/validate/{code}")
def validate_invitation_route(code: str, bound: BoundRequest = Depends(admin_gate)) -> dict:
    row = validate_code(bound.db, code)
    return ok(invitation_dict(row), "Invitation code is valid")


@router.delete("/invitations/expired")
def delete_expired_invitations_route(bound: BoundRequest = Depends(admin_gate)) -> dict:
    count = delete_expired(bound.db)
    return ok({"deleted": count})


@router.delete("/invitations/{code_id}")
def delete_invitation_route(code_id: int, bound: BoundRequest = Depends(admin_gate)) -> dict:
    delete_code(bound.db, code_id)
    return ok(message="Invitation code deleted")


# ============================================================================
# Subscriptions & plans
# ============================================================================


@router.get("/subscriptions")
def list_subscriptions_route(
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    page: int = 1,
    page_size: int = 20,
    bound: BoundRequest = Depends(admin_gate),
) -> dict:
    page, page_size = _page(page, page_size)
    rows, total = list_subscriptions(bound.scope, status=status, user_id=user_id, page=page, page_size=page_size)
    return ok(
        {"items": [subscription_detail(r) for r in rows], "total": total, "page": page, "page_size": page_size}
    )


@router.post("/subscriptions/grant")
def admin_grant_route(body: AdminGrantRequest, bound: BoundRequest = Depends(admin_gate)) -> dict:
    try:
        plan_catalogue.get(body.plan_code, include_disabled=True)
    except NotFoundError as e:
        raise ValidationFailedError("Invalid plan code") from e
    require_user(bound.scope, body.user_id)
    sub = grant(bound.scope, body.user_id, body.plan_code, body.days, body.reason, payment_method="admin")
    _audit(bound, "subscription.granted", user=body.user_id, subscription_id=sub.id)
    return ok(subscription_detail(sub), "Subscription granted")


@router.post("/subscriptions/{subscription_id}/activate")
def admin_activate_route(subscription_id: int, bound: BoundRequest = Depends(admin_gate)) -> dict:
    outcome = admin_activate(bound.scope, subscription_id)
    _audit(bound, "subscription.activated", subscription_id=subscription_id, queued=outcome.queued)
    return ok(subscription_detail(outcome.subscription), "Subscription activated")


@router.post("/subscriptions/{subscription_id}/expire")
def admin_expire_route(subscription_id: int, bound: BoundRequest = Depends(admin_gate)) -> dict:
    expire_subscription(bound.scope, subscription_id)
    _audit(bound, "subscription.expired", subscription_id=subscription_id)
    return ok(subscription_detail(get_subscription(bound.scope, subscription_id)), "Subscription expired")


@router.post("/subscriptions/{subscription_id}/refund")
def admin_refund_route(
    subscription_id: int, body: RefundRequest, bound: BoundRequest = Depends(admin_gate)
) -> dict:
    sub = get_subscription(bound.scope, subscription_id)
    if not sub.payment_id:
        raise ValidationFailedError("Subscription has no payment to refund")
    sub = refund_by_payment_id(bound.scope, sub.payment_id, reason=body.reason or "admin refund")
    _audit(bound, "subscription.refunded", subscription_id=subscription_id)
    return ok(subscription_detail(sub), "Subscription refunded")


@router.get("/subscription-plans")
def list_all_plans_route(bound: BoundRequest = Depends(admin_gate)) -> dict:
    return ok([plan.model_dump() for plan in plan_catalogue.all()])


@router.put("/subscription-plans")
def replace_plans_route(plans: Any = Body(...), bound: BoundRequest = Depends(require_platform_admin())) -> dict:
    parsed = plan_catalogue.replace(bound.db, plans)
    return ok([plan.model_dump() for plan in parsed], "Subscription plans updated")


# ============================================================================
# Tenant configs (own tenant)
# ============================================================================


@router.get("/tenant-configs")
def list_configs_route(
    prefix: str = "", include_system: bool = True, bound: BoundRequest = Depends(admin_gate)
) -> dict:
    service = TenantConfigService(bound.scope)
    rows = service.get_by_prefix(prefix) if prefix else service.list(include_system=include_system)
    return ok([tenant_config_dict(row) for row in rows])


@router.put("/tenant-configs/{key}")
def set_config_route(key: str, body: SetTenantConfigRequest, bound: BoundRequest = Depends(admin_gate)) -> dict:
    row = TenantConfigService(bound.scope).set(key, body.value, body.type, description=body.description)
    _audit(bound, "tenant_config.set", key=key)
    return ok(tenant_config_dict(row), "Config updated")


@router.delete("/tenant-configs/{key}")
def delete_config_route(key: str, bound: BoundRequest = Depends(admin_gate)) -> dict:
    TenantConfigService(bound.scope).delete(key)
    _audit(bound, "tenant_config.deleted", key=key)
    return ok(message="Config deleted")


# ============================================================================
# Tenants (platform admin)
# ============================================================================


@router.get("/tenants")
def list_tenants_route(
    page: int = 1,
    page_size: int = 20,
    status: Optional[int] = None,
    bound: BoundRequest = Depends(require_platform_admin()),
) -> dict:
    page, page_size = _page(page, page_size)
    rows, total = list_tenants(bound.db, page=page, page_size=page_size, status=status)
    return ok({"items": [tenant_dict(t) for t in rows], "total": total, "page": page, "page_size": page_size})


@router.post("/tenants")
def create_tenant_route(body: CreateTenantRequest, bound: BoundRequest = Depends(require_platform_admin())) -> dict:
    tenant = create_tenant(
        bound.db,
        slug=body.slug.strip().lower(),
        name=body.name.strip(),
        plan_type=body.plan_type,
        max_users=body.max_users,
        max_quota=body.max_quota,
    )
    _audit(bound, "tenant.created", target=tenant.id)
    return ok(tenant_dict(tenant), "Tenant created")


@router.get("/tenants/{tenant_id}")
def get_tenant_route(tenant_id: str, bound: BoundRequest = Depends(require_platform_admin())) -> dict:
    tenant = get_tenant(bound.db, tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    return ok(tenant_dict(tenant))


@router.put("/tenants/{tenant_id}")
def update_tenant_route(
    tenant_id: str, body: UpdateTenantRequest, bound: BoundRequest = Depends(require_platform_admin())
) -> dict:
    tenant = update_tenant(bound.db, tenant_id, **body.model_dump(exclude_none=True))
    _audit(bound, "tenant.updated", target=tenant_id)
    return ok(tenant_dict(tenant), "Tenant updated")


@router.post("/tenants/{tenant_id}/status")
def tenant_status_route(
    tenant_id: str, body: TenantStatusRequest, bound: BoundRequest = Depends(require_platform_admin())
) -> dict:
    tenant = set_tenant_status(bound.db, tenant_id, body.status)
    return ok(tenant_dict(tenant), "Tenant status updated")


@router.delete("/tenants/{tenant_id}")
def delete_tenant_route(tenant_id: str, bound: BoundRequest = Depends(require_platform_admin())) -> dict:
    delete_tenant(bound.db, tenant_id)
    _audit(bound, "tenant.deleted", target=tenant_id)
    return ok(message="Tenant deleted")
