"""Pydantic schemas for API requests, plus response serializers."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from lurus_api.db.models import (
    InternalApiKey,
    InvitationCode,
    QuotaLog,
    RelayToken,
    Subscription,
    Tenant,
    TenantConfig,
    User,
)
from lurus_api.tenancy.configs import decode_value
from lurus_api.tenancy.tenants import status_name


def ok(data: Any = None, message: Optional[str] = None) -> dict[str, Any]:
    """Success envelope."""
    body: dict[str, Any] = {"success": True}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ============================================================================
# Internal API (service-key plane)
# ============================================================================


class InternalCreateUserRequest(BaseModel):
    """Request body for POST /internal/user."""

    username: str = Field(..., description="3-20 letters, digits or underscore")
    password: str = Field(..., description="At least 8 characters")
    email: str = ""
    display_name: Optional[str] = None
    group: Optional[str] = None
    quota: int = Field(default=0, ge=0, description="Initial balance (0 = tenant default)")


class InternalUpdateUserRequest(BaseModel):
    """Request body for PUT /internal/user/{id}. Only provided fields are written."""

    display_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: Optional[int] = None
    group: Optional[str] = None


class InternalLoginRequest(BaseModel):
    username: str
    password: str


class GrantSubscriptionRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    plan_code: str
    days: int
    reason: str = ""


class QuotaAdjustRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    amount: int = Field(..., description="Positive adds, negative deducts")
    reason: str = Field(..., min_length=1)


class BalanceTopupRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    amount_rmb: float
    order_id: str = ""
    reason: str = Field(..., min_length=1)


class InternalCreateTokenRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=1)
    unlimited_quota: bool = False
    remain_quota: int = Field(default=0, ge=0)


# ============================================================================
# Session / OTP auth
# ============================================================================


class LoginRequest(BaseModel):
    """Request body for POST /api/user/login."""

    username: str
    password: str


class RegisterRequest(BaseModel):
    """Request body for POST /api/user/register."""

    username: str
    password: str
    email: str = ""
    display_name: Optional[str] = None
    invitation_code: Optional[str] = None
    verification_code: Optional[str] = Field(
        default=None, description="Email code, required when email verification is on"
    )
    aff_code: Optional[str] = None


class SendSmsCodeRequest(BaseModel):
    phone: str
    purpose: str = Field(default="login", description="login | register | bind | reset")


class SendEmailCodeRequest(BaseModel):
    email: str


class SmsLoginRequest(BaseModel):
    phone: str
    code: str


class BindPhoneRequest(BaseModel):
    phone: str
    code: str


class ResetPasswordByPhoneRequest(BaseModel):
    phone: str
    code: str
    new_password: str


# ============================================================================
# Subscriptions & relay
# ============================================================================


class CreateSubscriptionRequest(BaseModel):
    plan_code: str
    payment_method: str = Field(..., description="stripe | creem | epay")
    auto_renew: bool = False


class PayRequest(BaseModel):
    payment_method: Optional[str] = Field(
        default=None, description="Override the method chosen at creation"
    )


class ConsumeRequest(BaseModel):
    """Body for the relay pre/post consume hooks."""

    amount: int = Field(..., ge=0, description="Quota units for this request")


# ============================================================================
# Admin
# ============================================================================


class CreateApiKeyRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    scopes: list[str]
    expires_at: int = Field(default=0, ge=0, description="Epoch seconds, 0 = never")
    description: str = Field(default="", max_length=500)
    tenant_id: Optional[str] = Field(
        default=None, description="Bind the key to a tenant (platform admins only)"
    )


class UpdateApiKeyRequest(BaseModel):
    name: Optional[str] = None
    scopes: Optional[list[str]] = None
    expires_at: Optional[int] = None
    description: Optional[str] = None


class CreateInvitationsRequest(BaseModel):
    count: int = Field(default=1)
    expires_in: int = Field(default=0, description="Lifetime in seconds, 0 = never")


class AdminGrantRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    plan_code: str
    days: int
    reason: str = "admin grant"


class RefundRequest(BaseModel):
    reason: str = ""


class CreateTenantRequest(BaseModel):
    slug: str
    name: str
    plan_type: str = "free"
    max_users: int = Field(default=100, ge=0)
    max_quota: int = Field(default=1_000_000, ge=0)


class UpdateTenantRequest(BaseModel):
    name: Optional[str] = None
    plan_type: Optional[str] = None
    max_users: Optional[int] = Field(default=None, ge=0)
    max_quota: Optional[int] = Field(default=None, ge=0)


class TenantStatusRequest(BaseModel):
    status: int = Field(..., description="1 enabled, 2 disabled, 3 suspended")


class SetTenantConfigRequest(BaseModel):
    value: Any
    type: Optional[str] = Field(default=None, description="string | int | bool | float | json")
    description: Optional[str] = None


# ============================================================================
# Serializers
# ============================================================================


def user_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "display_name": user.display_name,
        "email": user.email,
        "phone": user.phone,
        "phone_verified": user.phone_verified,
        "role": user.role,
        "status": user.status,
        "group": user.group,
    }


def self_dict(user: User) -> dict[str, Any]:
    """The caller's own view (adds balance and daily cap)."""
    data = user_dict(user)
    data.update(
        {
            "tenant_id": user.tenant_id,
            "quota": user.quota,
            "used_quota": user.used_quota,
            "request_count": user.request_count,
            "daily_quota": user.daily_quota,
            "daily_used": user.daily_used,
            "base_group": user.base_group,
            "fallback_group": user.fallback_group,
            "aff_code": user.aff_code,
        }
    )
    return data


def subscription_dict(sub: Subscription) -> dict[str, Any]:
    return {
        "id": sub.id,
        "plan_code": sub.plan_code,
        "plan_name": sub.plan_name,
        "status": sub.status,
        "daily_quota": sub.daily_quota,
        "total_quota": sub.total_quota,
        "started_at": _iso(sub.started_at),
        "expires_at": _iso(sub.expires_at),
        "base_group": sub.base_group,
    }


def subscription_detail(sub: Subscription) -> dict[str, Any]:
    data = subscription_dict(sub)
    data.update(
        {
            "user_id": sub.user_id,
            "fallback_group": sub.fallback_group,
            "payment_method": sub.payment_method,
            "payment_id": sub.payment_id,
            "paid_at": _iso(sub.paid_at),
            "amount": sub.amount_cents,
            "currency": sub.currency,
            "auto_renew": sub.auto_renew,
            "queued": sub.status == "pending" and sub.paid_at is not None,
            "created_at": _iso(sub.created_at),
        }
    )
    return data


def api_key_dict(row: InternalApiKey) -> dict[str, Any]:
    """Never includes the hash."""
    return {
        "id": row.id,
        "tenant_id": row.tenant_id,
        "name": row.name,
        "key_prefix": row.key_prefix,
        "scopes": list(row.scopes or []),
        "created_by": row.created_by,
        "created_at": _iso(row.created_at),
        "last_used_at": _iso(row.last_used_at),
        "expires_at": row.expires_at,
        "enabled": row.enabled,
        "description": row.description,
    }


def relay_token_dict(row: RelayToken) -> dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "name": row.name,
        "key_prefix": row.key_prefix,
        "status": row.status,
        "unlimited_quota": row.unlimited_quota,
        "remain_quota": row.remain_quota,
        "used_quota": row.used_quota,
        "created_at": _iso(row.created_at),
        "accessed_at": _iso(row.accessed_at),
        "expired_at": row.expired_at,
    }


def invitation_dict(row: InvitationCode) -> dict[str, Any]:
    return {
        "id": row.id,
        "code": row.code,
        "created_by": row.created_by,
        "used_by": row.used_by,
        "used_at": _iso(row.used_at),
        "expires_at": _iso(row.expires_at),
        "created_at": _iso(row.created_at),
    }


def tenant_dict(tenant: Tenant) -> dict[str, Any]:
    return {
        "id": tenant.id,
        "slug": tenant.slug,
        "name": tenant.name,
        "external_org_id": tenant.external_org_id,
        "status": tenant.status,
        "status_name": status_name(tenant.status),
        "plan_type": tenant.plan_type,
        "max_users": tenant.max_users,
        "max_quota": tenant.max_quota,
        "created_at": _iso(tenant.created_at),
    }


def tenant_config_dict(row: TenantConfig) -> dict[str, Any]:
    try:
        value = decode_value(row.value, row.type)
    except ValueError:
        value = row.value
    return {
        "key": row.key,
        "value": value,
        "type": row.type,
        "is_system": row.is_system,
        "description": row.description,
        "updated_at": _iso(row.updated_at),
    }


def quota_log_dict(row: QuotaLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "type": row.type,
        "content": row.content,
        "quota_delta": row.quota_delta,
        "created_at": _iso(row.created_at),
    }
