"""SQLAlchemy ORM models for the identity, access and entitlement core."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BIGINT, BOOLEAN, INTEGER, JSON, TEXT, Index, UniqueConstraint, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from lurus_api.db.types import IdInteger, UTCDateTime

DEFAULT_TENANT_ID = "default"
DEFAULT_GROUP = "default"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class TenantStatus:
    ENABLED = 1
    DISABLED = 2
    SUSPENDED = 3


class UserRole:
    COMMON = 1
    ADMIN = 10
    ROOT = 100


class UserStatus:
    ENABLED = 1
    DISABLED = 2


class SubscriptionStatus:
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Tenant(Base):
    """Isolation boundary. Soft-deleted only."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    external_org_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True, unique=True)
    slug: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(TEXT, nullable=False)
    status: Mapped[int] = mapped_column(INTEGER, nullable=False, default=TenantStatus.ENABLED)
    plan_type: Mapped[str] = mapped_column(TEXT, nullable=False, default="free")
    # free | pro | enterprise
    max_users: Mapped[int] = mapped_column(BIGINT, nullable=False, default=100)
    max_quota: Mapped[int] = mapped_column(BIGINT, nullable=False, default=1_000_000)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_now, onupdate=_now
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (Index("idx_tenants_status", "status"),)


class User(Base):
    """User with the entitlement view (quota, daily cap, pricing groups)."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(IdInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to tenants
    username: Mapped[str] = mapped_column(TEXT, nullable=False)
    password_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    display_name: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    email: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    phone: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    phone_verified: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    role: Mapped[int] = mapped_column(INTEGER, nullable=False, default=UserRole.COMMON)
    status: Mapped[int] = mapped_column(INTEGER, nullable=False, default=UserStatus.ENABLED)

    # Pricing groups: group is always base_group, fallback_group or an admin override
    group: Mapped[str] = mapped_column(TEXT, nullable=False, default=DEFAULT_GROUP)
    base_group: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    fallback_group: Mapped[str] = mapped_column(TEXT, nullable=False, default="")

    # Lifetime balance
    quota: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    used_quota: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    request_count: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)

    # Daily cap (daily_quota <= 0 means unlimited)
    daily_quota: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    daily_used: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    last_daily_reset: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)  # epoch seconds

    aff_code: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    inviter_id: Mapped[Optional[int]] = mapped_column(BIGINT, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),
        Index(
            "uq_users_tenant_phone",
            "tenant_id",
            "phone",
            unique=True,
            postgresql_where=text("phone <> ''"),
            sqlite_where=text("phone <> ''"),
        ),
        Index("idx_users_tenant_email", "tenant_id", "email"),
        Index("idx_users_daily_reset", "daily_quota", "last_daily_reset"),
    )


class UserIdentityMapping(Base):
    """Maps an external IdP subject to one local user within a tenant."""

    __tablename__ = "user_identity_mappings"

    id: Mapped[int] = mapped_column(IdInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to tenants
    external_user_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # OIDC sub
    user_id: Mapped[int] = mapped_column(BIGINT, nullable=False)  # FK to users
    provider: Mapped[str] = mapped_column(TEXT, nullable=False, default="zitadel")
    display_name: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    email: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    preferred_username: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    last_sync_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_user_id", name="uq_identity_tenant_subject"),
        Index("idx_identity_user", "user_id"),
    )


class Subscription(Base):
    """Subscription row. The user's current plan is computed, never stored.

    A row in status=pending with paid_at set is a paid subscription queued
    behind an active one (stacking); the expiry loop promotes it once its
    started_at arrives.
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(IdInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to tenants
    user_id: Mapped[int] = mapped_column(BIGINT, nullable=False)  # FK to users
    plan_code: Mapped[str] = mapped_column(TEXT, nullable=False)
    plan_name: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default=SubscriptionStatus.PENDING)
    daily_quota: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    total_quota: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    base_group: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    fallback_group: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    payment_method: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    # stripe | creem | epay | internal | admin
    payment_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True, unique=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    amount_cents: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="CNY")
    auto_renew: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (
        Index("idx_subscriptions_user_status", "tenant_id", "user_id", "status"),
        Index("idx_subscriptions_status_expires", "status", "expires_at"),
        Index("idx_subscriptions_status_created", "status", "created_at"),
    )


class InternalApiKey(Base):
    """Service-to-service API key. Only the SHA-256 hash is stored."""

    __tablename__ = "internal_api_keys"

    id: Mapped[int] = mapped_column(IdInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # NULL = platform-wide
    name: Mapped[str] = mapped_column(TEXT, nullable=False)
    key_hash: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    key_prefix: Mapped[str] = mapped_column(TEXT, nullable=False)  # display only
    scopes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_by: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)  # epoch, 0 = never
    enabled: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    description: Mapped[str] = mapped_column(TEXT, nullable=False, default="")


class InvitationCode(Base):
    """One-shot registration code."""

    __tablename__ = "invitation_codes"

    id: Mapped[int] = mapped_column(IdInteger, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    created_by: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    used_by: Mapped[Optional[int]] = mapped_column(BIGINT, nullable=True)
    used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)

    __table_args__ = (Index("idx_invitation_codes_used_by", "used_by"),)


class RelayToken(Base):
    """Per-user relay token (sk-...). Only the hash is stored."""

    __tablename__ = "relay_tokens"

    id: Mapped[int] = mapped_column(IdInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to tenants
    user_id: Mapped[int] = mapped_column(BIGINT, nullable=False)  # FK to users
    name: Mapped[str] = mapped_column(TEXT, nullable=False)
    key_hash: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    key_prefix: Mapped[str] = mapped_column(TEXT, nullable=False)
    status: Mapped[int] = mapped_column(INTEGER, nullable=False, default=1)  # 1 enabled, 2 disabled
    unlimited_quota: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    remain_quota: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    used_quota: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    accessed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    expired_at: Mapped[int] = mapped_column(BIGINT, nullable=False, default=-1)  # epoch, -1 = never

    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", "name", name="uq_relay_tokens_user_name"),
        Index("idx_relay_tokens_user", "tenant_id", "user_id"),
    )


class QuotaLog(Base):
    """Audit trail for quota mutations."""

    __tablename__ = "quota_logs"

    id: Mapped[int] = mapped_column(IdInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to tenants
    user_id: Mapped[int] = mapped_column(BIGINT, nullable=False)  # FK to users
    type: Mapped[str] = mapped_column(TEXT, nullable=False)
    # topup | system | manage | consume | refund
    content: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    quota_delta: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)

    __table_args__ = (Index("idx_quota_logs_user", "tenant_id", "user_id", "created_at"),)


class TenantConfig(Base):
    """Typed per-tenant configuration value."""

    __tablename__ = "tenant_configs"

    id: Mapped[int] = mapped_column(IdInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to tenants
    key: Mapped[str] = mapped_column(TEXT, nullable=False)
    value: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    type: Mapped[str] = mapped_column(TEXT, nullable=False, default="string")
    # string | int | bool | float | json
    is_system: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    is_encrypted: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    description: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (UniqueConstraint("tenant_id", "key", name="uq_tenant_configs_key"),)


class Option(Base):
    """Process-wide setting, mirrored into the in-memory OptionStore."""

    __tablename__ = "options"

    key: Mapped[str] = mapped_column(TEXT, primary_key=True)
    value: Mapped[str] = mapped_column(TEXT, nullable=False, default="")
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_now, onupdate=_now
    )


class WebhookDedupEvent(Base):
    """Webhook dedup gate: one business-processing per (provider, dedup_key).

    INSERT ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
      → row returned  : first/re-processing handler → continue
      → no row        : duplicate/concurrent → 200 immediately
    """

    __tablename__ = "webhook_dedup_events"

    id: Mapped[int] = mapped_column(IdInteger, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(TEXT, nullable=False)  # stripe | creem | epay
    dedup_key: Mapped[str] = mapped_column(TEXT, nullable=False)
    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="processing")
    # processing | done | failed
    request_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "dedup_key", name="uq_webhook_dedup_events"),
        Index("idx_webhook_dedup_status", "status"),
    )
