"""Tenant lifecycle.

Tenants are created by platform admins or, when ZITADEL_AUTO_CREATE_TENANT is
set, on first login from an unknown IdP organisation. Every new tenant is
seeded with the default TenantConfig rows. Tenants are never hard-deleted.
"""

import hashlib
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lurus_api.db.models import DEFAULT_TENANT_ID, Tenant, TenantStatus, User
from lurus_api.errors import ConflictError, NotFoundError, TenantDisabledError, ValidationFailedError
from lurus_api.tenancy.configs import TenantConfigService
from lurus_api.tenancy.scoped import tenant_scope

logger = logging.getLogger(__name__)

PLAN_TYPES = frozenset({"free", "pro", "enterprise"})

_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")
_STATUS_NAMES = {
    TenantStatus.ENABLED: "enabled",
    TenantStatus.DISABLED: "disabled",
    TenantStatus.SUSPENDED: "suspended",
}


def status_name(status: int) -> str:
    return _STATUS_NAMES.get(status, "unknown")


def slugify(value: str) -> str:
    """Lower-case URL-safe slug (dots and other separators become dashes)."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug[:63] or "tenant"


def get_tenant(db: Session, tenant_id: str, *, include_deleted: bool = False) -> Optional[Tenant]:
    stmt = select(Tenant).where(Tenant.id == tenant_id)
    if not include_deleted:
        stmt = stmt.where(Tenant.deleted_at.is_(None))
    return db.execute(stmt).scalars().first()


def get_tenant_by_slug(db: Session, slug: str) -> Optional[Tenant]:
    return db.execute(
        select(Tenant).where(Tenant.slug == slug, Tenant.deleted_at.is_(None))
    ).scalars().first()


def get_tenant_by_org(db: Session, external_org_id: str) -> Optional[Tenant]:
    return db.execute(
        select(Tenant).where(Tenant.external_org_id == external_org_id, Tenant.deleted_at.is_(None))
    ).scalars().first()


def require_enabled(tenant: Optional[Tenant]) -> Tenant:
    """Return the tenant if usable.

    Raises:
        NotFoundError: Tenant missing or soft-deleted
        TenantDisabledError: Tenant disabled or suspended
    """
    if tenant is None or tenant.deleted_at is not None:
        raise NotFoundError("Tenant not found")
    if tenant.status != TenantStatus.ENABLED:
        raise TenantDisabledError(f"Tenant is {status_name(tenant.status)}")
    return tenant


def ensure_default_tenant(db: Session) -> Tenant:
    """Create the built-in default tenant if missing (idempotent)."""
    tenant = get_tenant(db, DEFAULT_TENANT_ID, include_deleted=True)
    if tenant is not None:
        return tenant
    tenant = Tenant(id=DEFAULT_TENANT_ID, slug="default", name="Default", max_users=0, max_quota=0)
    db.add(tenant)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = get_tenant(db, DEFAULT_TENANT_ID, include_deleted=True)
        if existing is None:
            raise
        return existing
    TenantConfigService(tenant_scope(db, tenant.id)).init_defaults(commit=False)
    db.commit()
    logger.info("Default tenant created", extra={"event": "tenant.default.created"})
    return tenant


def create_tenant(
    db: Session,
    *,
    slug: str,
    name: str,
    external_org_id: Optional[str] = None,
    plan_type: str = "free",
    max_users: int = 100,
    max_quota: int = 1_000_000,
) -> Tenant:
    """Create a tenant and seed its default configs.

    Raises:
        ValidationFailedError: Invalid slug or plan type
        ConflictError: Slug or org already taken
    """
    if not _SLUG_RE.match(slug):
        raise ValidationFailedError("Slug must be lower-case letters, digits and dashes")
    if plan_type not in PLAN_TYPES:
        raise ValidationFailedError(f"Unknown plan type: {plan_type}")
    if get_tenant_by_slug(db, slug) is not None:
        raise ConflictError(f"Tenant slug already exists: {slug}")

    tenant = Tenant(
        id=uuid.uuid4().hex,
        slug=slug,
        name=name,
        external_org_id=external_org_id,
        plan_type=plan_type,
        max_users=max_users,
        max_quota=max_quota,
    )
    db.add(tenant)
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("Tenant already exists") from e

    TenantConfigService(tenant_scope(db, tenant.id)).init_defaults(commit=False)
    db.commit()

    logger.info(
        "Tenant created",
        extra={"event": "tenant.created", "slug": slug, "tenant": tenant.id, "plan_type": plan_type},
    )
    return tenant


def _unique_slug(db: Session, base: str, external_org_id: str) -> str:
    """Slug for an OIDC org; collisions get a suffix derived from the org id."""
    slug = slugify(base)
    if get_tenant_by_slug(db, slug) is None:
        return slug
    suffix = hashlib.sha256(external_org_id.encode("utf-8")).hexdigest()[:6]
    candidate = f"{slug[:56]}-{suffix}"
    counter = 2
    while get_tenant_by_slug(db, candidate) is not None:
        candidate = f"{slug[:52]}-{suffix}-{counter}"
        counter += 1
    logger.warning(
        "Tenant slug collision resolved with suffix",
        extra={"event": "tenant.slug.collision", "requested": slug, "assigned": candidate},
    )
    return candidate


def create_from_oidc(
    db: Session,
    *,
    external_org_id: str,
    org_domain: str,
    org_name: str,
) -> Tenant:
    """Idempotently create the tenant for an IdP organisation."""
    existing = get_tenant_by_org(db, external_org_id)
    if existing is not None:
        return existing

    slug = _unique_slug(db, org_domain or org_name or external_org_id, external_org_id)
    try:
        return create_tenant(
            db,
            slug=slug,
            name=org_name or org_domain or slug,
            external_org_id=external_org_id,
        )
    except ConflictError:
        # Concurrent first login from the same org
        existing = get_tenant_by_org(db, external_org_id)
        if existing is None:
            raise
        return existing


def update_tenant(
    db: Session,
    tenant_id: str,
    *,
    name: Optional[str] = None,
    plan_type: Optional[str] = None,
    max_users: Optional[int] = None,
    max_quota: Optional[int] = None,
) -> Tenant:
    tenant = get_tenant(db, tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    if plan_type is not None and plan_type not in PLAN_TYPES:
        raise ValidationFailedError(f"Unknown plan type: {plan_type}")
    if name is not None:
        tenant.name = name
    if plan_type is not None:
        tenant.plan_type = plan_type
    if max_users is not None:
        tenant.max_users = max_users
    if max_quota is not None:
        tenant.max_quota = max_quota
    db.commit()
    return tenant


def set_tenant_status(db: Session, tenant_id: str, status: int) -> Tenant:
    """Enable, disable or suspend a tenant."""
    if status not in _STATUS_NAMES:
        raise ValidationFailedError(f"Unknown tenant status: {status}")
    if tenant_id == DEFAULT_TENANT_ID and status != TenantStatus.ENABLED:
        raise ValidationFailedError("The default tenant cannot be disabled")
    tenant = get_tenant(db, tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    previous = tenant.status
    tenant.status = status
    db.commit()
    logger.info(
        "Tenant status changed",
        extra={
            "event": "tenant.status.changed",
            "tenant": tenant_id,
            "from": status_name(previous),
            "to": status_name(status),
        },
    )
    return tenant


def delete_tenant(db: Session, tenant_id: str) -> None:
    """Soft delete: the row and its data stay, the tenant stops resolving."""
    if tenant_id == DEFAULT_TENANT_ID:
        raise ValidationFailedError("The default tenant cannot be deleted")
    tenant = get_tenant(db, tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    tenant.deleted_at = datetime.now(timezone.utc)
    tenant.status = TenantStatus.DISABLED
    db.commit()
    logger.info("Tenant soft-deleted", extra={"event": "tenant.deleted", "tenant": tenant_id})


def list_tenants(
    db: Session, *, page: int = 1, page_size: int = 20, status: Optional[int] = None
) -> tuple[Sequence[Tenant], int]:
    criteria = [Tenant.deleted_at.is_(None)]
    if status is not None:
        criteria.append(Tenant.status == status)
    total = int(db.execute(select(func.count()).select_from(Tenant).where(*criteria)).scalar_one())
    rows = db.execute(
        select(Tenant)
        .where(*criteria)
        .order_by(Tenant.created_at.desc(), Tenant.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).scalars().all()
    return rows, total


def count_users(db: Session, tenant_id: str) -> int:
    return int(
        db.execute(
            select(func.count())
            .select_from(User)
            .where(User.tenant_id == tenant_id, User.deleted_at.is_(None))
        ).scalar_one()
    )


def can_add_user(db: Session, tenant: Tenant) -> bool:
    """max_users <= 0 means unlimited (the default tenant)."""
    if tenant.max_users <= 0:
        return True
    return count_users(db, tenant.id) < tenant.max_users
