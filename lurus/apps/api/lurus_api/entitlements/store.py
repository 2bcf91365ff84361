"""Entitlement store: users and their quota balance.

Transactional mutators used by the handlers. Each public mutator is one
transaction: it locks the user row (SELECT ... FOR UPDATE) before reading,
writes the audit log row last (lock order users → subscriptions → logs) and
commits. Any exception leaves the pre-state intact.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy.exc import IntegrityError

from lurus_api.auth.passwords import MIN_PASSWORD_LENGTH, hash_password
from lurus_api.config.options import get_quota_per_unit
from lurus_api.credentials.key_material import generate_aff_code
from lurus_api.db.models import (
    DEFAULT_GROUP,
    QuotaLog,
    RelayToken,
    Tenant,
    User,
    UserRole,
    UserStatus,
)
from lurus_api.entitlements.daily_quota import DailyQuotaInfo, build_info
from lurus_api.errors import (
    ConflictError,
    ErrorCode,
    ForbiddenError,
    IAEError,
    NotFoundError,
    ValidationFailedError,
)
from lurus_api.tenancy.configs import TenantConfigService
from lurus_api.tenancy.scoped import TenantScope
from lurus_api.tenancy.tenants import can_add_user, get_tenant

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,20}$")

UPDATABLE_FIELDS = frozenset({"display_name", "email", "phone", "status", "group"})


@dataclass
class QuotaChange:
    old_quota: int
    adjustment: int
    new_quota: int


# ── lookups ───────────────────────────────────────────────────────────────────


def get_user(scope: TenantScope, user_id: int, *, for_update: bool = False) -> Optional[User]:
    return scope.get(User, user_id, for_update=for_update)


def require_user(scope: TenantScope, user_id: int, *, for_update: bool = False) -> User:
    """Raises NotFoundError(USER_NOT_FOUND) if the user is absent in this tenant."""
    user = get_user(scope, user_id, for_update=for_update)
    if user is None:
        raise NotFoundError("User not found", ErrorCode.USER_NOT_FOUND)
    return user


def get_user_by_username(scope: TenantScope, username: str) -> Optional[User]:
    return scope.first(User, User.username == username)


def get_user_by_email(scope: TenantScope, email: str) -> Optional[User]:
    if not email:
        return None
    return scope.first(User, User.email == email, order_by=User.id)


def get_user_by_phone(scope: TenantScope, phone: str) -> Optional[User]:
    if not phone:
        return None
    return scope.first(User, User.phone == phone)


def list_users(
    scope: TenantScope, *, page: int = 1, page_size: int = 20, keyword: str = ""
) -> tuple[Sequence[User], int]:
    criteria: list[Any] = []
    if keyword:
        pattern = f"%{keyword}%"
        criteria.append(User.username.like(pattern) | User.email.like(pattern) | User.display_name.like(pattern))
    total = scope.count(User, *criteria)
    rows = scope.all(User, *criteria, order_by=User.id.desc(), limit=page_size, offset=(page - 1) * page_size)
    return rows, total


# ── validation ────────────────────────────────────────────────────────────────


def validate_username(username: str) -> None:
    if not USERNAME_RE.match(username or ""):
        raise ValidationFailedError("Username must be 3-20 characters of letters, digits or underscore")


def validate_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationFailedError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def validate_email(email: str) -> None:
    if email and "@" not in email:
        raise ValidationFailedError("Invalid email address")


# ── creation ──────────────────────────────────────────────────────────────────


def _new_user_quota(scope: TenantScope) -> int:
    return TenantConfigService(scope).get_int("quota.new_user_quota", 0)


def provision_user(
    scope: TenantScope,
    *,
    username: str,
    password: Optional[str] = None,
    email: str = "",
    phone: str = "",
    phone_verified: bool = False,
    display_name: Optional[str] = None,
    role: int = UserRole.COMMON,
    group: str = DEFAULT_GROUP,
    inviter_id: Optional[int] = None,
    tenant: Optional[Tenant] = None,
) -> User:
    """Insert a user row without validation or commit (flushes).

    Shared by every creation path (internal API, registration, phone OTP
    auto-register, OIDC auto-create).

    Raises:
        ForbiddenError: Tenant user limit reached
        ConflictError(USER_EXISTS): Username or phone already taken
    """
    tenant = tenant or get_tenant(scope.session, scope.tenant_id)
    if tenant is not None and not can_add_user(scope.session, tenant):
        raise ForbiddenError("Tenant user limit reached")

    user = User(
        username=username,
        password_hash=hash_password(password) if password else None,
        display_name=display_name or username,
        email=email or "",
        phone=phone or "",
        phone_verified=phone_verified,
        role=role,
        status=UserStatus.ENABLED,
        group=group,
        quota=_new_user_quota(scope),
        aff_code=generate_aff_code(),
        inviter_id=inviter_id,
        last_daily_reset=int(datetime.now(timezone.utc).timestamp()),
    )
    scope.add(user)
    try:
        with scope.session.begin_nested():
            scope.flush()
    except IntegrityError as e:
        raise ConflictError("User already exists", ErrorCode.USER_EXISTS) from e
    return user


def create_user(
    scope: TenantScope,
    *,
    username: str,
    password: str,
    email: str = "",
    display_name: Optional[str] = None,
    role: int = UserRole.COMMON,
    group: str = DEFAULT_GROUP,
    quota: int = 0,
    idempotency_key: Optional[str] = None,
) -> tuple[User, bool]:
    """Create a user in the bound tenant.

    Args:
        quota: Initial balance; overrides the tenant's new-user quota when positive
        idempotency_key: When supplied and a user with the same username
            already exists, that user is returned instead of a conflict.

    Returns:
        Tuple of (user, is_duplicate)

    Raises:
        ValidationFailedError: Username, password or email malformed
        ConflictError(USER_EXISTS): Username or email taken (no idempotency key)
    """
    validate_username(username)
    validate_password(password)
    validate_email(email)

    existing = get_user_by_username(scope, username)
    if existing is not None:
        if idempotency_key:
            logger.info(
                "Idempotent user create returned existing user",
                extra={"event": "user.create.duplicate", "user": existing.id},
            )
            return existing, True
        raise ConflictError("Username already exists", ErrorCode.USER_EXISTS)

    if email and get_user_by_email(scope, email) is not None:
        raise ConflictError("Email already registered", ErrorCode.USER_EXISTS)

    try:
        user = provision_user(
            scope,
            username=username,
            password=password,
            email=email,
            display_name=display_name,
            role=role,
            group=group,
        )
    except ConflictError:
        # Another request inserted the same username after the lookup above
        existing = get_user_by_username(scope, username) if idempotency_key else None
        if existing is None:
            raise
        logger.info(
            "Idempotent user create returned concurrently created user",
            extra={"event": "user.create.duplicate", "user": existing.id},
        )
        return existing, True
    if quota > 0:
        user.quota = quota
    scope.commit()
    logger.info("User created", extra={"event": "user.created", "user": user.id})
    return user, False


# ── updates ───────────────────────────────────────────────────────────────────


def update_user(scope: TenantScope, user_id: int, fields: dict[str, Any]) -> User:
    """Write only the provided fields.

    Setting phone also marks it verified (internal path only).

    Raises:
        ValidationFailedError: No updatable fields, or a malformed value
        ConflictError(USER_EXISTS): Phone or email owned by another user
    """
    updates = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS and v is not None}
    if not updates:
        raise ValidationFailedError("No fields to update")

    user = require_user(scope, user_id, for_update=True)

    if "email" in updates:
        validate_email(updates["email"])
    if "status" in updates and updates["status"] not in (UserStatus.ENABLED, UserStatus.DISABLED):
        raise ValidationFailedError("Invalid status")
    if "phone" in updates and updates["phone"]:
        owner = get_user_by_phone(scope, updates["phone"])
        if owner is not None and owner.id != user.id:
            raise ConflictError("Phone number already bound to another user", ErrorCode.USER_EXISTS)
        updates["phone_verified"] = True

    for key, value in updates.items():
        setattr(user, key, value)

    try:
        scope.commit()
    except IntegrityError as e:
        scope.rollback()
        raise ConflictError("User already exists", ErrorCode.USER_EXISTS) from e

    logger.info(
        "User updated",
        extra={"event": "user.updated", "user": user_id, "fields": sorted(updates)},
    )
    return user


def delete_user(scope: TenantScope, user_id: int) -> None:
    """Soft-delete a user and disable their relay tokens.

    Raises:
        ForbiddenError: Target user is an admin or root
    """
    user = require_user(scope, user_id, for_update=True)
    if user.role >= UserRole.ADMIN:
        raise ForbiddenError("Cannot delete admin users")

    now = datetime.now(timezone.utc)
    user.deleted_at = now
    user.status = UserStatus.DISABLED
    scope.update(RelayToken, RelayToken.user_id == user_id, values={"status": 2})
    scope.commit()
    logger.info("User deleted", extra={"event": "user.deleted", "user": user_id})


# ── quota ─────────────────────────────────────────────────────────────────────


def write_quota_log(scope: TenantScope, user: User, log_type: str, content: str, delta: int) -> None:
    scope.add(
        QuotaLog(
            tenant_id=user.tenant_id,
            user_id=user.id,
            type=log_type,
            content=content,
            quota_delta=delta,
        )
    )


def adjust_quota(
    scope: TenantScope,
    user_id: int,
    delta: int,
    reason: str,
    *,
    allow_negative: bool = False,
    log_type: str = "system",
) -> QuotaChange:
    """Add (delta > 0) or subtract (delta < 0) quota.

    Raises:
        IAEError(INSUFFICIENT_QUOTA): The result would be negative and
            allow_negative is False
    """
    user = require_user(scope, user_id, for_update=True)
    old_quota = user.quota
    new_quota = old_quota + delta
    if new_quota < 0 and not allow_negative:
        scope.rollback()
        raise IAEError(
            "Adjustment would make quota negative",
            ErrorCode.INSUFFICIENT_QUOTA,
            status_code=400,
            data={"quota": old_quota, "adjustment": delta},
        )
    user.quota = new_quota
    write_quota_log(scope, user, log_type, reason or "quota adjustment", delta)
    scope.commit()

    logger.info(
        "Quota adjusted",
        extra={
            "event": "quota.adjusted",
            "user": user_id,
            "old_quota": old_quota,
            "adjustment": delta,
            "new_quota": new_quota,
            "log_type": log_type,
        },
    )
    return QuotaChange(old_quota=old_quota, adjustment=delta, new_quota=new_quota)


def rmb_to_quota(amount_rmb: float) -> int:
    return int(amount_rmb * get_quota_per_unit())


def top_up(
    scope: TenantScope,
    user_id: int,
    amount_rmb: float,
    *,
    order_id: str = "",
    reason: str = "",
) -> QuotaChange:
    """Convert RMB into quota and credit it.

    Raises:
        ValidationFailedError: Non-positive amount
    """
    if amount_rmb <= 0:
        raise ValidationFailedError("Amount must be positive")
    quota = rmb_to_quota(amount_rmb)
    content = f"top-up ¥{amount_rmb:.2f}"
    if order_id:
        content += f" order={order_id}"
    if reason:
        content += f" ({reason})"
    return adjust_quota(scope, user_id, quota, content, log_type="topup")


def record_consumption(scope: TenantScope, user_id: int, amount: int, *, commit: bool = True) -> User:
    """Charge a completed relay request against the lifetime balance."""
    if amount < 0:
        raise ValidationFailedError("amount must not be negative")
    user = require_user(scope, user_id, for_update=True)
    user.quota -= amount
    user.used_quota += amount
    user.request_count += 1
    if commit:
        scope.commit()
    else:
        scope.flush()
    return user


def get_daily_quota_info(scope: TenantScope, user_id: int) -> DailyQuotaInfo:
    return build_info(require_user(scope, user_id))


def list_quota_logs(
    scope: TenantScope, user_id: int, *, limit: int = 50
) -> Sequence[QuotaLog]:
    return scope.all(QuotaLog, QuotaLog.user_id == user_id, order_by=QuotaLog.id.desc(), limit=limit)
