"""Daily quota engine.

Per user: (daily_quota, daily_used, last_daily_reset, base_group,
fallback_group, group).

- Unlimited when daily_quota <= 0: never limited, never reset
- Needs reset iff the UTC date of last_daily_reset is before today's UTC date
- Reset: daily_used = 0, last_daily_reset = now, fallback_group → base_group
- Pre-consume: lazy reset, then limited iff daily_used + amount > daily_quota;
  a limited user on base_group moves to fallback_group (if non-empty)
- Post-consume: daily_used += amount; at or above the cap on base_group → fallback

Every mutation locks the user row first (SELECT ... FOR UPDATE), so a reset
and a pre-consume check on the same user serialise. DAILY_QUOTA_ENABLED=false
turns the engine off: every check reports unlimited.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select

from lurus_api.config.env import is_daily_quota_enabled
from lurus_api.db.models import User
from lurus_api.errors import ErrorCode, NotFoundError
from lurus_api.tenancy.scoped import TenantScope

logger = logging.getLogger(__name__)


@dataclass
class DailyQuotaInfo:
    user_id: int
    daily_quota: int
    daily_used: int
    remaining: int
    last_daily_reset: int
    base_group: str
    fallback_group: str
    group: str
    unlimited: bool
    needs_reset: bool
    on_fallback: bool

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ConsumeCheck:
    """Outcome of a pre-consume check."""

    limited: bool
    group: str
    switched_to_fallback: bool
    reset_performed: bool
    daily_quota: int
    daily_used: int


def _now() -> datetime:
    return datetime.now(timezone.utc)


def utc_day_start(now: datetime) -> int:
    """Epoch seconds of 00:00 UTC on now's date."""
    day = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return int(day.timestamp())


def needs_daily_reset(user: User, now: Optional[datetime] = None) -> bool:
    if user.daily_quota <= 0:
        return False
    now = now or _now()
    last = datetime.fromtimestamp(user.last_daily_reset, tz=timezone.utc).date()
    return last < now.astimezone(timezone.utc).date()


def is_on_fallback(user: User) -> bool:
    return bool(user.fallback_group) and user.group == user.fallback_group and user.group != user.base_group


def build_info(user: User, now: Optional[datetime] = None) -> DailyQuotaInfo:
    unlimited = user.daily_quota <= 0
    return DailyQuotaInfo(
        user_id=user.id,
        daily_quota=user.daily_quota,
        daily_used=user.daily_used,
        remaining=0 if unlimited else max(user.daily_quota - user.daily_used, 0),
        last_daily_reset=user.last_daily_reset,
        base_group=user.base_group,
        fallback_group=user.fallback_group,
        group=user.group,
        unlimited=unlimited,
        needs_reset=needs_daily_reset(user, now),
        on_fallback=is_on_fallback(user),
    )


def _lock_user(scope: TenantScope, user_id: int) -> User:
    user = scope.get(User, user_id, for_update=True)
    if user is None:
        raise NotFoundError("User not found", ErrorCode.USER_NOT_FOUND)
    return user


def _apply_reset(user: User, now: datetime) -> bool:
    """Mutate a locked user row; returns False if already reset today."""
    if not needs_daily_reset(user, now):
        return False
    user.daily_used = 0
    user.last_daily_reset = int(now.timestamp())
    if is_on_fallback(user) and user.base_group:
        user.group = user.base_group
    return True


def _switch_to_fallback(user: User) -> bool:
    if user.fallback_group and user.base_group and user.group == user.base_group:
        user.group = user.fallback_group
        return True
    return False


def reset_user(scope: TenantScope, user_id: int, *, now: Optional[datetime] = None) -> bool:
    """Reset one user's daily counter if the UTC date rolled over. Commits."""
    now = now or _now()
    user = _lock_user(scope, user_id)
    performed = _apply_reset(user, now)
    scope.commit()
    if performed:
        logger.info(
            "Daily quota reset",
            extra={"event": "daily_quota.reset", "user": user_id, "group": user.group},
        )
    return performed


def check_and_handle_exhaustion(
    scope: TenantScope,
    user_id: int,
    amount: int,
    *,
    now: Optional[datetime] = None,
) -> ConsumeCheck:
    """Pre-consume check called by the relay before charging a request. Commits."""
    if not is_daily_quota_enabled():
        user = scope.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", ErrorCode.USER_NOT_FOUND)
        return ConsumeCheck(False, user.group, False, False, 0, user.daily_used)

    now = now or _now()
    user = _lock_user(scope, user_id)

    if user.daily_quota <= 0:
        scope.commit()
        return ConsumeCheck(False, user.group, False, False, user.daily_quota, user.daily_used)

    reset_performed = _apply_reset(user, now)
    limited = user.daily_used + amount > user.daily_quota
    switched = _switch_to_fallback(user) if limited else False
    scope.commit()

    if limited:
        logger.info(
            "Daily quota exhausted",
            extra={
                "event": "daily_quota.limited",
                "user": user_id,
                "daily_quota": user.daily_quota,
                "daily_used": user.daily_used,
                "requested": amount,
                "switched_to_fallback": switched,
                "group": user.group,
            },
        )
    return ConsumeCheck(limited, user.group, switched, reset_performed, user.daily_quota, user.daily_used)


def post_consume(
    scope: TenantScope,
    user_id: int,
    amount: int,
    *,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Optional[DailyQuotaInfo]:
    """Record consumption against the daily cap.

    With commit=False the change is only flushed, for callers settling
    several ledgers in one transaction.

    Returns:
        Updated snapshot, or None when nothing was recorded
    """
    if amount <= 0 or not is_daily_quota_enabled():
        return None
    now = now or _now()
    user = _lock_user(scope, user_id)
    if user.daily_quota <= 0:
        if commit:
            scope.commit()
        return None

    _apply_reset(user, now)
    user.daily_used += amount
    switched = False
    if user.daily_used >= user.daily_quota:
        switched = _switch_to_fallback(user)
    if commit:
        scope.commit()
    else:
        scope.flush()

    if switched:
        logger.info(
            "Daily cap reached, switched to fallback group",
            extra={"event": "daily_quota.fallback", "user": user_id, "group": user.group},
        )
    return build_info(user, now)


def find_users_needing_reset(scope: TenantScope, *, limit: int = 100, now: Optional[datetime] = None) -> list[int]:
    """Ids of users with a daily cap whose last reset is before today (UTC)."""
    now = now or _now()
    day_start = utc_day_start(now)
    stmt = (
        select(User.id)
        .where(
            User.deleted_at.is_(None),
            User.daily_quota > 0,
            User.last_daily_reset < day_start,
        )
        .order_by(User.id)
        .limit(limit)
    )
    if scope.tenant_id is not None:
        stmt = stmt.where(User.tenant_id == scope.tenant_id)
    return list(scope.session.execute(stmt).scalars().all())


def reset_batch(scope: TenantScope, *, limit: int = 100, now: Optional[datetime] = None) -> tuple[int, int]:
    """Reset one batch of users.

    Each user is reset in its own transaction; a failure is logged and the
    user is retried on the next tick.

    Returns:
        Tuple of (reset_count, selected_count)
    """
    now = now or _now()
    user_ids = find_users_needing_reset(scope, limit=limit, now=now)
    reset_count = 0
    for user_id in user_ids:
        try:
            if reset_user(scope, user_id, now=now):
                reset_count += 1
        except Exception as e:
            scope.rollback()
            logger.error(
                "Daily quota reset failed",
                extra={"event": "daily_quota.reset.failed", "user": user_id, "error": str(e)},
                exc_info=True,
            )
    return reset_count, len(user_ids)
