"""One-shot registration invitation codes."""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from lurus_api.credentials.key_material import generate_invitation_code
from lurus_api.db.models import InvitationCode
from lurus_api.errors import ConflictError, NotFoundError, ValidationFailedError

logger = logging.getLogger(__name__)

MAX_BATCH = 100

ERR_INVALID = "invalid invitation code"
ERR_USED = "invitation code already used"
ERR_EXPIRED = "invitation code expired"


@dataclass
class InvitationStats:
    total: int
    used: int
    expired: int
    active: int

    def to_dict(self) -> dict:
        return asdict(self)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_expired(row: InvitationCode, now: datetime) -> bool:
    return row.expires_at is not None and row.expires_at <= now


def create_codes(
    db: Session,
    *,
    count: int,
    created_by: int,
    expires_in: int = 0,
    now: Optional[datetime] = None,
) -> list[InvitationCode]:
    """Create a batch of codes. Commits.

    Args:
        count: 1..100
        expires_in: Lifetime in seconds (0 = never expires)
    """
    if count < 1 or count > MAX_BATCH:
        raise ValidationFailedError(f"count must be between 1 and {MAX_BATCH}")
    if expires_in < 0:
        raise ValidationFailedError("expires_in must not be negative")
    now = now or _now()
    expires_at = now + timedelta(seconds=expires_in) if expires_in > 0 else None

    rows = [
        InvitationCode(code=generate_invitation_code(), created_by=created_by, expires_at=expires_at, created_at=now)
        for _ in range(count)
    ]
    db.add_all(rows)
    db.commit()
    logger.info(
        "Invitation codes created",
        extra={"event": "invitation.created", "count": count, "created_by": created_by},
    )
    return rows


def _check_usable(row: Optional[InvitationCode], now: datetime) -> InvitationCode:
    if row is None:
        raise ValidationFailedError(ERR_INVALID)
    if row.used_by is not None:
        raise ConflictError(ERR_USED)
    if _is_expired(row, now):
        raise ValidationFailedError(ERR_EXPIRED)
    return row


def validate_code(db: Session, code: str, *, now: Optional[datetime] = None) -> InvitationCode:
    """Check a code without consuming it."""
    row = db.execute(select(InvitationCode).where(InvitationCode.code == code)).scalars().first()
    return _check_usable(row, now or _now())


def use_code(db: Session, code: str, user_id: int, *, now: Optional[datetime] = None) -> InvitationCode:
    """Consume a code for user_id under a row lock.

    Does not commit: the caller commits together with the user it registers,
    so a failed registration leaves the code unused.
    """
    now = now or _now()
    stmt = (
        select(InvitationCode)
        .where(InvitationCode.code == code)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = _check_usable(db.execute(stmt).scalars().first(), now)
    row.used_by = user_id
    row.used_at = now
    logger.info("Invitation code used", extra={"event": "invitation.used", "code_id": row.id, "user": user_id})
    return row


def list_codes(db: Session, *, page: int = 1, page_size: int = 20) -> tuple[Sequence[InvitationCode], int]:
    total = db.execute(select(func.count()).select_from(InvitationCode)).scalar_one()
    rows = db.execute(
        select(InvitationCode)
        .order_by(InvitationCode.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).scalars().all()
    return rows, int(total)


def delete_code(db: Session, code_id: int) -> None:
    """Delete an unused code. Commits."""
    row = db.get(InvitationCode, code_id)
    if row is None:
        raise NotFoundError("Invitation code not found")
    if row.used_by is not None:
        raise ConflictError("Cannot delete a used invitation code")
    db.delete(row)
    db.commit()


def delete_expired(db: Session, *, now: Optional[datetime] = None) -> int:
    """Delete unused codes past their expiry. Commits."""
    now = now or _now()
    result = db.execute(
        delete(InvitationCode).where(
            InvitationCode.used_by.is_(None),
            InvitationCode.expires_at.is_not(None),
            InvitationCode.expires_at <= now,
        )
    )
    db.commit()
    logger.info("Expired invitation codes deleted", extra={"event": "invitation.purged", "count": result.rowcount})
    return result.rowcount


def stats(db: Session, *, now: Optional[datetime] = None) -> InvitationStats:
    now = now or _now()
    total = db.execute(select(func.count()).select_from(InvitationCode)).scalar_one()
    used = db.execute(
        select(func.count()).select_from(InvitationCode).where(InvitationCode.used_by.is_not(None))
    ).scalar_one()
    expired = db.execute(
        select(func.count())
        .select_from(InvitationCode)
        .where(
            InvitationCode.used_by.is_(None),
            InvitationCode.expires_at.is_not(None),
            InvitationCode.expires_at <= now,
        )
    ).scalar_one()
    return InvitationStats(total=total, used=used, expired=expired, active=total - used - expired)
