"""Per-user relay tokens (sk-...), presented by relay clients."""

import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lurus_api.credentials.key_material import RELAY_TOKEN_PREFIX, generate_relay_token, hash_key
from lurus_api.db.models import RelayToken, UserStatus
from lurus_api.entitlements.store import require_user
from lurus_api.errors import ConflictError, ErrorCode, IAEError, ValidationFailedError
from lurus_api.tenancy.scoped import TenantScope

logger = logging.getLogger(__name__)

TOKEN_ENABLED = 1
TOKEN_DISABLED = 2


def list_tokens(
    scope: TenantScope, user_id: int, *, page: int = 1, page_size: int = 10
) -> tuple[Sequence[RelayToken], int]:
    require_user(scope, user_id)
    total = scope.count(RelayToken, RelayToken.user_id == user_id)
    rows = scope.all(
        RelayToken,
        RelayToken.user_id == user_id,
        order_by=RelayToken.id.desc(),
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return rows, total


def create_token(
    scope: TenantScope,
    user_id: int,
    name: str,
    *,
    unlimited_quota: bool = False,
    remain_quota: int = 0,
    idempotency_key: Optional[str] = None,
) -> tuple[RelayToken, Optional[str], bool]:
    """Issue a relay token for a user. Commits.

    Returns:
        Tuple of (row, raw_token, is_duplicate); raw_token is None for a duplicate

    Raises:
        IAEError(USER_DISABLED, 403): Target user is disabled
        ConflictError: A token with this name exists and no idempotency key was sent
    """
    if not name or not name.strip():
        raise ValidationFailedError("name is required")
    if remain_quota < 0:
        raise ValidationFailedError("remain_quota must not be negative")

    user = require_user(scope, user_id)
    if user.status != UserStatus.ENABLED:
        raise IAEError("User is disabled", ErrorCode.USER_DISABLED, status_code=403)

    existing = scope.first(RelayToken, RelayToken.user_id == user_id, RelayToken.name == name)
    if existing is not None:
        if idempotency_key:
            return existing, None, True
        raise ConflictError("A token with this name already exists")

    raw, prefix, token_hash = generate_relay_token()
    row = RelayToken(
        user_id=user_id,
        name=name,
        key_hash=token_hash,
        key_prefix=prefix,
        status=TOKEN_ENABLED,
        unlimited_quota=unlimited_quota,
        remain_quota=remain_quota,
    )
    scope.add(row)
    try:
        scope.commit()
    except IntegrityError as e:
        scope.rollback()
        raise ConflictError("A token with this name already exists") from e

    logger.info(
        "Relay token created",
        extra={"event": "relay_token.created", "user": user_id, "token_id": row.id, "key_prefix": prefix},
    )
    return row, raw, False


def lookup_token(db: Session, raw: str) -> Optional[RelayToken]:
    """Resolve a raw sk- token to an enabled, unexpired row."""
    if not raw or not raw.startswith(RELAY_TOKEN_PREFIX):
        return None
    row = db.execute(select(RelayToken).where(RelayToken.key_hash == hash_key(raw))).scalars().first()
    if row is None or row.status != TOKEN_ENABLED:
        return None
    if row.expired_at != -1 and row.expired_at <= int(datetime.now(timezone.utc).timestamp()):
        return None
    return row


def charge_token(scope: TenantScope, token_id: int, amount: int) -> None:
    """Debit a limited token's remaining quota and stamp accessed_at. Does not commit."""
    row = scope.get(RelayToken, token_id, for_update=True)
    if row is None:
        return
    row.used_quota += amount
    if not row.unlimited_quota:
        row.remain_quota -= amount
    row.accessed_at = datetime.now(timezone.utc)
