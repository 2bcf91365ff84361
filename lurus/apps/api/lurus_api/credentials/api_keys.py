"""Internal service API keys.

Keys authenticate service-to-service calls on the /internal surface. Each
key carries a scope set; `*` grants every scope and may only be issued by a
root user. Only the SHA-256 hash is stored.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from lurus_api.credentials.key_material import generate_api_key, hash_key, looks_like_api_key
from lurus_api.db.models import InternalApiKey, User, UserRole
from lurus_api.errors import ForbiddenError, NotFoundError, ValidationFailedError

logger = logging.getLogger(__name__)

WILDCARD_SCOPE = "*"

SCOPE_DESCRIPTIONS: dict[str, str] = {
    "user:read": "Read user information",
    "user:write": "Create and update users",
    "user:delete": "Delete users",
    "subscription:read": "Read subscriptions",
    "subscription:write": "Grant subscriptions",
    "quota:read": "Read quota",
    "quota:write": "Adjust quota",
    "balance:read": "Read balance",
    "balance:write": "Top up balance",
    "token:read": "Read relay tokens",
    "token:write": "Create relay tokens",
    "auth:login": "Verify user credentials",
    WILDCARD_SCOPE: "All permissions (root only)",
}

KNOWN_SCOPES = frozenset(SCOPE_DESCRIPTIONS)


def has_scope(scopes: Iterable[str], required: str) -> bool:
    granted = set(scopes or ())
    return required in granted or WILDCARD_SCOPE in granted


def available_scopes() -> list[dict[str, str]]:
    return [{"scope": scope, "description": desc} for scope, desc in SCOPE_DESCRIPTIONS.items()]


def validate_scopes(scopes: Sequence[str], actor_role: int) -> list[str]:
    """
    Raises:
        ValidationFailedError: Empty set or unknown scope
        ForbiddenError: Wildcard requested by a non-root actor
    """
    if not scopes:
        raise ValidationFailedError("At least one scope is required")
    unknown = [s for s in scopes if s not in KNOWN_SCOPES]
    if unknown:
        raise ValidationFailedError(f"Unknown scopes: {', '.join(sorted(unknown))}")
    if WILDCARD_SCOPE in scopes and actor_role < UserRole.ROOT:
        raise ForbiddenError("Only root users can grant the '*' scope")
    # Preserve order, drop duplicates
    return list(dict.fromkeys(scopes))


def _now_epoch() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def is_key_valid(key: InternalApiKey, now_epoch: Optional[int] = None) -> bool:
    now_epoch = now_epoch if now_epoch is not None else _now_epoch()
    return key.enabled and (key.expires_at == 0 or key.expires_at > now_epoch)


def create_api_key(
    db: Session,
    *,
    name: str,
    scopes: Sequence[str],
    created_by: int,
    actor_role: int,
    tenant_id: Optional[str] = None,
    description: str = "",
    expires_at: int = 0,
) -> tuple[InternalApiKey, str]:
    """Issue a key. Commits.

    Returns:
        Tuple of (row, raw_key); raw_key is never retrievable again
    """
    if not name or not name.strip():
        raise ValidationFailedError("name is required")
    if expires_at < 0:
        raise ValidationFailedError("expires_at must be 0 (never) or an epoch timestamp")
    scopes = validate_scopes(scopes, actor_role)

    raw_key, key_prefix, key_hash = generate_api_key()
    row = InternalApiKey(
        tenant_id=tenant_id,
        name=name.strip(),
        key_hash=key_hash,
        key_prefix=key_prefix,
        scopes=scopes,
        created_by=created_by,
        expires_at=expires_at,
        enabled=True,
        description=description,
    )
    db.add(row)
    db.commit()
    logger.info(
        "Internal API key created",
        extra={
            "event": "api_key.created",
            "key_id": row.id,
            "key_prefix": key_prefix,
            "scopes": scopes,
            "created_by": created_by,
        },
    )
    return row, raw_key


def _visible(tenant_id: Optional[str]) -> list[Any]:
    return [] if tenant_id is None else [InternalApiKey.tenant_id == tenant_id]


def list_api_keys(db: Session, *, tenant_id: Optional[str] = None) -> Sequence[InternalApiKey]:
    """All keys, or only one tenant's keys when tenant_id is given."""
    stmt = select(InternalApiKey).where(*_visible(tenant_id)).order_by(InternalApiKey.id.desc())
    return db.execute(stmt).scalars().all()


def get_api_key(db: Session, key_id: int, *, tenant_id: Optional[str] = None) -> InternalApiKey:
    stmt = select(InternalApiKey).where(InternalApiKey.id == key_id, *_visible(tenant_id))
    row = db.execute(stmt).scalars().first()
    if row is None:
        raise NotFoundError("API key not found")
    return row


def update_api_key(
    db: Session,
    key_id: int,
    *,
    actor_role: int,
    tenant_id: Optional[str] = None,
    name: Optional[str] = None,
    description: Optional[str] = None,
    scopes: Optional[Sequence[str]] = None,
    expires_at: Optional[int] = None,
) -> InternalApiKey:
    row = get_api_key(db, key_id, tenant_id=tenant_id)
    if WILDCARD_SCOPE in (row.scopes or []) and actor_role < UserRole.ROOT:
        raise ForbiddenError("Only root users can modify wildcard keys")
    if name is not None:
        if not name.strip():
            raise ValidationFailedError("name must not be empty")
        row.name = name.strip()
    if description is not None:
        row.description = description
    if scopes is not None:
        row.scopes = validate_scopes(scopes, actor_role)
    if expires_at is not None:
        if expires_at < 0:
            raise ValidationFailedError("expires_at must be 0 (never) or an epoch timestamp")
        row.expires_at = expires_at
    db.commit()
    logger.info("Internal API key updated", extra={"event": "api_key.updated", "key_id": key_id})
    return row


def set_api_key_enabled(
    db: Session, key_id: int, enabled: bool, *, tenant_id: Optional[str] = None
) -> InternalApiKey:
    row = get_api_key(db, key_id, tenant_id=tenant_id)
    row.enabled = enabled
    db.commit()
    logger.info(
        "Internal API key toggled",
        extra={"event": "api_key.toggled", "key_id": key_id, "enabled": enabled},
    )
    return row


def delete_api_key(db: Session, key_id: int, *, tenant_id: Optional[str] = None) -> None:
    row = get_api_key(db, key_id, tenant_id=tenant_id)
    db.delete(row)
    db.commit()
    logger.info("Internal API key deleted", extra={"event": "api_key.deleted", "key_id": key_id})


def lookup_api_key(db: Session, raw_key: str) -> Optional[InternalApiKey]:
    """Resolve a raw key to an enabled, unexpired row (None otherwise)."""
    if not raw_key or not looks_like_api_key(raw_key):
        return None
    row = db.execute(
        select(InternalApiKey).where(InternalApiKey.key_hash == hash_key(raw_key))
    ).scalars().first()
    if row is None or not is_key_valid(row):
        return None
    return row


def audit_wildcard_keys(db: Session) -> int:
    """Warn about enabled wildcard keys whose creator is not (or no longer) root.

    Such keys predate the root-only rule; they keep working.
    """
    rows = db.execute(select(InternalApiKey).where(InternalApiKey.enabled.is_(True))).scalars().all()
    flagged = 0
    for row in rows:
        if WILDCARD_SCOPE not in (row.scopes or []):
            continue
        creator = db.get(User, row.created_by) if row.created_by else None
        if creator is None or creator.role < UserRole.ROOT:
            flagged += 1
            logger.warning(
                "Wildcard API key not issued by a root user",
                extra={"event": "api_key.wildcard.legacy", "key_id": row.id, "key_prefix": row.key_prefix},
            )
    return flagged
