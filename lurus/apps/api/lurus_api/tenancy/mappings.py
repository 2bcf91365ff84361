"""External identity → local user mappings, one per (tenant, subject)."""

import logging
from datetime import datetime, timezone
from typing import Optional

from lurus_api.db.models import UserIdentityMapping
from lurus_api.tenancy.scoped import TenantScope

logger = logging.getLogger(__name__)


def find_mapping(scope: TenantScope, external_user_id: str) -> Optional[UserIdentityMapping]:
    return scope.first(UserIdentityMapping, UserIdentityMapping.external_user_id == external_user_id)


def create_mapping(
    scope: TenantScope,
    *,
    external_user_id: str,
    user_id: int,
    display_name: str = "",
    email: str = "",
    preferred_username: str = "",
    provider: str = "zitadel",
) -> UserIdentityMapping:
    """Insert a mapping (flushes, does not commit).

    Raises:
        IntegrityError: If (tenant, subject) is already mapped
    """
    mapping = UserIdentityMapping(
        external_user_id=external_user_id,
        user_id=user_id,
        provider=provider,
        display_name=display_name,
        email=email,
        preferred_username=preferred_username,
    )
    scope.add(mapping)
    scope.flush()
    logger.info(
        "Identity mapping created",
        extra={"event": "identity.mapping.created", "provider": provider, "user": user_id},
    )
    return mapping


def sync_mapping(
    mapping: UserIdentityMapping,
    *,
    display_name: str,
    email: str,
    preferred_username: str,
) -> bool:
    """Refresh the cached claims; returns True if anything changed."""
    changed = False
    for attr, value in (
        ("display_name", display_name),
        ("email", email),
        ("preferred_username", preferred_username),
    ):
        if value and getattr(mapping, attr) != value:
            setattr(mapping, attr, value)
            changed = True
    mapping.last_sync_at = datetime.now(timezone.utc)
    return changed

