"""Resolved caller identity.

A Principal is what every credential plane produces: who the caller is and
what it carries (role level, IdP roles, key scopes). Tenant binding happens
afterwards and may narrow or escalate the tenant (see tenancy.binder).
"""

from dataclasses import dataclass, field
from typing import Optional

from lurus_api.db.models import UserRole

PLANE_PUBLIC = "public"
PLANE_SESSION = "session"
PLANE_BEARER_JWT = "bearer-jwt"
PLANE_SERVICE_KEY = "service-key"
PLANE_RELAY_TOKEN = "relay-token"

# IdP role that may target any tenant via X-Target-Tenant-ID
PLATFORM_ADMIN_ROLE = "platform_admin"
# IdP role that satisfies every tenant-level role check
ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Principal:
    auth_plane: str
    tenant_id: Optional[str]
    user_id: Optional[int] = None
    role: int = 0
    scopes: frozenset[str] = field(default_factory=frozenset)
    roles: frozenset[str] = field(default_factory=frozenset)
    username: Optional[str] = None
    key_id: Optional[int] = None
    key_name: Optional[str] = None
    external_user_id: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_platform_admin(self) -> bool:
        """Platform-wide service key, platform_admin IdP role, or a root session."""
        if self.auth_plane == PLANE_SERVICE_KEY:
            return self.tenant_id is None
        if self.auth_plane == PLANE_BEARER_JWT:
            return PLATFORM_ADMIN_ROLE in self.roles
        if self.auth_plane == PLANE_SESSION:
            return self.role >= UserRole.ROOT
        return False
