"""Request context management.

Context variables carry request identity into log records across async and
threadpool boundaries. RequestContext is the explicit value handed from the
auth dependencies to route handlers: handlers never read ambient state.
"""

from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Optional

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Tenant ID - tenant bound to the current request
tenant_id_var: ContextVar[str] = ContextVar("tenant_id", default="")

# User ID - resolved principal user (empty for service keys)
user_id_var: ContextVar[str] = ContextVar("user_id", default="")

# Auth plane - public | session | bearer-jwt | service-key | relay-token
auth_plane_var: ContextVar[str] = ContextVar("auth_plane", default="")


@dataclass
class RequestContext:
    """Per-request values populated by dependencies, consumed by handlers."""

    request_id: str
    tenant_id: str
    auth_plane: str = "public"
    user_id: Optional[int] = None
    role: int = 0
    scopes: frozenset[str] = field(default_factory=frozenset)
    roles: frozenset[str] = field(default_factory=frozenset)
    key_name: Optional[str] = None
    client_ip: Optional[str] = None


def bind_log_context(
    *,
    tenant_id: Optional[str] = None,
    user_id: Optional[int] = None,
    auth_plane: Optional[str] = None,
) -> None:
    """Copy principal fields into the logging context variables."""
    if tenant_id is not None:
        tenant_id_var.set(tenant_id)
    if user_id is not None:
        user_id_var.set(str(user_id))
    if auth_plane is not None:
        auth_plane_var.set(auth_plane)


def clear_log_context() -> None:
    tenant_id_var.set("")
    user_id_var.set("")
    auth_plane_var.set("")
