"""Relay hooks, called by the model gateway around each upstream request.

Authenticated by the caller's relay token (Authorization: Bearer sk-...).

- POST /api/relay/pre-consume: balance, token quota and daily cap check
- POST /api/relay/post-consume: charge balance, token and daily counter
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lurus_api.auth.relay_auth import RelayPrincipal, get_relay_principal
from lurus_api.context import bind_log_context
from lurus_api.credentials.relay_tokens import charge_token
from lurus_api.db.retry import run_in_transaction
from lurus_api.db.session import get_db
from lurus_api.entitlements.daily_quota import check_and_handle_exhaustion, post_consume
from lurus_api.entitlements.store import record_consumption, require_user
from lurus_api.errors import ErrorCode, ForbiddenError
from lurus_api.schemas import ConsumeRequest, ok
from lurus_api.tenancy.scoped import tenant_scope

router = APIRouter(prefix="/api/relay", tags=["relay"])
logger = logging.getLogger(__name__)


@router.post("/pre-consume")
def pre_consume(
    body: ConsumeRequest,
    relay: RelayPrincipal = Depends(get_relay_principal),
    db: Session = Depends(get_db),
) -> dict:
    """Admit or refuse a request before it is forwarded.

    A daily-capped user over the cap is moved to the fallback group when one
    is configured; the relay then routes the request through that group.
    Without a fallback the request is refused.
    """
    principal = relay.principal
    bind_log_context(tenant_id=principal.tenant_id, user_id=principal.user_id, auth_plane=principal.auth_plane)
    scope = tenant_scope(db, principal.tenant_id)

    if not relay.unlimited_quota and relay.remain_quota < body.amount:
        raise ForbiddenError("Token quota exhausted", ErrorCode.INSUFFICIENT_QUOTA)
    user = require_user(scope, principal.user_id)
    if user.quota < body.amount:
        raise ForbiddenError("Insufficient quota", ErrorCode.INSUFFICIENT_QUOTA)

    check = check_and_handle_exhaustion(scope, user.id, body.amount)
    on_fallback = bool(user.fallback_group) and check.group == user.fallback_group
    if check.limited and not on_fallback:
        raise ForbiddenError(
            "Daily quota exhausted",
            ErrorCode.INSUFFICIENT_QUOTA,
            data={"daily_quota": check.daily_quota, "daily_used": check.daily_used},
        )
    return ok(
        {
            "allowed": True,
            "group": check.group,
            "limited": check.limited,
            "switched_to_fallback": check.switched_to_fallback,
            "daily_quota": check.daily_quota,
            "daily_used": check.daily_used,
        }
    )


@router.post("/post-consume")
def post_consume_route(
    body: ConsumeRequest,
    relay: RelayPrincipal = Depends(get_relay_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal = relay.principal
    bind_log_context(tenant_id=principal.tenant_id, user_id=principal.user_id, auth_plane=principal.auth_plane)
    scope = tenant_scope(db, principal.tenant_id)

    def settle():
        # Daily counter, token and balance move together or not at all
        daily = post_consume(scope, principal.user_id, body.amount, commit=False)
        charge_token(scope, relay.token_id, body.amount)
        charged = record_consumption(scope, principal.user_id, body.amount, commit=False)
        scope.commit()
        return daily, charged

    info, user = run_in_transaction(db, settle, operation="relay.post_consume")

    logger.info(
        "Relay consumption recorded",
        extra={"event": "relay.consumed", "token_id": relay.token_id, "amount": body.amount},
    )
    return ok(
        {
            "quota": user.quota,
            "used_quota": user.used_quota,
            "group": user.group,
            "daily": info.to_dict() if info is not None else None,
        }
    )
