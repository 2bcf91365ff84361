"""Internal service-to-service endpoints.

Authenticated by X-API-Key (service-key plane); each route requires one
scope. Platform-wide keys act on the default tenant unless they send
X-Target-Tenant-ID.

Endpoints:
- GET    /internal/user/{id}                user:read
- GET    /internal/user/by-email/{email}    user:read
- GET    /internal/user/by-phone/{phone}    user:read
- POST   /internal/user                     user:write  (X-Idempotency-Key)
- PUT    /internal/user/{id}                user:write
- DELETE /internal/user/{id}                user:delete
- POST   /internal/auth/login               auth:login
- GET    /internal/subscription/user/{id}   subscription:read
- POST   /internal/subscription/grant       subscription:write
- GET    /internal/quota/user/{id}          quota:read
- POST   /internal/quota/adjust             quota:write
- GET    /internal/balance/user/{id}        balance:read
- POST   /internal/balance/topup            balance:write
- GET    /internal/token/user/{id}          token:read
- POST   /internal/token                    token:write (X-Idempotency-Key)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Response, status

from lurus_api.auth.gate import BoundRequest, require_scope
from lurus_api.auth.password_auth import authenticate_password
from lurus_api.config.options import get_quota_per_unit
from lurus_api.credentials.relay_tokens import create_token, list_tokens
from lurus_api.entitlements.store import (
    adjust_quota,
    create_user,
    delete_user,
    get_daily_quota_info,
    get_user_by_email,
    get_user_by_phone,
    require_user,
    top_up,
    update_user,
)
from lurus_api.errors import ErrorCode, NotFoundError, ValidationFailedError
from lurus_api.schemas import (
    BalanceTopupRequest,
    GrantSubscriptionRequest,
    InternalCreateTokenRequest,
    InternalCreateUserRequest,
    InternalLoginRequest,
    InternalUpdateUserRequest,
    QuotaAdjustRequest,
    ok,
    relay_token_dict,
    subscription_dict,
    user_dict,
)
from lurus_api.subscriptions.machine import get_active_subscription, grant
from lurus_api.subscriptions.plans import plan_catalogue

router = APIRouter(prefix="/internal", tags=["internal"])
logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "X-Idempotency-Key"


def _user_id(raw: str) -> int:
    try:
        user_id = int(raw)
    except ValueError:
        user_id = 0
    if user_id <= 0:
        raise ValidationFailedError("Invalid user ID")
    return user_id


def _log_call(bound: BoundRequest, action: str, **fields) -> None:
    logger.info(
        "Internal API call",
        extra={"event": f"internal.{action}", "key_name": bound.ctx.key_name, **fields},
    )


# ============================================================================
# Users
# ============================================================================


@router.get("/user/by-email/{email}")
def get_user_by_email_route(email: str, bound: BoundRequest = Depends(require_scope("user:read"))) -> dict:
    if not email:
        raise ValidationFailedError("Email is required")
    user = get_user_by_email(bound.scope, email)
    if user is None:
        raise NotFoundError("User not found", ErrorCode.USER_NOT_FOUND)
    return ok(user_dict(user))


@router.get("/user/by-phone/{phone}")
def get_user_by_phone_route(phone: str, bound: BoundRequest = Depends(require_scope("user:read"))) -> dict:
    if not phone:
        raise ValidationFailedError("Phone is required")
    user = get_user_by_phone(bound.scope, phone)
    if user is None:
        raise NotFoundError("User not found", ErrorCode.USER_NOT_FOUND)
    return ok(user_dict(user))


@router.get("/user/{user_id}")
def get_user_route(user_id: str, bound: BoundRequest = Depends(require_scope("user:read"))) -> dict:
    return ok(user_dict(require_user(bound.scope, _user_id(user_id))))


@router.post("/user", status_code=status.HTTP_201_CREATED)
def create_user_route(
    body: InternalCreateUserRequest,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER),
    bound: BoundRequest = Depends(require_scope("user:write")),
) -> dict:
    kwargs = {"group": body.group} if body.group else {}
    user, is_duplicate = create_user(
        bound.scope,
        username=body.username.strip(),
        password=body.password,
        email=body.email,
        display_name=body.display_name,
        quota=body.quota,
        idempotency_key=idempotency_key,
        **kwargs,
    )
    data = {
        "id": user.id,
        "username": user.username,
        "display_name": user.display_name,
        "email": user.email,
        "group": user.group,
        "quota": user.quota,
    }
    if is_duplicate:
        response.status_code = status.HTTP_200_OK
        data["is_duplicate"] = True
        return ok(data)
    _log_call(bound, "user.created", user=user.id)
    return ok(data, "User created successfully")


@router.put("/user/{user_id}")
def update_user_route(
    user_id: str,
    body: InternalUpdateUserRequest,
    bound: BoundRequest = Depends(require_scope("user:write")),
) -> dict:
    user = update_user(bound.scope, _user_id(user_id), body.model_dump(exclude_none=True))
    _log_call(bound, "user.updated", user=user.id)
    return ok(user_dict(user), "User updated successfully")


@router.delete("/user/{user_id}")
def delete_user_route(user_id: str, bound: BoundRequest = Depends(require_scope("user:delete"))) -> dict:
    uid = _user_id(user_id)
    delete_user(bound.scope, uid)
    _log_call(bound, "user.deleted", user=uid)
    return ok(message="User deleted successfully")


@router.post("/auth/login")
def login_route(body: InternalLoginRequest, bound: BoundRequest = Depends(require_scope("auth:login"))) -> dict:
    user = authenticate_password(bound.scope, body.username.strip(), body.password)
    return ok(
        {
            "user_id": user.id,
            "username": user.username,
            "display_name": user.display_name,
            "email": user.email,
            "role": user.role,
            "status": user.status,
        }
    )


# ============================================================================
# Subscriptions
# ============================================================================


@router.get("/subscription/user/{user_id}")
def get_subscription_route(
    user_id: str, bound: BoundRequest = Depends(require_scope("subscription:read"))
) -> dict:
    uid = _user_id(user_id)
    sub = get_active_subscription(bound.scope, uid)
    if sub is None:
        return ok({"subscription": None})
    return ok(subscription_dict(sub))


@router.post("/subscription/grant")
def grant_subscription_route(
    body: GrantSubscriptionRequest,
    bound: BoundRequest = Depends(require_scope("subscription:write")),
) -> dict:
    if body.days <= 0:
        raise ValidationFailedError("Days must be positive")
    try:
        plan_catalogue.get(body.plan_code, include_disabled=True)
    except NotFoundError as e:
        raise ValidationFailedError("Invalid plan code") from e
    require_user(bound.scope, body.user_id)

    sub = grant(
        bound.scope,
        body.user_id,
        body.plan_code,
        body.days,
        body.reason or f"internal grant via {bound.ctx.key_name}",
    )
    _log_call(bound, "subscription.granted", user=body.user_id, subscription_id=sub.id)
    return ok(subscription_dict(sub), "Subscription granted successfully")


# ============================================================================
# Quota & balance
# ============================================================================


@router.get("/quota/user/{user_id}")
def get_quota_route(user_id: str, bound: BoundRequest = Depends(require_scope("quota:read"))) -> dict:
    uid = _user_id(user_id)
    info = get_daily_quota_info(bound.scope, uid).to_dict()
    user = require_user(bound.scope, uid)
    return ok({**info, "quota": user.quota, "used_quota": user.used_quota})


@router.post("/quota/adjust")
def adjust_quota_route(body: QuotaAdjustRequest, bound: BoundRequest = Depends(require_scope("quota:write"))) -> dict:
    if body.amount == 0:
        raise ValidationFailedError("Amount must not be zero")
    change = adjust_quota(bound.scope, body.user_id, body.amount, f"[internal] {body.reason}", log_type="manage")
    _log_call(bound, "quota.adjusted", user=body.user_id, adjustment=body.amount)
    return ok(
        {
            "user_id": body.user_id,
            "old_quota": change.old_quota,
            "adjustment": change.adjustment,
            "new_quota": change.new_quota,
        },
        "Quota adjusted successfully",
    )


@router.get("/balance/user/{user_id}")
def get_balance_route(user_id: str, bound: BoundRequest = Depends(require_scope("balance:read"))) -> dict:
    user = require_user(bound.scope, _user_id(user_id))
    return ok(
        {
            "user_id": user.id,
            "balance": user.quota,
            "balance_rmb": user.quota / get_quota_per_unit(),
            "used_quota": user.used_quota,
        }
    )


@router.post("/balance/topup")
def topup_route(body: BalanceTopupRequest, bound: BoundRequest = Depends(require_scope("balance:write"))) -> dict:
    change = top_up(bound.scope, body.user_id, body.amount_rmb, order_id=body.order_id, reason=body.reason)
    _log_call(bound, "balance.topup", user=body.user_id, amount=change.adjustment, order_id=body.order_id)
    return ok(
        {
            "user_id": body.user_id,
            "old_balance": change.old_quota,
            "amount": change.adjustment,
            "amount_rmb": body.amount_rmb,
            "new_balance": change.new_quota,
        },
        "Balance topped up successfully",
    )


# ============================================================================
# Relay tokens
# ============================================================================


@router.get("/token/user/{user_id}")
def list_tokens_route(
    user_id: str,
    page: int = 1,
    page_size: int = 10,
    bound: BoundRequest = Depends(require_scope("token:read")),
) -> dict:
    page = max(page, 1)
    if page_size < 1 or page_size > 100:
        page_size = 10
    rows, total = list_tokens(bound.scope, _user_id(user_id), page=page, page_size=page_size)
    return ok(
        {
            "tokens": [relay_token_dict(row) for row in rows],
            "total": total,
            "page": page,
            "page_size": page_size,
        }
    )


@router.post("/token", status_code=status.HTTP_201_CREATED)
def create_token_route(
    body: InternalCreateTokenRequest,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER),
    bound: BoundRequest = Depends(require_scope("token:write")),
) -> dict:
    row, raw, is_duplicate = create_token(
        bound.scope,
        body.user_id,
        body.name,
        unlimited_quota=body.unlimited_quota,
        remain_quota=body.remain_quota,
        idempotency_key=idempotency_key,
    )
    if is_duplicate:
        response.status_code = status.HTTP_200_OK
        return ok({"id": row.id, "name": row.name, "is_duplicate": True})
    _log_call(bound, "token.created", user=body.user_id, token_id=row.id)
    return ok({"id": row.id, "name": row.name, "key": raw}, "Token created successfully")
