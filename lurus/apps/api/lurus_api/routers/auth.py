"""Session, registration and phone OTP endpoints.

Endpoints:
- POST /api/user/login, /api/t/{tenant_slug}/user/login: password login
- POST /api/user/register, /api/t/{tenant_slug}/user/register
- POST /api/user/logout
- GET  /api/user/self: session principal with balance
- POST /api/verification/sms: send a phone OTP
- POST /api/verification/email: issue an email code (delivered by the mail service)
- POST /api/user/login/sms: phone OTP login, auto-registers when allowed
- POST /api/user/bind/phone: bind a phone to the session user
- POST /api/user/reset/phone: reset a password with a phone OTP
- GET  /api/oidc/self: bearer-jwt principal

SECURITY:
- Passwords and OTP codes are never logged
- Unknown user and wrong password answer identically
- The session cookie is HttpOnly, SameSite=Lax
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from lurus_api.auth.gate import BoundRequest, public_request, require_oidc, require_session
from lurus_api.auth.otp_auth import (
    bind_phone,
    issue_email_code,
    login_with_phone,
    reset_password_by_phone,
    send_phone_code,
)
from lurus_api.auth.password_auth import authenticate_password, register_user
from lurus_api.auth.session_auth import clear_session_cookie, set_session_cookie
from lurus_api.credentials.verification import send_limiter, verification_codes
from lurus_api.db.models import User
from lurus_api.db.session import get_db
from lurus_api.entitlements.store import require_user
from lurus_api.notify.sms import SmsClient, get_sms_client
from lurus_api.schemas import (
    BindPhoneRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordByPhoneRequest,
    SendEmailCodeRequest,
    SendSmsCodeRequest,
    SmsLoginRequest,
    ok,
    self_dict,
    user_dict,
)

router = APIRouter(prefix="/api", tags=["auth"])
logger = logging.getLogger(__name__)


def _login_response(response: Response, user: User) -> dict:
    set_session_cookie(response, user.id, user.tenant_id)
    return ok(self_dict(user), "Login successful")


def _password_login(request: Request, response: Response, body: LoginRequest, db: Session, slug: Optional[str]) -> dict:
    bound = public_request(request, db, slug)
    user = authenticate_password(bound.scope, body.username.strip(), body.password)
    logger.info("User logged in", extra={"event": "auth.login.ok", "user": user.id, "tenant": bound.tenant.id})
    return _login_response(response, user)


@router.post("/user/login")
def login(request: Request, response: Response, body: LoginRequest, db: Session = Depends(get_db)) -> dict:
    return _password_login(request, response, body, db, None)


@router.post("/t/{tenant_slug}/user/login")
def tenant_login(
    tenant_slug: str, request: Request, response: Response, body: LoginRequest, db: Session = Depends(get_db)
) -> dict:
    return _password_login(request, response, body, db, tenant_slug)


def _register(request: Request, body: RegisterRequest, db: Session, slug: Optional[str]) -> dict:
    bound = public_request(request, db, slug)
    user = register_user(
        bound.scope,
        verification_codes,
        username=body.username.strip(),
        password=body.password,
        email=body.email.strip(),
        display_name=body.display_name,
        invitation_code=body.invitation_code,
        verification_code=body.verification_code,
        aff_code=body.aff_code,
    )
    return ok(user_dict(user), "Registration successful")


@router.post("/user/register")
def register(request: Request, body: RegisterRequest, db: Session = Depends(get_db)) -> dict:
    return _register(request, body, db, None)


@router.post("/t/{tenant_slug}/user/register")
def tenant_register(tenant_slug: str, request: Request, body: RegisterRequest, db: Session = Depends(get_db)) -> dict:
    return _register(request, body, db, tenant_slug)


@router.post("/user/logout")
def logout(response: Response) -> dict:
    clear_session_cookie(response)
    return ok(message="Logged out")


@router.get("/user/self")
def get_self(bound: BoundRequest = Depends(require_session())) -> dict:
    return ok(self_dict(require_user(bound.scope, bound.ctx.user_id)))


# ============================================================================
# Verification codes
# ============================================================================


@router.post("/verification/sms")
async def send_sms_code(
    request: Request,
    body: SendSmsCodeRequest,
    db: Session = Depends(get_db),
    sms: Optional[SmsClient] = Depends(get_sms_client),
) -> dict:
    bound = public_request(request, db)
    await send_phone_code(
        bound.scope,
        sms,
        verification_codes,
        send_limiter,
        phone=body.phone.strip(),
        purpose=body.purpose,
        client_ip=bound.ctx.client_ip,
    )
    return ok(message="Verification code sent")


@router.post("/verification/email")
def send_email_code(request: Request, body: SendEmailCodeRequest, db: Session = Depends(get_db)) -> dict:
    bound = public_request(request, db)
    issue_email_code(verification_codes, send_limiter, email=body.email.strip(), client_ip=bound.ctx.client_ip)
    return ok(message="Verification code sent")


# ============================================================================
# Phone OTP flows
# ============================================================================


@router.post("/user/login/sms")
def sms_login(request: Request, response: Response, body: SmsLoginRequest, db: Session = Depends(get_db)) -> dict:
    bound = public_request(request, db)
    user, created = login_with_phone(bound.scope, verification_codes, phone=body.phone.strip(), code=body.code)
    result = _login_response(response, user)
    result["data"]["is_new_user"] = created
    return result


@router.post("/user/bind/phone")
def bind_phone_route(body: BindPhoneRequest, bound: BoundRequest = Depends(require_session())) -> dict:
    user = bind_phone(bound.scope, verification_codes, bound.ctx.user_id, phone=body.phone.strip(), code=body.code)
    return ok(user_dict(user), "Phone number bound")


@router.post("/user/reset/phone")
def reset_by_phone(request: Request, body: ResetPasswordByPhoneRequest, db: Session = Depends(get_db)) -> dict:
    bound = public_request(request, db)
    reset_password_by_phone(
        bound.scope,
        verification_codes,
        phone=body.phone.strip(),
        code=body.code,
        new_password=body.new_password,
    )
    return ok(message="Password reset successfully")


@router.get("/oidc/self")
def oidc_self(bound: BoundRequest = Depends(require_oidc())) -> dict:
    user = require_user(bound.scope, bound.ctx.user_id)
    data = self_dict(user)
    data["roles"] = sorted(bound.ctx.roles)
    return ok(data)
