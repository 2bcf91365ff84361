"""Phone OTP plane: send codes, log in, bind and reset by phone."""

import logging
from typing import Optional

from lurus_api.auth.passwords import hash_password
from lurus_api.config.env import is_sms_enabled
from lurus_api.config.options import (
    REGISTRATION_CLOSED,
    REGISTRATION_INVITE_ONLY,
    get_registration_mode,
    option_store,
)
from lurus_api.credentials.key_material import generate_numeric_code, random_alnum
from lurus_api.credentials.verification import (
    PHONE_PURPOSES,
    PURPOSE_EMAIL_VERIFY,
    PURPOSE_PHONE_BIND,
    PURPOSE_PHONE_LOGIN,
    PURPOSE_PHONE_RESET,
    SendRateLimiter,
    VerificationCodeStore,
    is_valid_phone,
    phone_purpose_tag,
)
from lurus_api.db.models import User, UserStatus
from lurus_api.entitlements.store import (
    get_user_by_phone,
    provision_user,
    require_user,
    update_user,
    validate_email,
    validate_password,
)
from lurus_api.errors import (
    AuthError,
    ConflictError,
    ErrorCode,
    ForbiddenError,
    IAEError,
    NotFoundError,
    RateLimitedError,
    ValidationFailedError,
)
from lurus_api.notify.sms import SmsClient, template_code_for
from lurus_api.tenancy.scoped import TenantScope
from lurus_api.utils.sanitize import mask_phone

logger = logging.getLogger(__name__)

INVALID_CODE = "Invalid or expired verification code"


def _require_sms() -> None:
    if not is_sms_enabled():
        raise ValidationFailedError("SMS service is not enabled")


def _require_phone(phone: str) -> None:
    if not is_valid_phone(phone):
        raise ValidationFailedError("Invalid phone number format")


async def send_phone_code(
    scope: TenantScope,
    sms: Optional[SmsClient],
    codes: VerificationCodeStore,
    limiter: SendRateLimiter,
    *,
    phone: str,
    purpose: str,
    client_ip: Optional[str],
) -> None:
    """Generate, deliver and store a phone OTP.

    The code is stored only after the gateway accepted the message.

    Raises:
        ValidationFailedError: Bad phone or purpose, or phone taken (register)
        RateLimitedError: Per-phone cooldown or per-IP hourly cap hit
        UpstreamError: SMS gateway failure
    """
    _require_sms()
    _require_phone(phone)
    if purpose not in PHONE_PURPOSES:
        raise ValidationFailedError("Invalid purpose")

    wait = limiter.subject_wait(phone)
    if wait > 0:
        raise RateLimitedError(f"Please wait {wait} seconds before requesting another code", wait)
    if not limiter.ip_allowed(client_ip):
        raise RateLimitedError("Too many verification requests from this address, try again later", 3600)

    if purpose == "register" and get_user_by_phone(scope, phone) is not None:
        raise ValidationFailedError("Phone number is already registered")

    template_code = template_code_for(purpose)
    if not template_code:
        raise IAEError("SMS template not configured for this purpose", ErrorCode.UPSTREAM_ERROR)

    # Deliver first, store second: a failed send leaves no usable code behind
    code = generate_numeric_code(6)
    await sms.send(phone, template_code, {"code": code})
    codes.register(phone_purpose_tag(purpose), phone, code)
    limiter.mark_sent(phone, client_ip)

    logger.info(
        "Phone verification code sent",
        extra={"event": "otp.sent", "phone": mask_phone(phone), "purpose": purpose},
    )


def issue_email_code(
    codes: VerificationCodeStore,
    limiter: SendRateLimiter,
    *,
    email: str,
    client_ip: Optional[str],
) -> str:
    """Register an email verification code; delivery is done by the mail service."""
    if not email:
        raise ValidationFailedError("email is required")
    validate_email(email)
    wait = limiter.subject_wait(email)
    if wait > 0:
        raise RateLimitedError(f"Please wait {wait} seconds before requesting another code", wait)
    if not limiter.ip_allowed(client_ip):
        raise RateLimitedError("Too many verification requests from this address, try again later", 3600)
    code = codes.issue(PURPOSE_EMAIL_VERIFY, email)
    limiter.mark_sent(email, client_ip)
    logger.info("Email verification code issued", extra={"event": "otp.email.issued"})
    return code


def _phone_username(scope: TenantScope, phone: str) -> str:
    username = f"u{phone}"
    while scope.first(User, User.username == username, include_deleted=True) is not None:
        username = f"u{phone[-6:]}_{random_alnum(6)}"
    return username


def login_with_phone(scope: TenantScope, codes: VerificationCodeStore, *, phone: str, code: str) -> tuple[User, bool]:
    """Verify a login OTP and return the user, auto-registering if allowed.

    Returns:
        Tuple of (user, created)

    Raises:
        ValidationFailedError: Bad phone format or code
        NotFoundError(USER_NOT_FOUND): Unknown phone, auto-registration off
        ForbiddenError: Registration mode forbids auto-registration
        AuthError(USER_DISABLED): Account disabled
    """
    _require_sms()
    _require_phone(phone)
    if not codes.verify(PURPOSE_PHONE_LOGIN, phone, code):
        logger.info("Phone OTP verification failed", extra={"event": "otp.login.failed", "phone": mask_phone(phone)})
        raise ValidationFailedError(INVALID_CODE)

    user = get_user_by_phone(scope, phone)
    created = False
    if user is None:
        if not option_store.get_bool("SMSAutoRegister", False):
            raise NotFoundError(
                "Phone number not registered. SMS auto-registration is disabled.",
                ErrorCode.USER_NOT_FOUND,
            )
        mode = get_registration_mode()
        if mode == REGISTRATION_CLOSED:
            raise ForbiddenError("Registration is closed")
        if mode == REGISTRATION_INVITE_ONLY:
            raise ForbiddenError(
                "Registration requires an invitation code. Please register through the registration page."
            )
        user = provision_user(
            scope,
            username=_phone_username(scope, phone),
            phone=phone,
            phone_verified=True,
        )
        scope.commit()
        created = True
        logger.info(
            "User auto-registered by phone",
            extra={"event": "otp.login.registered", "user": user.id, "phone": mask_phone(phone)},
        )

    if user.status != UserStatus.ENABLED:
        raise AuthError("User is disabled", ErrorCode.USER_DISABLED)
    logger.info("Phone OTP login", extra={"event": "otp.login.ok", "user": user.id})
    return user, created


def bind_phone(scope: TenantScope, codes: VerificationCodeStore, user_id: int, *, phone: str, code: str) -> User:
    _require_sms()
    _require_phone(phone)
    if not codes.verify(PURPOSE_PHONE_BIND, phone, code):
        raise ValidationFailedError(INVALID_CODE)
    owner = get_user_by_phone(scope, phone)
    if owner is not None and owner.id != user_id:
        raise ConflictError("Phone number is already bound to another account", ErrorCode.USER_EXISTS)
    return update_user(scope, user_id, {"phone": phone})


def reset_password_by_phone(
    scope: TenantScope, codes: VerificationCodeStore, *, phone: str, code: str, new_password: str
) -> User:
    _require_sms()
    _require_phone(phone)
    validate_password(new_password)
    if not codes.verify(PURPOSE_PHONE_RESET, phone, code):
        raise ValidationFailedError(INVALID_CODE)
    found = get_user_by_phone(scope, phone)
    if found is None:
        raise NotFoundError("User not found", ErrorCode.USER_NOT_FOUND)
    user = require_user(scope, found.id, for_update=True)
    user.password_hash = hash_password(new_password)
    scope.commit()
    logger.info("Password reset by phone", extra={"event": "otp.reset.ok", "user": user.id})
    return user
