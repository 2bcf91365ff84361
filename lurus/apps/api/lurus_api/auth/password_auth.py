"""Username/password plane: login and self-registration."""

import logging
from typing import Optional

from lurus_api.auth.passwords import verify_password
from lurus_api.config.options import (
    REGISTRATION_CLOSED,
    REGISTRATION_INVITE_ONLY,
    get_registration_mode,
    option_store,
)
from lurus_api.credentials.invitations import use_code, validate_code
from lurus_api.credentials.verification import PURPOSE_EMAIL_VERIFY, VerificationCodeStore
from lurus_api.db.models import User, UserStatus
from lurus_api.entitlements.store import (
    get_user_by_email,
    get_user_by_username,
    provision_user,
    validate_email,
    validate_password,
    validate_username,
)
from lurus_api.errors import AuthError, ConflictError, ErrorCode, ForbiddenError, ValidationFailedError
from lurus_api.tenancy.scoped import TenantScope

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid username or password"


def authenticate_password(scope: TenantScope, username: str, password: str) -> User:
    """Verify credentials within the bound tenant.

    Unknown users are checked against a dummy hash so timing matches a real miss.

    Raises:
        AuthError(AUTH_FAILED): Unknown user or wrong password
        AuthError(USER_DISABLED): Disabled account, whatever the password
    """
    user = get_user_by_username(scope, username) if username else None
    if user is not None and user.status != UserStatus.ENABLED:
        logger.info("Disabled user login refused", extra={"event": "auth.password.disabled", "user": user.id})
        raise AuthError("User is disabled", ErrorCode.USER_DISABLED)
    ok = verify_password(password or "", user.password_hash if user is not None else None)
    if user is None or not ok:
        logger.info(
            "Password authentication failed",
            extra={"event": "auth.password.failed", "user_found": user is not None},
        )
        raise AuthError(INVALID_CREDENTIALS)
    return user


def register_user(
    scope: TenantScope,
    codes: VerificationCodeStore,
    *,
    username: str,
    password: str,
    email: str = "",
    display_name: Optional[str] = None,
    invitation_code: Optional[str] = None,
    verification_code: Optional[str] = None,
    aff_code: Optional[str] = None,
) -> User:
    """Self-registration honouring the registration mode. Commits.

    The invitation code is consumed in the same transaction as the user
    insert, so a failed registration leaves it unused.

    Raises:
        ForbiddenError: Registration closed or password registration off
        ValidationFailedError: Malformed input, missing/invalid invitation or email code
        ConflictError(USER_EXISTS): Username or email taken
    """
    mode = get_registration_mode()
    if mode == REGISTRATION_CLOSED:
        raise ForbiddenError("Registration is closed")
    if not option_store.get_bool("PasswordRegisterEnabled", True):
        raise ForbiddenError("Password registration is disabled")

    validate_username(username)
    validate_password(password)
    validate_email(email)

    code = (invitation_code or "").strip()
    if mode == REGISTRATION_INVITE_ONLY and not code:
        raise ValidationFailedError("Invitation code is required")
    if code:
        validate_code(scope.session, code)

    if option_store.get_bool("EmailVerificationEnabled", False):
        if not email:
            raise ValidationFailedError("Email is required")
        if not codes.verify(PURPOSE_EMAIL_VERIFY, email, verification_code or ""):
            raise ValidationFailedError("Invalid or expired verification code")

    if get_user_by_username(scope, username) is not None:
        raise ConflictError("Username already exists", ErrorCode.USER_EXISTS)
    if email and get_user_by_email(scope, email) is not None:
        raise ConflictError("Email already registered", ErrorCode.USER_EXISTS)

    inviter_id = None
    if aff_code:
        inviter = scope.first(User, User.aff_code == aff_code)
        inviter_id = inviter.id if inviter is not None else None

    user = provision_user(
        scope,
        username=username,
        password=password,
        email=email,
        display_name=display_name,
        inviter_id=inviter_id,
    )
    if code:
        try:
            use_code(scope.session, code, user.id)
        except ValidationFailedError:
            scope.rollback()
            raise
    scope.commit()

    logger.info(
        "User registered",
        extra={"event": "auth.register.ok", "user": user.id, "invited": bool(code), "inviter": inviter_id},
    )
    return user
