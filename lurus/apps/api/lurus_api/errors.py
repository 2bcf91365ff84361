"""Domain error taxonomy.

Every failure the core exposes is an IAEError carrying an ErrorCode. The API
layer renders it as the uniform envelope:

    {"success": false, "message": "...", "error_code": "...", "data": ...}

Status mapping:
- Authentication (AUTH_FAILED, USER_DISABLED, EXPIRED, INVALID_SIGNATURE,
  UNKNOWN_PLANE): 401
- Authorisation (FORBIDDEN, TENANT_DISABLED): 403
- Validation / state (VALIDATION_FAILED, INVALID_STATE): 400
- Resource (USER_NOT_FOUND, NOT_FOUND): 404
- Conflict (USER_EXISTS, CONFLICT): 409
- Rate limit: 429
- Upstream (gateway, SMS, JWKS): 500 with a non-leaky message
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    AUTH_FAILED = "AUTH_FAILED"
    USER_DISABLED = "USER_DISABLED"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    USER_EXISTS = "USER_EXISTS"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    INSUFFICIENT_QUOTA = "INSUFFICIENT_QUOTA"
    INVALID_STATE = "INVALID_STATE"
    TENANT_DISABLED = "TENANT_DISABLED"
    EXPIRED = "EXPIRED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    UNKNOWN_PLANE = "UNKNOWN_PLANE"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


_DEFAULT_STATUS: dict[ErrorCode, int] = {
    ErrorCode.AUTH_FAILED: 401,
    ErrorCode.USER_DISABLED: 401,
    ErrorCode.EXPIRED: 401,
    ErrorCode.INVALID_SIGNATURE: 401,
    ErrorCode.UNKNOWN_PLANE: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.TENANT_DISABLED: 403,
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.INVALID_STATE: 400,
    ErrorCode.INSUFFICIENT_QUOTA: 403,
    ErrorCode.USER_NOT_FOUND: 404,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.USER_EXISTS: 409,
    ErrorCode.CONFLICT: 409,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.UPSTREAM_ERROR: 500,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
}


class IAEError(Exception):
    """Base class for all errors surfaced to callers.

    Args:
        code: Machine-readable error code
        message: Human-readable message (safe to show to the caller)
        status_code: HTTP status override (defaults from the code)
        data: Optional structured payload
        headers: Optional response headers (e.g. Retry-After)
    """

    default_code: ErrorCode = ErrorCode.VALIDATION_FAILED

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        *,
        status_code: Optional[int] = None,
        data: Any = None,
        headers: Optional[dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status_code = status_code or _DEFAULT_STATUS.get(self.code, 400)
        self.data = data
        self.headers = headers or {}


class AuthError(IAEError):
    default_code = ErrorCode.AUTH_FAILED


class ForbiddenError(IAEError):
    default_code = ErrorCode.FORBIDDEN


class ValidationFailedError(IAEError):
    default_code = ErrorCode.VALIDATION_FAILED


class NotFoundError(IAEError):
    default_code = ErrorCode.NOT_FOUND


class ConflictError(IAEError):
    default_code = ErrorCode.CONFLICT


class InvalidStateError(IAEError):
    default_code = ErrorCode.INVALID_STATE


class TenantDisabledError(IAEError):
    default_code = ErrorCode.TENANT_DISABLED


class RateLimitedError(IAEError):
    default_code = ErrorCode.RATE_LIMITED

    def __init__(self, message: str, retry_after: int):
        super().__init__(message, headers={"Retry-After": str(retry_after)})
        self.retry_after = retry_after


class UpstreamError(IAEError):
    """Failure of an outbound dependency. The message must not leak details."""

    default_code = ErrorCode.UPSTREAM_ERROR


class ServiceUnavailableError(IAEError):
    default_code = ErrorCode.SERVICE_UNAVAILABLE
