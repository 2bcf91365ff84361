"""Secret and PII scrubbing for log output.

- Credential-bearing dict keys are replaced with [REDACTED]
- Raw service keys (lurus_ik_...), relay tokens (sk-...) and bearer values
  are redacted inside free text
- Phone numbers are masked to 3+4 digits, never logged in full
- Very long strings are truncated and fingerprinted instead of scanned
"""

import hashlib
import re
import traceback
from typing import Any

MAX_STR_LOG: int = 2048
MAX_STR_FOR_REGEX: int = 512
MAX_DEPTH: int = 6

_SENSITIVE_KEYS: frozenset[str] = frozenset({
    "authorization", "token", "access_token", "id_token", "refresh_token",
    "api_key", "x-api-key", "raw_key", "key", "secret", "signature",
    "password", "password_hash", "code", "cookie", "session",
    "stripe-signature", "creem-signature",
})

_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"Bearer \S+"), "Bearer [REDACTED]"),
    (re.compile(r"lurus_ik_[A-Za-z0-9]+"), "lurus_ik_[REDACTED]"),
    (re.compile(r"\bsk-[A-Za-z0-9]{8,}"), "sk-[REDACTED]"),
    (re.compile(r"(password|secret|api_key)=\S+"), r"\1=[REDACTED]"),
    (re.compile(r"\b(1[3-9]\d)\d{4}(\d{4})\b"), r"\1****\2"),
]

_BEARER_PREFIX = "Bearer "


def payload_hash_bytes(raw: bytes) -> str:
    """Return sha256 hex digest of raw bytes."""
    return hashlib.sha256(raw).hexdigest()


def mask_phone(phone: str) -> str:
    """Mask a mainland mobile number: 13800138000 -> 138****8000."""
    if not phone or len(phone) < 7:
        return phone
    return phone[:3] + "****" + phone[-4:]


def sanitize_str(s: str) -> str:
    """Redact credentials and phone numbers from a string."""
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    n = len(s)
    if n > MAX_STR_LOG:
        digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={n} sha256={digest}]"

    if n > MAX_STR_FOR_REGEX:
        if s.startswith(_BEARER_PREFIX):
            return "[REDACTED]"
        return s

    result = s
    for pattern, replacement in _PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Recursively sanitize a log extra value.

    Dict keys that name a credential are redacted wholesale; strings are run
    through sanitize_str(); other scalars pass through.
    """
    if depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"

    if isinstance(obj, dict):
        result: dict[str, Any] = {}
        for key, value in obj.items():
            if isinstance(key, str) and key.lower() in _SENSITIVE_KEYS:
                result[key] = "[REDACTED]"
            else:
                result[key] = sanitize_obj(value, depth + 1)
        return result

    if isinstance(obj, (list, tuple, set, frozenset)):
        return [sanitize_obj(item, depth + 1) for item in obj]

    if isinstance(obj, str):
        return sanitize_str(obj)

    return obj


def sanitize_exc(exc_info: tuple) -> str:
    """Format exc_info as a sanitized traceback (locals never captured)."""
    _type, value, _tb = exc_info
    if value is None:
        return ""
    try:
        te = traceback.TracebackException.from_exception(value, capture_locals=False)
        return sanitize_str("".join(te.format()))
    except Exception:
        return "[TRACEBACK_FORMAT_ERROR]"
