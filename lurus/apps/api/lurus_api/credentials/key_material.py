"""Random credential material and hashing.

SECURITY:
- All randomness comes from the secrets module (CSPRNG)
- Raw keys/tokens are NEVER stored: only lowercase SHA-256 hex of the UTF-8
  bytes plus a display prefix
- Display-once: raw values are returned only at issuance
"""

import hashlib
import logging
import secrets
import string

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "lurus_ik_"
API_KEY_RANDOM_LENGTH = 32
API_KEY_DISPLAY_LENGTH = 16

RELAY_TOKEN_PREFIX = "sk-"
RELAY_TOKEN_RANDOM_LENGTH = 48

_ALNUM = string.ascii_letters + string.digits


def random_alnum(length: int) -> str:
    return "".join(secrets.choice(_ALNUM) for _ in range(length))


def hash_key(raw: str) -> str:
    """Lowercase SHA-256 hex of the UTF-8 bytes."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def generate_api_key() -> tuple[str, str, str]:
    """Generate a service API key.

    Format: lurus_ik_ + 32 chars of [A-Za-z0-9] (41 chars total)

    Returns:
        Tuple of (raw_key, key_prefix, key_hash)
        - raw_key: shown to the operator exactly once
        - key_prefix: first 16 chars, display only
        - key_hash: SHA-256 hex, the only lookup handle
    """
    raw_key = API_KEY_PREFIX + random_alnum(API_KEY_RANDOM_LENGTH)
    key_prefix = raw_key[:API_KEY_DISPLAY_LENGTH]
    logger.info("API key generated", extra={"event": "api_key.generated", "key_prefix": key_prefix})
    return raw_key, key_prefix, hash_key(raw_key)


def looks_like_api_key(raw: str) -> bool:
    return (
        raw.startswith(API_KEY_PREFIX)
        and len(raw) == len(API_KEY_PREFIX) + API_KEY_RANDOM_LENGTH
        and raw[len(API_KEY_PREFIX):].isalnum()
        and raw[len(API_KEY_PREFIX):].isascii()
    )


def generate_relay_token() -> tuple[str, str, str]:
    """Generate a relay token: sk- + 48 alphanumerics.

    Returns:
        Tuple of (raw_token, display_prefix, token_hash)
    """
    raw = RELAY_TOKEN_PREFIX + random_alnum(RELAY_TOKEN_RANDOM_LENGTH)
    return raw, raw[:10], hash_key(raw)


def generate_invitation_code() -> str:
    """8 random bytes as 16 lowercase hex characters."""
    return secrets.token_hex(8)


def generate_numeric_code(digits: int = 6) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(digits))


def generate_aff_code() -> str:
    return random_alnum(8)
