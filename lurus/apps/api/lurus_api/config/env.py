"""Environment variable resolution utilities.

Canonical env names + fail-fast validation for secrets. Feature toggles are
read at call time so tests can flip them with monkeypatch.
"""

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

_TRUTHY = {"true", "1", "yes", "on"}

_DEV_SESSION_SECRET = "lurus-dev-session-secret"


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUTHY


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def get_env_mode() -> str:
    """Deployment mode from LURUS_ENV (dev | staging | prod)."""
    return os.getenv("LURUS_ENV", "dev").lower()


def is_production() -> bool:
    return get_env_mode() in {"prod", "production"}


def get_session_secret() -> str:
    """Get the session cookie signing secret.

    Required: SESSION_SECRET in production.

    Returns:
        Secret used to sign session cookies (HS256)

    Raises:
        ValueError: If SESSION_SECRET is unset in production
    """
    secret = os.getenv("SESSION_SECRET")
    if secret:
        return secret
    if is_production():
        raise ValueError(
            "SESSION_SECRET is required in production. "
            "Set SESSION_SECRET to a random string of at least 32 characters."
        )
    return _DEV_SESSION_SECRET


def is_master_node() -> bool:
    """Background loops run only on the master node (NODE_TYPE != slave)."""
    return os.getenv("NODE_TYPE", "master").lower() != "slave"


def is_daily_quota_enabled() -> bool:
    """DAILY_QUOTA_ENABLED: anything but "false" enables the engine."""
    return os.getenv("DAILY_QUOTA_ENABLED", "true").lower() != "false"


def is_batch_update_enabled() -> bool:
    return os.getenv("BATCH_UPDATE_ENABLED", "false").lower() == "true"


def get_batch_update_interval() -> int:
    """Seconds between batched last_used_at flushes (default: 5)."""
    return _get_int("BATCH_UPDATE_INTERVAL", 5)


def get_sync_frequency() -> int:
    """Option sync period in seconds.

    Canonical: SYNC_FREQUENCY
    Fallback: CHANNEL_UPDATE_FREQUENCY

    Returns:
        Seconds between option reloads (default: 60)
    """
    raw = os.getenv("SYNC_FREQUENCY") or os.getenv("CHANNEL_UPDATE_FREQUENCY")
    if not raw:
        return 60
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"SYNC_FREQUENCY must be an integer, got {raw!r}") from None
    return max(value, 1)


def get_verification_code_ttl() -> int:
    """Verification code validity in seconds (default: 600)."""
    return _get_int("VERIFICATION_CODE_TTL_SECONDS", 600)


def is_cpu_watchdog_enabled() -> bool:
    return _get_bool("ENABLE_PPROF", False)


def get_retry_base_delay() -> float:
    """Base delay in seconds for exponential backoff (default: 0.2)."""
    raw = os.getenv("RETRY_BASE_DELAY_SECONDS", "0.2")
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"RETRY_BASE_DELAY_SECONDS must be a number, got {raw!r}") from None


# ── OIDC (Zitadel) ────────────────────────────────────────────────────────────


def is_zitadel_enabled() -> bool:
    return _get_bool("ZITADEL_ENABLED", False)


def get_zitadel_settings() -> dict[str, str]:
    """Get Zitadel issuer, JWKS URI and client id.

    Returns:
        Dict with issuer, jwks_uri, client_id

    Raises:
        ValueError: If OIDC is enabled and any of the three is missing
    """
    settings = {
        "issuer": os.getenv("ZITADEL_ISSUER", "").rstrip("/"),
        "jwks_uri": os.getenv("ZITADEL_JWKS_URI", ""),
        "client_id": os.getenv("ZITADEL_CLIENT_ID", ""),
    }
    missing = [name for name, value in settings.items() if not value]
    if missing:
        raise ValueError(
            "ZITADEL_ENABLED=true requires ZITADEL_ISSUER, ZITADEL_JWKS_URI and "
            f"ZITADEL_CLIENT_ID (missing: {', '.join(missing)})"
        )
    return settings


def zitadel_auto_create_tenant() -> bool:
    return _get_bool("ZITADEL_AUTO_CREATE_TENANT", False)


def zitadel_auto_create_user() -> bool:
    return _get_bool("ZITADEL_AUTO_CREATE_USER", False)


# ── SMS (Aliyun-compatible) ───────────────────────────────────────────────────


def is_sms_enabled() -> bool:
    return _get_bool("SMS_ENABLED", False)


def get_sms_credentials() -> dict[str, str]:
    """Get SMS gateway credentials.

    Returns:
        Dict with access_key_id, access_key_secret, sign_name, endpoint, region

    Raises:
        ValueError: If the access key pair or sign name is missing
    """
    creds = {
        "access_key_id": os.getenv("SMS_ACCESS_KEY_ID", ""),
        "access_key_secret": os.getenv("SMS_ACCESS_KEY_SECRET", ""),
        "sign_name": os.getenv("SMS_SIGN_NAME", ""),
        "endpoint": os.getenv("SMS_ENDPOINT", "https://dysmsapi.aliyuncs.com"),
        "region": os.getenv("SMS_REGION", "cn-hangzhou"),
    }
    if not (creds["access_key_id"] and creds["access_key_secret"] and creds["sign_name"]):
        raise ValueError(
            "SMS_ACCESS_KEY_ID, SMS_ACCESS_KEY_SECRET and SMS_SIGN_NAME are required "
            "when SMS_ENABLED=true."
        )
    return creds


# ── Payment gateways ──────────────────────────────────────────────────────────


def get_stripe_secret_key() -> str:
    """Raises ValueError if STRIPE_SECRET_KEY is not set."""
    key = os.getenv("STRIPE_SECRET_KEY")
    if not key:
        raise ValueError("STRIPE_SECRET_KEY is required to create Stripe checkout sessions.")
    return key


def get_stripe_webhook_secret() -> Optional[str]:
    return os.getenv("STRIPE_WEBHOOK_SECRET") or None


def get_stripe_cny_per_usd() -> float:
    """CNY → USD conversion used for Stripe prices (default: 7.3)."""
    return float(os.getenv("STRIPE_CNY_PER_USD", "7.3"))


def get_creem_api_key() -> str:
    """Raises ValueError if CREEM_API_KEY is not set."""
    key = os.getenv("CREEM_API_KEY")
    if not key:
        raise ValueError("CREEM_API_KEY is required to create Creem checkouts.")
    return key


def get_creem_webhook_secret() -> Optional[str]:
    return os.getenv("CREEM_WEBHOOK_SECRET") or None


def is_creem_test_mode() -> bool:
    return _get_bool("CREEM_TEST_MODE", False)


def get_creem_product_id(plan_code: str) -> str:
    """Creem product for a plan: CREEM_PRODUCT_<PLAN> or CREEM_PRODUCT_ID.

    Raises:
        ValueError: If neither is configured
    """
    product = os.getenv(f"CREEM_PRODUCT_{plan_code.upper()}") or os.getenv("CREEM_PRODUCT_ID")
    if not product:
        raise ValueError(f"No Creem product configured for plan {plan_code}.")
    return product


def get_epay_settings() -> dict[str, str]:
    """Get epay merchant settings.

    Raises:
        ValueError: If EPAY_ADDRESS, EPAY_PID or EPAY_KEY is missing
    """
    settings = {
        "address": os.getenv("EPAY_ADDRESS", "").rstrip("/"),
        "pid": os.getenv("EPAY_PID", ""),
        "key": os.getenv("EPAY_KEY", ""),
    }
    if not all(settings.values()):
        raise ValueError("EPAY_ADDRESS, EPAY_PID and EPAY_KEY are required for epay.")
    return settings


def get_server_address() -> str:
    """Public base URL used for gateway callbacks (default: http://localhost:3000)."""
    return os.getenv("SERVER_ADDRESS", "http://localhost:3000").rstrip("/")
