"""OIDC bearer plane (Zitadel ID tokens).

FLOW:
1. Authorization: Bearer <JWT>
2. kid from the unverified header -> RSA key from the JWKS cache
   (a kid miss triggers one refresh)
3. RS256 signature, iss, exp and nbf verified with PyJWT
4. org id claim -> tenant (auto-created when ZITADEL_AUTO_CREATE_TENANT)
5. sub -> identity mapping -> local user (auto-created when
   ZITADEL_AUTO_CREATE_USER); cached profile claims are re-synced

JWKS cache:
- Fetched at startup, on kid miss and hourly by a daemon thread
- 15s timeout, retried with backoff
- A failed refresh keeps the previous keys
- Readers take the lock only to grab the current dict; refresh builds a new
  dict and swaps it in
"""

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx
import jwt
from fastapi import Depends, Request
from jwt.algorithms import RSAAlgorithm
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from lurus_api.auth.principal import PLANE_BEARER_JWT, Principal
from lurus_api.config.env import (
    get_zitadel_settings,
    is_zitadel_enabled,
    zitadel_auto_create_tenant,
    zitadel_auto_create_user,
)
from lurus_api.credentials.key_material import random_alnum
from lurus_api.db.models import User, UserStatus
from lurus_api.db.retry import retry_call
from lurus_api.db.session import get_db
from lurus_api.entitlements.store import get_user, provision_user
from lurus_api.errors import (
    AuthError,
    ConflictError,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    ServiceUnavailableError,
)
from lurus_api.tenancy.mappings import create_mapping, find_mapping, sync_mapping
from lurus_api.tenancy.scoped import TenantScope, tenant_scope
from lurus_api.tenancy.tenants import create_from_oidc, get_tenant_by_org, require_enabled

logger = logging.getLogger(__name__)

JWKS_TIMEOUT_SECONDS = 15.0
JWKS_REFRESH_INTERVAL_SECONDS = 3600

CLAIM_ORG_ID = "urn:zitadel:iam:org:id"
CLAIM_ORG_DOMAIN = "urn:zitadel:iam:org:domain:primary"
CLAIM_ORG_NAME = "urn:zitadel:iam:user:resourceowner:name"
CLAIM_ROLES = "urn:zitadel:iam:org:project:roles"


class JWKSFetchError(Exception):
    """JWKS endpoint unreachable or returned no usable keys."""


def _http_fetch(uri: str) -> dict:
    with httpx.Client(timeout=JWKS_TIMEOUT_SECONDS) as client:
        response = client.get(uri)
        response.raise_for_status()
        return response.json()


class JWKSCache:
    """kid -> RSA public key map with lock-swapped refresh."""

    def __init__(
        self,
        jwks_uri: str,
        *,
        fetcher: Optional[Callable[[str], dict]] = None,
        refresh_interval: int = JWKS_REFRESH_INTERVAL_SECONDS,
    ):
        self.jwks_uri = jwks_uri
        self._fetcher = fetcher or _http_fetch
        self._refresh_interval = refresh_interval
        self._keys: dict[str, object] = {}
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_refresh_ok: Optional[bool] = None

    def _fetch_keys(self) -> dict[str, object]:
        try:
            document = retry_call(
                lambda: self._fetcher(self.jwks_uri),
                retry_on=(httpx.TransportError, httpx.HTTPStatusError),
                operation="jwks.fetch",
            )
        except (httpx.HTTPError, ValueError) as e:
            raise JWKSFetchError(f"failed to fetch JWKS: {e}") from e

        keys: dict[str, object] = {}
        for jwk in document.get("keys", []):
            if jwk.get("kty") != "RSA" or not jwk.get("kid"):
                continue
            try:
                keys[jwk["kid"]] = RSAAlgorithm.from_jwk(json.dumps(jwk))
            except (jwt.InvalidKeyError, ValueError, KeyError) as e:
                logger.warning(
                    "Skipping unusable JWK",
                    extra={"event": "oidc.jwks.bad_key", "kid": jwk.get("kid"), "error": str(e)},
                )
        if not keys:
            raise JWKSFetchError("no valid RSA keys found in JWKS")
        return keys

    def refresh(self) -> bool:
        """Fetch and swap in a new key set. Returns False (keeping old keys) on failure."""
        with self._refresh_lock:
            try:
                keys = self._fetch_keys()
            except JWKSFetchError as e:
                self.last_refresh_ok = False
                logger.error(
                    "JWKS refresh failed, keeping cached keys",
                    extra={"event": "oidc.jwks.refresh.failed", "error": str(e), "cached_keys": len(self._keys)},
                )
                return False
            with self._lock:
                self._keys = keys
            self.last_refresh_ok = True
            logger.info("JWKS refreshed", extra={"event": "oidc.jwks.refreshed", "key_count": len(keys)})
            return True

    def get_key(self, kid: str) -> Optional[object]:
        with self._lock:
            key = self._keys.get(kid)
        if key is not None:
            return key
        if self.refresh():
            with self._lock:
                return self._keys.get(kid)
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._refresh_loop, name="JWKSRefresh", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _refresh_loop(self) -> None:
        while not self._stop_event.wait(self._refresh_interval):
            self.refresh()


@dataclass
class OIDCClaims:
    sub: str
    issuer: str
    email: str = ""
    email_verified: bool = False
    name: str = ""
    preferred_username: str = ""
    org_id: str = ""
    org_domain: str = ""
    org_name: str = ""
    roles: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_payload(cls, payload: dict) -> "OIDCClaims":
        roles_claim = payload.get(CLAIM_ROLES) or {}
        roles = frozenset(roles_claim.keys()) if isinstance(roles_claim, dict) else frozenset()
        return cls(
            sub=str(payload.get("sub", "")),
            issuer=str(payload.get("iss", "")),
            email=payload.get("email") or "",
            email_verified=bool(payload.get("email_verified", False)),
            name=payload.get("name") or "",
            preferred_username=payload.get("preferred_username") or "",
            org_id=payload.get(CLAIM_ORG_ID) or "",
            org_domain=payload.get(CLAIM_ORG_DOMAIN) or "",
            org_name=payload.get(CLAIM_ORG_NAME) or "",
            roles=roles,
        )


class OIDCVerifier:
    """RS256 ID token verification against one issuer."""

    def __init__(self, issuer: str, jwks: JWKSCache, client_id: str = ""):
        self.issuer = issuer.rstrip("/")
        self.jwks = jwks
        self.client_id = client_id

    def verify(self, token: str) -> OIDCClaims:
        """
        Raises:
            AuthError(INVALID_SIGNATURE): Malformed token, unknown kid, bad signature
            AuthError(EXPIRED): exp in the past
            AuthError(AUTH_FAILED): Wrong issuer or nbf in the future
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as e:
            raise AuthError("Malformed token", ErrorCode.INVALID_SIGNATURE) from e
        if header.get("alg") != "RS256":
            raise AuthError("Unexpected signing algorithm", ErrorCode.INVALID_SIGNATURE)
        kid = header.get("kid")
        if not kid:
            raise AuthError("Missing kid in token header", ErrorCode.INVALID_SIGNATURE)

        key = self.jwks.get_key(kid)
        if key is None:
            raise AuthError("Unknown signing key", ErrorCode.INVALID_SIGNATURE)

        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                issuer=self.issuer,
                options={"verify_aud": False, "require": ["exp", "iss", "sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthError("Token expired", ErrorCode.EXPIRED) from e
        except jwt.ImmatureSignatureError as e:
            raise AuthError("Token not yet valid") from e
        except jwt.InvalidIssuerError as e:
            raise AuthError("Invalid issuer") from e
        except jwt.InvalidTokenError as e:
            raise AuthError("Invalid token", ErrorCode.INVALID_SIGNATURE) from e
        return OIDCClaims.from_payload(payload)


_USERNAME_CLEAN = re.compile(r"[^A-Za-z0-9_]")


def _oidc_username(scope: TenantScope, claims: OIDCClaims) -> str:
    base = claims.preferred_username.split("@")[0] or claims.email.split("@")[0] or "oidc"
    base = _USERNAME_CLEAN.sub("_", base)[:13]
    if len(base) < 3:
        base = f"oidc_{base}"
    username = base
    while scope.first(User, User.username == username, include_deleted=True) is not None:
        username = f"{base}_{random_alnum(6)}"
    return username


def _auto_create_user(scope: TenantScope, claims: OIDCClaims) -> User:
    user = provision_user(
        scope,
        username=_oidc_username(scope, claims),
        email=claims.email,
        display_name=claims.name or claims.preferred_username or None,
    )
    create_mapping(
        scope,
        external_user_id=claims.sub,
        user_id=user.id,
        display_name=claims.name,
        email=claims.email,
        preferred_username=claims.preferred_username,
    )
    scope.commit()
    return user


def map_claims_to_principal(db: Session, claims: OIDCClaims) -> Principal:
    """Bind the IdP organisation to a tenant and the subject to a local user.

    Raises:
        AuthError: No organisation claim
        ForbiddenError: Organisation has no tenant and auto-create is off
        TenantDisabledError: Tenant disabled
        NotFoundError(USER_NOT_FOUND): No mapping and auto-create is off
        AuthError(USER_DISABLED): Mapped user disabled
    """
    if not claims.org_id:
        raise AuthError("Token carries no organisation")

    tenant = get_tenant_by_org(db, claims.org_id)
    if tenant is None:
        if not zitadel_auto_create_tenant():
            raise ForbiddenError("Organisation is not registered")
        tenant = create_from_oidc(
            db,
            external_org_id=claims.org_id,
            org_domain=claims.org_domain,
            org_name=claims.org_name,
        )
        logger.info(
            "Tenant auto-created from OIDC organisation",
            extra={"event": "oidc.tenant.created", "tenant": tenant.id},
        )
    require_enabled(tenant)

    scope = tenant_scope(db, tenant.id)
    mapping = find_mapping(scope, claims.sub)
    if mapping is None:
        if not zitadel_auto_create_user():
            raise NotFoundError("User is not provisioned", ErrorCode.USER_NOT_FOUND)
        try:
            user = _auto_create_user(scope, claims)
        except (IntegrityError, ConflictError):
            # A concurrent first login for the same subject won the insert
            scope.rollback()
            mapping = find_mapping(scope, claims.sub)
            if mapping is None:
                raise
            logger.info(
                "OIDC subject mapped by a concurrent login",
                extra={"event": "oidc.user.create_raced", "tenant": tenant.id, "user": mapping.user_id},
            )
            user = get_user(scope, mapping.user_id)
            if user is None:
                raise NotFoundError("User not found", ErrorCode.USER_NOT_FOUND)
        else:
            logger.info(
                "User auto-created from OIDC subject",
                extra={"event": "oidc.user.created", "tenant": tenant.id, "user": user.id},
            )
    else:
        sync_mapping(
            mapping,
            display_name=claims.name,
            email=claims.email,
            preferred_username=claims.preferred_username,
        )
        try:
            scope.commit()
        except SQLAlchemyError as e:
            # Profile sync is best-effort; authentication proceeds
            scope.rollback()
            logger.warning(
                "OIDC profile sync failed",
                extra={"event": "oidc.mapping.sync_failed", "error": str(e)},
            )
        user = get_user(scope, mapping.user_id)
        if user is None:
            raise NotFoundError("User not found", ErrorCode.USER_NOT_FOUND)

    if user.status != UserStatus.ENABLED:
        raise AuthError("User is disabled", ErrorCode.USER_DISABLED)

    return Principal(
        auth_plane=PLANE_BEARER_JWT,
        tenant_id=tenant.id,
        user_id=user.id,
        role=user.role,
        roles=claims.roles,
        username=user.username,
        external_user_id=claims.sub,
        email=claims.email or None,
    )


# ── process-wide verifier ─────────────────────────────────────────────────────

_verifier: Optional[OIDCVerifier] = None


def init_oidc(fetcher: Optional[Callable[[str], dict]] = None) -> Optional[OIDCVerifier]:
    """Build the verifier and start JWKS refresh (no-op when OIDC is disabled)."""
    global _verifier
    if not is_zitadel_enabled():
        logger.info("OIDC authentication disabled", extra={"event": "oidc.disabled"})
        return None
    settings = get_zitadel_settings()
    cache = JWKSCache(settings["jwks_uri"], fetcher=fetcher)
    cache.refresh()
    cache.start()
    _verifier = OIDCVerifier(settings["issuer"], cache, settings["client_id"])
    logger.info("OIDC authentication initialised", extra={"event": "oidc.initialised", "issuer": settings["issuer"]})
    return _verifier


def set_oidc_verifier(verifier: Optional[OIDCVerifier]) -> None:
    global _verifier
    _verifier = verifier


def shutdown_oidc() -> None:
    global _verifier
    if _verifier is not None:
        _verifier.jwks.stop()
    _verifier = None


def get_oidc_verifier() -> OIDCVerifier:
    if _verifier is None:
        raise ServiceUnavailableError("OIDC authentication is not enabled")
    return _verifier


def bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    if not header:
        raise AuthError("Missing Authorization header")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Invalid Authorization header format, expected: Bearer <token>", ErrorCode.UNKNOWN_PLANE)
    return token.strip()


def get_oidc_principal(request: Request, db: Session = Depends(get_db)) -> Principal:
    """FastAPI dependency for bearer-jwt routes."""
    verifier = get_oidc_verifier()
    token = bearer_token(request)
    if token.startswith("sk-") or token.startswith("lurus_ik_"):
        raise AuthError("Relay and service credentials are not accepted here", ErrorCode.UNKNOWN_PLANE)
    claims = verifier.verify(token)
    return map_claims_to_principal(db, claims)
