"""In-memory verification codes (email and phone OTP).

Entries are keyed by purpose tag + subject (email address or phone number).
A code is valid while it matches and is younger than the TTL; a successful
verification deletes it, so each code works once.

The map is process-local. Multi-node deployments must pin OTP traffic to one
node (sticky routing) or accept that a code only verifies on the node that
issued it.
"""

import hmac
import logging
import re
import threading
import time
from collections import deque
from typing import Callable, Optional

from lurus_api.config.env import get_verification_code_ttl
from lurus_api.credentials.key_material import generate_numeric_code

logger = logging.getLogger(__name__)

PURPOSE_EMAIL_VERIFY = "v"
PURPOSE_PASSWORD_RESET = "r"
PURPOSE_PHONE_LOGIN = "pl"
PURPOSE_PHONE_REGISTER = "pr"
PURPOSE_PHONE_BIND = "pb"
PURPOSE_PHONE_RESET = "prs"

PHONE_PURPOSES: dict[str, str] = {
    "login": PURPOSE_PHONE_LOGIN,
    "register": PURPOSE_PHONE_REGISTER,
    "bind": PURPOSE_PHONE_BIND,
    "reset": PURPOSE_PHONE_RESET,
}

PHONE_RE = re.compile(r"^1[3-9]\d{9}$")

DEFAULT_SOFT_CAP = 10_000


def is_valid_phone(phone: str) -> bool:
    return bool(PHONE_RE.match(phone or ""))


def phone_purpose_tag(purpose: Optional[str]) -> str:
    """Map a request purpose to its tag; unknown or empty means login."""
    return PHONE_PURPOSES.get((purpose or "").lower(), PURPOSE_PHONE_LOGIN)


class VerificationCodeStore:
    """Mutex-protected map of (purpose||subject) -> (code, issued_at)."""

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        soft_cap: int = DEFAULT_SOFT_CAP,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._soft_cap = soft_cap
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[str, float]] = {}

    @property
    def ttl(self) -> int:
        return self._ttl if self._ttl is not None else get_verification_code_ttl()

    @staticmethod
    def _key(purpose: str, subject: str) -> str:
        return f"{purpose}{subject}"

    def _purge_expired_locked(self, now: float) -> int:
        ttl = self.ttl
        stale = [k for k, (_, issued) in self._entries.items() if now - issued >= ttl]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def issue(self, purpose: str, subject: str) -> str:
        """Generate and store a fresh 6-digit code (replacing any previous one)."""
        code = generate_numeric_code(6)
        self.register(purpose, subject, code)
        return code

    def register(self, purpose: str, subject: str, code: str) -> None:
        with self._lock:
            now = self._clock()
            if len(self._entries) >= self._soft_cap:
                purged = self._purge_expired_locked(now)
                logger.warning(
                    "Verification map over soft cap, purged expired entries",
                    extra={"event": "verification.purge", "purged": purged, "size": len(self._entries)},
                )
            self._entries[self._key(purpose, subject)] = (code, now)

    def verify(self, purpose: str, subject: str, code: str) -> bool:
        """Constant-time check; deletes the entry on success."""
        key = self._key(purpose, subject)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            stored, issued = entry
            if self._clock() - issued >= self.ttl:
                del self._entries[key]
                return False
            if not hmac.compare_digest(stored.encode("utf-8"), (code or "").encode("utf-8")):
                return False
            del self._entries[key]
            return True

    def delete(self, purpose: str, subject: str) -> None:
        with self._lock:
            self._entries.pop(self._key(purpose, subject), None)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_expired_locked(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class SendRateLimiter:
    """Send throttle: one send per subject per cooldown, bounded sends per source IP per hour."""

    def __init__(
        self,
        subject_cooldown_seconds: int = 60,
        ip_limit_per_hour: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.subject_cooldown = subject_cooldown_seconds
        self.ip_limit = ip_limit_per_hour
        self._clock = clock
        self._lock = threading.Lock()
        self._last_send: dict[str, float] = {}
        self._ip_sends: dict[str, deque] = {}

    def subject_wait(self, subject: str) -> int:
        """Seconds until subject may receive another code (0 = now)."""
        with self._lock:
            last = self._last_send.get(subject)
            if last is None:
                return 0
            remaining = self.subject_cooldown - (self._clock() - last)
            return max(int(remaining + 0.999), 0)

    def ip_allowed(self, ip: Optional[str]) -> bool:
        if not ip:
            return True
        with self._lock:
            sends = self._ip_sends.get(ip)
            if sends is None:
                return True
            cutoff = self._clock() - 3600
            while sends and sends[0] <= cutoff:
                sends.popleft()
            return len(sends) < self.ip_limit

    def mark_sent(self, subject: str, ip: Optional[str]) -> None:
        with self._lock:
            now = self._clock()
            self._last_send[subject] = now
            if ip:
                self._ip_sends.setdefault(ip, deque()).append(now)
            if len(self._last_send) > DEFAULT_SOFT_CAP:
                cutoff = now - self.subject_cooldown
                for key in [k for k, t in self._last_send.items() if t <= cutoff]:
                    del self._last_send[key]

    def clear(self) -> None:
        with self._lock:
            self._last_send.clear()
            self._ip_sends.clear()


verification_codes = VerificationCodeStore()
send_limiter = SendRateLimiter()
