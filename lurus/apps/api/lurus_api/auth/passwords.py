"""Password hashing (bcrypt).

verify_password() always performs a full bcrypt check: when the user does not
exist the caller passes hashed=None and a fixed dummy hash is verified instead,
so response time does not reveal whether a username exists.
"""

import os
from typing import Optional

import bcrypt

MIN_PASSWORD_LENGTH = 8
# bcrypt only considers the first 72 bytes
MAX_PASSWORD_BYTES = 72

BCRYPT_ROUNDS = int(os.getenv("LURUS_BCRYPT_ROUNDS", "12"))

_DUMMY_HASH = bcrypt.hashpw(b"lurus-timing-equaliser", bcrypt.gensalt(rounds=BCRYPT_ROUNDS))


def hash_password(password: str) -> str:
    raw = password.encode("utf-8")[:MAX_PASSWORD_BYTES]
    return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("ascii")


def verify_password(password: str, hashed: Optional[str]) -> bool:
    raw = password.encode("utf-8")[:MAX_PASSWORD_BYTES]
    if not hashed:
        bcrypt.checkpw(raw, _DUMMY_HASH)
        return False
    try:
        return bcrypt.checkpw(raw, hashed.encode("ascii"))
    except ValueError:
        # Malformed stored hash
        bcrypt.checkpw(raw, _DUMMY_HASH)
        return False
