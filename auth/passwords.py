"""
auth/passwords.py -- bcrypt password hashing and verification.

bcrypt is used directly rather than through passlib: passlib's wrap-bug
detection builds a password longer than 72 bytes, which bcrypt 4.x rejects.
bcrypt 5 also rejects such secrets outright, so both hash and verify cut
the UTF-8 encoding to 72 bytes themselves. That is the historical bcrypt
behaviour, so hashes written by older bcrypt releases still verify.

verify_password() never raises. A malformed or legacy hash is logged and
treated as a mismatch so a corrupted row cannot turn a login into a 500.

Timing equalization [C1]: callers that find no user for an email must still
call verify_password() against _DUMMY_HASH, so response time does not reveal
whether the account exists. The dummy hash uses the same cost factor as real
hashes, so both paths cost the same.

Layer rule: no imports from api/. core.config is allowed (kernel).
"""

from __future__ import annotations

import logging

import bcrypt

from core.config import get_settings

logger = logging.getLogger("retailauth.passwords")

_settings = get_settings()

_BCRYPT_MAX_BYTES = 72


def _secret(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of plain at the configured cost factor.

    Only the first 72 bytes of the UTF-8 encoding are significant.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(_secret(plain), salt).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True iff plain matches hashed. Any error is a mismatch."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_secret(plain), hashed.encode("utf-8"))
    except (ValueError, TypeError) as e:
        logger.warning("Password hash could not be checked: %s", e)
        return False


def burn_verify(plain: str) -> None:
    """Run a full bcrypt check against the dummy hash and discard the result [C1]."""
    verify_password(plain, _DUMMY_HASH)


# Computed once at import so the first unknown-email login is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("retailauth_timing_dummy")
