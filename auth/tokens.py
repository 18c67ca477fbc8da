"""
auth/tokens.py -- Signed token and digest utilities.

Security design decisions:
  Access tokens: python-jose with HS256, signed with SECRET_KEY. Claims are
       userId, email, role, sessionId, iat and exp. exp always equals the
       owning session's expires_at, so the token and the session row expire
       together. Decoding raises SessionExpired / SessionInvalid; there is no
       "None means unauthenticated" path to forget to check.

  MFA tokens: a short-lived JWT with purpose="mfa" handed out when the
       password step succeeds but a second factor is owed. It proves the
       password step happened without creating a session. A session token
       is never accepted as an MFA token and vice versa.

  OTP digests: HMAC-SHA256(SECRET_KEY, "user_id:code"). Codes are only six
       digits, so a plain hash would be trivially reversible from a DB dump;
       keying with SECRET_KEY means the dump alone is useless. bcrypt's
       slowness is unnecessary for a value that expires in minutes.

  SECRET_KEY: sourced from core.config.get_settings(), which rejects short
       keys at startup [M6].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import SessionExpired, SessionInvalid
from core.config import get_settings

logger = logging.getLogger("retailauth.tokens")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("userId", "email", "role", "sessionId")
_MFA_PURPOSE = "mfa"


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: int,
    email: str,
    role: str,
    session_id: str,
    issued_at: datetime,
    expires_at: datetime,
) -> str:
    """Encode a signed access token bound to one session.

    issued_at and expires_at come from the session being created, so the
    token's exp matches the session row exactly.
    """
    payload = {
        "userId": user_id,
        "email": email,
        "role": role,
        "sessionId": session_id,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Verify signature and expiry and return the claims.

    Raises:
        SessionExpired: the token's exp has passed.
        SessionInvalid: bad signature, malformed token, missing claims, or an
                        MFA token presented as an access token.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as e:
        raise SessionExpired() from e
    except JWTError as e:
        raise SessionInvalid(detail="Token could not be verified.") from e
    if payload.get("purpose") == _MFA_PURPOSE or any(c not in payload for c in _REQUIRED_CLAIMS):
        raise SessionInvalid(detail="Token is missing required claims.")
    return payload


# ---------------------------------------------------------------------------
# MFA challenge tokens
# ---------------------------------------------------------------------------


def create_mfa_token(user_id: int, email: str, expire_seconds: int = 0) -> str:
    """Encode a short-lived token proving the password step for user_id succeeded."""
    duration = expire_seconds if expire_seconds > 0 else _settings.mfa_token_expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "email": email,
        "purpose": _MFA_PURPOSE,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=duration)).timestamp()),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_mfa_token(token: str) -> int:
    """Return the user id carried by a valid MFA token.

    Raises SessionExpired if the challenge window has passed and
    SessionInvalid for anything else that is not a well-formed MFA token.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as e:
        raise SessionExpired("Verification window expired. Please log in again.") from e
    except JWTError as e:
        raise SessionInvalid(detail="MFA token could not be verified.") from e
    if payload.get("purpose") != _MFA_PURPOSE or not isinstance(payload.get("userId"), int):
        raise SessionInvalid(detail="Not an MFA token.")
    return payload["userId"]


# ---------------------------------------------------------------------------
# OTP digests
# ---------------------------------------------------------------------------


def hash_otp(user_id: int, code: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, "user_id:code") as hex.

    Binding the user id into the message means the same code issued to two
    users produces two different digests.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        f"{user_id}:{code}".encode(),
        hashlib.sha256,
    ).hexdigest()
