"""
auth/errors.py -- Exception hierarchy for the authentication core.

Every error carries a stable machine-readable code, a user-facing message and
the HTTP status the API layer should answer with. The API exception handler
renders them into the standard {"error": {"code", "message"}} envelope.

InvalidCredentials deliberately covers both "no such email" and "wrong
password" so callers cannot tell the two apart.
"""

from __future__ import annotations

from typing import Optional


class AuthError(Exception):
    """Base class for authentication and session errors."""

    code: str = "auth_error"
    message: str = "Authentication failed."
    status_code: int = 401

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None) -> None:
        if message is not None:
            self.message = message
        self.detail = detail
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid email or password."
    status_code = 401


class AccountLocked(AuthError):
    code = "account_locked"
    message = "Account is temporarily locked due to too many failed login attempts."
    status_code = 423

    def __init__(self, locked_until: Optional[str] = None) -> None:
        super().__init__(detail=locked_until)
        self.locked_until = locked_until


class AccountNotActivated(AuthError):
    code = "account_not_activated"
    message = "Account not properly set up. Please contact support."
    status_code = 403


class AccountInactive(AuthError):
    code = "account_inactive"
    message = "Account is not active. Please contact support."
    status_code = 403


class EmailNotVerified(AuthError):
    code = "email_not_verified"
    message = "Please verify your email before logging in."
    status_code = 403


class InvalidOTP(AuthError):
    code = "invalid_otp"
    message = "Invalid or expired OTP code. Please try again."
    status_code = 401


class SessionExpired(AuthError):
    code = "session_expired"
    message = "Your session has expired. Please log in again."
    status_code = 401


class SessionInvalid(AuthError):
    code = "session_invalid"
    message = "Authentication required."
    status_code = 401


class StorageUnavailable(AuthError):
    code = "storage_unavailable"
    message = "The service is temporarily unavailable. Please try again."
    status_code = 503
