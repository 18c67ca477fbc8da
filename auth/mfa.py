"""
auth/mfa.py -- MFA gate and one-time passcode lifecycle.

Gate policy:
  The system-wide policy lives in the app_settings row: require_mfa (master
  switch) and mfa_roles (role names the switch applies to). A second factor
  is owed when the switch is on, the user's role is listed, and the current
  device fingerprint is not yet verified for that user.

  evaluate() runs strictly before session creation. When it returns a
  challenge, no session row exists and no token has been issued.

  A policy read failure raises StorageUnavailable rather than silently
  skipping MFA.

OTP lifecycle:
  issue_code()  -- 6 random digits from secrets, stored as an HMAC digest
                   (auth.tokens.hash_otp) with a 5-minute expiry, handed to
                   the notifier. A notifier failure is logged; the code stays
                   valid and the user can request a resend.
  resend()      -- invalidates outstanding codes, then issues a fresh one.
  verify_code() -- accepts only an unused, unexpired code under the attempt
                   cap. A wrong code costs one attempt on every outstanding
                   code, so guessing is bounded per issued code. Success marks
                   the code used, records the device as verified and purges
                   expired codes.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import InvalidOTP, StorageUnavailable
from auth.models import DeviceDescriptor, MFAChallenge, User, VerifiedDevice
from auth.roles import normalize_role_name
from auth.store import CredentialStore, now_iso, to_iso
from auth.tokens import hash_otp

logger = logging.getLogger("retailauth.mfa")


# ---------------------------------------------------------------------------
# OTP delivery
# ---------------------------------------------------------------------------


class OTPNotifier(Protocol):
    def send(self, email: str, display_name: str, code: str, expiry_minutes: int) -> None: ...


class LoggingOTPNotifier:
    """Default notifier: records delivery in the log.

    The code itself is only logged in debug mode, for local testing without
    an email transport.
    """

    def __init__(self, debug: bool = False) -> None:
        self.debug = debug

    def send(self, email: str, display_name: str, code: str, expiry_minutes: int) -> None:
        if self.debug:
            logger.info("[DEV] OTP for %s: %s (valid %d min)", email, code, expiry_minutes)
        else:
            logger.info("OTP issued for %s (valid %d min)", email, expiry_minutes)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class MFAGate:
    def __init__(
        self,
        store: CredentialStore,
        notifier: OTPNotifier | None = None,
        otp_length: int = 6,
        otp_expiry_minutes: int = 5,
        max_attempts: int = 3,
    ) -> None:
        self._store = store
        self._notifier = notifier or LoggingOTPNotifier()
        self.otp_length = otp_length
        self.otp_expiry = timedelta(minutes=otp_expiry_minutes)
        self.max_attempts = max_attempts

    def is_required(self, role_name: str) -> bool:
        """True if the MFA policy applies to role_name."""
        try:
            policy = self._store.get_mfa_policy()
        except SQLAlchemyError as e:
            logger.error("Could not read MFA policy", exc_info=True)
            raise StorageUnavailable() from e
        if not policy["require_mfa"]:
            return False
        roles = {normalize_role_name(r) for r in policy["mfa_roles"]}
        return normalize_role_name(role_name) in roles

    def evaluate(self, user: User, role_name: str, device: DeviceDescriptor) -> MFAChallenge | None:
        """Return None to proceed, or the challenge owed by this user on this device."""
        if not self.is_required(role_name):
            return None
        try:
            verified = self._store.is_device_verified(user.id, device.fingerprint)
        except SQLAlchemyError as e:
            logger.error("Could not check verified devices for user_id=%s", user.id, exc_info=True)
            raise StorageUnavailable() from e
        if verified:
            logger.debug("Device already verified for user_id=%s; MFA skipped", user.id)
            return None
        logger.info("MFA required for user_id=%s role=%s on unverified device", user.id, role_name)
        return MFAChallenge(
            user_id=user.id,
            email=user.email,
            display_name=user.display_name,
            role=role_name,
        )

    # ------------------------------------------------------------------
    # OTP
    # ------------------------------------------------------------------

    def _generate_code(self) -> str:
        return str(secrets.randbelow(10**self.otp_length)).zfill(self.otp_length)

    def issue_code(self, user: User) -> None:
        """Store a fresh code for user and hand it to the notifier."""
        code = self._generate_code()
        expires_at = to_iso(datetime.now(timezone.utc) + self.otp_expiry)
        try:
            self._store.insert_otp(user.id, hash_otp(user.id, code), expires_at)
        except SQLAlchemyError as e:
            logger.error("Could not store OTP for user_id=%s", user.id, exc_info=True)
            raise StorageUnavailable() from e
        minutes = int(self.otp_expiry.total_seconds() // 60)
        try:
            self._notifier.send(user.email, user.display_name, code, minutes)
        except Exception:
            logger.warning("OTP delivery failed for user_id=%s; code remains valid", user.id, exc_info=True)

    def resend(self, user: User) -> None:
        try:
            invalidated = self._store.invalidate_otps(user.id)
        except SQLAlchemyError as e:
            raise StorageUnavailable() from e
        logger.debug("Invalidated %d outstanding OTP(s) for user_id=%s", invalidated, user.id)
        self.issue_code(user)

    def verify_code(self, user_id: int, code: str, device: DeviceDescriptor) -> None:
        """Consume a valid code and mark device verified. Raises InvalidOTP otherwise."""
        now = now_iso()
        code = (code or "").strip()
        try:
            otp_id = None
            if code.isdigit() and len(code) == self.otp_length:
                otp_id = self._store.find_active_otp(user_id, hash_otp(user_id, code), now, self.max_attempts)
            if otp_id is None:
                self._store.register_failed_otp_attempt(user_id, now)
                logger.warning("Failed OTP attempt for user_id=%s", user_id)
                raise InvalidOTP()
            self._store.mark_otp_used(otp_id)
        except SQLAlchemyError as e:
            logger.error("OTP verification failed on storage for user_id=%s", user_id, exc_info=True)
            raise StorageUnavailable() from e

        try:
            self._store.record_verified_device(
                VerifiedDevice(
                    user_id=user_id,
                    device_fingerprint=device.fingerprint,
                    device_name=device.device_name,
                    browser_info={
                        "browser": device.browser,
                        "os": device.os,
                        "user_agent": device.user_agent,
                        "screen_resolution": device.screen_resolution,
                        "timezone": device.timezone,
                    },
                )
            )
            self._store.delete_expired_otps(user_id, now)
        except SQLAlchemyError:
            # The code was valid and is consumed; the device will just be challenged again next time.
            logger.warning("Could not record verified device for user_id=%s", user_id, exc_info=True)
