"""
auth/service.py -- Login orchestration.

LoginService composes the auth components into the login flow. Each step
short-circuits on failure, and the order is part of the contract:

  1. find user by email          (unknown email -> InvalidCredentials)
  2. lockout check               (locked -> AccountLocked)
  3. password hash present       (unset -> AccountNotActivated)
  4. bcrypt verify               (mismatch -> record failure, InvalidCredentials)
  5. account active + verified   (AccountInactive / EmailNotVerified)
  6. reset failure counter
  7. resolve role                (missing -> DefaultRole)
  8. MFA gate                    (challenge -> return it, no session)
  9. create session, stamp last_login / presence, return Principal

Unknown emails still run bcrypt against a dummy hash [C1], so timing and
the error code are identical to a wrong password.

Storage errors on this path become StorageUnavailable. Lockout writes,
activity touches and risk profiling are best-effort and never fail a login.

Every method here is synchronous and CPU-bound on bcrypt. Async callers run
them with asyncio.to_thread; FastAPI runs the sync route handlers in its
threadpool.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.device import DeviceRiskProfiler
from auth.errors import (
    AccountInactive,
    AccountNotActivated,
    EmailNotVerified,
    InvalidCredentials,
    StorageUnavailable,
)
from auth.lockout import LockoutGuard
from auth.mfa import LoggingOTPNotifier, MFAGate, OTPNotifier
from auth.models import (
    AccountStatus,
    DeviceSignals,
    LoginMethod,
    MFAChallenge,
    PresenceStatus,
    Principal,
    RoleRef,
    User,
)
from auth.passwords import burn_verify, verify_password
from auth.roles import resolve_role
from auth.sessions import SessionManager
from auth.store import CredentialStore, now_iso
from core.config import Settings, get_settings

logger = logging.getLogger("retailauth.login")


class LoginService:
    def __init__(
        self,
        store: CredentialStore,
        lockout: LockoutGuard,
        profiler: DeviceRiskProfiler,
        mfa: MFAGate,
        sessions: SessionManager,
    ) -> None:
        self.store = store
        self.lockout = lockout
        self.profiler = profiler
        self.mfa = mfa
        self.sessions = sessions

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _find_user(self, email: str) -> User | None:
        try:
            return self.store.find_user_by_email(email)
        except SQLAlchemyError as e:
            logger.error("User lookup failed", exc_info=True)
            raise StorageUnavailable() from e

    def _find_user_by_id(self, user_id: int) -> User | None:
        try:
            return self.store.find_user_by_id(user_id)
        except SQLAlchemyError as e:
            raise StorageUnavailable() from e

    @staticmethod
    def _check_account(user: User) -> None:
        if user.account_status != AccountStatus.active.value or not user.is_active:
            raise AccountInactive()
        if not user.email_verified:
            raise EmailNotVerified()

    def _resolve_role(self, user: User) -> RoleRef:
        try:
            return resolve_role(self.store, user)
        except SQLAlchemyError as e:
            logger.error("Role lookup failed for user_id=%s", user.id, exc_info=True)
            raise StorageUnavailable() from e

    def _open_session(
        self,
        user: User,
        role: RoleRef,
        login_method: str,
        mfa_used: bool,
        signals: DeviceSignals | None,
        ip: str | None,
    ) -> Principal:
        session = self.sessions.create(user, role, login_method, mfa_used, signals, ip)
        now = now_iso()
        try:
            self.store.update_user(
                user.id,
                last_login=now,
                last_activity=now,
                status=PresenceStatus.online.value,
            )
        except SQLAlchemyError:
            logger.warning("Could not stamp last login for user_id=%s", user.id, exc_info=True)
        else:
            user.last_login = now
            user.last_activity = now
            user.status = PresenceStatus.online.value
        logger.info("Login succeeded user_id=%s role=%s method=%s", user.id, role.name, login_method)
        return Principal(user=user, role=role, session=session)

    # ------------------------------------------------------------------
    # Password login
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        signals: DeviceSignals | None = None,
        ip: str | None = None,
    ) -> Principal | MFAChallenge:
        """Authenticate email/password. Returns a Principal or an MFAChallenge."""
        user = self._find_user(email)
        if user is None:
            burn_verify(password)
            logger.info("Login failed: unknown email")
            raise InvalidCredentials()

        self.lockout.check_locked(user)

        if not user.password_hash:
            raise AccountNotActivated()

        if not verify_password(password, user.password_hash):
            self.lockout.record_failure(user.id)
            logger.info("Login failed: wrong password for user_id=%s", user.id)
            raise InvalidCredentials()

        self._check_account(user)
        self.lockout.record_success(user.id)
        user.failed_login_attempts = 0
        user.locked_until = None

        role = self._resolve_role(user)
        device = self.profiler.describe_device(signals)
        challenge = self.mfa.evaluate(user, role.name, device)
        if challenge is not None:
            return challenge

        return self._open_session(user, role, LoginMethod.password.value, False, signals, ip)

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    def start_mfa(self, challenge: MFAChallenge) -> None:
        """Issue the OTP for a challenge returned by login()."""
        user = self._find_user_by_id(challenge.user_id)
        if user is None:
            raise InvalidCredentials()
        self.mfa.issue_code(user)

    def resend_mfa(self, user_id: int) -> None:
        user = self._find_user_by_id(user_id)
        if user is None:
            raise InvalidCredentials()
        self.mfa.resend(user)

    def complete_mfa_login(
        self,
        user_id: int,
        code: str,
        signals: DeviceSignals | None = None,
        ip: str | None = None,
    ) -> Principal:
        """Verify the OTP and open an MFA session for user_id.

        Account state and lockout are re-checked: the account may have been
        locked or deactivated while the code was outstanding.
        """
        user = self._find_user_by_id(user_id)
        if user is None:
            raise InvalidCredentials()
        self.lockout.check_locked(user)
        self._check_account(user)

        device = self.profiler.describe_device(signals)
        self.mfa.verify_code(user.id, code, device)

        role = self._resolve_role(user)
        return self._open_session(user, role, LoginMethod.mfa.value, True, signals, ip)

    # ------------------------------------------------------------------
    # SSO
    # ------------------------------------------------------------------

    def complete_sso_login(
        self,
        email: str,
        signals: DeviceSignals | None = None,
        ip: str | None = None,
    ) -> Principal | MFAChallenge:
        """Log in a user whose email an identity provider has already verified.

        Same flow as login() minus the password steps. SSO never creates
        accounts: the email must belong to an existing user.
        """
        user = self._find_user(email)
        if user is None:
            logger.info("SSO login failed: no account for verified email")
            raise InvalidCredentials()
        self.lockout.check_locked(user)
        self._check_account(user)
        self.lockout.record_success(user.id)

        role = self._resolve_role(user)
        device = self.profiler.describe_device(signals)
        challenge = self.mfa.evaluate(user, role.name, device)
        if challenge is not None:
            return challenge

        return self._open_session(user, role, LoginMethod.sso.value, False, signals, ip)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, session_id: str) -> None:
        self.sessions.revoke(session_id)


def build_login_service(
    store: CredentialStore,
    settings: Settings | None = None,
    geo_lookup=None,
    ip_lookup=None,
    notifier: OTPNotifier | None = None,
) -> LoginService:
    """Wire a LoginService from settings. Lookups and notifier are injectable for tests."""
    settings = settings or get_settings()
    profiler = DeviceRiskProfiler(
        geo_lookup=geo_lookup,
        ip_lookup=ip_lookup,
        timeout=settings.geo_timeout_seconds,
        geo_enabled=settings.geo_lookup_enabled,
    )
    return LoginService(
        store=store,
        lockout=LockoutGuard(store, settings.lockout_threshold, settings.lockout_minutes),
        profiler=profiler,
        mfa=MFAGate(
            store,
            notifier=notifier or LoggingOTPNotifier(debug=settings.debug),
            otp_length=settings.otp_length,
            otp_expiry_minutes=settings.otp_expiry_minutes,
            max_attempts=settings.otp_max_attempts,
        ),
        sessions=SessionManager(store, profiler, settings.session_ttl_seconds),
    )
