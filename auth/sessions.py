"""
auth/sessions.py -- Session issuance, validation, activity refresh and revocation.

State machine per session:

    Created -> Active (touch*) -> Expired | Revoked

  create()   writes the row and a signed access token whose exp equals the
             row's expires_at (created_at + 24h, never extended).
  touch()    moves last_activity (and current_page) only. Silent on failure.
  revoke()   sets is_active=false and stamps logout_at once. Safe to repeat.
  Expired    is implicit: validate() rejects any session past expires_at
             whether or not it was revoked.

Current-session pointer:
  users.current_session_id names the one current session. create() first
  deactivates whatever session it pointed at, so at most one session per
  user is active. Superseded rows stay in the table for session history.

Device, location and risk metadata are computed with DeviceRiskProfiler.
Profiling failures are logged and replaced with "Unknown" descriptors; they
never fail session creation.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from auth.device import DeviceRiskProfiler
from auth.errors import SessionExpired, SessionInvalid, StorageUnavailable
from auth.models import (
    AccountStatus,
    DeviceDescriptor,
    DeviceSignals,
    LocationDescriptor,
    LoginMethod,
    PresenceStatus,
    Principal,
    RoleRef,
    Session,
    User,
)
from auth.roles import resolve_role
from auth.store import CredentialStore, now_iso, parse_iso, to_iso
from auth.tokens import create_access_token, decode_access_token

logger = logging.getLogger("retailauth.sessions")


def session_status(session: Session, now: datetime | None = None) -> str:
    """Derived history status: "logout", "expired" or "active"."""
    if not session.is_active:
        return "logout"
    expires_at = parse_iso(session.expires_at)
    if expires_at is not None and expires_at <= (now or datetime.now(timezone.utc)):
        return "expired"
    return "active"


class SessionManager:
    def __init__(
        self,
        store: CredentialStore,
        profiler: DeviceRiskProfiler,
        ttl_seconds: int = 24 * 60 * 60,
    ) -> None:
        self._store = store
        self._profiler = profiler
        self.ttl = timedelta(seconds=ttl_seconds)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def _profile(
        self,
        user: User,
        login_method: str,
        mfa_used: bool,
        signals: DeviceSignals | None,
        ip: str | None,
    ) -> tuple[DeviceDescriptor, LocationDescriptor, str]:
        """Best-effort device/location/risk metadata for a new session."""
        try:
            device = self._profiler.describe_device(signals)
            location = self._profiler.describe_location(ip)
            is_new_device = not self._store.has_seen_device(user.id, device.fingerprint)
            tier = self._profiler.risk_tier(login_method, mfa_used, is_new_device)
            return device, location, tier
        except Exception:
            logger.warning("Risk profiling failed for user_id=%s", user.id, exc_info=True)
            return (
                DeviceDescriptor(),
                LocationDescriptor(ip=ip or "Unknown"),
                self._profiler.risk_tier(login_method, mfa_used, True),
            )

    def create(
        self,
        user: User,
        role: RoleRef,
        login_method: str = LoginMethod.password.value,
        mfa_used: bool = False,
        signals: DeviceSignals | None = None,
        ip: str | None = None,
    ) -> Session:
        """Issue a new session and access token for user.

        Callers must have completed credential, lockout and MFA checks.
        Raises StorageUnavailable if the session cannot be persisted.
        """
        device, location, tier = self._profile(user, login_method, mfa_used, signals, ip)

        issued_at = datetime.now(timezone.utc)
        expires_at = issued_at + self.ttl
        session_id = uuid.uuid4().hex
        token = create_access_token(user.id, user.email, role.name, session_id, issued_at, expires_at)

        session = Session(
            id=session_id,
            user_id=user.id,
            access_token=token,
            created_at=to_iso(issued_at),
            expires_at=to_iso(expires_at),
            last_activity=to_iso(issued_at),
            is_active=True,
            device=device.to_dict(),
            location=location.to_dict(),
            device_fingerprint=device.fingerprint,
            login_method=login_method,
            mfa_used=mfa_used,
            risk_tier=tier,
        )

        try:
            if user.current_session_id:
                self._store.update_session(
                    user.current_session_id,
                    only_active=True,
                    is_active=False,
                    logout_at=session.created_at,
                )
            self._store.insert_session(session)
            self._store.update_user(user.id, current_session_id=session_id)
        except SQLAlchemyError as e:
            logger.error("Could not persist session for user_id=%s", user.id, exc_info=True)
            raise StorageUnavailable() from e

        user.current_session_id = session_id
        logger.info(
            "Session created user_id=%s method=%s mfa=%s risk=%s",
            user.id,
            login_method,
            mfa_used,
            tier,
        )
        return session

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate(self, token: str) -> Principal:
        """Resolve a bearer token to its Principal.

        Raises:
            SessionExpired: token exp or session expires_at has passed.
            SessionInvalid: bad token, unknown/revoked session, owner mismatch,
                            or the account can no longer hold a session.
            StorageUnavailable: the store could not be read.
        """
        claims = decode_access_token(token)
        try:
            session = self._store.find_session(claims["sessionId"])
            if session is None:
                raise SessionInvalid(detail="Unknown session.")
            if session.user_id != claims["userId"] or session.access_token != token:
                raise SessionInvalid(detail="Token does not belong to this session.")
            if not session.is_active:
                raise SessionInvalid("You have been signed out. Please log in again.")
            if session_status(session) == "expired":
                raise SessionExpired()
            user = self._store.find_user_by_id(session.user_id)
            if (
                user is None
                or not user.is_active
                or user.account_status != AccountStatus.active.value
            ):
                raise SessionInvalid(detail="Account can no longer sign in.")
            role = resolve_role(self._store, user)
        except SQLAlchemyError as e:
            logger.error("Session validation could not read the store", exc_info=True)
            raise StorageUnavailable() from e
        return Principal(user=user, role=role, session=session)

    def try_validate(self, token: str | None) -> Principal | None:
        """validate() that returns None for missing, expired or invalid tokens."""
        if not token:
            return None
        try:
            return self.validate(token)
        except (SessionExpired, SessionInvalid) as e:
            logger.debug("Token rejected: %s", e.code)
            return None

    # ------------------------------------------------------------------
    # Touch
    # ------------------------------------------------------------------

    def touch(self, session_id: str, current_page: str | None = None) -> bool | None:
        """Refresh last_activity on the session and mirror it onto the user.

        Returns True if an active, unexpired session was touched and False if
        the session is unknown, revoked or expired. Storage errors are logged
        and return None, since the session's state is then unknown.
        """
        now = now_iso()
        fields: dict = {"last_activity": now}
        if current_page is not None:
            fields["current_page"] = current_page
        try:
            session = self._store.find_session(session_id)
            if session is None or session_status(session) != "active":
                return False
            if not self._store.update_session(session_id, only_active=True, **fields):
                return False
            self._store.update_user(session.user_id, last_activity=now)
        except SQLAlchemyError:
            logger.warning("Activity touch failed for session %s", session_id, exc_info=True)
            return None
        return True

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, session_id: str) -> None:
        """Deactivate a session and clear the user's pointer if it names it.

        Idempotent: an unknown, already revoked or expired session is not an
        error, and logout_at is only stamped on the first call.
        """
        now = now_iso()
        try:
            session = self._store.find_session(session_id)
            if session is None:
                logger.debug("Revoke of unknown session %s ignored", session_id)
                return
            self._store.update_session(session_id, only_active=True, is_active=False, logout_at=now)
            user = self._store.find_user_by_id(session.user_id)
            if user is not None and user.current_session_id in (session_id, None):
                self._store.update_user(
                    user.id,
                    current_session_id=None,
                    status=PresenceStatus.offline.value,
                    last_activity=now,
                )
        except SQLAlchemyError as e:
            logger.error("Could not revoke session %s", session_id, exc_info=True)
            raise StorageUnavailable() from e
        logger.info("Session %s revoked for user_id=%s", session_id, session.user_id)

    def force_logout(self, user_id: int) -> bool:
        """Revoke the user's current session. Returns False if there was none."""
        try:
            user = self._store.find_user_by_id(user_id)
        except SQLAlchemyError as e:
            raise StorageUnavailable() from e
        if user is None or not user.current_session_id:
            return False
        self.revoke(user.current_session_id)
        logger.warning("Forced logout of user_id=%s", user_id)
        return True

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def list_sessions(self, user_id: int, limit: int = 50) -> list[dict]:
        """Session history for user_id, newest first, without access tokens."""
        try:
            sessions = self._store.list_sessions(user_id, limit=limit)
        except SQLAlchemyError as e:
            raise StorageUnavailable() from e
        now = datetime.now(timezone.utc)
        return [
            {
                "id": s.id,
                "created_at": s.created_at,
                "expires_at": s.expires_at,
                "last_activity": s.last_activity,
                "logout_at": s.logout_at,
                "status": session_status(s, now),
                "login_method": s.login_method,
                "mfa_used": s.mfa_used,
                "risk_tier": s.risk_tier,
                "device": s.device,
                "location": s.location,
                "current_page": s.current_page,
            }
            for s in sessions
        ]
