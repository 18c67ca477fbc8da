"""
auth/client.py -- Per-client authentication context.

AuthClient holds the authenticated Principal for one client instead of a
process-wide "current user" global. Each client (a browser tab, a kiosk, a
test) gets its own instance and its own ActivityTracker.

Persisted client state is two keyed values in a caller-supplied mapping
(localStorage, a cookie jar, a dict):

    retail_session -- JSON of the session (id, user id, expiry, role, ...)
    retail_token   -- the bearer access token

They are written together on login and cleared together on logout or on
any validation failure.

LoginService is synchronous (bcrypt, database). Every call into it goes
through asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import MutableMapping, Optional

from auth.errors import AuthError, SessionExpired, SessionInvalid
from auth.models import DeviceSignals, MFAChallenge, Principal
from auth.service import LoginService
from auth.tracker import ActivityTracker
from core.config import get_settings

logger = logging.getLogger("retailauth.client")

SESSION_KEY = "retail_session"
TOKEN_KEY = "retail_token"


def serialize_session(principal: Principal) -> str:
    session = principal.session
    return json.dumps(
        {
            "id": session.id,
            "userId": principal.user_id,
            "email": principal.user.email,
            "role": principal.role_name,
            "createdAt": session.created_at,
            "expiresAt": session.expires_at,
            "loginMethod": session.login_method,
            "mfaUsed": session.mfa_used,
            "riskTier": session.risk_tier,
        }
    )


class AuthClient:
    """Authentication state for one client.

    Usage:
        client = AuthClient(service, storage={}, signals=DeviceSignals(user_agent=ua))
        result = await client.login("alice@x.com", "pw")
        if isinstance(result, MFAChallenge):
            await client.verify_mfa(code)
        ...
        await client.logout()
    """

    def __init__(
        self,
        service: LoginService,
        storage: MutableMapping[str, str],
        signals: DeviceSignals | None = None,
        ip: str | None = None,
        activity_interval: float | None = None,
    ) -> None:
        self._service = service
        self._storage = storage
        self.signals = signals
        self.ip = ip
        if activity_interval is None:
            activity_interval = get_settings().activity_interval_seconds
        self.activity_interval = activity_interval
        self.principal: Optional[Principal] = None
        self.pending_challenge: Optional[MFAChallenge] = None
        self._tracker: Optional[ActivityTracker] = None

    @property
    def is_authenticated(self) -> bool:
        return self.principal is not None

    @property
    def token(self) -> str | None:
        return self._storage.get(TOKEN_KEY)

    # ------------------------------------------------------------------
    # Internal state transitions
    # ------------------------------------------------------------------

    async def _activate(self, principal: Principal) -> Principal:
        await self._stop_tracker()
        self.principal = principal
        self.pending_challenge = None
        self._storage[SESSION_KEY] = serialize_session(principal)
        self._storage[TOKEN_KEY] = principal.token
        self._tracker = ActivityTracker(
            self._service.sessions.touch,
            principal.session.id,
            interval_seconds=self.activity_interval,
            on_session_gone=self._on_session_gone,
        )
        self._tracker.start()
        return principal

    def _on_session_gone(self) -> None:
        # Runs inside the tracker task, which ends on its own right after.
        logger.info("Session revoked or expired on the server; clearing client state")
        self._tracker = None
        self.principal = None
        self._storage.pop(SESSION_KEY, None)
        self._storage.pop(TOKEN_KEY, None)

    async def _stop_tracker(self) -> None:
        tracker, self._tracker = self._tracker, None
        if tracker is not None:
            await tracker.stop()

    async def _clear(self) -> None:
        await self._stop_tracker()
        self.principal = None
        self.pending_challenge = None
        self._storage.pop(SESSION_KEY, None)
        self._storage.pop(TOKEN_KEY, None)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> Principal | MFAChallenge:
        """Log in. On a challenge the OTP is issued and the challenge returned."""
        result = await asyncio.to_thread(self._service.login, email, password, self.signals, self.ip)
        if isinstance(result, MFAChallenge):
            await self._clear()
            await asyncio.to_thread(self._service.start_mfa, result)
            self.pending_challenge = result
            return result
        return await self._activate(result)

    async def verify_mfa(self, code: str) -> Principal:
        """Complete the pending challenge with the OTP code."""
        if self.pending_challenge is None:
            raise SessionInvalid("No verification is pending. Please log in again.")
        principal = await asyncio.to_thread(
            self._service.complete_mfa_login,
            self.pending_challenge.user_id,
            code,
            self.signals,
            self.ip,
        )
        return await self._activate(principal)

    async def resend_mfa(self) -> None:
        if self.pending_challenge is None:
            raise SessionInvalid("No verification is pending. Please log in again.")
        await asyncio.to_thread(self._service.resend_mfa, self.pending_challenge.user_id)

    async def restore(self) -> Principal | None:
        """Re-establish the context from persisted state after a reload.

        Any validation failure clears both persisted values before returning None.
        """
        token = self._storage.get(TOKEN_KEY)
        if not token or SESSION_KEY not in self._storage:
            await self._clear()
            return None
        try:
            principal = await asyncio.to_thread(self._service.sessions.validate, token)
        except (SessionExpired, SessionInvalid) as e:
            logger.info("Stored session rejected (%s); clearing client state", e.code)
            await self._clear()
            return None
        return await self._activate(principal)

    async def logout(self) -> None:
        """Revoke the server session and clear local state, in that order.

        Local state is cleared even if revocation fails.
        """
        principal = self.principal
        try:
            if principal is not None:
                await asyncio.to_thread(self._service.logout, principal.session.id)
        except AuthError:
            logger.warning("Server-side revoke failed during logout", exc_info=True)
        finally:
            await self._clear()

    async def close(self) -> None:
        """Stop background work without revoking the session (process teardown)."""
        await self._stop_tracker()
