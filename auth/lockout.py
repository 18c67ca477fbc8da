"""
auth/lockout.py -- Failed-attempt counting and time-boxed account lockout.

Policy:
  Every wrong password adds one to users.failed_login_attempts. When the
  post-increment count reaches the threshold (default 5), locked_until is set
  to now + lockout window (default 30 minutes). While locked_until is in the
  future every login attempt is rejected before the password is checked.

  Once the window elapses the account may try again, but the counter is NOT
  reset -- only a successful login resets it. One more wrong password on an
  account that was already locked re-locks it immediately.

The increment is a single atomic UPDATE at the storage boundary
(CredentialStore.increment_failed_attempts), so concurrent wrong-password
attempts cannot lose increments.

record_failure() and record_success() are best-effort: a storage error is
logged and swallowed so the caller can still report "invalid credentials".
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AccountLocked
from auth.models import User
from auth.store import CredentialStore, parse_iso, to_iso

logger = logging.getLogger("retailauth.lockout")


class LockoutGuard:
    def __init__(self, store: CredentialStore, threshold: int = 5, lockout_minutes: int = 30) -> None:
        self._store = store
        self.threshold = threshold
        self.window = timedelta(minutes=lockout_minutes)

    def is_locked(self, user: User, now: datetime | None = None) -> bool:
        """True if locked_until is set and still in the future."""
        locked_until = parse_iso(user.locked_until)
        if locked_until is None:
            return False
        return locked_until > (now or datetime.now(timezone.utc))

    def check_locked(self, user: User) -> None:
        """Raise AccountLocked if the user is inside a lockout window."""
        if self.is_locked(user):
            logger.info("Login rejected for locked account user_id=%s until %s", user.id, user.locked_until)
            raise AccountLocked(locked_until=user.locked_until)

    def record_failure(self, user_id: int) -> int | None:
        """Count one failed attempt; lock the account when the threshold is reached.

        Returns the new attempt count, or None if the write failed.
        """
        lock_until = to_iso(datetime.now(timezone.utc) + self.window)
        try:
            count = self._store.increment_failed_attempts(user_id, self.threshold, lock_until)
        except SQLAlchemyError:
            logger.warning("Could not record failed login for user_id=%s", user_id, exc_info=True)
            return None
        if count >= self.threshold:
            logger.warning("Account user_id=%s locked after %d failed attempts", user_id, count)
        return count

    def record_success(self, user_id: int) -> None:
        """Reset the failure counter and clear any lock."""
        try:
            self._store.update_user(user_id, failed_login_attempts=0, locked_until=None)
        except SQLAlchemyError:
            logger.warning("Could not reset failed logins for user_id=%s", user_id, exc_info=True)
