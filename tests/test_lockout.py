"""Unit tests for auth/lockout.py and the atomic counter in auth/store.py.

Covers:
- increment_failed_attempts() is additive and stamps locked_until at the threshold
- LockoutGuard.check_locked() only rejects while locked_until is in the future
- record_success() resets the counter and the lock
- storage failures in record_failure()/record_success() are swallowed
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import AccountLocked
from auth.lockout import LockoutGuard
from auth.store import parse_iso, to_iso


@pytest.fixture
def guard(store) -> LockoutGuard:
    return LockoutGuard(store, threshold=5, lockout_minutes=30)


class TestAtomicIncrement:
    def test_each_call_adds_one(self, store, make_user):
        user = make_user()
        lock_until = to_iso(datetime.now(timezone.utc) + timedelta(minutes=30))
        counts = [store.increment_failed_attempts(user.id, 5, lock_until) for _ in range(3)]
        assert counts == [1, 2, 3]
        assert store.find_user_by_id(user.id).locked_until is None

    def test_threshold_stamps_locked_until(self, store, make_user):
        user = make_user(failed_login_attempts=4)
        lock_until = to_iso(datetime.now(timezone.utc) + timedelta(minutes=30))
        assert store.increment_failed_attempts(user.id, 5, lock_until) == 5
        assert store.find_user_by_id(user.id).locked_until == lock_until


class TestLockoutGuard:
    def test_unlocked_user_passes(self, guard, make_user):
        guard.check_locked(make_user())

    def test_future_lock_raises(self, guard, make_user):
        until = to_iso(datetime.now(timezone.utc) + timedelta(minutes=10))
        user = make_user(failed_login_attempts=5, locked_until=until)
        with pytest.raises(AccountLocked) as exc_info:
            guard.check_locked(user)
        assert exc_info.value.locked_until == until
        assert exc_info.value.status_code == 423

    def test_elapsed_lock_allows_attempt(self, guard, make_user):
        until = to_iso(datetime.now(timezone.utc) - timedelta(seconds=1))
        user = make_user(failed_login_attempts=5, locked_until=until)
        assert guard.is_locked(user) is False
        guard.check_locked(user)

    def test_fifth_failure_locks_for_thirty_minutes(self, guard, store, make_user):
        user = make_user(email="bob@x.com", failed_login_attempts=4)
        before = datetime.now(timezone.utc)
        assert guard.record_failure(user.id) == 5

        stored = store.find_user_by_id(user.id)
        assert stored.failed_login_attempts == 5
        locked_until = parse_iso(stored.locked_until)
        assert timedelta(minutes=29) < locked_until - before <= timedelta(minutes=31)
        assert guard.is_locked(stored)

    def test_failure_after_elapsed_lock_relocks(self, guard, store, make_user):
        until = to_iso(datetime.now(timezone.utc) - timedelta(minutes=1))
        user = make_user(failed_login_attempts=5, locked_until=until)
        assert guard.record_failure(user.id) == 6
        assert guard.is_locked(store.find_user_by_id(user.id))

    def test_record_success_resets(self, guard, store, make_user):
        until = to_iso(datetime.now(timezone.utc) - timedelta(minutes=1))
        user = make_user(failed_login_attempts=7, locked_until=until)
        guard.record_success(user.id)
        stored = store.find_user_by_id(user.id)
        assert stored.failed_login_attempts == 0
        assert stored.locked_until is None

    def test_storage_errors_are_swallowed(self):
        broken = MagicMock()
        broken.increment_failed_attempts.side_effect = OperationalError("UPDATE", {}, Exception("db down"))
        broken.update_user.side_effect = OperationalError("UPDATE", {}, Exception("db down"))
        guard = LockoutGuard(broken)
        assert guard.record_failure(1) is None
        guard.record_success(1)
