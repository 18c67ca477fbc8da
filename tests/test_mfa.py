"""Unit tests for auth/mfa.py -- MFA policy gate and OTP lifecycle.

Covers:
- policy: master switch off, role not listed, role listed, role name normalization
- verified devices skip the challenge
- issue / verify / resend, single use, expiry and the attempt cap
- notifier failures do not fail issuance
- policy read failures fail closed with StorageUnavailable
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from auth.device import DeviceRiskProfiler
from auth.errors import InvalidOTP, StorageUnavailable
from auth.mfa import MFAGate
from auth.models import DeviceSignals, MFAChallenge
from auth.store import to_iso
from auth.tokens import hash_otp

UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"


@pytest.fixture
def gate(store, notifier) -> MFAGate:
    return MFAGate(store, notifier=notifier, otp_length=6, otp_expiry_minutes=5, max_attempts=3)


@pytest.fixture
def device():
    return DeviceRiskProfiler(geo_enabled=False).describe_device(DeviceSignals(user_agent=UA))


class TestPolicy:
    def test_switch_off_means_no_mfa(self, store, gate):
        store.update_mfa_policy(require_mfa=False, mfa_roles=["cashier"])
        assert gate.is_required("cashier") is False

    def test_role_not_listed(self, store, gate):
        store.update_mfa_policy(require_mfa=True, mfa_roles=["super-admin"])
        assert gate.is_required("cashier") is False

    def test_role_listed(self, store, gate):
        store.update_mfa_policy(require_mfa=True, mfa_roles=["super-admin"])
        assert gate.is_required("super-admin") is True

    def test_role_names_are_normalized(self, store, gate):
        store.update_mfa_policy(require_mfa=True, mfa_roles=["Super Admin"])
        assert gate.is_required("super-admin") is True

    def test_policy_read_failure_fails_closed(self):
        broken = MagicMock()
        broken.get_mfa_policy.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        with pytest.raises(StorageUnavailable):
            MFAGate(broken).is_required("super-admin")


class TestEvaluate:
    def test_challenge_for_listed_role_on_new_device(self, store, gate, make_user, device):
        store.update_mfa_policy(require_mfa=True, mfa_roles=["super-admin"])
        user = make_user(role="super-admin")
        challenge = gate.evaluate(user, "super-admin", device)
        assert isinstance(challenge, MFAChallenge)
        assert challenge.user_id == user.id
        assert challenge.email == user.email
        assert challenge.role == "super-admin"
        assert challenge.to_dict()["requiresMFA"] is True

    def test_verified_device_skips_challenge(self, store, gate, make_user, notifier, device):
        store.update_mfa_policy(require_mfa=True, mfa_roles=["super-admin"])
        user = make_user(role="super-admin")
        gate.issue_code(user)
        gate.verify_code(user.id, notifier.last_code, device)
        assert gate.evaluate(user, "super-admin", device) is None

    def test_policy_off_returns_none(self, gate, make_user, device):
        assert gate.evaluate(make_user(), "cashier", device) is None


class TestOTPLifecycle:
    def test_issue_sends_six_digit_code(self, gate, make_user, notifier):
        user = make_user()
        gate.issue_code(user)
        email, code = notifier.sent[-1]
        assert email == user.email
        assert len(code) == 6 and code.isdigit()

    def test_correct_code_verifies_and_records_device(self, store, gate, make_user, notifier, device):
        user = make_user()
        gate.issue_code(user)
        gate.verify_code(user.id, notifier.last_code, device)
        assert store.is_device_verified(user.id, device.fingerprint)
        assert not store.is_device_verified(user.id, "0" * 64)

    def test_code_is_single_use(self, gate, make_user, notifier, device):
        user = make_user()
        gate.issue_code(user)
        code = notifier.last_code
        gate.verify_code(user.id, code, device)
        with pytest.raises(InvalidOTP):
            gate.verify_code(user.id, code, device)

    def test_wrong_code_rejected(self, gate, make_user, notifier, device):
        user = make_user()
        gate.issue_code(user)
        wrong = "000000" if notifier.last_code != "000000" else "111111"
        with pytest.raises(InvalidOTP):
            gate.verify_code(user.id, wrong, device)

    @pytest.mark.parametrize("malformed", ["", "12345", "abcdef", "1234567"])
    def test_malformed_code_rejected(self, gate, make_user, device, malformed):
        user = make_user()
        gate.issue_code(user)
        with pytest.raises(InvalidOTP):
            gate.verify_code(user.id, malformed, device)

    def test_expired_code_rejected(self, store, gate, make_user, device):
        user = make_user()
        past = to_iso(datetime.now(timezone.utc) - timedelta(minutes=1))
        store.insert_otp(user.id, hash_otp(user.id, "424242"), past)
        with pytest.raises(InvalidOTP):
            gate.verify_code(user.id, "424242", device)

    def test_attempt_cap_burns_the_code(self, gate, make_user, notifier, device):
        user = make_user()
        gate.issue_code(user)
        code = notifier.last_code
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(3):
            with pytest.raises(InvalidOTP):
                gate.verify_code(user.id, wrong, device)
        with pytest.raises(InvalidOTP):
            gate.verify_code(user.id, code, device)

    def test_resend_invalidates_previous_code(self, gate, make_user, notifier, device):
        user = make_user()
        gate.issue_code(user)
        first = notifier.last_code
        gate.resend(user)
        second = notifier.last_code
        assert len(notifier.sent) == 2
        if first != second:
            with pytest.raises(InvalidOTP):
                gate.verify_code(user.id, first, device)
        gate.verify_code(user.id, second, device)

    def test_codes_are_bound_to_user(self, gate, make_user, notifier, device):
        alice = make_user()
        bob = make_user(email="bob@x.com")
        gate.issue_code(alice)
        with pytest.raises(InvalidOTP):
            gate.verify_code(bob.id, notifier.last_code, device)

    def test_notifier_failure_keeps_code_valid(self, store, make_user, device):
        notifier = MagicMock()
        notifier.send.side_effect = RuntimeError("smtp down")
        gate = MFAGate(store, notifier=notifier)
        user = make_user()
        gate.issue_code(user)
        code = notifier.send.call_args.args[2]
        gate.verify_code(user.id, code, device)
