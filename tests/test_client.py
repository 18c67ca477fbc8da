"""Unit tests for auth/client.py -- per-client authentication context.

AuthClient runs LoginService calls in worker threads, so these tests use the
file-backed store fixtures; a plain :memory: database is per-connection and
would look empty from the worker threads.
"""

import asyncio
import json
from unittest.mock import MagicMock, patch

import pytest

from auth.client import SESSION_KEY, TOKEN_KEY, AuthClient
from auth.errors import InvalidCredentials, InvalidOTP, SessionInvalid
from auth.models import DeviceSignals, MFAChallenge, Principal

UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"
PASSWORD = "counter-top-till-42"


def _client(service, storage=None):
    return AuthClient(service, storage if storage is not None else {}, signals=DeviceSignals(user_agent=UA))


def test_login_persists_both_values(file_service, make_file_user):
    make_file_user(password=PASSWORD)
    storage: dict = {}

    async def scenario():
        client = _client(file_service, storage)
        principal = await client.login("alice@x.com", PASSWORD)
        assert client.is_authenticated
        assert client._tracker.running
        await client.close()
        return principal

    principal = asyncio.run(scenario())
    assert isinstance(principal, Principal)
    assert storage[TOKEN_KEY] == principal.token
    saved = json.loads(storage[SESSION_KEY])
    assert saved["id"] == principal.session.id
    assert saved["role"] == "cashier"
    assert saved["loginMethod"] == "password"


def test_failed_login_leaves_state_untouched(file_service, make_file_user):
    make_file_user(password=PASSWORD)
    storage: dict = {}

    async def scenario():
        client = _client(file_service, storage)
        with pytest.raises(InvalidCredentials):
            await client.login("alice@x.com", "wrong-password")
        assert not client.is_authenticated

    asyncio.run(scenario())
    assert storage == {}


def test_restore_after_reload(file_service, make_file_user):
    make_file_user(password=PASSWORD)
    storage: dict = {}

    async def scenario():
        first = _client(file_service, storage)
        principal = await first.login("alice@x.com", PASSWORD)
        await first.close()

        second = _client(file_service, storage)
        restored = await second.restore()
        await second.close()
        return principal, restored

    principal, restored = asyncio.run(scenario())
    assert restored is not None
    assert restored.session.id == principal.session.id


def test_restore_with_revoked_session_clears_state(file_service, make_file_user):
    user = make_file_user(password=PASSWORD)
    storage: dict = {}

    async def scenario():
        client = _client(file_service, storage)
        await client.login("alice@x.com", PASSWORD)
        await client.close()
        file_service.sessions.force_logout(user.id)
        return await _client(file_service, storage).restore()

    assert asyncio.run(scenario()) is None
    assert SESSION_KEY not in storage
    assert TOKEN_KEY not in storage


def test_restore_with_garbage_token_clears_state(file_service):
    storage = {SESSION_KEY: "{}", TOKEN_KEY: "not-a-jwt"}
    assert asyncio.run(_client(file_service, storage).restore()) is None
    assert storage == {}


def test_logout_revokes_and_clears(file_service, file_store, make_file_user):
    make_file_user(password=PASSWORD)
    storage: dict = {}

    async def scenario():
        client = _client(file_service, storage)
        principal = await client.login("alice@x.com", PASSWORD)
        await client.logout()
        await client.logout()
        assert client._tracker is None
        return principal

    principal = asyncio.run(scenario())
    assert storage == {}
    assert file_store.find_session(principal.session.id).is_active is False


def test_mfa_flow(file_service, file_store, make_file_user, notifier):
    file_store.update_mfa_policy(require_mfa=True, mfa_roles=["super-admin"])
    make_file_user("admin@x.com", password=PASSWORD, role="super-admin")
    storage: dict = {}

    async def scenario():
        client = _client(file_service, storage)
        challenge = await client.login("admin@x.com", PASSWORD)
        assert isinstance(challenge, MFAChallenge)
        assert not client.is_authenticated
        assert storage == {}

        wrong = "000000" if notifier.last_code != "000000" else "111111"
        with pytest.raises(InvalidOTP):
            await client.verify_mfa(wrong)

        principal = await client.verify_mfa(notifier.last_code)
        assert client.pending_challenge is None
        await client.close()
        return principal

    principal = asyncio.run(scenario())
    assert principal.mfa_used is True
    assert principal.session.login_method == "mfa"
    assert storage[TOKEN_KEY] == principal.token


def test_verify_without_challenge_is_rejected(file_service):
    async def scenario():
        with pytest.raises(SessionInvalid):
            await _client(file_service).verify_mfa("123456")

    asyncio.run(scenario())


def test_activity_interval_defaults_to_setting(file_service, make_file_user):
    make_file_user(password=PASSWORD)

    async def scenario():
        client = _client(file_service)
        await client.login("alice@x.com", PASSWORD)
        interval = client._tracker.interval
        await client.close()
        return client.activity_interval, interval

    with patch("auth.client.get_settings", return_value=MagicMock(activity_interval_seconds=42)):
        configured, tracker_interval = asyncio.run(scenario())
    assert configured == 42
    assert tracker_interval == 42


def test_explicit_activity_interval_wins(file_service):
    assert AuthClient(file_service, {}, activity_interval=7).activity_interval == 7


def test_server_side_revoke_clears_client_state(file_service, make_file_user):
    user = make_file_user(password=PASSWORD)
    storage: dict = {}

    async def scenario():
        client = AuthClient(file_service, storage, signals=DeviceSignals(user_agent=UA), activity_interval=0.02)
        await client.login("alice@x.com", PASSWORD)
        await asyncio.to_thread(file_service.sessions.force_logout, user.id)
        await asyncio.sleep(0.2)
        assert not client.is_authenticated
        assert client._tracker is None
        await client.logout()

    asyncio.run(scenario())
    assert storage == {}
