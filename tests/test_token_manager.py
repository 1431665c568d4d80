"""
Tests for the token manager: session state, proactive renewal scheduling,
renewal from the stored refresh token, login and logout.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from unittest.mock import AsyncMock, Mock

from cafe_client.auth.token_manager import TokenManager
from cafe_shared.exceptions import (
    APIClientError, AuthenticationError, ConfigurationError, ErrorCode, RenewalError
)


NOW = datetime(2026, 1, 1, 12, 0, 0)


@pytest.fixture
def api():
    api = Mock()
    api.login = AsyncMock(return_value={
        'access_token': 'access-1',
        'refresh_token': 'refresh-1',
        'user': {'id': 'user-1', 'email': 'cashier@cafe.local'}
    })
    api.refresh_session = AsyncMock(return_value={'access_token': 'access-2'})
    return api


@pytest.fixture
def fixed_clock():
    return Mock(return_value=NOW)


@pytest.fixture
def manager(api, credential_store, fixed_clock):
    return TokenManager(api, credential_store, clock=fixed_clock)


class TestSessionState:
    """Test installing and clearing the access credential."""

    def test_margin_must_be_shorter_than_lifetime(self, api, credential_store):
        with pytest.raises(ConfigurationError):
            TokenManager(
                api, credential_store,
                access_token_lifetime=timedelta(minutes=5),
                renewal_margin=timedelta(minutes=5)
            )

    @pytest.mark.asyncio
    async def test_set_credential_sets_expiry_and_schedules(self, manager):
        manager.set_credential("access-1")

        assert manager.get_credential() == "access-1"
        assert manager.get_expires_at() == NOW + timedelta(minutes=15)
        assert manager.get_renewal_delay() == 600.0
        assert manager._session.refresh_task is not None

        manager.set_credential(None)

    @pytest.mark.asyncio
    async def test_clearing_cancels_scheduled_renewal(self, manager):
        manager.set_credential("access-1")
        task = manager._session.refresh_task

        manager.set_credential(None)
        await asyncio.sleep(0)

        assert manager.get_credential() is None
        assert manager.get_expires_at() is None
        assert manager.get_renewal_delay() is None
        assert task.cancelled() or task.done()
        assert manager._session.refresh_task is None

    @pytest.mark.asyncio
    async def test_new_token_replaces_scheduled_renewal(self, manager):
        manager.set_credential("access-1")
        first = manager._session.refresh_task

        manager.set_credential("access-2")
        await asyncio.sleep(0)

        assert first.done()
        assert manager._session.refresh_task is not first
        assert not manager._session.refresh_task.done()

        manager.set_credential(None)

    @pytest.mark.asyncio
    async def test_renewal_delay_is_zero_inside_margin(self, manager, fixed_clock):
        manager.set_credential("access-1")
        fixed_clock.return_value = NOW + timedelta(minutes=12)

        assert manager.get_renewal_delay() == 0.0

        manager.set_credential(None)

    def test_set_credential_without_loop_skips_scheduling(self, manager):
        manager.set_credential("access-1")

        assert manager.get_credential() == "access-1"
        assert manager._session.refresh_task is None

    @pytest.mark.asyncio
    async def test_session_info(self, manager):
        manager.set_credential("access-1")

        info = manager.get_session_info()
        assert info['authenticated'] is True
        assert info['expires_at'] == (NOW + timedelta(minutes=15)).isoformat()
        assert info['renewal_in'] == 600.0
        assert info['renewing'] is False

        manager.set_credential(None)


class TestProactiveRenewal:
    """Test renewal fired by the scheduled timer."""

    @pytest.mark.asyncio
    async def test_timer_renews_before_expiry(self, api, credential_store):
        credential_store.store_refresh_token("user-1", "refresh-1")
        manager = TokenManager(
            api, credential_store,
            access_token_lifetime=timedelta(milliseconds=60),
            renewal_margin=timedelta(milliseconds=50)
        )
        renewed = asyncio.Event()
        refreshed = Mock(side_effect=lambda token: renewed.set())
        manager.add_token_refresh_callback(refreshed)

        manager.set_credential("access-1")
        await asyncio.wait_for(renewed.wait(), timeout=2)

        api.refresh_session.assert_awaited_once_with("refresh-1")
        assert manager.get_credential() == "access-2"
        refreshed.assert_called_once_with("access-2")

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_timer_failure_forces_logout(self, api, credential_store):
        credential_store.store_refresh_token("user-1", "refresh-1")
        api.refresh_session.side_effect = AuthenticationError("refresh token revoked")
        manager = TokenManager(
            api, credential_store,
            access_token_lifetime=timedelta(milliseconds=60),
            renewal_margin=timedelta(milliseconds=50)
        )
        logout = Mock()
        manager.add_logout_callback(logout)

        manager.set_credential("access-1")
        await asyncio.sleep(0.1)

        logout.assert_called_once_with()
        assert manager.get_credential() is None
        assert credential_store.get_refresh_token("user-1") is None
        assert credential_store.get_last_active_user() is None


class TestRenewal:
    """Test renewal from the stored refresh token."""

    @pytest.mark.asyncio
    async def test_renew_installs_new_token(self, manager, api, credential_store):
        credential_store.store_refresh_token("user-1", "refresh-1")

        token = await manager.renewal.renew()

        assert token == "access-2"
        assert manager.get_credential() == "access-2"
        assert manager.get_current_user_id() == "user-1"
        api.refresh_session.assert_awaited_once_with("refresh-1")

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_persisted(self, manager, api, credential_store):
        credential_store.store_refresh_token("user-1", "refresh-1")
        api.refresh_session.return_value = {'access_token': 'access-2', 'refresh_token': 'refresh-2'}

        await manager.renewal.renew()

        assert credential_store.get_refresh_token("user-1") == "refresh-2"

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_missing_refresh_token_logs_out_without_calling_server(self, manager, api, credential_store):
        credential_store.last_active_user = "user-1"
        logout = Mock()
        manager.add_logout_callback(logout)

        with pytest.raises(RenewalError) as exc_info:
            await manager.renewal.renew()

        assert exc_info.value.error_code == ErrorCode.AUTH_NO_REFRESH_TOKEN
        api.refresh_session.assert_not_awaited()
        logout.assert_called_once_with()
        assert credential_store.get_last_active_user() is None

    @pytest.mark.asyncio
    async def test_missing_last_active_user_fails(self, manager, api):
        with pytest.raises(RenewalError) as exc_info:
            await manager.renewal.renew()

        assert exc_info.value.error_code == ErrorCode.AUTH_NO_ACTIVE_USER
        api.refresh_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_response_without_token_fails(self, manager, api, credential_store):
        credential_store.store_refresh_token("user-1", "refresh-1")
        api.refresh_session.return_value = {}

        with pytest.raises(RenewalError) as exc_info:
            await manager.renewal.renew()

        assert exc_info.value.error_code == ErrorCode.API_INVALID_RESPONSE
        assert manager.get_credential() is None

    @pytest.mark.asyncio
    async def test_restore_session(self, manager, credential_store):
        credential_store.store_refresh_token("user-1", "refresh-1")

        assert await manager.restore_session() is True
        assert manager.is_authenticated()

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_restore_session_with_nothing_stored(self, manager, api):
        assert await manager.restore_session() is False
        api.refresh_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_restore_session_with_rejected_refresh(self, manager, api, credential_store):
        credential_store.store_refresh_token("user-1", "refresh-1")
        api.refresh_session.side_effect = AuthenticationError("expired")

        assert await manager.restore_session() is False
        assert credential_store.get_refresh_token("user-1") is None


class TestLoginLogout:
    """Test login and the two logout paths."""

    @pytest.mark.asyncio
    async def test_login_stores_refresh_token_and_installs_access(self, manager, api, credential_store):
        user = await manager.login("cashier@cafe.local", "secret")

        assert user['id'] == 'user-1'
        api.login.assert_awaited_once_with("cashier@cafe.local", "secret")
        assert manager.get_credential() == "access-1"
        assert manager.get_current_user_id() == "user-1"
        assert credential_store.get_refresh_token("user-1") == "refresh-1"
        assert credential_store.get_last_active_user() == "user-1"

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_login_accepts_mongo_style_id(self, manager, api):
        api.login.return_value = {
            'access_token': 'access-1',
            'refresh_token': 'refresh-1',
            'user': {'_id': 'abc123'}
        }

        await manager.login("cashier@cafe.local", "secret")

        assert manager.get_current_user_id() == "abc123"

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_login_with_malformed_response(self, manager, api):
        api.login.return_value = {'access_token': 'access-1'}

        with pytest.raises(AuthenticationError) as exc_info:
            await manager.login("cashier@cafe.local", "secret")

        assert exc_info.value.error_code == ErrorCode.API_INVALID_RESPONSE
        assert manager.get_credential() is None

    @pytest.mark.asyncio
    async def test_login_with_bad_credentials(self, manager, api):
        api.login.side_effect = AuthenticationError("Invalid credentials")

        with pytest.raises(AuthenticationError):
            await manager.login("cashier@cafe.local", "wrong")

        assert not manager.is_authenticated()

    @pytest.mark.asyncio
    async def test_explicit_logout_does_not_broadcast(self, manager, credential_store):
        await manager.login("cashier@cafe.local", "secret")
        logout = Mock()
        manager.add_logout_callback(logout)

        manager.logout()

        logout.assert_not_called()
        assert manager.get_credential() is None
        assert credential_store.get_refresh_token("user-1") is None
        assert credential_store.get_last_active_user() is None

    @pytest.mark.asyncio
    async def test_force_logout_broadcasts(self, manager, credential_store):
        await manager.login("cashier@cafe.local", "secret")
        first, second = Mock(), Mock(side_effect=RuntimeError("listener broke"))
        third = Mock()
        manager.add_logout_callback(first)
        manager.add_logout_callback(second)
        manager.add_logout_callback(third)

        manager.force_logout()

        first.assert_called_once_with()
        third.assert_called_once_with()
        assert not manager.is_authenticated()

    @pytest.mark.asyncio
    async def test_force_logout_broadcasts_once(self, manager):
        await manager.login("cashier@cafe.local", "secret")
        logout = Mock()
        manager.add_logout_callback(logout)

        manager.force_logout()
        manager.force_logout()

        logout.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_renewal_without_session_does_not_broadcast(self, manager, api):
        logout = Mock()
        manager.add_logout_callback(logout)

        with pytest.raises(RenewalError):
            await manager.renewal.renew()

        logout.assert_not_called()
        assert not manager.has_persisted_session()

    def test_remove_logout_callback(self, manager, credential_store):
        credential_store.store_refresh_token("user-1", "refresh-1")
        callback = Mock()
        manager.add_logout_callback(callback)
        manager.remove_logout_callback(callback)

        manager.force_logout()

        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_users_keep_their_records(self, manager, credential_store):
        credential_store.store_refresh_token("user-2", "refresh-2")
        await manager.login("cashier@cafe.local", "secret")

        manager.force_logout()

        assert credential_store.get_refresh_token("user-2") == "refresh-2"
