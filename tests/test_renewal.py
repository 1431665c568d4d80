"""
Tests for single-flight session renewal.
"""

import asyncio

import pytest
from unittest.mock import Mock

from cafe_client.auth.renewal import RenewalCoordinator
from cafe_shared.exceptions import ErrorCode, RenewalError


class TestRenewalCoordinator:
    """Test the renewing flag and waiter list."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_renewal(self):
        calls = []
        release = asyncio.Event()

        async def renew_fn():
            calls.append(1)
            await release.wait()
            return "new-token"

        coordinator = RenewalCoordinator(renew_fn, Mock())

        tasks = [asyncio.ensure_future(coordinator.renew()) for _ in range(5)]
        await asyncio.sleep(0)

        assert coordinator.is_renewing
        assert coordinator.pending_waiters == 4

        release.set()
        results = await asyncio.gather(*tasks)

        assert results == ["new-token"] * 5
        assert len(calls) == 1
        assert coordinator.renewal_count == 1
        assert not coordinator.is_renewing
        assert coordinator.pending_waiters == 0

    @pytest.mark.asyncio
    async def test_failure_rejects_all_and_reports_once(self):
        release = asyncio.Event()

        async def renew_fn():
            await release.wait()
            raise RenewalError("refresh rejected")

        on_failure = Mock()
        coordinator = RenewalCoordinator(renew_fn, on_failure)

        tasks = [asyncio.ensure_future(coordinator.renew()) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, RenewalError) for r in results)
        assert len({id(r) for r in results}) == 1
        on_failure.assert_called_once()
        assert not coordinator.is_renewing

    @pytest.mark.asyncio
    async def test_foreign_exception_is_wrapped(self):
        async def renew_fn():
            raise ConnectionError("connection refused")

        on_failure = Mock()
        coordinator = RenewalCoordinator(renew_fn, on_failure)

        with pytest.raises(RenewalError) as exc_info:
            await coordinator.renew()

        assert exc_info.value.error_code == ErrorCode.AUTH_RENEWAL_FAILED
        assert exc_info.value.context['underlying_code'] == ErrorCode.NETWORK_CONNECTION_FAILED.value
        on_failure.assert_called_once_with(exc_info.value)

    @pytest.mark.asyncio
    async def test_next_renewal_starts_fresh(self):
        tokens = iter(["token-1", "token-2"])

        async def renew_fn():
            return next(tokens)

        coordinator = RenewalCoordinator(renew_fn, Mock())

        assert await coordinator.renew() == "token-1"
        assert await coordinator.renew() == "token-2"
        assert coordinator.renewal_count == 2

    @pytest.mark.asyncio
    async def test_cancelled_renewal_releases_waiters(self):
        async def renew_fn():
            await asyncio.sleep(10)
            return "never"

        coordinator = RenewalCoordinator(renew_fn, Mock())

        leader = asyncio.ensure_future(coordinator.renew())
        await asyncio.sleep(0)
        waiter = asyncio.ensure_future(coordinator.renew())
        await asyncio.sleep(0)

        leader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leader
        with pytest.raises(RenewalError, match="cancelled"):
            await waiter

        assert not coordinator.is_renewing
