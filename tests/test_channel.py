"""
Tests for the Socket.IO payment channel, with the Socket.IO client mocked.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, Mock, patch

from cafe_client.payments.channel import SocketIOPaymentChannel
from cafe_client.payments.events import PAYMENT_EVENTS
from cafe_shared.exceptions import ErrorCode, NetworkError


@pytest.fixture
def sio():
    sio = MagicMock()
    sio.connected = False
    sio.connect = AsyncMock()
    sio.emit = AsyncMock()
    sio.disconnect = AsyncMock()
    return sio


@pytest.fixture
def channel():
    return SocketIOPaymentChannel(
        'http://localhost:3000/',
        reconnection_attempts=3,
        reconnection_delay=0.01
    )


def handlers_of(sio):
    return {c.args[0]: c.args[1] for c in sio.on.call_args_list}


class TestSocketIOPaymentChannel:
    """Test subscription, event forwarding and teardown."""

    @pytest.mark.asyncio
    async def test_open_registers_handlers_and_connects(self, channel, sio):
        with patch('cafe_client.payments.channel.socketio.AsyncClient', return_value=sio) as client_cls:
            await channel.open('ORD-1', Mock())
            await channel._connect_task

        client_cls.assert_called_once()
        assert client_cls.call_args.kwargs['reconnection'] is True

        handlers = handlers_of(sio)
        assert {'connect', 'disconnect', 'connect_error'} <= set(handlers)
        assert PAYMENT_EVENTS <= set(handlers)
        assert all(c.kwargs['namespace'] == '/payment' for c in sio.on.call_args_list)

        sio.connect.assert_awaited_once()
        assert sio.connect.call_args.args[0] == 'http://localhost:3000'
        assert sio.connect.call_args.kwargs['namespaces'] == ['/payment']

    @pytest.mark.asyncio
    async def test_subscribes_on_connect(self, channel, sio):
        with patch('cafe_client.payments.channel.socketio.AsyncClient', return_value=sio):
            await channel.open('ORD-1', Mock())
            await channel._connect_task

        await handlers_of(sio)['connect']()

        sio.emit.assert_awaited_once_with('subscribe', {'orderCode': 'ORD-1'}, namespace='/payment')

    @pytest.mark.asyncio
    async def test_forwards_payment_events(self, channel, sio):
        on_event = Mock()
        with patch('cafe_client.payments.channel.socketio.AsyncClient', return_value=sio):
            await channel.open('ORD-1', on_event)
            await channel._connect_task

        handlers_of(sio)['payment_success']({'orderCode': 'ORD-1'})

        on_event.assert_called_once_with('payment_success', {'orderCode': 'ORD-1'})

    @pytest.mark.asyncio
    async def test_close_unsubscribes_and_disconnects(self, channel, sio):
        on_event = Mock()
        with patch('cafe_client.payments.channel.socketio.AsyncClient', return_value=sio):
            await channel.open('ORD-1', on_event)
            await channel._connect_task
        sio.connected = True

        await channel.close()
        await channel.close()

        sio.emit.assert_awaited_once_with('unsubscribe', {'orderCode': 'ORD-1'}, namespace='/payment')
        sio.disconnect.assert_awaited_once()

        handlers_of(sio)['paymentSuccess']({'orderCode': 'ORD-1'})
        on_event.assert_not_called()

    @pytest.mark.asyncio
    async def test_connect_failure_is_retried(self, channel, sio):
        sio.connect.side_effect = [ConnectionError("refused"), None]
        on_error = Mock()

        with patch('cafe_client.payments.channel.socketio.AsyncClient', return_value=sio):
            await channel.open('ORD-1', Mock(), on_error)
            await asyncio.wait_for(channel._connect_task, timeout=1)

        assert sio.connect.await_count == 2
        on_error.assert_called_once()

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, channel, sio):
        sio.connect.side_effect = ConnectionError("refused")
        on_error = Mock()

        with patch('cafe_client.payments.channel.socketio.AsyncClient', return_value=sio):
            await channel.open('ORD-1', Mock(), on_error)
            await asyncio.wait_for(channel._connect_task, timeout=1)

        assert sio.connect.await_count == 3
        assert on_error.call_count == 3

    @pytest.mark.asyncio
    async def test_close_stops_reconnecting(self, sio):
        channel = SocketIOPaymentChannel('http://localhost:3000', reconnection_delay=10)
        sio.connect.side_effect = ConnectionError("refused")

        with patch('cafe_client.payments.channel.socketio.AsyncClient', return_value=sio):
            await channel.open('ORD-1', Mock())
            await asyncio.sleep(0.01)
            task = channel._connect_task

        await channel.close()
        await asyncio.gather(task, return_exceptions=True)

        assert task.done()
        assert sio.connect.await_count == 1

    @pytest.mark.asyncio
    async def test_connect_error_reported(self, channel, sio):
        on_error = Mock()
        with patch('cafe_client.payments.channel.socketio.AsyncClient', return_value=sio):
            await channel.open('ORD-1', Mock(), on_error)
            await channel._connect_task

        handlers_of(sio)['connect_error']({'message': 'unauthorized'})

        [error] = on_error.call_args.args
        assert isinstance(error, NetworkError)
        assert error.error_code == ErrorCode.NETWORK_CHANNEL_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_failed_connect_reported_once(self, channel, sio):
        on_error = Mock()
        attempts = []

        async def connect(*args, **kwargs):
            attempts.append(args)
            if len(attempts) == 1:
                handlers_of(sio)['connect_error']({'message': 'refused'})
                raise ConnectionError("refused")

        sio.connect.side_effect = connect

        with patch('cafe_client.payments.channel.socketio.AsyncClient', return_value=sio):
            await channel.open('ORD-1', Mock(), on_error)
            await asyncio.wait_for(channel._connect_task, timeout=1)

        assert len(attempts) == 2
        on_error.assert_called_once()

    @pytest.mark.asyncio
    async def test_zero_attempts_retries_until_connected(self, sio):
        channel = SocketIOPaymentChannel(
            'http://localhost:3000',
            reconnection_attempts=0,
            reconnection_delay=0.001,
            reconnection_delay_max=0.001
        )
        sio.connect.side_effect = [ConnectionError("refused")] * 5 + [None]

        with patch('cafe_client.payments.channel.socketio.AsyncClient', return_value=sio):
            await channel.open('ORD-1', Mock())
            await asyncio.wait_for(channel._connect_task, timeout=1)

        assert sio.connect.await_count == 6
