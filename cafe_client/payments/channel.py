"""
Push channel for payment notifications.

Wraps a Socket.IO client connected to the backend's payment namespace. The
channel subscribes to one order, forwards every payment event to its owner,
and keeps reconnecting with backoff. Connection failures are reported but are
never fatal: the owner keeps polling regardless.
"""

import asyncio
import logging
from typing import Optional, Dict, Any, Callable

import socketio

from cafe_client.payments.events import PAYMENT_EVENTS
from cafe_shared.exceptions import ErrorCode, NetworkError
from cafe_shared.interfaces import IPaymentChannel

logger = logging.getLogger(__name__)


class SocketIOPaymentChannel(IPaymentChannel):
    """
    Socket.IO subscription scoped to a single order.

    The initial connection is retried here with exponential backoff; once
    connected, the Socket.IO client's own reconnection takes over and the
    order is re-subscribed on every reconnect.
    """

    def __init__(
        self,
        url: str,
        namespace: str = '/payment',
        reconnection_attempts: int = 10,
        reconnection_delay: float = 2.0,
        reconnection_delay_max: float = 30.0,
        connect_timeout: float = 20.0,
        headers: Optional[Dict[str, str]] = None
    ):
        self.url = url.rstrip('/')
        self.namespace = namespace
        self.reconnection_attempts = reconnection_attempts
        self.reconnection_delay = reconnection_delay
        self.reconnection_delay_max = reconnection_delay_max
        self.connect_timeout = connect_timeout
        self.headers = headers or {}

        self._order_code: Optional[str] = None
        self._on_event: Optional[Callable[[str, Dict[str, Any]], None]] = None
        self._on_error: Optional[Callable[[Exception], None]] = None
        self._sio: Optional[socketio.AsyncClient] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._connecting = False
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return bool(self._sio is not None and self._sio.connected)

    async def open(
        self,
        order_code: str,
        on_event: Callable[[str, Dict[str, Any]], None],
        on_error: Optional[Callable[[Exception], None]] = None
    ) -> None:
        """
        Start connecting and subscribe to an order's payment events.

        Returns immediately; the connection is established in the background.
        """
        self._order_code = order_code
        self._on_event = on_event
        self._on_error = on_error
        self._closed = False

        self._sio = socketio.AsyncClient(
            reconnection=True,
            reconnection_attempts=self.reconnection_attempts,
            reconnection_delay=self.reconnection_delay,
            reconnection_delay_max=self.reconnection_delay_max,
            logger=False,
            engineio_logger=False
        )
        self._register_handlers(self._sio)

        self._connect_task = asyncio.get_running_loop().create_task(self._connect_with_backoff())

    def _register_handlers(self, sio: socketio.AsyncClient) -> None:
        sio.on('connect', self._handle_connect, namespace=self.namespace)
        sio.on('disconnect', self._handle_disconnect, namespace=self.namespace)
        sio.on('connect_error', self._handle_connect_error, namespace=self.namespace)

        for event_name in PAYMENT_EVENTS:
            sio.on(event_name, self._make_event_handler(event_name), namespace=self.namespace)

    def _make_event_handler(self, event_name: str) -> Callable[..., None]:
        def handler(*args):
            payload = args[0] if args else None
            logger.debug(f"Received {event_name} event: {payload}")
            if self._closed or self._on_event is None:
                return
            self._on_event(event_name, payload)
        return handler

    async def _connect_with_backoff(self) -> None:
        attempt = 0
        while not self._closed:
            try:
                logger.info(f"Connecting to payment channel {self.url}{self.namespace} (attempt {attempt + 1})")
                self._connecting = True
                try:
                    await self._sio.connect(
                        self.url,
                        namespaces=[self.namespace],
                        transports=['websocket', 'polling'],
                        headers=self.headers,
                        wait_timeout=self.connect_timeout
                    )
                finally:
                    self._connecting = False
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._report_error(e)

                attempt += 1
                # 0 attempts means retry forever, as in python-socketio
                if self.reconnection_attempts and attempt >= self.reconnection_attempts:
                    logger.warning(
                        f"Payment channel unavailable after {attempt} attempts, relying on polling"
                    )
                    return

                delay = min(self.reconnection_delay * (2 ** (attempt - 1)), self.reconnection_delay_max)
                logger.info(f"Payment channel reconnect in {delay:.1f} seconds")
                await asyncio.sleep(delay)

    async def _handle_connect(self) -> None:
        logger.info(f"Payment channel connected, subscribing to order {self._order_code}")
        if self._closed or not self._order_code:
            return
        await self._sio.emit('subscribe', {'orderCode': self._order_code}, namespace=self.namespace)

    def _handle_disconnect(self, *args) -> None:
        logger.info(f"Payment channel disconnected {args if args else ''}".rstrip())

    def _handle_connect_error(self, data=None) -> None:
        if self._connecting:
            # Reported once by _connect_with_backoff when connect() raises
            logger.debug(f"Payment channel connection error during connect: {data}")
            return
        self._report_error(NetworkError(
            f"Payment channel connection error: {data}",
            error_code=ErrorCode.NETWORK_CHANNEL_UNAVAILABLE
        ))

    def _report_error(self, error: Exception) -> None:
        logger.warning(f"Payment channel error: {error}")
        if self._on_error is None or self._closed:
            return
        try:
            self._on_error(error)
        except Exception as e:
            logger.error(f"Error in payment channel error callback: {e}")

    async def close(self) -> None:
        """Unsubscribe, disconnect and stop reconnecting."""
        if self._closed:
            return
        self._closed = True

        task = self._connect_task
        self._connect_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

        sio = self._sio
        if sio is None:
            return

        try:
            if sio.connected and self._order_code:
                logger.info(f"Unsubscribing from payment updates for order {self._order_code}")
                await sio.emit('unsubscribe', {'orderCode': self._order_code}, namespace=self.namespace)
            await sio.disconnect()
        except Exception as e:
            logger.warning(f"Error while closing payment channel: {e}")
