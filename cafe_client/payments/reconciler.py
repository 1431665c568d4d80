"""
Payment Confirmation Reconciler for the Cafe POS client.

A payment watch learns, exactly once, whether an order's payment succeeded or
failed. Two producers run side by side, a push channel subscription and a
fixed-interval status poll, and feed one guarded sink: the first terminal
outcome is delivered, everything after it is discarded.
"""

import asyncio
import logging
from typing import Optional, Dict, Any, Callable, List

from cafe_client.payments.events import decode_channel_event, decode_status
from cafe_shared.exceptions import (
    APIClientError, AuthenticationError, ErrorCode, PaymentWatchError
)
from cafe_shared.interfaces import IPaymentChannel, IPaymentStatusAPI
from cafe_shared.logging_config import AuditLogger
from cafe_shared.models import OutcomeSource, PaymentResult, WatchState

logger = logging.getLogger(__name__)


ResultCallback = Callable[[PaymentResult], None]
ErrorCallback = Callable[[Exception], None]


class PaymentWatch:
    """
    Reconciliation session for a single order.

    States: IDLE -> WATCHING -> RESOLVED, or WATCHING -> CLOSED on cancel.
    ``delivered`` flips to True exactly once; both producers are torn down
    in the same step.
    """

    def __init__(
        self,
        order_code: str,
        status_api: IPaymentStatusAPI,
        channel: Optional[IPaymentChannel] = None,
        on_success: Optional[ResultCallback] = None,
        on_failure: Optional[ResultCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        poll_interval: float = 3.0,
        max_poll_failures: Optional[int] = None
    ):
        if not order_code:
            raise PaymentWatchError(
                "A payment watch needs an order reference",
                error_code=ErrorCode.PAYMENT_INVALID_ORDER
            )
        if poll_interval <= 0:
            raise ValueError("Poll interval must be positive")

        self.order_code = order_code
        self.status_api = status_api
        self.channel = channel
        self.poll_interval = poll_interval
        self.max_poll_failures = max_poll_failures

        self._on_success = on_success
        self._on_failure = on_failure
        self._on_error = on_error

        self.state = WatchState.IDLE
        self.delivered = False
        self.result: Optional[PaymentResult] = None

        self._poll_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._consecutive_poll_failures = 0
        self._session_error: Optional[AuthenticationError] = None
        self._finished = asyncio.Event()
        self._finish_callbacks: List[Callable[['PaymentWatch'], None]] = []

        self._audit_logger = AuditLogger()

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def is_channel_connected(self) -> bool:
        return self.channel is not None and self.channel.is_connected

    @property
    def is_active(self) -> bool:
        return self.state == WatchState.WATCHING

    def add_finish_callback(self, callback: Callable[['PaymentWatch'], None]) -> None:
        """Register a callback run once the watch is resolved or closed."""
        self._finish_callbacks.append(callback)

    async def start(self) -> None:
        """Start polling and open the push channel."""
        if self.state != WatchState.IDLE:
            raise PaymentWatchError(
                f"Payment watch for order {self.order_code} was already started",
                error_code=ErrorCode.PAYMENT_WATCH_CLOSED,
                order_code=self.order_code
            )

        self.state = WatchState.WATCHING
        logger.info(f"Watching payment for order {self.order_code}")

        # Polling runs even while the channel is connected
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

        if self.channel is not None:
            try:
                await self.channel.open(self.order_code, self._handle_channel_event, self._handle_channel_error)
            except Exception as e:
                self._handle_channel_error(e)

    # Producers

    def _handle_channel_event(self, event_name: str, payload: Dict[str, Any]) -> None:
        result = decode_channel_event(event_name, payload)
        if result is None:
            return
        if result.order_code != self.order_code:
            logger.debug(f"Ignoring {event_name} for order {result.order_code} (watching {self.order_code})")
            return
        self._deliver(result)

    def _handle_channel_error(self, error: Exception) -> None:
        logger.warning(f"Payment channel problem for order {self.order_code}, polling continues: {error}")
        self._notify_error(error)

    async def _poll_loop(self) -> None:
        try:
            while self.state == WatchState.WATCHING:
                await asyncio.sleep(self.poll_interval)
                if self.state != WatchState.WATCHING or self._session_error is not None:
                    break

                await self._check(OutcomeSource.POLL)
                if self._session_error is not None:
                    break

                if (self.max_poll_failures is not None
                        and self._consecutive_poll_failures >= self.max_poll_failures):
                    error = PaymentWatchError(
                        f"Polling stopped after {self._consecutive_poll_failures} consecutive failures",
                        error_code=ErrorCode.PAYMENT_POLL_FAILED,
                        order_code=self.order_code
                    )
                    logger.error(error.message)
                    self._notify_error(error)
                    break
        except asyncio.CancelledError:
            logger.debug(f"Polling stopped for order {self.order_code}")

    async def _check(self, source: OutcomeSource) -> bool:
        try:
            status = await self.status_api.check_payment_status(self.order_code)
        except AuthenticationError as e:
            # No session to poll with; only the push channel is left
            if self._session_error is None:
                self._session_error = e
                logger.error(f"Polling stopped for order {self.order_code}, session lost: {e}")
                self._notify_error(e)
            return False
        except APIClientError as e:
            self._consecutive_poll_failures += 1
            logger.warning(f"Payment status lookup failed for order {self.order_code}: {e}")
            return False

        self._consecutive_poll_failures = 0
        logger.debug(f"Payment status for order {self.order_code}: {status}")

        if status.order_code and status.order_code != self.order_code:
            logger.warning(f"Status lookup for {self.order_code} answered for order {status.order_code}")
            return False

        result = decode_status(status, source)
        if result is None:
            return False
        result.order_code = self.order_code
        return self._deliver(result)

    async def check_now(self) -> bool:
        """
        Look up the payment status once, outside the poll cadence.

        Returns:
            True if this check delivered the terminal outcome; False if the
            payment is still pending, the lookup failed, or the watch is
            already resolved or closed
        """
        if self.state != WatchState.WATCHING:
            logger.debug(f"Manual check for order {self.order_code} ignored ({self.state.value})")
            return False
        return await self._check(OutcomeSource.MANUAL)

    # Sink

    def _deliver(self, result: PaymentResult) -> bool:
        # No await between the check and the set
        if self.delivered or self.state != WatchState.WATCHING:
            logger.debug(f"Discarding {result.outcome.value} for order {self.order_code} from {result.source.value}")
            return False

        self.delivered = True
        self.state = WatchState.RESOLVED
        self.result = result
        self._teardown()

        logger.info(f"Payment {result.outcome.value} for order {self.order_code} (via {result.source.value})")
        self._audit_logger.log_payment_outcome(self.order_code, result.outcome.value, result.source.value)

        callback = self._on_success if result.succeeded else self._on_failure
        if callback is not None:
            try:
                callback(result)
            except Exception as e:
                logger.error(f"Error in payment {result.outcome.value} callback: {e}")

        self._finish()
        return True

    # Teardown

    def cancel(self) -> None:
        """Stop watching without delivering any outcome."""
        if self.state in (WatchState.RESOLVED, WatchState.CLOSED):
            return

        logger.info(f"Payment watch for order {self.order_code} cancelled")
        self.state = WatchState.CLOSED
        self._teardown()
        self._finish()

    async def stop(self) -> None:
        """Cancel the watch and wait until the channel is closed."""
        self.cancel()
        await self.wait_closed()

    async def wait_closed(self) -> None:
        """Wait until the poll task has stopped and the channel is closed."""
        tasks = [t for t in (self._poll_task, self._close_task)
                 if t is not None and t is not asyncio.current_task()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_for_result(self, timeout: Optional[float] = None) -> Optional[PaymentResult]:
        """
        Wait until the watch is resolved or closed.

        Returns:
            The delivered result, or None if the watch was cancelled

        Raises:
            asyncio.TimeoutError: If the watch is still open after ``timeout``
        """
        await asyncio.wait_for(self._finished.wait(), timeout)
        return self.result

    def _teardown(self) -> None:
        poll_task = self._poll_task
        if poll_task and not poll_task.done() and poll_task is not asyncio.current_task():
            poll_task.cancel()

        if self.channel is not None and self._close_task is None:
            self._close_task = asyncio.get_running_loop().create_task(self.channel.close())

    def _finish(self) -> None:
        self._finished.set()
        for callback in list(self._finish_callbacks):
            try:
                callback(self)
            except Exception as e:
                logger.error(f"Error in payment watch finish callback: {e}")

    def _notify_error(self, error: Exception) -> None:
        if self._on_error is None or self.state != WatchState.WATCHING:
            return
        try:
            self._on_error(error)
        except Exception as e:
            logger.error(f"Error in payment error callback: {e}")


class PaymentReconciler:
    """
    Starts and tracks payment watches.

    One watch exists per order; watching an order again replaces the
    previous watch for it.
    """

    def __init__(
        self,
        status_api: IPaymentStatusAPI,
        channel_factory: Optional[Callable[[], IPaymentChannel]] = None,
        poll_interval: float = 3.0,
        max_poll_failures: Optional[int] = None
    ):
        self.status_api = status_api
        self.channel_factory = channel_factory
        self.poll_interval = poll_interval
        self.max_poll_failures = max_poll_failures

        self._watches: Dict[str, PaymentWatch] = {}

    async def watch(
        self,
        order_code: str,
        on_success: Optional[ResultCallback] = None,
        on_failure: Optional[ResultCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        poll_interval: Optional[float] = None
    ) -> PaymentWatch:
        """
        Start watching an order's payment.

        Args:
            order_code: Order reference
            on_success: Called once with the result if the payment succeeds
            on_failure: Called once with the result if it fails or is cancelled
            on_error: Called with non-fatal channel or polling errors
            poll_interval: Seconds between status lookups

        Returns:
            The started watch
        """
        previous = self._watches.get(order_code)
        if previous is not None:
            logger.info(f"Replacing existing payment watch for order {order_code}")
            previous.cancel()

        watch = PaymentWatch(
            order_code=order_code,
            status_api=self.status_api,
            channel=self.channel_factory() if self.channel_factory else None,
            on_success=on_success,
            on_failure=on_failure,
            on_error=on_error,
            poll_interval=poll_interval or self.poll_interval,
            max_poll_failures=self.max_poll_failures
        )
        watch.add_finish_callback(self._forget)
        self._watches[order_code] = watch

        await watch.start()
        return watch

    def _forget(self, watch: PaymentWatch) -> None:
        if self._watches.get(watch.order_code) is watch:
            del self._watches[watch.order_code]

    def get_watch(self, order_code: str) -> Optional[PaymentWatch]:
        return self._watches.get(order_code)

    def active_watches(self) -> List[PaymentWatch]:
        return list(self._watches.values())

    async def check_now(self, order_code: str) -> bool:
        """Run a manual status check on the watch for an order, if any."""
        watch = self._watches.get(order_code)
        if watch is None:
            return False
        return await watch.check_now()

    async def cancel_all(self) -> None:
        """Cancel every open watch and wait for their channels to close."""
        watches = list(self._watches.values())
        for watch in watches:
            watch.cancel()
        for watch in watches:
            await watch.wait_closed()
