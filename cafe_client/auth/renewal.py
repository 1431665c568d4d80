"""
Single-flight renewal of the access credential.

Only one renewal runs at a time. Callers that need a renewal while one is in
flight are parked as waiters and receive the same outcome as the caller that
started it.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from cafe_shared.exceptions import RenewalError, handle_exception

logger = logging.getLogger(__name__)


class RenewalCoordinator:
    """
    Serializes renewals behind a renewing flag and an ordered waiter list.

    ``renew_fn`` performs one renewal and returns the new access token.
    ``on_failure`` is called exactly once per failed renewal, before any
    waiter is rejected.
    """

    def __init__(
        self,
        renew_fn: Callable[[], Awaitable[str]],
        on_failure: Callable[[RenewalError], None]
    ):
        self._renew_fn = renew_fn
        self._on_failure = on_failure
        self._renewing = False
        self._waiters: List[asyncio.Future] = []
        self._renewal_count = 0

    @property
    def is_renewing(self) -> bool:
        return self._renewing

    @property
    def pending_waiters(self) -> int:
        return len(self._waiters)

    @property
    def renewal_count(self) -> int:
        """Number of renewals started so far."""
        return self._renewal_count

    async def renew(self) -> str:
        """
        Renew the access credential, or wait for the renewal in flight.

        Returns:
            The new access token

        Raises:
            RenewalError: If the renewal failed
        """
        if self._renewing:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            logger.debug(f"Renewal in progress, parked caller ({len(self._waiters)} waiting)")
            return await waiter

        self._renewing = True
        self._renewal_count += 1
        try:
            token = await self._renew_fn()
        except asyncio.CancelledError:
            self._flush(error=RenewalError("Renewal was cancelled"))
            raise
        except Exception as e:
            if isinstance(e, RenewalError):
                error = e
            else:
                structured = handle_exception(e)
                error = RenewalError(
                    f"Session renewal failed: {structured.message}",
                    cause=e,
                    context={'underlying_code': structured.error_code.value}
                )
            logger.error(f"Renewal failed, rejecting {len(self._waiters)} waiting caller(s): {error}")
            try:
                self._on_failure(error)
            finally:
                self._flush(error=error)
            raise error
        else:
            logger.debug(f"Renewal succeeded, releasing {len(self._waiters)} waiting caller(s)")
            self._flush(token=token)
            return token

    def _flush(self, token: Optional[str] = None, error: Optional[Exception] = None) -> None:
        """Resolve or reject every parked waiter and reset the flag."""
        waiters, self._waiters = self._waiters, []
        self._renewing = False

        for waiter in waiters:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(token)
