"""
Token Manager for the Cafe POS client.

This module owns the in-memory session: it installs access tokens, schedules
proactive renewal shortly before the assumed expiry, renews the session from
the persisted refresh token, and broadcasts a logout signal when the session
cannot be recovered.
"""

import logging
import asyncio
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Callable, List

from cafe_client.auth.renewal import RenewalCoordinator
from cafe_client.auth.token_storage import SecureTokenStorage
from cafe_shared.exceptions import (
    AuthenticationError, ConfigurationError, ErrorCode, RenewalError
)
from cafe_shared.interfaces import IAuthAPI, ICredentialStore
from cafe_shared.logging_config import AuditLogger
from cafe_shared.models import Session

logger = logging.getLogger(__name__)


class TokenManager:
    """
    Manages the access credential with proactive renewal.

    The access token lives only in memory. Its expiry is not read from the
    token: it is assumed to be ``access_token_lifetime`` after installation,
    and renewal is scheduled ``renewal_margin`` before that.
    """

    def __init__(
        self,
        api_client: IAuthAPI,
        token_storage: Optional[ICredentialStore] = None,
        access_token_lifetime: timedelta = timedelta(minutes=15),
        renewal_margin: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = datetime.now
    ):
        if renewal_margin >= access_token_lifetime:
            raise ConfigurationError(
                "Renewal margin must be shorter than the access token lifetime",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key='auth.renewal_margin_minutes'
            )

        self.api_client = api_client
        self.token_storage = token_storage or SecureTokenStorage()
        self.access_token_lifetime = access_token_lifetime
        self.renewal_margin = renewal_margin
        self._clock = clock

        self._session = Session()
        self._current_user_id: Optional[str] = None

        self.renewal = RenewalCoordinator(self._renew_once, self._handle_renewal_failure)

        self._logout_callbacks: List[Callable[[], None]] = []
        self._token_refresh_callbacks: List[Callable[[str], None]] = []

        self._audit_logger = AuditLogger()

        logger.info("Token manager initialized")

    # Observers

    def add_logout_callback(self, callback: Callable[[], None]) -> None:
        """
        Subscribe to the logout signal.

        Args:
            callback: Function called with no arguments after a forced logout
        """
        self._logout_callbacks.append(callback)

    def remove_logout_callback(self, callback: Callable[[], None]) -> None:
        """Unsubscribe from the logout signal."""
        if callback in self._logout_callbacks:
            self._logout_callbacks.remove(callback)

    def add_token_refresh_callback(self, callback: Callable[[str], None]) -> None:
        """
        Add callback for token refresh events.

        Args:
            callback: Function called with new token (str)
        """
        self._token_refresh_callbacks.append(callback)

    def _notify_logout(self) -> None:
        for callback in list(self._logout_callbacks):
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in logout callback: {e}")

    def _notify_token_refresh(self, new_token: str) -> None:
        for callback in list(self._token_refresh_callbacks):
            try:
                callback(new_token)
            except Exception as e:
                logger.error(f"Error in token refresh callback: {e}")

    # Session state

    def set_credential(self, token: Optional[str]) -> None:
        """
        Install or clear the access token.

        Installing a token sets the expiry and replaces any scheduled renewal;
        clearing it removes the expiry and cancels scheduled renewal.

        Args:
            token: New access token, or None to clear the session
        """
        self._cancel_refresh_task()

        if token is None:
            self._session.access_token = None
            self._session.expires_at = None
            return

        self._session.access_token = token
        self._session.expires_at = self._clock() + self.access_token_lifetime
        self._schedule_renewal()

    def get_credential(self) -> Optional[str]:
        """Get the current access token."""
        return self._session.access_token

    def get_expires_at(self) -> Optional[datetime]:
        """Get the assumed expiry of the current access token."""
        return self._session.expires_at

    def get_current_user_id(self) -> Optional[str]:
        return self._current_user_id

    def is_authenticated(self) -> bool:
        return self._session.is_active

    def has_persisted_session(self) -> bool:
        """Whether a last active user is stored, so a renewal can be attempted."""
        return bool(self.token_storage.get_last_active_user())

    def get_renewal_delay(self) -> Optional[float]:
        """
        Seconds until proactive renewal should fire.

        Returns:
            Delay in seconds (0 when already inside the margin), or None
            without a session
        """
        if self._session.expires_at is None:
            return None
        remaining = self._session.expires_at - self._clock() - self.renewal_margin
        return max(0.0, remaining.total_seconds())

    def get_session_info(self) -> Dict[str, Any]:
        """Get a summary of the current session."""
        expires_at = self._session.expires_at
        return {
            'user_id': self._current_user_id,
            'authenticated': self.is_authenticated(),
            'expires_at': expires_at.isoformat() if expires_at else None,
            'renewal_in': self.get_renewal_delay(),
            'renewing': self.renewal.is_renewing
        }

    # Scheduling

    def _schedule_renewal(self) -> None:
        delay = self.get_renewal_delay()
        if delay is None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, proactive renewal not scheduled")
            return

        logger.debug(f"Proactive renewal scheduled in {delay:.1f} seconds")
        self._session.refresh_task = loop.create_task(self._scheduled_renewal(delay))

    def _cancel_refresh_task(self) -> None:
        task = self._session.refresh_task
        self._session.refresh_task = None
        # A renewal started by the timer installs the new token from inside
        # the timer task itself; that task must be left to finish.
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _scheduled_renewal(self, delay: float) -> None:
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            logger.info("Proactive session renewal triggered")
            await self.renewal.renew()
        except asyncio.CancelledError:
            logger.debug("Scheduled renewal cancelled")
        except RenewalError as e:
            # Logout has already been forced by the coordinator
            logger.warning(f"Proactive renewal failed: {e}")

    # Renewal

    async def _renew_once(self) -> str:
        """Exchange the last active user's refresh token for a new access token."""
        user_id = self.token_storage.get_last_active_user()
        if not user_id:
            raise RenewalError(
                "Cannot renew session: no last active user",
                error_code=ErrorCode.AUTH_NO_ACTIVE_USER
            )

        refresh_token = self.token_storage.get_refresh_token(user_id)
        if not refresh_token:
            raise RenewalError(
                f"Cannot renew session: no refresh token stored for user {user_id}",
                error_code=ErrorCode.AUTH_NO_REFRESH_TOKEN,
                context={'user_id': user_id}
            )

        logger.info(f"Renewing session for user {user_id}")
        response = await self.api_client.refresh_session(refresh_token)

        access_token = response.get('access_token')
        if not access_token:
            raise RenewalError(
                "Refresh response did not contain an access token",
                error_code=ErrorCode.API_INVALID_RESPONSE
            )

        self._current_user_id = user_id
        self.set_credential(access_token)

        rotated = response.get('refresh_token')
        if rotated:
            self.token_storage.store_refresh_token(user_id, rotated)

        self._audit_logger.log_session_renewal(user_id, success=True, trigger="refresh")
        self._notify_token_refresh(access_token)
        return access_token

    def _handle_renewal_failure(self, error: RenewalError) -> None:
        self._audit_logger.log_session_renewal(
            self._current_user_id or self.token_storage.get_last_active_user(),
            success=False,
            trigger="refresh",
            failure_reason=error.message
        )
        self.force_logout()

    async def restore_session(self) -> bool:
        """
        Turn a persisted refresh token into a live session at startup.

        Returns:
            True if a session was restored; False when nothing is persisted
            or the renewal failed
        """
        user_id = self.token_storage.get_last_active_user()
        if not user_id or not self.token_storage.get_refresh_token(user_id):
            logger.info("No persisted session to restore")
            return False

        try:
            await self.renewal.renew()
            logger.info(f"Session restored for user {user_id}")
            return True
        except RenewalError as e:
            logger.warning(f"Failed to restore session: {e}")
            return False

    # Login / logout

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """
        Log in and start a session.

        Args:
            email: User email
            password: User password

        Returns:
            The user profile returned by the server

        Raises:
            AuthenticationError: On invalid credentials or a malformed response
        """
        try:
            response = await self.api_client.login(email, password)
        except AuthenticationError as e:
            self._audit_logger.log_authentication(None, success=False, failure_reason=e.message)
            raise

        user = response.get('user') or {}
        user_id = user.get('id') or user.get('_id')
        access_token = response.get('access_token')
        refresh_token = response.get('refresh_token')

        if not (user_id and access_token and refresh_token):
            self._audit_logger.log_authentication(None, success=False, failure_reason="malformed response")
            raise AuthenticationError(
                "Login response is missing the user id or tokens",
                error_code=ErrorCode.API_INVALID_RESPONSE,
                status_code=None
            )

        user_id = str(user_id)
        self.token_storage.store_refresh_token(user_id, refresh_token)
        self._current_user_id = user_id
        self.set_credential(access_token)

        self._audit_logger.log_authentication(user_id, success=True)
        logger.info(f"Logged in as user {user_id}")
        return user

    def _clear_session(self) -> Optional[str]:
        user_id = self.token_storage.get_last_active_user() or self._current_user_id

        self.set_credential(None)
        if user_id:
            self.token_storage.remove_refresh_token(user_id)
        self.token_storage.clear_last_active_user()
        self._current_user_id = None
        return user_id

    def logout(self) -> None:
        """Log out at the user's request; no logout signal is broadcast."""
        logger.info("Logging out and clearing session")
        user_id = self._clear_session()
        self._audit_logger.log_logout(user_id, forced=False)

    def force_logout(self) -> None:
        """
        Log out after an unrecoverable session failure.

        Clears the in-memory session, the affected user's refresh token and
        the last active user pointer, then broadcasts the logout signal. With
        no session in memory and nothing persisted there is nothing to log
        out of, and nothing is broadcast.
        """
        if (self._session.access_token is None and self._current_user_id is None
                and not self.has_persisted_session()):
            logger.debug("Forced logout skipped, no session to end")
            return

        logger.warning("Forcing logout")
        user_id = self._clear_session()
        self._audit_logger.log_logout(user_id, forced=True)
        self._notify_logout()

    async def shutdown(self) -> None:
        """Cancel scheduled renewal."""
        logger.info("Shutting down token manager")

        task = self._session.refresh_task
        self._session.refresh_task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
