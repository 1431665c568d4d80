"""
Core interfaces for the Cafe POS client.

This module defines the abstract interfaces that the session layer and the
payment reconciler depend on, so collaborators can be swapped in tests.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, Callable

from .models import PaymentStatus


class ICredentialStore(ABC):
    """Interface for the per-device store of refresh credentials."""

    @abstractmethod
    def store_refresh_token(self, user_id: str, refresh_token: str) -> None:
        """Persist a user's refresh token and mark the user as last active."""
        pass

    @abstractmethod
    def get_refresh_token(self, user_id: str) -> Optional[str]:
        """Get the refresh token stored for a user."""
        pass

    @abstractmethod
    def remove_refresh_token(self, user_id: str) -> bool:
        """Remove the refresh token stored for a user."""
        pass

    @abstractmethod
    def get_last_active_user(self) -> Optional[str]:
        """Get the id of the last active user."""
        pass

    @abstractmethod
    def clear_last_active_user(self) -> None:
        """Clear the last active user pointer."""
        pass


class IAuthAPI(ABC):
    """Interface for the authentication endpoints used by the token manager."""

    @abstractmethod
    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """Exchange user credentials for an access and refresh token."""
        pass

    @abstractmethod
    async def refresh_session(self, refresh_token: str) -> Dict[str, Any]:
        """Exchange a refresh token for a new access token."""
        pass


class IPaymentStatusAPI(ABC):
    """Interface for the payment status lookup polled by the reconciler."""

    @abstractmethod
    async def check_payment_status(self, order_code: str) -> PaymentStatus:
        """Look up the payment status of an order."""
        pass


class IPaymentChannel(ABC):
    """
    Interface for a push channel scoped to a single order.

    Implementations call ``on_event(event_name, payload)`` for every payment
    event received, and ``on_error(exception)`` for connection failures.
    """

    @abstractmethod
    async def open(
        self,
        order_code: str,
        on_event: Callable[[str, Dict[str, Any]], None],
        on_error: Optional[Callable[[Exception], None]] = None
    ) -> None:
        """Connect and subscribe to payment events for an order."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Unsubscribe and disconnect."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the channel is currently connected."""
        pass
