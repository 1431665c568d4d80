"""
Application wiring for the Cafe POS client.

Builds the API client, credential store, token manager and payment reconciler
from a ``ClientConfiguration`` and ties their lifetimes together.
"""

import logging
from datetime import timedelta
from typing import Optional, Callable

from cafe_client.api_client import CafeAPIClient, RetryConfig
from cafe_client.auth.token_manager import TokenManager
from cafe_client.auth.token_storage import SecureTokenStorage
from cafe_client.config import ClientConfiguration
from cafe_client.payments.channel import SocketIOPaymentChannel
from cafe_client.payments.reconciler import PaymentReconciler
from cafe_shared.interfaces import ICredentialStore, IPaymentChannel

logger = logging.getLogger(__name__)


class CafeClient:
    """Holds the wired components of one client instance."""

    def __init__(
        self,
        config: ClientConfiguration,
        api_client: CafeAPIClient,
        token_storage: ICredentialStore,
        token_manager: TokenManager,
        reconciler: PaymentReconciler
    ):
        self.config = config
        self.api_client = api_client
        self.token_storage = token_storage
        self.token_manager = token_manager
        self.reconciler = reconciler

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Cancel open payment watches and scheduled renewal, then close HTTP."""
        logger.info("Shutting down client")
        await self.reconciler.cancel_all()
        await self.token_manager.shutdown()
        await self.api_client.close()


def make_channel_factory(config: ClientConfiguration) -> Callable[[], IPaymentChannel]:
    """Build a factory creating one push channel per payment watch."""
    def factory() -> IPaymentChannel:
        return SocketIOPaymentChannel(
            url=config.get_socket_url(),
            namespace=config.get_payment_namespace(),
            reconnection_attempts=config.get_reconnection_attempts(),
            reconnection_delay=config.get_reconnection_delay(),
            reconnection_delay_max=config.get_reconnection_delay_max(),
            connect_timeout=config.get_connect_timeout()
        )
    return factory


def create_client(
    config: Optional[ClientConfiguration] = None,
    token_storage: Optional[ICredentialStore] = None,
    channel_factory: Optional[Callable[[], IPaymentChannel]] = None
) -> CafeClient:
    """
    Create a fully wired client.

    Args:
        config: Client configuration (loaded from the default path if omitted)
        token_storage: Credential store (system keyring or encrypted file if omitted)
        channel_factory: Push channel factory (Socket.IO if omitted)

    Returns:
        The wired client
    """
    config = config or ClientConfiguration()

    api_client = CafeAPIClient(
        server_url=config.get_server_url(),
        timeout=config.get_server_timeout(),
        retry_config=RetryConfig(
            max_retries=config.get_retry_attempts(),
            base_delay=config.get_retry_delay()
        ),
        exempt_paths=config.get_exempt_paths()
    )

    token_storage = token_storage or SecureTokenStorage(
        service_name=config.get_credential_service_name()
    )

    token_manager = TokenManager(
        api_client,
        token_storage,
        access_token_lifetime=timedelta(minutes=config.get_access_token_lifetime_minutes()),
        renewal_margin=timedelta(minutes=config.get_renewal_margin_minutes())
    )
    api_client.bind_token_manager(token_manager)

    reconciler = PaymentReconciler(
        api_client,
        channel_factory=channel_factory or make_channel_factory(config),
        poll_interval=config.get_poll_interval(),
        max_poll_failures=config.get_max_poll_failures()
    )

    return CafeClient(config, api_client, token_storage, token_manager, reconciler)
