"""
HTTP API Client for the Cafe POS client.

This module provides the authenticated request pipeline used for every call
to the café backend: it attaches the current access token, renews the session
once on an authorization failure, replays the request, and maps HTTP errors
onto the client exception hierarchy.
"""

import asyncio
import logging
import random
from datetime import datetime
from typing import Optional, Dict, Any, List, TYPE_CHECKING
from urllib.parse import quote, urljoin

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from cafe_client.config import DEFAULT_EXEMPT_PATHS
from cafe_shared.exceptions import (
    APIClientError, AuthenticationError, ErrorCode, NetworkError, ServerError
)
from cafe_shared.interfaces import IAuthAPI, IPaymentStatusAPI
from cafe_shared.logging_config import log_structured_error
from cafe_shared.models import PaymentStatus

if TYPE_CHECKING:
    from cafe_client.auth.token_manager import TokenManager

logger = logging.getLogger(__name__)


IDEMPOTENT_METHODS = frozenset({'GET', 'HEAD', 'OPTIONS', 'PUT', 'DELETE'})


class RetryConfig:
    """Configuration for transport retry logic."""

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def get_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


class CafeAPIClient(IAuthAPI, IPaymentStatusAPI):
    """
    HTTP API client for the café backend.

    Every request passes through ``_make_request``, which attaches the access
    token held by the bound ``TokenManager``. A 401 outside the authentication
    endpoints triggers one shared renewal and a single replay of the request.
    """

    def __init__(
        self,
        server_url: str,
        timeout: float = 60.0,
        retry_config: Optional[RetryConfig] = None,
        exempt_paths: Optional[List[str]] = None
    ):
        self.server_url = server_url.rstrip('/') + '/'
        self.timeout = ClientTimeout(total=timeout)
        self.retry_config = retry_config or RetryConfig()
        self.exempt_paths = [p.rstrip('/') for p in (exempt_paths or DEFAULT_EXEMPT_PATHS)]

        self.token_manager: Optional['TokenManager'] = None

        self._session: Optional[ClientSession] = None
        self._is_offline = False
        self._last_connection_attempt: Optional[datetime] = None

        logger.info(f"API client initialized for server: {server_url}")

    def bind_token_manager(self, token_manager: 'TokenManager') -> None:
        """Attach the token manager that supplies and renews credentials."""
        self.token_manager = token_manager

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=20,
                limit_per_host=10,
                keepalive_timeout=30
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={'User-Agent': 'CafePosClient/1.0'}
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def is_offline(self) -> bool:
        """Check if the last request failed at the transport level."""
        return self._is_offline

    def get_last_connection_attempt(self) -> Optional[datetime]:
        return self._last_connection_attempt

    def is_auth_endpoint(self, endpoint: str) -> bool:
        """Whether a path is an authentication endpoint exempt from renewal."""
        path = '/' + endpoint.split('?', 1)[0].strip('/')
        return any(path == exempt or path.startswith(exempt + '/') for exempt in self.exempt_paths)

    def _current_token(self) -> Optional[str]:
        return self.token_manager.get_credential() if self.token_manager else None

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
        retry: Optional[bool] = None
    ) -> Any:
        """
        Make an HTTP request through the authenticated pipeline.

        Args:
            method: HTTP method
            endpoint: API endpoint path
            data: JSON request body
            params: Query parameters
            authenticated: Whether to attach the access token
            retry: Whether to retry transport failures (defaults to True
                for idempotent methods)

        Returns:
            Decoded JSON response body

        Raises:
            AuthenticationError: On a 401 that cannot be recovered
            RenewalError: If the session renewal this request triggered failed
            APIClientError: On any other failure
        """
        method = method.upper()
        if retry is None:
            retry = method in IDEMPOTENT_METHODS

        token = self._current_token() if authenticated else None
        retried = False

        while True:
            status, body = await self._send(method, endpoint, data, params, token, retry)

            if status != 401:
                return self._handle_response(status, body, method, endpoint)

            detail = self._error_detail(body, 'Unauthorized')

            if not authenticated or self.token_manager is None or self.is_auth_endpoint(endpoint):
                raise AuthenticationError(f"Authentication failed: {detail}")

            if retried:
                error = AuthenticationError(
                    f"Request to {endpoint} rejected after session renewal: {detail}",
                    error_code=ErrorCode.AUTH_RETRY_EXHAUSTED,
                    context={'endpoint': endpoint, 'method': method}
                )
                log_structured_error(logger, error, user_id=self.token_manager.get_current_user_id())
                raise error

            retried = True
            current = self._current_token()
            if token and current is None:
                # The session ended while this request was in flight
                raise AuthenticationError(
                    f"Session ended before {method} {endpoint} could be replayed",
                    error_code=ErrorCode.AUTH_TOKEN_EXPIRED,
                    context={'endpoint': endpoint, 'method': method}
                )
            if current is None and not self.token_manager.has_persisted_session():
                raise AuthenticationError(
                    f"Not logged in, {method} {endpoint} requires a session",
                    error_code=ErrorCode.AUTH_NO_ACTIVE_USER,
                    context={'endpoint': endpoint, 'method': method}
                )
            if current and current != token:
                # The session was renewed while this request was in flight
                logger.debug(f"Replaying {method} {endpoint} with the renewed token")
                token = current
            else:
                logger.info(f"Received 401 for {method} {endpoint}, renewing session")
                token = await self.token_manager.renewal.renew()

    async def _send(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]],
        params: Optional[Dict[str, Any]],
        token: Optional[str],
        retry: bool
    ) -> tuple:
        """Send one request, retrying transport failures with backoff."""
        await self._ensure_session()

        url = urljoin(self.server_url, endpoint.lstrip('/'))
        headers = {'Content-Type': 'application/json'}
        if token:
            headers['Authorization'] = f'Bearer {token}'

        attempt = 0
        max_attempts = self.retry_config.max_retries if retry else 0

        while True:
            try:
                logger.debug(f"Making {method} request to {url} (attempt {attempt + 1})")

                async with self._session.request(
                    method=method,
                    url=url,
                    json=data,
                    params=params,
                    headers=headers
                ) as response:
                    body = await self._read_body(response)
                    self._is_offline = False
                    self._last_connection_attempt = datetime.now()
                    return response.status, body

            except (ClientError, asyncio.TimeoutError, OSError) as e:
                logger.warning(f"Network error on attempt {attempt + 1}: {e}")
                self._is_offline = True
                self._last_connection_attempt = datetime.now()

                if attempt >= max_attempts:
                    error_code = (
                        ErrorCode.NETWORK_TIMEOUT if isinstance(e, asyncio.TimeoutError)
                        else ErrorCode.NETWORK_CONNECTION_FAILED
                    )
                    raise NetworkError(
                        f"Network request failed after {attempt + 1} attempt(s): {e}",
                        error_code=error_code,
                        context={'endpoint': endpoint, 'method': method},
                        cause=e
                    )

                delay = self.retry_config.get_delay(attempt)
                logger.info(f"Retrying in {delay:.1f} seconds...")
                await asyncio.sleep(delay)
                attempt += 1

    async def _read_body(self, response: aiohttp.ClientResponse) -> Any:
        text = await response.text()
        if not text:
            return {}
        try:
            return await response.json(content_type=None)
        except ValueError:
            return {'detail': text}

    @staticmethod
    def _error_detail(body: Any, default: str) -> str:
        if isinstance(body, dict):
            message = body.get('message') or body.get('detail') or body.get('error')
            if isinstance(message, list):
                message = '; '.join(str(m) for m in message)
            if message:
                return str(message)
        return default

    def _handle_response(self, status: int, body: Any, method: str, endpoint: str) -> Any:
        if 200 <= status < 300:
            return body

        context = {'endpoint': endpoint, 'method': method}

        if status == 403:
            raise APIClientError(
                f"Forbidden: {self._error_detail(body, 'Access denied')}",
                status_code=status,
                error_code=ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS,
                context=context
            )
        if status == 404:
            raise APIClientError(
                f"Not found: {self._error_detail(body, 'Resource not found')}",
                status_code=status,
                error_code=ErrorCode.API_NOT_FOUND,
                context=context
            )
        if status >= 500:
            raise ServerError(
                f"Server error ({status}): {self._error_detail(body, 'Internal server error')}",
                status_code=status,
                context=context
            )
        raise APIClientError(
            f"Request failed ({status}): {self._error_detail(body, 'Unknown error')}",
            status_code=status,
            context=context
        )

    # Generic verbs for the CRUD screens

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._make_request('GET', endpoint, params=params)

    async def post(self, endpoint: str, data: Optional[Dict[str, Any]] = None) -> Any:
        return await self._make_request('POST', endpoint, data=data)

    async def patch(self, endpoint: str, data: Optional[Dict[str, Any]] = None) -> Any:
        return await self._make_request('PATCH', endpoint, data=data)

    async def delete(self, endpoint: str) -> Any:
        return await self._make_request('DELETE', endpoint)

    # Authentication endpoints

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """
        Exchange user credentials for tokens.

        Args:
            email: User email
            password: User password

        Returns:
            Response with ``access_token``, ``refresh_token`` and ``user``
        """
        logger.info(f"Logging in as {email}")
        return await self._make_request(
            'POST', '/auth/login',
            data={'email': email, 'password': password},
            authenticated=False,
            retry=False
        )

    async def refresh_session(self, refresh_token: str) -> Dict[str, Any]:
        """
        Exchange a refresh token for a new access token.

        Never goes through the renewal path itself.

        Returns:
            Response with ``access_token`` and an optional rotated ``refresh_token``
        """
        return await self._make_request(
            'POST', '/auth/refresh',
            data={'refreshToken': refresh_token},
            authenticated=False,
            retry=False
        )

    async def get_profile(self) -> Dict[str, Any]:
        """Get the profile of the logged in user."""
        return await self._make_request('GET', '/auth/profile')

    # Payments

    async def create_payment(self, payment: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a payment for an order.

        Args:
            payment: Payment body as accepted by ``POST /payments``
        """
        response = await self._make_request('POST', '/payments', data=payment, retry=False)
        logger.info(f"Payment created: {response.get('orderCode') if isinstance(response, dict) else response}")
        return response

    async def check_payment_status(self, order_code: str) -> PaymentStatus:
        """
        Look up the payment status of an order.

        Args:
            order_code: Order reference

        Returns:
            Decoded payment status
        """
        response = await self._make_request(
            'GET', f'/payments/status/{quote(order_code, safe="")}'
        )
        if not isinstance(response, dict):
            raise APIClientError(
                "Unexpected payment status response",
                error_code=ErrorCode.API_INVALID_RESPONSE,
                context={'order_code': order_code}
            )
        return PaymentStatus.from_api(response, order_code=order_code)
