"""
Exception hierarchy for the Cafe POS client.

This module defines structured exceptions with error codes, context information,
and recovery suggestions for consistent error handling across the client.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the Cafe POS client."""

    # Authentication and session errors (1000-1099)
    AUTH_INVALID_CREDENTIALS = "AUTH_1001"
    AUTH_TOKEN_EXPIRED = "AUTH_1002"
    AUTH_INSUFFICIENT_PERMISSIONS = "AUTH_1003"
    AUTH_NO_ACTIVE_USER = "AUTH_1004"
    AUTH_NO_REFRESH_TOKEN = "AUTH_1005"
    AUTH_RENEWAL_FAILED = "AUTH_1006"
    AUTH_RETRY_EXHAUSTED = "AUTH_1007"

    # Network and communication errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"
    NETWORK_CHANNEL_UNAVAILABLE = "NETWORK_2003"

    # Remote API errors (3000-3099)
    API_NOT_FOUND = "API_3001"
    API_BAD_REQUEST = "API_3002"
    API_SERVER_ERROR = "API_3003"
    API_INVALID_RESPONSE = "API_3004"

    # Credential storage errors (4000-4099)
    STORAGE_WRITE_FAILED = "STORAGE_4001"
    STORAGE_READ_FAILED = "STORAGE_4002"

    # Payment reconciliation errors (5000-5099)
    PAYMENT_WATCH_CLOSED = "PAYMENT_5001"
    PAYMENT_POLL_FAILED = "PAYMENT_5002"
    PAYMENT_INVALID_ORDER = "PAYMENT_5003"

    # Configuration errors (8000-8099)
    CONFIG_INVALID_FORMAT = "CONFIG_8002"
    CONFIG_INVALID_VALUE = "CONFIG_8004"

    # Internal errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    RECONNECT = "reconnect"
    REFRESH_TOKEN = "refresh_token"
    LOGIN_AGAIN = "login_again"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class CafeClientError(Exception):
    """
    Root of the client exception hierarchy.

    Every error carries a stable ``ErrorCode``, a severity, the recovery
    actions a caller may take, and a context dict that ends up in structured
    logs and in ``--json`` CLI output.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = dict(context or {})
        self.recovery_actions = list(recovery_actions or [])
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause is not None:
            self.context.update(cause_type=type(cause).__name__, cause_message=str(cause))

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form, wrapped in an ``error`` key."""
        cause = None
        if self.cause is not None:
            cause = {'type': self.context.get('cause_type'), 'message': self.context.get('cause_message')}

        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': cause
            }
        }


class APIClientError(CafeClientError):
    """Errors returned by, or raised while talking to, the remote API."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        context = dict(kwargs.pop('context', None) or {})
        if status_code is not None:
            context['status_code'] = status_code
        kwargs.setdefault('error_code', ErrorCode.API_BAD_REQUEST)
        super().__init__(message=message, context=context, **kwargs)
        self.status_code = status_code


class AuthenticationError(APIClientError):
    """Authentication-related errors (401 surfaced to the caller)."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('error_code', ErrorCode.AUTH_INVALID_CREDENTIALS)
        kwargs.setdefault('status_code', 401)
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('recovery_actions', [RecoveryAction.LOGIN_AGAIN])
        super().__init__(message, **kwargs)


class RenewalError(AuthenticationError):
    """
    Raised when the access credential could not be renewed.

    Renewal failures are session-fatal: the session is forcibly logged out
    and every caller waiting on the renewal receives the same error.
    """

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('error_code', ErrorCode.AUTH_RENEWAL_FAILED)
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        kwargs.setdefault('status_code', None)
        super().__init__(message, **kwargs)


class NetworkError(APIClientError):
    """Network-related errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('error_code', ErrorCode.NETWORK_CONNECTION_FAILED)
        kwargs.setdefault('recovery_actions', [RecoveryAction.RETRY_WITH_BACKOFF, RecoveryAction.RECONNECT])
        super().__init__(message, **kwargs)


class ServerError(APIClientError):
    """Server-side errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('error_code', ErrorCode.API_SERVER_ERROR)
        kwargs.setdefault('recovery_actions', [RecoveryAction.RETRY_WITH_BACKOFF])
        super().__init__(message, **kwargs)


class CredentialStoreError(CafeClientError):
    """Credential storage related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class PaymentWatchError(CafeClientError):
    """Payment reconciliation related errors."""

    def __init__(self, message: str, error_code: ErrorCode, order_code: Optional[str] = None, **kwargs):
        context = dict(kwargs.pop('context', None) or {})
        if order_code:
            context['order_code'] = order_code

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


class ConfigurationError(CafeClientError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.CONFIG_INVALID_VALUE,
                 config_key: Optional[str] = None, **kwargs):
        context = dict(kwargs.pop('context', None) or {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> CafeClientError:
    """
    Wrap an arbitrary exception in the matching ``CafeClientError``.

    Structured errors pass through unchanged. Timeouts and other OS-level
    failures become ``NetworkError``, ``ValueError`` becomes an invalid
    response, and anything else falls back to ``default_error_code``.
    """
    if isinstance(exception, CafeClientError):
        return exception

    if isinstance(exception, TimeoutError):
        return NetworkError(
            str(exception) or "Request timed out",
            error_code=ErrorCode.NETWORK_TIMEOUT,
            context=context,
            cause=exception
        )
    if isinstance(exception, OSError):
        return NetworkError(str(exception), context=context, cause=exception)
    if isinstance(exception, ValueError):
        return APIClientError(
            str(exception),
            error_code=ErrorCode.API_INVALID_RESPONSE,
            context=context,
            cause=exception
        )

    return CafeClientError(
        message=str(exception),
        error_code=default_error_code,
        context=context,
        cause=exception
    )
