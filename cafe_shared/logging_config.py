"""
Logging configuration for the Cafe POS client.

Sets up console and rotating file output in one of three formats, and keeps
a separate ``audit`` logger for session and payment events. Audit records
carry an ``audit_info`` dict; error records logged through
``log_structured_error`` carry the ``CafeClientError`` itself.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional

from cafe_shared.exceptions import CafeClientError


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(Enum):
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Events recorded on the audit logger."""
    AUTHENTICATION = "authentication"
    SESSION_RENEWAL = "session_renewal"
    LOGOUT = "logout"
    PAYMENT_OUTCOME = "payment_outcome"
    ERROR_EVENT = "error_event"


# Attributes every LogRecord has; anything else was passed through ``extra``
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {
    'message', 'asctime', 'error_info', 'audit_info', 'taskName',
}


def _describe_error(error: CafeClientError) -> Dict[str, Any]:
    return {
        'code': error.error_code.value,
        'severity': error.severity.value,
        'context': error.context,
        'recovery_actions': [action.value for action in error.recovery_actions],
        'user_message': error.user_message
    }


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}.{record.funcName}:{record.lineno}",
            'pid': os.getpid()
        }

        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': self.formatException(record.exc_info)
            }

        error = getattr(record, 'error_info', None)
        if isinstance(error, CafeClientError):
            entry['error'] = _describe_error(error)

        audit = getattr(record, 'audit_info', None)
        if audit is not None:
            entry['audit'] = audit

        if self.include_extra_fields:
            extra = {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}
            if extra:
                entry['extra'] = extra

        return json.dumps(entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """Human-readable lines with call site, followed by error or audit details."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        lines = [super().format(record)]

        error = getattr(record, 'error_info', None)
        if isinstance(error, CafeClientError):
            lines.append(f"    error: {error.error_code.value} ({error.severity.value})")
            if error.context:
                lines.append(f"    context: {json.dumps(error.context, default=str)}")

        audit = getattr(record, 'audit_info', None)
        if audit is not None:
            lines.append(f"    audit: {json.dumps(audit, default=str)}")

        return "\n".join(lines)


class AuditLogger:
    """
    Writes session and payment events to the ``audit`` logger.

    Each event becomes one INFO record whose ``audit_info`` holds the event
    type, the user and/or order it concerns, the result, and free-form context.
    """

    def __init__(self, logger_name: str = "audit"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        user_id: Optional[str] = None,
        order_code: Optional[str] = None,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        audit_info: Dict[str, Any] = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'context': additional_context or {}
        }
        if user_id is not None:
            audit_info['user_id'] = user_id
        if order_code is not None:
            audit_info['order_code'] = order_code
        if result is not None:
            audit_info['result'] = result

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_authentication(self, user_id: Optional[str], success: bool = True,
                           failure_reason: Optional[str] = None):
        outcome = "success" if success else "failure"
        self.log_event(
            AuditEventType.AUTHENTICATION,
            f"Login {outcome} for user {user_id or 'unknown'}",
            user_id=user_id,
            result=outcome,
            additional_context={'failure_reason': failure_reason} if failure_reason else None
        )

    def log_session_renewal(self, user_id: Optional[str], success: bool,
                            trigger: str, failure_reason: Optional[str] = None):
        outcome = "success" if success else "failure"
        context = {'trigger': trigger}
        if failure_reason:
            context['failure_reason'] = failure_reason

        self.log_event(
            AuditEventType.SESSION_RENEWAL,
            f"Session renewal {outcome} for user {user_id or 'unknown'}",
            user_id=user_id,
            result=outcome,
            additional_context=context
        )

    def log_logout(self, user_id: Optional[str], forced: bool):
        kind = "forced" if forced else "explicit"
        self.log_event(
            AuditEventType.LOGOUT,
            f"Logout ({kind}) for user {user_id or 'unknown'}",
            user_id=user_id,
            result=kind
        )

    def log_payment_outcome(self, order_code: str, outcome: str, source: str):
        self.log_event(
            AuditEventType.PAYMENT_OUTCOME,
            f"Payment {outcome} for order {order_code} (via {source})",
            order_code=order_code,
            result=outcome,
            additional_context={'source': source}
        )

    def log_error(self, error: CafeClientError, user_id: Optional[str] = None,
                  order_code: Optional[str] = None):
        self.log_event(
            AuditEventType.ERROR_EVENT,
            f"Error: {error.message}",
            user_id=user_id,
            order_code=order_code,
            result="error",
            additional_context=_describe_error(error)
        )


def _make_formatter(log_format: LogFormat) -> logging.Formatter:
    if log_format == LogFormat.JSON:
        return StructuredFormatter()
    if log_format == LogFormat.DETAILED:
        return DetailedFormatter()
    return logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def _rotating_handler(path: str, max_file_size: int, backup_count: int) -> logging.Handler:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        path, maxBytes=max_file_size, backupCount=backup_count, encoding='utf-8'
    )


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    enable_console: bool = True,
    audit_file: Optional[str] = None
) -> Dict[str, logging.Logger]:
    """
    Configure the root and audit loggers.

    Existing root handlers are replaced. Console output goes to stderr so
    command output on stdout stays clean.

    Args:
        log_level: Minimum level for the root logger
        log_format: Output format for console and log file
        log_file: Rotating log file (optional)
        max_file_size: Rotation size in bytes
        backup_count: Rotated files to keep
        enable_console: Whether to log to stderr
        audit_file: Separate JSON file for audit events; without it audit
            records propagate to the root handlers

    Returns:
        The configured loggers by role
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.value))

    formatter = _make_formatter(log_format)
    handlers = []
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if log_file:
        handlers.append(_rotating_handler(log_file, max_file_size, backup_count))
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    audit_logger = logging.getLogger('audit')
    audit_logger.setLevel(logging.INFO)
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
    if audit_file:
        audit_handler = _rotating_handler(audit_file, max_file_size, backup_count)
        audit_handler.setFormatter(StructuredFormatter())
        audit_logger.addHandler(audit_handler)

    return {
        'root': root_logger,
        'auth': logging.getLogger('cafe_client.auth'),
        'api': logging.getLogger('cafe_client.api_client'),
        'payments': logging.getLogger('cafe_client.payments'),
        'audit': audit_logger
    }


def log_structured_error(
    logger: logging.Logger,
    error: CafeClientError,
    user_id: Optional[str] = None,
    order_code: Optional[str] = None
):
    """Log a ``CafeClientError`` at ERROR with its code, context and ids attached."""
    logger.error(
        error.message,
        extra={'error_info': error, 'user_id': user_id, 'order_code': order_code}
    )
