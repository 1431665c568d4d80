"""
Tests for the exception hierarchy and structured logging helpers.
"""

import json
import logging

import pytest

from cafe_shared.exceptions import (
    APIClientError, AuthenticationError, CafeClientError, ErrorCode, NetworkError,
    RecoveryAction, RenewalError, handle_exception
)
from cafe_shared.logging_config import (
    AuditLogger, StructuredFormatter, log_structured_error
)


class TestExceptions:
    """Test the exception hierarchy."""

    def test_renewal_error_is_authentication_error(self):
        error = RenewalError("refresh rejected")

        assert isinstance(error, AuthenticationError)
        assert isinstance(error, APIClientError)
        assert error.error_code == ErrorCode.AUTH_RENEWAL_FAILED
        assert error.status_code is None
        assert RecoveryAction.LOGIN_AGAIN in error.recovery_actions

    def test_authentication_error_defaults_to_401(self):
        error = AuthenticationError("Unauthorized")

        assert error.status_code == 401
        assert error.context['status_code'] == 401

    def test_to_dict(self):
        error = NetworkError("connection refused", cause=ConnectionError("refused"))

        data = error.to_dict()['error']
        assert data['code'] == ErrorCode.NETWORK_CONNECTION_FAILED.value
        assert data['cause'] == {'type': 'ConnectionError', 'message': 'refused'}

    @pytest.mark.parametrize("exception,error_type,code", [
        (TimeoutError("slow"), NetworkError, ErrorCode.NETWORK_TIMEOUT),
        (ConnectionError("refused"), NetworkError, ErrorCode.NETWORK_CONNECTION_FAILED),
        (ValueError("bad json"), APIClientError, ErrorCode.API_INVALID_RESPONSE),
    ])
    def test_handle_exception(self, exception, error_type, code):
        error = handle_exception(exception)

        assert isinstance(error, error_type)
        assert error.error_code == code
        assert error.cause is exception

    def test_handle_exception_passes_structured_errors_through(self):
        error = RenewalError("refresh rejected")

        assert handle_exception(error) is error

    def test_handle_exception_fallback(self):
        error = handle_exception(KeyError("x"))

        assert type(error) is CafeClientError
        assert error.error_code == ErrorCode.INTERNAL_UNEXPECTED_ERROR


class TestLogging:
    """Test the audit trail and structured error logging."""

    def test_payment_outcome_is_audited(self, caplog):
        with caplog.at_level(logging.INFO, logger='audit'):
            AuditLogger().log_payment_outcome('ORD-1', 'success', 'channel')

        [record] = caplog.records
        assert record.audit_info['event_type'] == 'payment_outcome'
        assert record.audit_info['order_code'] == 'ORD-1'
        assert record.audit_info['context'] == {'source': 'channel'}

    def test_forced_logout_is_audited(self, caplog):
        with caplog.at_level(logging.INFO, logger='audit'):
            AuditLogger().log_logout('user-1', forced=True)

        [record] = caplog.records
        assert record.audit_info['result'] == 'forced'

    def test_structured_formatter(self, caplog):
        logger = logging.getLogger('cafe_client.tests')
        with caplog.at_level(logging.ERROR, logger='cafe_client.tests'):
            log_structured_error(logger, RenewalError("refresh rejected"), user_id='user-1')

        entry = json.loads(StructuredFormatter().format(caplog.records[0]))
        assert entry['message'] == 'refresh rejected'
        assert entry['error']['code'] == ErrorCode.AUTH_RENEWAL_FAILED.value
        assert entry['extra']['user_id'] == 'user-1'
