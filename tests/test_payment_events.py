"""
Tests for decoding of payment notifications.
"""

import pytest

from cafe_client.payments.events import (
    decode_channel_event, decode_status, extract_order_reference, outcome_for_event
)
from cafe_shared.models import OutcomeSource, PaymentOutcome, PaymentStatus


class TestChannelEvents:
    """Test event name aliases and payload decoding."""

    @pytest.mark.parametrize("event_name", [
        'paymentSuccess', 'payment_success', 'payment-success', 'success'
    ])
    def test_success_aliases(self, event_name):
        assert outcome_for_event(event_name) == PaymentOutcome.SUCCESS

    @pytest.mark.parametrize("event_name", [
        'paymentFailed', 'payment_failed', 'payment-failed', 'failed'
    ])
    def test_failure_aliases(self, event_name):
        assert outcome_for_event(event_name) == PaymentOutcome.FAILURE

    def test_unrelated_event(self):
        assert outcome_for_event('orderCreated') is None
        assert decode_channel_event('orderCreated', {'orderCode': 'ORD1'}) is None

    @pytest.mark.parametrize("key", ['orderCode', 'order_code', 'orderId'])
    def test_order_reference_keys(self, key):
        assert extract_order_reference({key: 'ORD1'}) == 'ORD1'

    def test_numeric_order_reference(self):
        assert extract_order_reference({'orderId': 42}) == '42'

    def test_payload_without_reference(self):
        assert extract_order_reference({'message': 'ok'}) is None
        assert extract_order_reference(None) is None
        assert decode_channel_event('paymentSuccess', {'message': 'ok'}) is None

    def test_decode_with_message(self):
        result = decode_channel_event('payment_failed', {'order_code': 'ORD1', 'message': 'Card declined'})

        assert result.order_code == 'ORD1'
        assert result.outcome == PaymentOutcome.FAILURE
        assert result.message == 'Card declined'
        assert result.source == OutcomeSource.CHANNEL

    def test_decode_default_messages(self):
        assert decode_channel_event('success', {'orderCode': 'ORD1'}).message == 'Payment successful'
        assert decode_channel_event('failed', {'orderCode': 'ORD1'}).message == 'Payment failed'


class TestStatusDecoding:
    """Test decoding of status lookups."""

    def test_paid(self):
        result = decode_status(PaymentStatus('ORD1', is_paid=True))

        assert result.outcome == PaymentOutcome.SUCCESS
        assert result.source == OutcomeSource.POLL
        assert result.message == 'Payment successful'

    @pytest.mark.parametrize("order_status", ['failed', 'cancelled'])
    def test_failed_or_cancelled(self, order_status):
        result = decode_status(PaymentStatus('ORD1', is_paid=False, order_status=order_status))

        assert result.outcome == PaymentOutcome.FAILURE

    def test_pending_is_not_terminal(self):
        assert decode_status(PaymentStatus('ORD1', is_paid=False, order_status='pending')) is None

    def test_paid_flag_wins(self):
        result = decode_status(PaymentStatus('ORD1', is_paid=True, order_status='failed'))

        assert result.outcome == PaymentOutcome.SUCCESS

    def test_manual_source(self):
        result = decode_status(PaymentStatus('ORD1', is_paid=True), OutcomeSource.MANUAL)

        assert result.source == OutcomeSource.MANUAL

    def test_from_api_normalizes_case(self):
        status = PaymentStatus.from_api({'isPaid': False, 'orderStatus': 'CANCELLED'}, order_code='ORD1')

        assert status.order_code == 'ORD1'
        assert status.order_status == 'cancelled'
        assert status.is_terminal
