"""
Decoding of payment notifications.

The push channel emits the same logical event under several historical names,
and the status lookup reports outcomes as flags. Both are normalized here into
a ``PaymentResult`` (or None when the outcome is not terminal) before any
delivery logic runs.
"""

from typing import Optional, Dict, Any

from cafe_shared.models import (
    OrderStatus, OutcomeSource, PaymentOutcome, PaymentResult, PaymentStatus
)


SUCCESS_EVENTS = frozenset({
    'paymentSuccess',
    'payment_success',
    'payment-success',
    'success',
})

FAILURE_EVENTS = frozenset({
    'paymentFailed',
    'payment_failed',
    'payment-failed',
    'failed',
})

PAYMENT_EVENTS = SUCCESS_EVENTS | FAILURE_EVENTS

ORDER_REFERENCE_KEYS = ('orderCode', 'order_code', 'orderId')

DEFAULT_MESSAGES = {
    PaymentOutcome.SUCCESS: "Payment successful",
    PaymentOutcome.FAILURE: "Payment failed",
}


def outcome_for_event(event_name: str) -> Optional[PaymentOutcome]:
    """Map a channel event name to a terminal outcome, if it is a payment event."""
    if event_name in SUCCESS_EVENTS:
        return PaymentOutcome.SUCCESS
    if event_name in FAILURE_EVENTS:
        return PaymentOutcome.FAILURE
    return None


def extract_order_reference(payload: Any) -> Optional[str]:
    """Get the order reference from an event payload, whichever key carries it."""
    if not isinstance(payload, dict):
        return None
    for key in ORDER_REFERENCE_KEYS:
        value = payload.get(key)
        if value not in (None, ''):
            return str(value)
    return None


def decode_channel_event(event_name: str, payload: Any) -> Optional[PaymentResult]:
    """
    Decode a push channel event.

    Args:
        event_name: Event name as emitted by the server
        payload: Event payload

    Returns:
        The terminal result carried by the event, or None if the event is not
        a payment event or carries no order reference
    """
    outcome = outcome_for_event(event_name)
    if outcome is None:
        return None

    order_code = extract_order_reference(payload)
    if order_code is None:
        return None

    message = payload.get('message') if isinstance(payload, dict) else None
    return PaymentResult(
        order_code=order_code,
        outcome=outcome,
        message=str(message) if message else DEFAULT_MESSAGES[outcome],
        source=OutcomeSource.CHANNEL
    )


def decode_status(
    status: PaymentStatus,
    source: OutcomeSource = OutcomeSource.POLL
) -> Optional[PaymentResult]:
    """
    Decode a payment status lookup.

    ``isPaid`` wins over ``orderStatus``; ``failed`` and ``cancelled`` are
    failures; anything else is still pending.
    """
    if status.is_paid:
        outcome = PaymentOutcome.SUCCESS
    elif status.order_status in (OrderStatus.FAILED.value, OrderStatus.CANCELLED.value):
        outcome = PaymentOutcome.FAILURE
    else:
        return None

    return PaymentResult(
        order_code=status.order_code,
        outcome=outcome,
        message=DEFAULT_MESSAGES[outcome],
        source=source
    )
