"""
Core data models for the Cafe POS client.

This module defines the data structures shared by the session layer and the
payment reconciler: sessions, persisted user credentials, payment status
lookups and terminal payment outcomes.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum


class OrderStatus(Enum):
    """Order status as reported by the payment status lookup."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentOutcome(Enum):
    """Terminal payment outcomes."""
    SUCCESS = "success"
    FAILURE = "failure"


class OutcomeSource(Enum):
    """Which mechanism observed a terminal payment outcome."""
    CHANNEL = "channel"
    POLL = "poll"
    MANUAL = "manual"


class WatchState(Enum):
    """Lifecycle states of a payment watch."""
    IDLE = "idle"
    WATCHING = "watching"
    RESOLVED = "resolved"
    CLOSED = "closed"


@dataclass
class Session:
    """
    In-memory authentication session.

    ``expires_at`` is set if and only if ``access_token`` is not None.
    """
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    refresh_task: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return self.access_token is not None


@dataclass
class UserCredentialRecord:
    """Durable refresh credential persisted for one user."""
    user_id: str
    refresh_token: str
    stored_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("User ID cannot be empty")
        if not self.refresh_token:
            raise ValueError("Refresh token cannot be empty")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'refresh_token': self.refresh_token,
            'stored_at': self.stored_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserCredentialRecord':
        stored_at = data.get('stored_at')
        return cls(
            user_id=data['user_id'],
            refresh_token=data['refresh_token'],
            stored_at=datetime.fromisoformat(stored_at) if stored_at else datetime.now()
        )


@dataclass
class PaymentStatus:
    """Result of a payment status lookup for one order."""
    order_code: str
    is_paid: bool
    order_status: str = OrderStatus.PENDING.value

    @classmethod
    def from_api(cls, data: Dict[str, Any], order_code: Optional[str] = None) -> 'PaymentStatus':
        """
        Build a status from the ``/payments/status/{orderCode}`` response.

        Args:
            data: Response body
            order_code: Order code to fall back on when the body omits it
        """
        return cls(
            order_code=str(data.get('orderCode') or order_code or ''),
            is_paid=bool(data.get('isPaid', False)),
            order_status=str(data.get('orderStatus') or OrderStatus.PENDING.value).lower()
        )

    @property
    def is_terminal(self) -> bool:
        return self.is_paid or self.order_status in (
            OrderStatus.FAILED.value, OrderStatus.CANCELLED.value
        )


@dataclass
class PaymentResult:
    """Terminal outcome delivered to the watcher of an order."""
    order_code: str
    outcome: PaymentOutcome
    message: str
    source: OutcomeSource
    observed_at: datetime = field(default_factory=datetime.now)

    @property
    def succeeded(self) -> bool:
        return self.outcome == PaymentOutcome.SUCCESS
