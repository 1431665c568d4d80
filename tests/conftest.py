"""
Shared fixtures and fakes for the Cafe POS client tests.
"""

import asyncio
from typing import Optional, Dict, Any, Callable, List, Tuple

import pytest

from cafe_shared.interfaces import ICredentialStore, IPaymentChannel


class InMemoryCredentialStore(ICredentialStore):
    """Credential store kept in a dict."""

    def __init__(self):
        self.tokens: Dict[str, str] = {}
        self.last_active_user: Optional[str] = None

    def store_refresh_token(self, user_id: str, refresh_token: str) -> None:
        self.tokens[user_id] = refresh_token
        self.last_active_user = user_id

    def get_refresh_token(self, user_id: str) -> Optional[str]:
        return self.tokens.get(user_id)

    def remove_refresh_token(self, user_id: str) -> bool:
        return self.tokens.pop(user_id, None) is not None

    def get_last_active_user(self) -> Optional[str]:
        return self.last_active_user

    def clear_last_active_user(self) -> None:
        self.last_active_user = None


class FakeChannel(IPaymentChannel):
    """Push channel driven by the test through ``emit``."""

    def __init__(self, fail_open: Optional[Exception] = None):
        self.fail_open = fail_open
        self.order_code: Optional[str] = None
        self.opened = False
        self.closed = False
        self.close_calls = 0
        self._on_event: Optional[Callable[[str, Dict[str, Any]], None]] = None
        self._on_error: Optional[Callable[[Exception], None]] = None

    @property
    def is_connected(self) -> bool:
        return self.opened and not self.closed

    async def open(self, order_code, on_event, on_error=None) -> None:
        if self.fail_open is not None:
            raise self.fail_open
        self.order_code = order_code
        self._on_event = on_event
        self._on_error = on_error
        self.opened = True

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True

    def emit(self, event_name: str, payload: Any) -> None:
        if not self.closed and self._on_event is not None:
            self._on_event(event_name, payload)

    def fail(self, error: Exception) -> None:
        if self._on_error is not None:
            self._on_error(error)


class Recorder:
    """Collects callback invocations."""

    def __init__(self):
        self.calls: List[Tuple[str, Any]] = []

    def success(self, result):
        self.calls.append(('success', result))

    def failure(self, result):
        self.calls.append(('failure', result))

    def error(self, error):
        self.calls.append(('error', error))

    def named(self, name: str) -> List[Any]:
        return [value for call, value in self.calls if call == name]


async def settle(rounds: int = 5) -> None:
    """Let pending callbacks and tasks on the loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def credential_store():
    return InMemoryCredentialStore()


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def recorder():
    return Recorder()
