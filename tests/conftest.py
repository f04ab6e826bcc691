"""Shared fixtures for telegram_mcp tests.

The fakes below stand in for telethon and the MCP transport so the
lifecycle can be driven deterministically with asyncio.run().
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from telegram_mcp.errors import AuthError, SessionNotFoundError
from telegram_mcp.long_connection.base import ClientHandle
from telegram_mcp.long_connection.registry import NotificationDispatcher
from telegram_mcp.telegram.config import TelegramConfig
from telegram_mcp.telegram.session_store import SessionStore

PHONE = "+15550001234"
VALID_CODE = "12345"


# ── Fakes ────────────────────────────────────────────────────────────────


class FakeHandle(ClientHandle):
    """In-memory client handle.

    A handle built from a stored session starts authorized; a fresh one
    asks its code provider once per authenticate() call.
    """

    def __init__(self, config=None, session_blob: Optional[bytes] = None, on_update=None):
        self.session_blob = session_blob
        self.on_update = on_update
        self.authorized = bool(session_blob)
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.auth_calls = 0
        self.status_calls = 0

        self.connect_error: Optional[BaseException] = None
        self.connect_delay = 0.0
        self.auth_error: Optional[BaseException] = None
        self.status_error: Optional[BaseException] = None
        self.status_delay = 0.0

        self.dialogs: List[Any] = []
        self.messages: List[Any] = []
        self.query_errors: List[BaseException] = []

        self._disconnected = asyncio.Event()

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False
        self._disconnected.set()

    async def authenticate(self, phone, code_provider, password=None) -> None:
        self.auth_calls += 1
        if self.auth_error is not None:
            raise self.auth_error
        if self.authorized:
            return
        code = await code_provider("SentCodeTypeApp")
        if code != VALID_CODE:
            raise AuthError("PHONE_CODE_INVALID")
        self.authorized = True
        self.session_blob = b"session-for-" + phone.encode("ascii")

    async def status(self) -> bool:
        self.status_calls += 1
        if self.status_delay:
            await asyncio.sleep(self.status_delay)
        if self.status_error is not None:
            raise self.status_error
        return self.authorized

    async def call(self, request: Any) -> Any:
        return request

    async def run_until_disconnected(self) -> None:
        await self._disconnected.wait()

    def drop_connection(self) -> None:
        """Simulate the connection dying on its own."""
        self.connected = False
        self._disconnected.set()

    def export_session(self) -> bytes:
        return self.session_blob or b""

    async def _maybe_fail(self) -> None:
        if self.query_errors:
            raise self.query_errors.pop(0)

    async def get_dialogs(self, limit: int) -> List[Any]:
        await self._maybe_fail()
        return self.dialogs[:limit]

    async def resolve_group(self, group_id: int) -> Any:
        await self._maybe_fail()
        return group_id

    async def get_messages(self, entity: Any, limit: int) -> List[Any]:
        return self.messages[:limit]


class HandleFactory:
    """Records every handle the lifecycle manager builds."""

    def __init__(self, prepare=None):
        self.handles: List[FakeHandle] = []
        self.blobs: List[Optional[bytes]] = []
        self._prepare = prepare

    def __call__(self, config, session_blob=None, on_update=None) -> FakeHandle:
        handle = FakeHandle(config, session_blob, on_update)
        if self._prepare is not None:
            self._prepare(handle, len(self.handles))
        self.handles.append(handle)
        self.blobs.append(session_blob)
        return handle


class MemoryStore(SessionStore):
    """Dict-backed session store."""

    def __init__(self, data: Optional[Dict[str, bytes]] = None):
        self.data: Dict[str, bytes] = dict(data or {})
        self.saves = 0
        self.closed = False

    async def load(self, key: str) -> bytes:
        if key not in self.data:
            raise SessionNotFoundError(key)
        return self.data[key]

    async def save(self, key: str, data: bytes) -> None:
        self.saves += 1
        self.data[key] = data

    async def close(self) -> None:
        self.closed = True


class RecordingSender:
    """Notification sender that remembers what it delivered."""

    def __init__(self):
        self.sent: List[tuple] = []

    async def __call__(self, listener_id: str, event: str, payload: Dict[str, Any]) -> None:
        self.sent.append((listener_id, event, payload))

    def events(self) -> List[str]:
        return [event for _, event, _ in self.sent]


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll predicate until it is true or fail after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def store_factory_for(store: SessionStore):
    async def factory(config):
        return store
    return factory


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture
def config(tmp_path):
    """Configuration with every delay shortened for tests."""
    return TelegramConfig(
        phone=PHONE,
        app_id=12345,
        app_hash="0123456789abcdef",
        port=8080,
        session_dir=str(tmp_path / "sessions"),
        auth_retry_delay=0.01,
        init_timeout=0.5,
        rebuild_delay=0.01,
        teardown_grace_period=0.0,
        health_check_interval=0.05,
        health_check_timeout=0.02,
        max_consecutive_errors=3,
        request_timeout=0.5,
        request_max_retries=3,
        request_retry_delay=0.0,
    )


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def dispatcher(sender):
    """Dispatcher with one registered listener."""
    dispatcher = NotificationDispatcher(sender=sender)
    dispatcher.register("listener-1")
    return dispatcher
