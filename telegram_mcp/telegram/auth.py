"""
Telegram Authentication Coordinator

Drives the login flow. When Telegram sends a one-time code the flow
suspends until the code arrives through submit_code(), which is called by
the MCP tool server.
"""

import asyncio
import logging
import threading
from enum import Enum
from typing import Optional

from telegram_mcp.errors import (
    AuthCancelledError,
    FatalClientError,
    InvalidStateError,
)
from telegram_mcp.long_connection.base import ClientHandle
from telegram_mcp.long_connection.registry import NotificationDispatcher

logger = logging.getLogger(__name__)


class AuthState(Enum):
    """Authentication states."""
    IDLE = "idle"
    AWAITING_CODE = "awaiting_code"


class AuthCoordinator:
    """
    Runs the authentication loop and accepts externally supplied codes.

    Every code request gets its own single-use future; a submitted code
    resolves it and the next request creates a new one.
    """

    def __init__(
        self,
        phone: str,
        dispatcher: NotificationDispatcher,
        retry_delay: float = 30.0,
        password: Optional[str] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            phone: Account phone number
            dispatcher: Receives auth_code_needed / auth_success / auth_error
            retry_delay: Pause before retrying a failed authentication
            password: Two-step verification password, if any
        """
        self._phone = phone
        self._dispatcher = dispatcher
        self._retry_delay = retry_delay
        self._password = password

        self._lock = threading.Lock()
        self._state = AuthState.IDLE
        self._code_ready: Optional[asyncio.Future] = None

    @property
    def state(self) -> AuthState:
        """Get the current authentication state."""
        with self._lock:
            return self._state

    @property
    def is_awaiting_code(self) -> bool:
        """Check if a code has been requested and not yet submitted."""
        return self.state == AuthState.AWAITING_CODE

    async def attempt(self, handle: ClientHandle, stop_event: asyncio.Event) -> None:
        """
        Authenticate the handle, retrying until it succeeds.

        Args:
            handle: Connected client handle
            stop_event: Aborts the attempt when set

        Raises:
            AuthCancelledError: If stop_event fires while waiting
            FatalClientError: If the handle died and must be rebuilt
        """
        async def code_provider(code_type: str) -> str:
            return await self._wait_for_code(code_type, stop_event)

        while True:
            if stop_event.is_set():
                raise AuthCancelledError("shutdown requested before authentication")

            try:
                await handle.authenticate(self._phone, code_provider, self._password)
            except (AuthCancelledError, FatalClientError):
                raise
            except Exception as e:
                logger.error(f"AuthCoordinator: [AUTH_ERROR] {e}")
                await self._dispatcher.dispatch("auth_error", {"error": str(e)})

                logger.info(f"AuthCoordinator: [RETRY] in {self._retry_delay}s")
                if await _wait_or_stop(stop_event, self._retry_delay):
                    raise AuthCancelledError("shutdown requested during retry delay")
                continue

            logger.info("AuthCoordinator: [AUTH_OK] Authentication successful")
            await self._dispatcher.dispatch("auth_success", {"success": True})
            return

    async def _wait_for_code(self, code_type: str, stop_event: asyncio.Event) -> str:
        """Publish a code request and wait for submit_code() or shutdown."""
        code_ready = asyncio.get_running_loop().create_future()
        with self._lock:
            self._state = AuthState.AWAITING_CODE
            self._code_ready = code_ready

        await self._dispatcher.dispatch(
            "auth_code_needed", {"phone": self._phone, "type": code_type}
        )
        logger.info(f"AuthCoordinator: [CODE_NEEDED] phone={self._phone} type={code_type}")
        logger.info('AuthCoordinator: To provide the code, use the telegram_send_code tool with {"code": "YOUR_CODE"}')

        stop_waiter = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({code_ready, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()
            if not code_ready.done():
                # Cancelled or shutting down: withdraw the request
                code_ready.cancel()
                with self._lock:
                    if self._code_ready is code_ready:
                        self._state = AuthState.IDLE
                        self._code_ready = None

        if code_ready.cancelled():
            logger.info("AuthCoordinator: [CODE_CANCELLED] stopped while waiting for code")
            raise AuthCancelledError("shutdown requested while waiting for code")

        logger.info("AuthCoordinator: [CODE_RECEIVED]")
        return code_ready.result()

    def submit_code(self, code: str) -> None:
        """
        Hand over a one-time code to the waiting authentication flow.

        Args:
            code: Code received by the user

        Raises:
            InvalidStateError: If no code is currently requested
        """
        with self._lock:
            code_ready = self._code_ready
            if (
                self._state != AuthState.AWAITING_CODE
                or code_ready is None
                or code_ready.done()
            ):
                raise InvalidStateError("Authentication code not requested or already provided")

            self._state = AuthState.IDLE
            self._code_ready = None

        code_ready.get_loop().call_soon_threadsafe(_resolve, code_ready, code)
        logger.info("AuthCoordinator: [CODE_SUBMITTED]")


def _resolve(future: asyncio.Future, value: str) -> None:
    if not future.done():
        future.set_result(value)


async def _wait_or_stop(stop_event: asyncio.Event, delay: float) -> bool:
    """Sleep for delay seconds. Returns True if stop_event fired first."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False
