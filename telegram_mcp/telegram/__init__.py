"""
Telegram Bridge - long connection platform for Telegram

Keeps one authorized Telegram client alive and exposes it to the MCP tool
server. The login code is supplied from outside through submit_code().
"""

import asyncio
import logging
from typing import Callable, Optional

from telegram_mcp.errors import ClientNotReadyError
from telegram_mcp.long_connection.base import (
    ClientHandle,
    ConnectionState,
    LongConnectionPlatform,
    PlatformMessage,
)
from telegram_mcp.long_connection.registry import NotificationDispatcher
from telegram_mcp.telegram.auth import AuthCoordinator, AuthState
from telegram_mcp.telegram.client import TelethonHandle
from telegram_mcp.telegram.config import TelegramConfig
from telegram_mcp.telegram.health import HealthMonitor
from telegram_mcp.telegram.lifecycle import ClientLifecycleManager, ClientState
from telegram_mcp.telegram.session_store import create_session_store

logger = logging.getLogger(__name__)

NOT_READY_MESSAGE = (
    "Telegram client not ready, reconnecting, please try again in a few seconds"
)


class TelegramBridge(LongConnectionPlatform):
    """
    Telegram platform - wires the client lifecycle together.

    Components:
    - AuthCoordinator: login flow, waits for externally supplied codes
    - ClientLifecycleManager: builds and rebuilds the client
    - HealthMonitor: periodic and on-demand status probes
    - NotificationDispatcher: events to MCP listeners
    """

    def __init__(
        self,
        config: TelegramConfig,
        dispatcher: Optional[NotificationDispatcher] = None,
        store_factory=create_session_store,
        handle_factory=TelethonHandle,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
    ):
        """
        Initialize the bridge. Nothing connects until connect() is awaited.

        Args:
            config: TelegramConfig instance
            dispatcher: Notification fan-out (a new one is created if omitted)
            store_factory: Async callable returning the session store
            handle_factory: Callable building client handles
            on_fatal: Called when the process must exit
        """
        super().__init__(platform_id="telegram")
        self.config = config
        self.dispatcher = dispatcher or NotificationDispatcher(
            active_listener=config.session_id
        )
        self.client_state = ClientState()
        self.auth = AuthCoordinator(
            config.phone,
            self.dispatcher,
            retry_delay=config.auth_retry_delay,
            password=config.password,
        )
        self.lifecycle = ClientLifecycleManager(
            config,
            self.client_state,
            self.auth,
            on_update=self._handle_message,
            store_factory=store_factory,
            handle_factory=handle_factory,
            on_fatal=self._handle_fatal,
        )
        self.monitor = HealthMonitor(
            self.client_state,
            self.lifecycle,
            self.auth,
            interval=config.health_check_interval,
            timeout=config.health_check_timeout,
            max_consecutive_errors=config.max_consecutive_errors,
        )

        self._on_fatal = on_fatal
        self._stop_event: Optional[asyncio.Event] = None
        self.on_message(self._publish_message)

    @property
    def stop_event(self) -> Optional[asyncio.Event]:
        """Root shutdown signal, set by disconnect()."""
        return self._stop_event

    async def connect(self) -> None:
        """Start supervising the client. The first probe builds it."""
        if self._stop_event is not None and not self._stop_event.is_set():
            return

        logger.info(
            f"TelegramBridge: [CONNECT_START] storage="
            f"{'etcd' if self.config.uses_remote_storage else 'file'}"
        )
        self._set_state(ConnectionState.CONNECTING)
        self._stop_event = asyncio.Event()
        self.monitor.start(self._stop_event)
        self._set_state(ConnectionState.CONNECTED)
        logger.info("TelegramBridge: [CONNECTED] supervision started")

    async def disconnect(self) -> None:
        """Stop all background tasks and release the client."""
        logger.info("TelegramBridge: [DISCONNECT_START]...")
        if self._stop_event is not None:
            self._stop_event.set()

        await self.monitor.stop()
        await self.lifecycle.shutdown()

        if self._state != ConnectionState.ERROR:
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info("TelegramBridge: [DISCONNECTED]")

    def submit_code(self, code: str) -> None:
        """
        Pass a login code to the waiting authentication flow.

        Raises:
            InvalidStateError: If no code is currently requested
        """
        self.auth.submit_code(code)

    def is_ready(self) -> bool:
        """Check if the client is authorized and usable."""
        return self.client_state.is_ready()

    async def ensure_ready(self) -> ClientHandle:
        """
        Probe the client and return it if it is usable.

        Returns:
            The current client handle

        Raises:
            ClientNotReadyError: If the client is not authorized or being rebuilt
        """
        if self._stop_event is None or self._stop_event.is_set():
            raise ClientNotReadyError("Telegram client is not running")

        await self.monitor.check(self._stop_event)

        handle = self.client_state.get_handle()
        if handle is None or not self.client_state.is_ready():
            raise ClientNotReadyError(NOT_READY_MESSAGE)
        return handle

    async def _publish_message(self, message: PlatformMessage) -> None:
        """Forward an incoming Telegram message to MCP listeners."""
        await self.dispatcher.dispatch("telegram/new_message", message.to_payload())

    def _handle_fatal(self, exc: BaseException) -> None:
        self._set_state(ConnectionState.ERROR)
        if self._stop_event is not None:
            self._stop_event.set()
        if self._on_fatal is not None:
            self._on_fatal(exc)

    def get_stats(self) -> dict:
        """Get bridge statistics."""
        return {
            "platform": "telegram",
            "state": self._state.value,
            "ready": self.client_state.is_ready(),
            "auth_state": self.auth.state.value,
            "awaiting_code": self.auth.state == AuthState.AWAITING_CODE,
            "generation": self.client_state.generation,
            "consecutive_errors": self.monitor.consecutive_errors,
            "listeners": len(self.dispatcher.registry),
            "storage": "etcd" if self.config.uses_remote_storage else "file",
        }


__all__ = [
    "TelegramBridge",
    "TelegramConfig",
    "NOT_READY_MESSAGE",
]
