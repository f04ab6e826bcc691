"""
Long Connection Abstract Base Classes

Defines the interface of a long-lived platform connection (the platform
itself and the opaque client handle it drives).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection states for a platform."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class PlatformMessage:
    """Message received from a platform."""
    platform_id: str
    chat_id: Optional[int]
    sender_id: Optional[int]
    message_id: int
    text: str
    timestamp: Optional[int]
    message_type: str = "private"
    has_media: bool = False

    def to_payload(self) -> Dict[str, Any]:
        """Notification payload for this message."""
        return asdict(self)


# Callback the handle uses to hand incoming messages to its owner
UpdateCallback = Callable[[PlatformMessage], Awaitable[None]]

# Callback the handle uses to obtain a one-time login code; receives the
# delivery type reported by the platform (app, sms, call, ...)
CodeProvider = Callable[[str], Awaitable[str]]


class ClientHandle(ABC):
    """
    Opaque connection to the remote platform.

    Implementations must raise only telegram_mcp.errors types, so callers
    never have to inspect library-specific exceptions.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the network connection."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the network connection and release its resources."""

    @abstractmethod
    async def authenticate(
        self,
        phone: str,
        code_provider: CodeProvider,
        password: Optional[str] = None,
    ) -> None:
        """
        Log in if the session is not already authorized.

        Args:
            phone: Account phone number
            code_provider: Async callable returning the one-time code
            password: Two-step verification password, if any
        """

    @abstractmethod
    async def status(self) -> bool:
        """
        Ask the platform whether the session is authorized.

        Returns:
            True if authorized
        """

    @abstractmethod
    async def call(self, request: Any) -> Any:
        """Send a raw API request."""

    @abstractmethod
    async def run_until_disconnected(self) -> None:
        """Block until the connection is closed for good."""

    @abstractmethod
    def export_session(self) -> bytes:
        """Serialize the authenticated session state."""


class LongConnectionPlatform(ABC):
    """
    A platform kept connected in the background.

    Subclasses drive their own client; this base tracks the coarse state and
    routes incoming messages to the single registered consumer.
    """

    def __init__(self, platform_id: str):
        """
        Args:
            platform_id: Platform name used in messages and stats (e.g., "telegram")
        """
        self.platform_id = platform_id
        self._state = ConnectionState.DISCONNECTED
        self._message_callback: Optional[UpdateCallback] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @abstractmethod
    async def connect(self) -> None:
        """
        Start maintaining the long connection to the platform.

        Raises:
            ConfigError: If the platform cannot be started
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Stop the connection and all background tasks."""

    def on_message(self, callback: UpdateCallback) -> None:
        """Set the consumer of incoming PlatformMessages."""
        self._message_callback = callback

    async def _handle_message(self, message: PlatformMessage) -> None:
        """Pass a message to the consumer. Consumer failures are logged only."""
        if self._message_callback is None:
            return
        try:
            await self._message_callback(message)
        except Exception as e:
            logger.error(
                f"{self.platform_id}: [MESSAGE_ERROR] message {message.message_id}: {e}"
            )

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug(f"{self.platform_id}: [STATE] {self._state.value} -> {state.value}")
        self._state = state
