"""
Listener Registry and Notification Dispatcher

Keeps track of the external listeners (MCP client sessions) and fans
platform events out to them.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from telegram_mcp.errors import ListenerGoneError

logger = logging.getLogger(__name__)

# sender(listener_id, event_name, payload)
NotificationSender = Callable[[str, str, Dict[str, Any]], Awaitable[None]]


class ListenerRegistry:
    """
    Thread-safe set of listener identifiers.

    Iteration always happens on a snapshot, so listeners can come and go
    while a dispatch is in progress.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, float] = {}
        self._lock = threading.Lock()

    def register(self, listener_id: str) -> bool:
        """
        Register a listener.

        Args:
            listener_id: Opaque listener identifier

        Returns:
            True if the listener was not registered before
        """
        with self._lock:
            is_new = listener_id not in self._listeners
            self._listeners[listener_id] = time.time()

        if is_new:
            logger.info(f"Registered listener: {listener_id}")
        return is_new

    def unregister(self, listener_id: str) -> bool:
        """
        Unregister a listener.

        Args:
            listener_id: Opaque listener identifier

        Returns:
            True if the listener was removed, False if it was unknown
        """
        with self._lock:
            removed = self._listeners.pop(listener_id, None) is not None

        if removed:
            logger.info(f"Unregistered listener: {listener_id}")
        return removed

    def is_registered(self, listener_id: str) -> bool:
        """Check if a listener is registered."""
        with self._lock:
            return listener_id in self._listeners

    def snapshot(self) -> List[str]:
        """Get a copy of the registered listener IDs."""
        with self._lock:
            return list(self._listeners)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def clear(self) -> None:
        """Remove all listeners."""
        with self._lock:
            self._listeners.clear()
        logger.info("Cleared all listeners")


class NotificationDispatcher:
    """
    Fans events out to registered listeners.

    Dispatch never raises: a failed delivery is logged and the remaining
    listeners still get the event.
    """

    def __init__(
        self,
        sender: Optional[NotificationSender] = None,
        active_listener: Optional[str] = None,
        delivery_timeout: float = 5.0,
    ):
        """
        Initialize the dispatcher.

        Args:
            sender: Async callable delivering one event to one listener
            active_listener: If set, events go only to this listener
            delivery_timeout: Maximum time spent on a single delivery
        """
        self.registry = ListenerRegistry()
        self._sender = sender
        self._active_listener = active_listener
        self._delivery_timeout = delivery_timeout

    @property
    def active_listener(self) -> Optional[str]:
        """Listener that receives all events, if one is designated."""
        return self._active_listener

    def set_sender(self, sender: NotificationSender) -> None:
        """Install the transport used to deliver events."""
        self._sender = sender

    def register(self, listener_id: str) -> bool:
        """Register a listener. Returns True if it is new."""
        return self.registry.register(listener_id)

    def unregister(self, listener_id: str) -> bool:
        """Unregister a listener. Returns True if it was registered."""
        return self.registry.unregister(listener_id)

    async def dispatch(self, event: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Deliver an event to the listeners.

        Args:
            event: Event name (e.g., "auth_code_needed")
            payload: Event parameters

        Returns:
            Number of listeners the event was delivered to
        """
        payload = payload or {}
        logger.info(f"Sending notification: {event}, params: {payload}")

        if self._sender is None:
            logger.warning(f"No notification transport, dropping {event}")
            return 0

        if self._active_listener:
            targets = [self._active_listener]
        else:
            targets = self.registry.snapshot()

        if not targets:
            logger.info("No clients received notification")
            return 0

        delivered = 0
        for listener_id in targets:
            if await self._deliver(listener_id, event, payload):
                delivered += 1

        if delivered:
            logger.info(f"Notification {event} sent to {delivered} clients")
        else:
            logger.info("No clients received notification")
        return delivered

    async def _deliver(self, listener_id: str, event: str, payload: Dict[str, Any]) -> bool:
        """Deliver to a single listener, logging failures."""
        try:
            await asyncio.wait_for(
                self._sender(listener_id, event, payload),
                timeout=self._delivery_timeout,
            )
            return True
        except ListenerGoneError:
            logger.info(f"Listener {listener_id} is gone, removing it")
            self.registry.unregister(listener_id)
        except asyncio.TimeoutError:
            logger.error(f"Timed out sending {event} to {listener_id}")
        except Exception as e:
            logger.error(f"Failed to send {event} to {listener_id}: {e}")
        return False
