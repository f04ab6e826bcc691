"""
Long Connection Framework

Generic pieces for keeping a long-running connection to a messaging
platform: the platform/handle interfaces and the notification fan-out to
external listeners.

Usage:
    from telegram_mcp.long_connection import NotificationDispatcher

    dispatcher = NotificationDispatcher(sender=my_sender)
    dispatcher.register("listener-1")
    await dispatcher.dispatch("auth_code_needed", {"phone": "+1555"})
"""

from telegram_mcp.long_connection.base import (
    ClientHandle,
    CodeProvider,
    ConnectionState,
    LongConnectionPlatform,
    PlatformMessage,
    UpdateCallback,
)
from telegram_mcp.long_connection.registry import ListenerRegistry, NotificationDispatcher

__all__ = [
    "ClientHandle",
    "CodeProvider",
    "ConnectionState",
    "LongConnectionPlatform",
    "PlatformMessage",
    "UpdateCallback",
    "ListenerRegistry",
    "NotificationDispatcher",
]
