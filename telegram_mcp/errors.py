"""
Error taxonomy for the Telegram bridge.

Every call into the Telegram client goes through classify_client_error(),
so the rest of the system only ever sees the typed errors below.
"""

import asyncio
import socket
from typing import Optional

from telethon import errors as tg_errors


class BridgeError(Exception):
    """Base class for all errors raised by telegram_mcp."""


class ConfigError(BridgeError):
    """Required configuration is missing or invalid."""


class StorageError(BridgeError):
    """Session storage failed in a way that is not a connectivity problem."""


class SessionNotFoundError(StorageError):
    """No session has been stored under the requested key yet."""


class StorageConnectionError(StorageError):
    """The session backend could not be reached. Fatal for the process."""


class ClientError(BridgeError):
    """Base class for classified Telegram client failures."""


class TransientConnectionError(ClientError):
    """The connection is slow or flaky; a later retry may succeed."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class FatalClientError(ClientError):
    """The current handle is unusable and must be rebuilt."""


class ClientCallError(ClientError):
    """Telegram rejected the request; the connection itself is fine."""


class AuthError(BridgeError):
    """The authentication exchange failed."""


class AuthCancelledError(BridgeError):
    """Authentication was abandoned because the bridge is shutting down."""


class InvalidStateError(BridgeError):
    """An authentication code was submitted while none was requested."""


class ClientNotReadyError(BridgeError):
    """The Telegram client is not authorized or is being rebuilt."""


class ListenerGoneError(BridgeError):
    """A notification listener no longer exists."""


_FATAL_TELEGRAM_ERRORS = (
    tg_errors.AuthKeyDuplicatedError,
    tg_errors.AuthKeyUnregisteredError,
    tg_errors.SessionRevokedError,
    tg_errors.InvalidBufferError,
    tg_errors.SecurityError,
)

_FATAL_TRANSPORT_ERRORS = (
    BrokenPipeError,
    ConnectionResetError,
    ConnectionAbortedError,
    EOFError,
    socket.gaierror,
)


def classify_client_error(exc: BaseException) -> ClientError:
    """
    Map an exception raised by the Telegram client to a typed error.

    Args:
        exc: Exception raised by telethon or the transport below it

    Returns:
        FatalClientError, TransientConnectionError or ClientCallError
    """
    if isinstance(exc, ClientError):
        return exc

    if isinstance(exc, _FATAL_TELEGRAM_ERRORS + _FATAL_TRANSPORT_ERRORS):
        return FatalClientError(f"{type(exc).__name__}: {exc}")

    if isinstance(exc, tg_errors.FloodWaitError):
        return TransientConnectionError(
            f"flood wait of {exc.seconds}s requested", retry_after=float(exc.seconds)
        )

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, tg_errors.TimedOutError)):
        return TransientConnectionError(f"timed out: {exc}")

    # telethon raises a bare ConnectionError once the sender has been closed
    if isinstance(exc, ConnectionError):
        return FatalClientError(f"connection closed: {exc}")

    if isinstance(exc, (tg_errors.ServerError, tg_errors.FloodError, OSError)):
        return TransientConnectionError(f"{type(exc).__name__}: {exc}")

    return ClientCallError(f"{type(exc).__name__}: {exc}")
