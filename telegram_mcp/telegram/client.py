"""
Telethon Client Handle

Wraps a telethon TelegramClient behind the ClientHandle interface. Every
call into telethon goes through _guard(), which turns library exceptions
into the typed errors of telegram_mcp.errors.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional

from telethon import TelegramClient, errors, events, functions
from telethon.sessions import StringSession

from telegram_mcp.errors import (
    AuthError,
    BridgeError,
    ClientCallError,
    classify_client_error,
)
from telegram_mcp.long_connection.base import (
    ClientHandle,
    CodeProvider,
    PlatformMessage,
    UpdateCallback,
)

logger = logging.getLogger(__name__)


class TelethonHandle(ClientHandle):
    """
    Telegram connection backed by telethon.

    The session lives in memory as a StringSession; the owner persists it
    with export_session().
    """

    def __init__(
        self,
        config,
        session_blob: Optional[bytes] = None,
        on_update: Optional[UpdateCallback] = None,
    ):
        """
        Create the telethon client. No network I/O happens here.

        Args:
            config: TelegramConfig instance
            session_blob: Previously exported session, or None for a fresh login
            on_update: Async callback for incoming messages
        """
        session = StringSession(session_blob.decode("ascii") if session_blob else None)
        self._client = TelegramClient(
            session,
            config.app_id,
            config.app_hash,
            connection_retries=config.connection_retries,
            retry_delay=config.connection_retry_delay,
            auto_reconnect=True,
        )
        self._on_update = on_update
        self._client.add_event_handler(self._handle_new_message, events.NewMessage(incoming=True))

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        """Classify any telethon failure raised inside the block."""
        try:
            yield
        except BridgeError:
            raise
        except Exception as e:
            error = classify_client_error(e)
            logger.debug(f"TelethonHandle: [{operation}] {type(error).__name__}: {error}")
            raise error from e

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected()

    async def connect(self) -> None:
        async with self._guard("connect"):
            await self._client.connect()
        logger.info("TelethonHandle: [CONNECTED]")

    async def disconnect(self) -> None:
        async with self._guard("disconnect"):
            await self._client.disconnect()
        logger.info("TelethonHandle: [DISCONNECTED]")

    async def authenticate(
        self,
        phone: str,
        code_provider: CodeProvider,
        password: Optional[str] = None,
    ) -> None:
        async with self._guard("authenticate"):
            if await self._client.is_user_authorized():
                logger.info("TelethonHandle: [AUTH] session already authorized")
                return

            try:
                sent = await self._client.send_code_request(phone)
            except errors.BadRequestError as e:
                raise AuthError(f"failed to send login code: {e}") from e

            code_type = type(getattr(sent, "type", None)).__name__
            code = await code_provider(code_type)

            try:
                await self._client.sign_in(
                    phone=phone, code=code, phone_code_hash=sent.phone_code_hash
                )
            except errors.SessionPasswordNeededError as e:
                if not password:
                    raise AuthError(
                        "account has two-step verification enabled, set TELEGRAM_PASSWORD"
                    ) from e
                try:
                    await self._client.sign_in(password=password)
                except errors.BadRequestError as e2:
                    raise AuthError(f"two-step password rejected: {e2}") from e2
            except errors.BadRequestError as e:
                raise AuthError(f"sign-in rejected: {e}") from e

    async def status(self) -> bool:
        # is_user_authorized() caches its answer, so ask the server directly
        async with self._guard("status"):
            try:
                await self._client(functions.updates.GetStateRequest())
            except (errors.AuthKeyUnregisteredError, errors.SessionRevokedError):
                # The session is dead, not merely logged out
                raise
            except errors.UnauthorizedError:
                return False
            return True

    async def call(self, request: Any) -> Any:
        async with self._guard("call"):
            return await self._client(request)

    async def run_until_disconnected(self) -> None:
        async with self._guard("run"):
            await self._client.disconnected

    def export_session(self) -> bytes:
        return self._client.session.save().encode("ascii")

    async def get_dialogs(self, limit: int) -> List[Any]:
        """
        Get the most recent dialogs.

        Args:
            limit: Maximum number of dialogs

        Returns:
            List of telethon Dialog objects
        """
        async with self._guard("get_dialogs"):
            return list(await self._client.get_dialogs(limit=limit))

    async def get_messages(self, entity: Any, limit: int) -> List[Any]:
        """
        Get the latest messages of a chat.

        Args:
            entity: Resolved chat entity
            limit: Maximum number of messages

        Returns:
            List of telethon Message objects, newest first
        """
        async with self._guard("get_messages"):
            return list(await self._client.get_messages(entity, limit=limit))

    async def resolve_group(self, group_id: int, search_limit: int = 100) -> Any:
        """
        Find a group among the recent dialogs.

        Both the bare ID and the marked (negative) ID are accepted.

        Args:
            group_id: Group ID as returned by the group listing
            search_limit: Number of dialogs to search

        Returns:
            The group entity

        Raises:
            ClientCallError: If the group is forbidden or cannot be found
        """
        bare_id = abs(group_id)
        for dialog in await self.get_dialogs(search_limit):
            entity = dialog.entity
            if group_id != dialog.id and bare_id != getattr(entity, "id", None):
                continue
            if type(entity).__name__ in ("ChatForbidden", "ChannelForbidden"):
                raise ClientCallError(f"found group {group_id} but it's forbidden")
            logger.info(f"TelethonHandle: [RESOLVE] group {group_id} -> {getattr(entity, 'title', '')}")
            return entity

        async with self._guard("get_entity"):
            try:
                return await self._client.get_entity(group_id)
            except ValueError as e:
                raise ClientCallError(
                    f"group {group_id} not found in available dialogs"
                ) from e

    async def _handle_new_message(self, event: Any) -> None:
        """Forward an incoming message to the owner."""
        if self._on_update is None:
            return

        message = event.message
        if event.is_private:
            message_type = "private"
        elif event.is_channel and not event.is_group:
            message_type = "channel"
        else:
            message_type = "group"

        platform_message = PlatformMessage(
            platform_id="telegram",
            chat_id=event.chat_id,
            sender_id=event.sender_id,
            message_id=message.id,
            text=message.message or "",
            timestamp=int(message.date.timestamp()) if message.date else None,
            message_type=message_type,
            has_media=message.media is not None,
        )

        try:
            await self._on_update(platform_message)
        except Exception as e:
            logger.error(f"TelethonHandle: [UPDATE_ERROR] {e}")
