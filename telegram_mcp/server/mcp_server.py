"""
Telegram MCP Server.

Exposes the Telegram bridge as MCP tools: code submission for the login
flow, group and message queries, and a status report. Bridge events are
pushed to connected MCP sessions as logging notifications.
"""

import asyncio
import json
import logging
import time
import weakref
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import anyio
from mcp import types
from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from telegram_mcp.errors import (
    ClientCallError,
    ClientNotReadyError,
    FatalClientError,
    InvalidStateError,
    ListenerGoneError,
    TransientConnectionError,
)
from telegram_mcp.long_connection.registry import NotificationDispatcher
from telegram_mcp.server.formatting import group_info, message_info

logger = logging.getLogger(__name__)

T = TypeVar("T")

RECONNECTING_MESSAGE = (
    "Telegram connection error detected. System is reconnecting, "
    "please try again in a few seconds."
)


class TelegramMCPServer:
    """Class-based MCP server for the Telegram bridge.

    Owns the FastMCP instance and the mapping from listener IDs to live MCP
    sessions used for notifications.
    """

    def __init__(self, bridge: Any, dispatcher: NotificationDispatcher, config: Any):
        """Initialize the server and register the tools.

        Args:
            bridge: TelegramBridge instance
            dispatcher: Dispatcher the bridge publishes events through
            config: TelegramConfig instance
        """
        self._bridge = bridge
        self._dispatcher = dispatcher
        self._config = config
        self._sessions: "weakref.WeakValueDictionary[str, Any]" = weakref.WeakValueDictionary()
        self._listener_ids: "weakref.WeakKeyDictionary[Any, str]" = weakref.WeakKeyDictionary()

        self._server = FastMCP("telegram-client", host="0.0.0.0", port=config.port)
        self._dispatcher.set_sender(self._send_to_session)
        self._register_tools()
        self._watch_initialized_sessions()
        logger.info("TelegramMCPServer initialized with 4 Telegram tools")

    def _register_tools(self) -> None:
        """Register all Telegram tools with the MCP server."""
        self._register_send_code()
        self._register_get_groups()
        self._register_get_group_messages()
        self._register_status()

    def _register_send_code(self) -> None:
        @self._server.tool()
        async def telegram_send_code(code: str, ctx: Context) -> str:
            """Send the Telegram login code.

            Call this after an auth_code_needed notification with the code
            the account received in the Telegram app or by SMS.

            Args:
                code: One-time login code
            """
            await self._track_session(ctx)
            return await self._send_code(code)

    def _register_get_groups(self) -> None:
        @self._server.tool()
        async def telegram_get_groups(ctx: Context, limit: int = 50) -> str:
            """Get the Telegram groups of the account.

            Broadcast channels are skipped; basic groups and supergroups
            are returned as JSON {"groups": [...], "count": N}.

            Args:
                limit: Maximum number of groups to return
            """
            await self._track_session(ctx)
            return await self._get_groups(limit)

    def _register_get_group_messages(self) -> None:
        @self._server.tool()
        async def telegram_get_group_messages(
            group_id: int, ctx: Context, limit: int = 20
        ) -> str:
            """Get the latest messages of a Telegram group.

            Args:
                group_id: Group ID as returned by telegram_get_groups
                limit: Maximum number of messages to return
            """
            await self._track_session(ctx)
            return await self._get_group_messages(group_id, limit)

    def _register_status(self) -> None:
        @self._server.tool()
        async def telegram_status(ctx: Context) -> str:
            """Get the state of the Telegram client.

            Reports readiness, the authentication state and recent
            connection errors as JSON.
            """
            await self._track_session(ctx)
            return await self._status()

    @property
    def server(self) -> FastMCP:
        """Get the underlying FastMCP server instance."""
        return self._server

    async def list_tools(self):
        """List all registered tools."""
        return await self._server.list_tools()

    async def run(self) -> None:
        """Serve MCP on the configured transport until cancelled."""
        logger.info(
            f"Starting MCP server on 0.0.0.0:{self._config.port} "
            f"transport={self._config.transport}"
        )
        if self._config.transport == "streamable-http":
            await self._server.run_streamable_http_async()
        else:
            await self._server.run_sse_async()

    async def _send_code(self, code: str) -> str:
        code = (code or "").strip()
        if not code:
            raise ToolError("code parameter is required")

        try:
            self._bridge.submit_code(code)
        except InvalidStateError as e:
            logger.warning(f"Rejected authentication code: {e}")
            raise ToolError(str(e)) from e

        logger.info("Authentication code accepted")
        return "Code accepted"

    async def _get_groups(self, limit: int) -> str:
        if limit < 1:
            raise ToolError("limit must be a positive number")

        async def fetch(handle):
            return await handle.get_dialogs(limit)

        dialogs = await self._run_query("get Telegram groups", fetch)

        groups = []
        for dialog in dialogs:
            info = group_info(dialog.entity)
            if info is None:
                continue
            groups.append(info)
            if len(groups) >= limit:
                break

        logger.info(f"Found {len(groups)} groups (requested limit: {limit})")
        return json.dumps({"groups": groups, "count": len(groups)}, ensure_ascii=False)

    async def _get_group_messages(self, group_id: int, limit: int) -> str:
        if limit < 1:
            raise ToolError("limit must be a positive number")

        async def fetch(handle):
            entity = await handle.resolve_group(group_id)
            return await handle.get_messages(entity, limit)

        raw_messages = await self._run_query(f"get messages from group {group_id}", fetch)

        messages = []
        for raw in raw_messages:
            info = message_info(raw)
            if info is not None:
                messages.append(info)

        logger.info(f"Found {len(messages)} messages from group {group_id}")
        return json.dumps(
            {"messages": messages, "count": len(messages), "group_id": group_id},
            ensure_ascii=False,
        )

    async def _status(self) -> str:
        return json.dumps(self._bridge.get_stats())

    async def _run_query(self, operation: str, func: Callable[[Any], Awaitable[T]]) -> T:
        """Run a read-only query on a ready client, retrying connection errors.

        Args:
            operation: Human readable description used in errors
            func: Async callable receiving the client handle

        Returns:
            Whatever func returns

        Raises:
            ToolError: If the client is not ready or the query fails
        """
        try:
            handle = await self._bridge.ensure_ready()
        except ClientNotReadyError as e:
            logger.info(f"Cannot {operation}: {e}")
            raise ToolError(str(e)) from e

        max_retries = self._config.request_max_retries
        last_error: Optional[Exception] = None

        for attempt in range(1, max_retries + 1):
            try:
                return await asyncio.wait_for(func(handle), timeout=self._config.request_timeout)
            except asyncio.TimeoutError:
                last_error = TransientConnectionError(
                    f"request timed out after {self._config.request_timeout}s"
                )
            except TransientConnectionError as e:
                last_error = e
            except FatalClientError as e:
                logger.error(f"Fatal client error during {operation}: {e}")
                raise ToolError(RECONNECTING_MESSAGE) from e
            except ClientCallError as e:
                logger.error(f"Failed to {operation}: {e}")
                raise ToolError(f"Failed to {operation}: {e}") from e

            logger.warning(f"Error during {operation} (attempt {attempt}/{max_retries}): {last_error}")
            if attempt < max_retries:
                delay = self._config.request_retry_delay
                if isinstance(last_error, TransientConnectionError) and last_error.retry_after:
                    delay = last_error.retry_after
                    logger.info(f"Flood wait detected, waiting for {delay} seconds")
                await asyncio.sleep(delay)

        raise ToolError(f"Failed to {operation} after {max_retries} attempts: {last_error}")

    def _watch_initialized_sessions(self) -> None:
        """Register MCP sessions as listeners once they finish initializing.

        The initialized notification carries no request context, so the
        low-level message handler is wrapped to see the session it came from.
        """
        lowlevel = self._server._mcp_server
        handle_message = lowlevel._handle_message

        async def handle_initialized(message, session, *args, **kwargs):
            if isinstance(message, types.ClientNotification) and isinstance(
                message.root, types.InitializedNotification
            ):
                await self._register_session(session, f"session-{id(session)}")
            return await handle_message(message, session, *args, **kwargs)

        lowlevel._handle_message = handle_initialized

    async def _track_session(self, ctx: Context) -> Optional[str]:
        """Register the calling MCP session as a notification listener.

        Returns:
            Listener ID, or None when called outside an MCP request
        """
        try:
            session = ctx.session
        except ValueError:
            return None

        listener_id = _listener_id(ctx, session)
        previous = self._listener_ids.get(session)
        if previous is not None and previous != listener_id:
            # The transport session ID is only known once a request arrives
            logger.info(f"Listener {previous} is now {listener_id}")
            self._dispatcher.unregister(previous)
            self._sessions.pop(previous, None)
            self._sessions[listener_id] = session
            self._listener_ids[session] = listener_id
            self._dispatcher.register(listener_id)
            return listener_id

        return await self._register_session(session, listener_id)

    async def _register_session(self, session: Any, listener_id: str) -> str:
        self._sessions[listener_id] = session
        self._listener_ids[session] = listener_id
        if self._dispatcher.register(listener_id):
            logger.info(f"New client connected: {listener_id}")
            await self._dispatcher.dispatch(
                "telegram/client_connected",
                {"session_id": listener_id, "timestamp": int(time.time())},
            )
        return listener_id

    async def _send_to_session(self, listener_id: str, event: str, params: Dict[str, Any]) -> None:
        """Deliver one event to one MCP session as a logging notification."""
        session = self._sessions.get(listener_id)
        if session is None:
            raise ListenerGoneError(f"session {listener_id} is closed")

        try:
            await session.send_log_message(
                level="info",
                data={"method": event, "params": params},
                logger="telegram",
            )
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            self._sessions.pop(listener_id, None)
            raise ListenerGoneError(f"session {listener_id} is closed") from e


def _listener_id(ctx: Context, session: Any) -> str:
    """Transport session ID of the request, or a process-local fallback."""
    request = getattr(ctx.request_context, "request", None)
    if request is not None:
        query_params = getattr(request, "query_params", None) or {}
        headers = getattr(request, "headers", None) or {}
        session_id = query_params.get("session_id") or headers.get("mcp-session-id")
        if session_id:
            return session_id
    return f"session-{id(session)}"
