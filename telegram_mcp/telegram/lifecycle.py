"""
Telegram Client Lifecycle

Owns the single long-lived client handle: builds it from the stored
session, runs connect + authentication, persists the session and tears the
handle down again when it has to be rebuilt.
"""

import asyncio
import logging
import threading
from typing import Any, Callable, Optional, Tuple

from telegram_mcp.errors import (
    AuthCancelledError,
    FatalClientError,
    SessionNotFoundError,
    StorageConnectionError,
    StorageError,
)
from telegram_mcp.long_connection.base import ClientHandle, UpdateCallback
from telegram_mcp.telegram.auth import AuthCoordinator
from telegram_mcp.telegram.client import TelethonHandle
from telegram_mcp.telegram.session_store import SessionStore, create_session_store

logger = logging.getLogger(__name__)


class ClientState:
    """
    Handle, readiness and generation shared by the lifecycle manager, the
    health monitor and the tool server.

    The lock is only held for plain reads and writes, never across an await.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: Optional[ClientHandle] = None
        self._ready = False
        self._generation = 0

    @property
    def generation(self) -> int:
        """Number of setups started so far."""
        with self._lock:
            return self._generation

    def get_handle(self) -> Optional[ClientHandle]:
        """Get the current handle, if any."""
        with self._lock:
            return self._handle

    def snapshot(self) -> Tuple[Optional[ClientHandle], int]:
        """Get the current handle together with its generation."""
        with self._lock:
            return self._handle, self._generation

    def replace_handle(self, handle: Optional[ClientHandle]) -> Optional[ClientHandle]:
        """
        Install a new handle.

        Returns:
            The previously installed handle, if any
        """
        with self._lock:
            previous = self._handle
            self._handle = handle
            return previous

    def next_generation(self) -> int:
        """Start a new generation and return its number."""
        with self._lock:
            self._generation += 1
            return self._generation

    def is_ready(self) -> bool:
        """Check if the client is authorized and usable."""
        with self._lock:
            return self._ready

    def set_ready(self, value: bool, generation: Optional[int] = None) -> bool:
        """
        Update readiness.

        Args:
            value: New readiness
            generation: Generation the caller observed; stale writes are dropped

        Returns:
            True if the value was applied
        """
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._ready = value
            return True


StoreFactory = Callable[[Any], Any]
HandleFactory = Callable[..., ClientHandle]


class ClientLifecycleManager:
    """
    Builds, runs and rebuilds the Telegram client.

    setup() is serialized, so two rebuild requests never overlap. Failures
    of the run task are sorted into three outcomes: a storage outage ends
    the process, a dead connection schedules a rebuild, anything else is
    only logged.
    """

    def __init__(
        self,
        config,
        state: ClientState,
        auth: AuthCoordinator,
        on_update: Optional[UpdateCallback] = None,
        store_factory: StoreFactory = create_session_store,
        handle_factory: HandleFactory = TelethonHandle,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
    ):
        """
        Initialize the manager.

        Args:
            config: TelegramConfig instance
            state: Shared client state
            auth: Coordinator that runs the login flow
            on_update: Async callback for incoming messages
            store_factory: Async callable returning a SessionStore for config
            handle_factory: Callable building a handle from (config, session_blob, on_update)
            on_fatal: Called once when the process has to terminate
        """
        self._config = config
        self._state = state
        self._auth = auth
        self._on_update = on_update
        self._store_factory = store_factory
        self._handle_factory = handle_factory
        self._on_fatal = on_fatal

        self._setup_lock = asyncio.Lock()
        self._store: Optional[SessionStore] = None
        self._run_task: Optional[asyncio.Task] = None
        self._rebuild_task: Optional[asyncio.Task] = None
        self._connecting_generation: Optional[int] = None

        self.setup_count = 0
        self.fatal_error: Optional[BaseException] = None

    @property
    def is_connecting(self) -> bool:
        """Check if the current handle is still establishing its connection."""
        return self._connecting_generation == self._state.generation

    @property
    def is_rebuilding(self) -> bool:
        """Check if a setup is in progress."""
        return self._setup_lock.locked()

    async def setup(self, stop_event: asyncio.Event) -> None:
        """
        Replace the current handle with a freshly built one.

        Args:
            stop_event: Root shutdown signal passed on to the run task
        """
        async with self._setup_lock:
            if stop_event.is_set() or self.fatal_error is not None:
                return

            generation = self._state.next_generation()
            self._state.set_ready(False)
            self.setup_count += 1
            logger.info(f"ClientLifecycle: [SETUP] generation={generation}")

            old_handle = self._state.replace_handle(None)
            old_task, self._run_task = self._run_task, None
            if old_handle is not None:
                try:
                    # Requests already holding the old handle get time to finish
                    await asyncio.sleep(self._config.teardown_grace_period)
                finally:
                    await self._teardown(old_handle, old_task)

            try:
                store = await self._get_store()
                session_blob = await self._load_session(store)
            except StorageConnectionError as e:
                self._terminate(e)
                return

            handle = self._handle_factory(self._config, session_blob, self._on_update)
            self._state.replace_handle(handle)
            self._connecting_generation = generation
            self._run_task = asyncio.create_task(
                self._run_client(handle, generation, stop_event)
            )
            logger.info(f"ClientLifecycle: [SETUP_DONE] generation={generation}")

    async def shutdown(self) -> None:
        """Stop the run task, persist the session and release everything."""
        logger.info("ClientLifecycle: [SHUTDOWN_START]")

        if self._rebuild_task is not None and not self._rebuild_task.done():
            self._rebuild_task.cancel()
            try:
                await self._rebuild_task
            except asyncio.CancelledError:
                pass
        self._rebuild_task = None

        async with self._setup_lock:
            self._state.set_ready(False)
            handle = self._state.replace_handle(None)
            task, self._run_task = self._run_task, None
            if handle is not None:
                await self._teardown(handle, task)

            if self._store is not None:
                await self._store.close()
                self._store = None

        logger.info("ClientLifecycle: [SHUTDOWN_DONE]")

    async def _get_store(self) -> SessionStore:
        if self._store is None:
            self._store = await self._store_factory(self._config)
        return self._store

    async def _load_session(self, store: SessionStore) -> Optional[bytes]:
        """Load the stored session, or None to start a fresh login."""
        try:
            blob = await store.load(self._config.phone_hash)
        except SessionNotFoundError:
            logger.info("ClientLifecycle: [SESSION] none stored, starting fresh login")
            return None
        except StorageConnectionError:
            raise
        except StorageError as e:
            logger.warning(f"ClientLifecycle: [SESSION] unreadable, starting fresh login: {e}")
            return None

        logger.info(f"ClientLifecycle: [SESSION] loaded {len(blob)} bytes")
        return blob or None

    async def _run_client(
        self,
        handle: ClientHandle,
        generation: int,
        stop_event: asyncio.Event,
    ) -> None:
        """Connect, authenticate and keep the handle running."""
        try:
            try:
                await asyncio.wait_for(handle.connect(), timeout=self._config.init_timeout)
            except asyncio.TimeoutError:
                raise FatalClientError(
                    f"timed out connecting after {self._config.init_timeout}s"
                ) from None
            finally:
                if self._connecting_generation == generation:
                    self._connecting_generation = None

            await self._auth.attempt(handle, stop_event)
            await self._persist_session(handle)

            if self._state.set_ready(True, generation):
                logger.info(f"ClientLifecycle: [READY] generation={generation}")

            await self._wait_until_stopped(handle, stop_event)

        except asyncio.CancelledError:
            self._state.set_ready(False, generation)
            raise
        except AuthCancelledError as e:
            self._state.set_ready(False, generation)
            logger.info(f"ClientLifecycle: [STOPPED] {e}")
        except StorageConnectionError as e:
            self._state.set_ready(False, generation)
            self._terminate(e)
        except FatalClientError as e:
            self._state.set_ready(False, generation)
            logger.error(f"ClientLifecycle: [FATAL] generation={generation}: {e}")
            self._schedule_rebuild(generation, stop_event)
        except Exception as e:
            self._state.set_ready(False, generation)
            logger.error(f"ClientLifecycle: [RUN_ERROR] generation={generation}: {e}")

    async def _wait_until_stopped(self, handle: ClientHandle, stop_event: asyncio.Event) -> None:
        """
        Block until shutdown or until the connection drops for good.

        Raises:
            FatalClientError: If the handle disconnected on its own
        """
        stop_waiter = asyncio.ensure_future(stop_event.wait())
        runner = asyncio.ensure_future(handle.run_until_disconnected())
        try:
            done, _ = await asyncio.wait(
                {stop_waiter, runner}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stop_waiter.cancel()
            runner.cancel()

        if runner in done and not stop_event.is_set():
            runner.result()
            raise FatalClientError("client disconnected")

    def _schedule_rebuild(self, generation: int, stop_event: asyncio.Event) -> None:
        """Rebuild the client after rebuild_delay, unless setup moved on."""
        if stop_event.is_set():
            return

        logger.info(
            f"ClientLifecycle: [REBUILD_SCHEDULED] in {self._config.rebuild_delay}s "
            f"generation={generation}"
        )
        self._rebuild_task = asyncio.create_task(
            self._delayed_rebuild(generation, stop_event)
        )

    async def _delayed_rebuild(self, generation: int, stop_event: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self._config.rebuild_delay)
            return
        except asyncio.TimeoutError:
            pass

        if self._state.generation != generation:
            logger.info(
                f"ClientLifecycle: [REBUILD_SKIPPED] generation {generation} "
                f"superseded by {self._state.generation}"
            )
            return

        await self.setup(stop_event)

    async def _persist_session(self, handle: ClientHandle) -> None:
        """
        Save the handle's session.

        Raises:
            StorageConnectionError: If the store is unreachable
        """
        blob = handle.export_session()
        if not blob:
            logger.debug("ClientLifecycle: [PERSIST] empty session, skipping")
            return

        store = await self._get_store()
        try:
            await store.save(self._config.phone_hash, blob)
        except StorageConnectionError:
            raise
        except StorageError as e:
            logger.error(f"ClientLifecycle: [PERSIST] failed to save session: {e}")
            return
        logger.info(f"ClientLifecycle: [PERSIST] saved {len(blob)} bytes")

    async def _teardown(self, handle: ClientHandle, task: Optional[asyncio.Task]) -> None:
        """Stop the run task, save the session and disconnect the handle."""
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        try:
            await self._persist_session(handle)
        except StorageConnectionError as e:
            self._terminate(e)
        except Exception as e:
            logger.warning(f"ClientLifecycle: [TEARDOWN] could not persist session: {e}")

        try:
            await handle.disconnect()
        except Exception as e:
            logger.warning(f"ClientLifecycle: [TEARDOWN] disconnect failed: {e}")

        logger.info("ClientLifecycle: [TEARDOWN] old client released")

    def _terminate(self, exc: BaseException) -> None:
        """Report an unrecoverable failure to the owner."""
        if self.fatal_error is not None:
            return

        self.fatal_error = exc
        logger.critical(f"ClientLifecycle: [TERMINATE] {exc}")
        if self._on_fatal is not None:
            self._on_fatal(exc)
