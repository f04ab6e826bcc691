"""
Telegram Health Monitor

Probes the client periodically (and on demand before read-only requests),
keeps readiness up to date and asks the lifecycle manager for a rebuild
when the client keeps failing.
"""

import asyncio
import logging
from typing import Optional

from telegram_mcp.errors import (
    FatalClientError,
    TransientConnectionError,
    classify_client_error,
)
from telegram_mcp.telegram.auth import AuthCoordinator
from telegram_mcp.telegram.lifecycle import ClientLifecycleManager, ClientState

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Status prober with a consecutive error counter.

    A rebuild is requested every time the counter reaches a multiple of
    max_consecutive_errors; only an authorized probe resets it.
    """

    def __init__(
        self,
        state: ClientState,
        lifecycle: ClientLifecycleManager,
        auth: Optional[AuthCoordinator] = None,
        interval: float = 15.0,
        timeout: float = 10.0,
        max_consecutive_errors: int = 3,
    ):
        """
        Initialize the monitor.

        Args:
            state: Shared client state
            lifecycle: Manager asked to (re)build the client
            auth: Coordinator consulted so a pending code request is not counted as a failure
            interval: Seconds between periodic probes
            timeout: Timeout of a single probe
            max_consecutive_errors: Failed probes that trigger a rebuild
        """
        self._state = state
        self._lifecycle = lifecycle
        self._auth = auth
        self._interval = interval
        self._timeout = timeout
        self._max_consecutive_errors = max_consecutive_errors

        self._check_lock = asyncio.Lock()
        self._consecutive_errors = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def consecutive_errors(self) -> int:
        """Failed probes since the last authorized one."""
        return self._consecutive_errors

    @property
    def is_running(self) -> bool:
        """Check if the periodic probe task is alive."""
        return self._task is not None and not self._task.done()

    async def check(self, stop_event: asyncio.Event) -> bool:
        """
        Probe the client once.

        Args:
            stop_event: Root shutdown signal

        Returns:
            True if the client is authorized
        """
        async with self._check_lock:
            if stop_event.is_set():
                return False

            handle, generation = self._state.snapshot()
            if handle is None:
                if self._lifecycle.is_rebuilding:
                    logger.debug("HealthMonitor: [REBUILDING] skipping probe")
                    return False
                logger.info("HealthMonitor: [NO_CLIENT] building client")
                await self._lifecycle.setup(stop_event)
                return False

            if self._lifecycle.is_connecting:
                logger.debug("HealthMonitor: [CONNECTING] skipping probe")
                return False

            error = None
            authorized = False
            try:
                authorized = await asyncio.wait_for(handle.status(), timeout=self._timeout)
            except asyncio.TimeoutError:
                error = TransientConnectionError(f"status probe timed out after {self._timeout}s")
            except Exception as e:
                error = classify_client_error(e)

            if self._state.generation != generation:
                # The probed handle was replaced while the probe was running
                logger.debug(f"HealthMonitor: [STALE] generation {generation} superseded")
                return False

            if error is None and authorized:
                if self._consecutive_errors:
                    logger.info(
                        f"HealthMonitor: [RECOVERED] after {self._consecutive_errors} failed probes"
                    )
                self._consecutive_errors = 0
                self._state.set_ready(True, generation)
                return True

            self._state.set_ready(False, generation)

            if error is None:
                if self._auth is not None and self._auth.is_awaiting_code:
                    logger.info("HealthMonitor: [AWAITING_CODE] not authorized yet")
                    return False
                self._consecutive_errors += 1
                logger.warning(
                    f"HealthMonitor: [NOT_AUTHORIZED] consecutive_errors={self._consecutive_errors}"
                )
            else:
                self._consecutive_errors += 1
                logger.warning(
                    f"HealthMonitor: [PROBE_FAILED] {type(error).__name__}: {error} "
                    f"consecutive_errors={self._consecutive_errors}"
                )
                if isinstance(error, FatalClientError):
                    logger.error("HealthMonitor: [REBUILD] client connection is dead")
                    await self._lifecycle.setup(stop_event)
                    return False

            if self._consecutive_errors % self._max_consecutive_errors == 0:
                logger.error(
                    f"HealthMonitor: [REBUILD] {self._consecutive_errors} consecutive failures"
                )
                await self._lifecycle.setup(stop_event)

            return False

    async def run(self, stop_event: asyncio.Event) -> None:
        """Probe immediately, then every interval until stop_event is set."""
        logger.info(f"HealthMonitor: [START] interval={self._interval}s")
        while not stop_event.is_set():
            try:
                await self.check(stop_event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"HealthMonitor: [ERROR] {e}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        logger.info("HealthMonitor: [STOPPED]")

    def start(self, stop_event: asyncio.Event) -> None:
        """Start the periodic probe task."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self.run(stop_event))

    async def stop(self) -> None:
        """Stop the periodic probe task."""
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
