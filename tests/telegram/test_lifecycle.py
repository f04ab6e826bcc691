"""Tests for ClientLifecycleManager and ClientState."""

import asyncio

from conftest import (
    PHONE,
    VALID_CODE,
    HandleFactory,
    MemoryStore,
    store_factory_for,
    wait_until,
)
from telegram_mcp.errors import StorageConnectionError
from telegram_mcp.telegram.auth import AuthCoordinator
from telegram_mcp.telegram.health import HealthMonitor
from telegram_mcp.telegram.lifecycle import ClientLifecycleManager, ClientState


# ── Helpers ──────────────────────────────────────────────────────────────


class _Harness:
    def __init__(self, config, dispatcher, store=None, prepare=None, store_factory=None):
        self.config = config
        self.store = store if store is not None else MemoryStore()
        self.factory = HandleFactory(prepare)
        self.state = ClientState()
        self.auth = AuthCoordinator(PHONE, dispatcher, retry_delay=config.auth_retry_delay)
        self.fatal = []
        self.lifecycle = ClientLifecycleManager(
            config,
            self.state,
            self.auth,
            store_factory=store_factory or store_factory_for(self.store),
            handle_factory=self.factory,
            on_fatal=self.fatal.append,
        )


class _UnreachableStore(MemoryStore):
    def __init__(self, fail_load=False, fail_save=False, data=None):
        super().__init__(data)
        self.fail_load = fail_load
        self.fail_save = fail_save

    async def load(self, key):
        if self.fail_load:
            raise StorageConnectionError("etcd is down")
        return await super().load(key)

    async def save(self, key, data):
        if self.fail_save:
            raise StorageConnectionError("etcd is down")
        await super().save(key, data)


# ── ClientState ──────────────────────────────────────────────────────────


def test_client_state_ignores_stale_readiness():
    state = ClientState()
    first = state.next_generation()
    second = state.next_generation()

    assert state.set_ready(True, first) is False
    assert not state.is_ready()
    assert state.set_ready(True, second) is True
    assert state.is_ready()
    assert state.set_ready(False) is True
    assert not state.is_ready()


def test_client_state_replace_returns_previous():
    state = ClientState()
    assert state.replace_handle("a") is None
    assert state.replace_handle("b") == "a"
    assert state.snapshot() == ("b", 0)


# ── Setup and authentication ─────────────────────────────────────────────


def test_fresh_account_logs_in_and_persists_session(config, dispatcher, sender):
    h = _Harness(config, dispatcher)

    async def scenario():
        stop = asyncio.Event()
        await h.lifecycle.setup(stop)

        await wait_until(lambda: h.auth.is_awaiting_code)
        assert h.factory.blobs == [None]
        assert not h.state.is_ready()

        h.auth.submit_code(VALID_CODE)
        await wait_until(h.state.is_ready)

        stop.set()
        await h.lifecycle.shutdown()

    asyncio.run(scenario())

    assert h.store.data[config.phone_hash] == b"session-for-" + PHONE.encode("ascii")
    assert h.factory.handles[0].disconnect_calls == 1
    assert h.store.closed
    assert "auth_code_needed" in sender.events()
    assert "auth_success" in sender.events()


def test_stored_session_is_reused(config, dispatcher, sender):
    store = MemoryStore({config.phone_hash: b"stored-session"})
    h = _Harness(config, dispatcher, store=store)

    async def scenario():
        stop = asyncio.Event()
        await h.lifecycle.setup(stop)
        await wait_until(h.state.is_ready)
        stop.set()
        await h.lifecycle.shutdown()

    asyncio.run(scenario())

    assert h.factory.blobs == [b"stored-session"]
    assert sender.events() == ["auth_success"]


def test_readiness_is_false_during_rebuild(config, dispatcher):
    config = config.model_copy(update={"teardown_grace_period": 0.1})
    store = MemoryStore({config.phone_hash: b"stored-session"})
    h = _Harness(config, dispatcher, store=store)
    monitor = HealthMonitor(h.state, h.lifecycle, h.auth, interval=1.0, timeout=0.05)

    async def scenario():
        stop = asyncio.Event()
        await h.lifecycle.setup(stop)
        await wait_until(h.state.is_ready)
        old_handle = h.factory.handles[0]

        rebuild = asyncio.create_task(h.lifecycle.setup(stop))
        await asyncio.sleep(0.03)
        assert h.lifecycle.is_rebuilding
        assert h.state.get_handle() is None
        assert h.state.generation == 2

        # A health check inside the grace period neither marks ready nor rebuilds
        assert await monitor.check(stop) is False
        assert not h.state.is_ready()
        assert old_handle.disconnect_calls == 0

        await rebuild
        assert old_handle.disconnect_calls == 1

        await wait_until(h.state.is_ready)
        assert h.state.get_handle() is h.factory.handles[1]

        stop.set()
        await h.lifecycle.shutdown()

    asyncio.run(scenario())
    assert h.lifecycle.setup_count == 2
    assert len(h.factory.handles) == 2


def test_dead_handle_checked_during_grace_rebuilds_once(config, dispatcher):
    config = config.model_copy(update={"teardown_grace_period": 0.1})
    store = MemoryStore({config.phone_hash: b"stored-session"})
    h = _Harness(config, dispatcher, store=store)
    monitor = HealthMonitor(h.state, h.lifecycle, h.auth, interval=1.0, timeout=0.05)

    async def scenario():
        stop = asyncio.Event()
        await h.lifecycle.setup(stop)
        await wait_until(h.state.is_ready)

        old_handle = h.factory.handles[0]
        old_handle.status_error = ConnectionError("connection closed")
        old_handle.drop_connection()

        await wait_until(lambda: h.lifecycle.is_rebuilding)
        assert await monitor.check(stop) is False

        await wait_until(lambda: len(h.factory.handles) == 2)
        await wait_until(h.state.is_ready)
        assert await monitor.check(stop) is True

        stop.set()
        await h.lifecycle.shutdown()

    asyncio.run(scenario())

    assert h.lifecycle.setup_count == 2
    assert len(h.factory.handles) == 2
    assert monitor.consecutive_errors == 0


def test_cancelled_setup_still_releases_old_handle(config, dispatcher):
    config = config.model_copy(update={"teardown_grace_period": 1.0})
    store = MemoryStore({config.phone_hash: b"stored-session"})
    h = _Harness(config, dispatcher, store=store)

    async def scenario():
        stop = asyncio.Event()
        await h.lifecycle.setup(stop)
        await wait_until(h.state.is_ready)

        rebuild = asyncio.create_task(h.lifecycle.setup(stop))
        await wait_until(lambda: h.lifecycle.is_rebuilding)
        rebuild.cancel()
        try:
            await rebuild
        except asyncio.CancelledError:
            pass

        stop.set()
        await h.lifecycle.shutdown()

    asyncio.run(scenario())

    old_handle = h.factory.handles[0]
    assert old_handle.disconnect_calls == 1
    assert len(h.factory.handles) == 1
    assert h.store.saves >= 1


# ── Failures ─────────────────────────────────────────────────────────────


def test_unreachable_store_at_setup_terminates(config, dispatcher):
    async def failing_factory(cfg):
        raise StorageConnectionError("etcd health check failed")

    h = _Harness(config, dispatcher, store_factory=failing_factory)

    async def scenario():
        stop = asyncio.Event()
        await h.lifecycle.setup(stop)
        await h.lifecycle.setup(stop)

    asyncio.run(scenario())

    assert len(h.fatal) == 1
    assert isinstance(h.lifecycle.fatal_error, StorageConnectionError)
    assert h.factory.handles == []
    assert h.state.get_handle() is None


def test_unreachable_store_on_load_terminates(config, dispatcher):
    h = _Harness(config, dispatcher, store=_UnreachableStore(fail_load=True))

    asyncio.run(h.lifecycle.setup(asyncio.Event()))

    assert isinstance(h.lifecycle.fatal_error, StorageConnectionError)
    assert h.factory.handles == []


def test_unreachable_store_on_persist_terminates(config, dispatcher):
    store = _UnreachableStore(fail_save=True, data={config.phone_hash: b"stored-session"})
    h = _Harness(config, dispatcher, store=store)

    async def scenario():
        stop = asyncio.Event()
        await h.lifecycle.setup(stop)
        await wait_until(lambda: h.fatal)
        stop.set()

    asyncio.run(scenario())

    assert isinstance(h.fatal[0], StorageConnectionError)
    assert not h.state.is_ready()


def test_dropped_connection_schedules_rebuild(config, dispatcher):
    store = MemoryStore({config.phone_hash: b"stored-session"})
    h = _Harness(config, dispatcher, store=store)

    async def scenario():
        stop = asyncio.Event()
        await h.lifecycle.setup(stop)
        await wait_until(h.state.is_ready)

        h.factory.handles[0].drop_connection()
        await wait_until(lambda: len(h.factory.handles) == 2)
        await wait_until(h.state.is_ready)

        stop.set()
        await h.lifecycle.shutdown()

    asyncio.run(scenario())

    assert h.lifecycle.setup_count == 2
    assert h.factory.blobs[1] == b"stored-session"


def test_connect_timeout_schedules_rebuild(config, dispatcher):
    config = config.model_copy(update={"init_timeout": 0.05})

    def prepare(handle, index):
        if index == 0:
            handle.connect_delay = 1.0

    h = _Harness(config, dispatcher, prepare=prepare)

    async def scenario():
        stop = asyncio.Event()
        await h.lifecycle.setup(stop)
        await wait_until(lambda: len(h.factory.handles) == 2)
        stop.set()
        await h.lifecycle.shutdown()

    asyncio.run(scenario())
    assert h.factory.handles[0].connected is False


def test_other_run_errors_are_only_logged(config, dispatcher):
    def prepare(handle, index):
        handle.connect_error = RuntimeError("unexpected")

    h = _Harness(config, dispatcher, prepare=prepare)

    async def scenario():
        stop = asyncio.Event()
        await h.lifecycle.setup(stop)
        await asyncio.sleep(0.1)
        stop.set()
        await h.lifecycle.shutdown()

    asyncio.run(scenario())

    assert len(h.factory.handles) == 1
    assert h.lifecycle.fatal_error is None
    assert not h.state.is_ready()


def test_stale_rebuild_is_skipped(config, dispatcher):
    store = MemoryStore({config.phone_hash: b"stored-session"})
    h = _Harness(config, dispatcher, store=store)

    async def scenario():
        stop = asyncio.Event()
        await h.lifecycle.setup(stop)
        await h.lifecycle.setup(stop)

        # A rebuild requested by generation 1 arrives after generation 2 exists
        await h.lifecycle._delayed_rebuild(1, stop)

        stop.set()
        await h.lifecycle.shutdown()

    asyncio.run(scenario())
    assert h.lifecycle.setup_count == 2


def test_setup_after_stop_does_nothing(config, dispatcher):
    h = _Harness(config, dispatcher)
    stop = asyncio.Event()
    stop.set()

    asyncio.run(h.lifecycle.setup(stop))

    assert h.lifecycle.setup_count == 0
    assert h.factory.handles == []
