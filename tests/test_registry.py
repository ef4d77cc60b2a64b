"""Runner registry: start/stop/restart semantics and bulk start."""

import asyncio
import logging
import time

from fakes import (
    CloseUnblocksConnection,
    FakeFeed,
    GatedFeed,
    HungConnection,
    RecordingNotifier,
    price_change,
    wait_until,
)
from polyalert.core.store import MemoryStore, NotFoundError
from polyalert.services.alerting.registry import RunnerRegistry
from polyalert.services.feed.polymarket import FeedError


async def _user_with_alert(store: MemoryStore, external_id: int, asset_id: str = "A", threshold: str = "0.23"):
    user = await store.start_or_get_user(external_id)
    await store.add_alert(user.id, "market", "YES", asset_id, "<=", threshold)
    return user


def test_restart_starts_session_and_delivers() -> None:
    """Restart builds a session from enabled alerts that notifies on trigger."""

    store = MemoryStore()
    feed = FakeFeed(script=[price_change("A", best_ask="0.20")])
    notifier = RecordingNotifier()

    async def scenario():
        registry = RunnerRegistry(store, feed, notifier, stop_grace_s=1.0)
        await _user_with_alert(store, 100)
        assert await registry.restart_user(100) is True
        await notifier.wait_for_calls(1)
        assert await registry.active_users() == [100]
        await registry.stop_all()
        assert await registry.active_users() == []

    asyncio.run(scenario())
    assert "0.20" in notifier.calls[0][1]
    assert feed.open_connections == []


def test_restart_replaces_existing_session() -> None:
    """A second restart stops the first session before the new one runs."""

    store = MemoryStore()
    feed = FakeFeed()

    async def scenario():
        registry = RunnerRegistry(store, feed, RecordingNotifier(), stop_grace_s=1.0)
        user = await _user_with_alert(store, 100)
        await registry.restart_user(100)
        await asyncio.sleep(0.01)
        await store.add_alert(user.id, "market", "NO", "B", ">=", "0.9")
        await registry.restart_user(100)
        await asyncio.sleep(0.01)
        assert await registry.active_users() == [100]
        await registry.stop_all()

    asyncio.run(scenario())
    first, second = feed.connections
    assert first.closed and second.closed
    assert first.subscriptions == [["A"]]
    assert second.subscriptions == [["A", "B"]]


def test_concurrent_restarts_leave_one_runner() -> None:
    """Racing restarts for the same user linearize to a single live session."""

    store = MemoryStore()
    feed = FakeFeed()

    async def scenario():
        registry = RunnerRegistry(store, feed, RecordingNotifier(), stop_grace_s=1.0)
        await _user_with_alert(store, 100)
        await asyncio.gather(*(registry.restart_user(100) for _ in range(5)))
        await asyncio.sleep(0.01)
        assert await registry.active_users() == [100]
        assert len(feed.open_connections) == 1
        await registry.stop_all()

    asyncio.run(scenario())
    assert feed.open_connections == []


def test_restart_without_enabled_alerts_leaves_no_runner() -> None:
    """Disabling the last alert and restarting stops the session for good."""

    store = MemoryStore()
    feed = FakeFeed()

    async def scenario():
        registry = RunnerRegistry(store, feed, RecordingNotifier(), stop_grace_s=1.0)
        user = await _user_with_alert(store, 100)
        await registry.restart_user(100)
        (alert,) = await store.list_alerts(user.id)
        await store.set_enabled(user.id, alert.id, False)
        assert await registry.restart_user(100) is False
        assert await registry.is_active(100) is False

    asyncio.run(scenario())
    assert len(feed.connections) == 1
    assert feed.connections[0].closed


def test_restart_unknown_user_is_quiet() -> None:
    """Restarting a user who never registered does nothing."""

    feed = FakeFeed()

    async def scenario():
        registry = RunnerRegistry(MemoryStore(), feed, RecordingNotifier())
        assert await registry.restart_user(999) is False
        assert await registry.active_users() == []

    asyncio.run(scenario())
    assert feed.connections == []


def test_stop_unknown_user_is_noop() -> None:
    """stop_user without a runner returns promptly."""

    async def scenario():
        registry = RunnerRegistry(MemoryStore(), FakeFeed(), RecordingNotifier())
        started = time.monotonic()
        await registry.stop_user(123)
        return time.monotonic() - started

    assert asyncio.run(scenario()) < 0.5


def test_stop_user_gives_up_after_grace_period(caplog) -> None:
    """A hung session is abandoned after the grace period with a warning."""

    caplog.set_level(logging.WARNING)
    store = MemoryStore()
    feed = FakeFeed()
    feed.connection_class = HungConnection

    async def scenario():
        registry = RunnerRegistry(store, feed, RecordingNotifier(), stop_grace_s=0.1)
        await _user_with_alert(store, 100)
        await registry.restart_user(100)
        (runner,) = registry._runners.values()

        stop = asyncio.create_task(registry.stop_user(100))
        await asyncio.sleep(0.02)
        # Entry is gone while stop_user is still waiting.
        assert not stop.done()
        assert await registry.is_active(100) is False

        started = time.monotonic()
        await stop
        elapsed = time.monotonic() - started
        assert not runner.task.done()
        # Connection is force-closed even though the task is still running.
        assert feed.connections[0].closed

        feed.connections[0].release()
        await asyncio.wait({runner.task}, timeout=1.0)
        return elapsed

    elapsed = asyncio.run(scenario())
    assert elapsed < 1.0
    assert any(record.message == "runner_stop_timeout" for record in caplog.records)


def test_stop_user_closes_connection_to_unblock_receive(caplog) -> None:
    """Closing the connection ends a receive that ignores cancellation."""

    caplog.set_level(logging.WARNING)
    store = MemoryStore()
    feed = FakeFeed()
    feed.connection_class = CloseUnblocksConnection

    async def scenario():
        registry = RunnerRegistry(store, feed, RecordingNotifier(), stop_grace_s=2.0)
        await _user_with_alert(store, 100)
        await registry.restart_user(100)
        (runner,) = registry._runners.values()
        await asyncio.sleep(0.02)

        started = time.monotonic()
        await registry.stop_user(100)
        elapsed = time.monotonic() - started
        assert runner.task.done()
        return elapsed

    elapsed = asyncio.run(scenario())
    assert elapsed < 1.0
    assert feed.connections[0].closed
    assert not any(record.message == "runner_stop_timeout" for record in caplog.records)


def test_slow_restart_does_not_replace_newer_session() -> None:
    """A restart still connecting with an old alert snapshot loses to a later one."""

    store = MemoryStore()

    async def scenario():
        feed = GatedFeed()
        registry = RunnerRegistry(store, feed, RecordingNotifier(), stop_grace_s=1.0)
        user = await _user_with_alert(store, 100)

        slow = asyncio.create_task(registry.restart_user(100))
        await asyncio.sleep(0.01)
        await store.add_alert(user.id, "market", "NO", "B", ">=", "0.9")
        assert await registry.restart_user(100) is True

        feed.gate.set()
        assert await slow is False
        await asyncio.sleep(0.01)

        assert await registry.active_users() == [100]
        (live,) = feed.open_connections
        assert live.subscriptions == [["A", "B"]]
        await registry.stop_all()
        return feed

    feed = asyncio.run(scenario())
    assert feed.open_connections == []
    assert len(feed.connections) == 2


def test_stop_during_connect_wins() -> None:
    """A stop issued while a start is connecting leaves no session behind."""

    store = MemoryStore()

    async def scenario():
        feed = GatedFeed()
        registry = RunnerRegistry(store, feed, RecordingNotifier(), stop_grace_s=1.0)
        await _user_with_alert(store, 100)

        starting = asyncio.create_task(registry.restart_user(100))
        await asyncio.sleep(0.01)
        await registry.stop_user(100)
        feed.gate.set()

        assert await starting is False
        assert await registry.active_users() == []
        return feed

    feed = asyncio.run(scenario())
    (connection,) = feed.connections
    assert connection.closed


def test_session_feed_error_deregisters_runner() -> None:
    """A session that dies on a feed error removes its own entry."""

    store = MemoryStore()
    feed = FakeFeed(end_error=FeedError("reset"))

    async def scenario():
        registry = RunnerRegistry(store, feed, RecordingNotifier(), stop_grace_s=1.0)
        await _user_with_alert(store, 100)
        assert await registry.restart_user(100) is True
        await wait_until(lambda: _not_active(registry, 100))

    asyncio.run(scenario())
    assert feed.connections[0].closed


async def _not_active(registry: RunnerRegistry, external_id: int) -> bool:
    return not await registry.is_active(external_id)


def test_connect_failure_registers_nothing(caplog) -> None:
    """A feed that refuses connections leaves the user without a runner."""

    caplog.set_level(logging.ERROR)
    store = MemoryStore()

    async def scenario():
        registry = RunnerRegistry(store, FakeFeed(fail=True), RecordingNotifier())
        await _user_with_alert(store, 100)
        assert await registry.restart_user(100) is False
        assert await registry.active_users() == []

    asyncio.run(scenario())
    assert any(record.message == "runner_feed_connect_failed" for record in caplog.records)


class VanishingUserStore(MemoryStore):
    """Store where one listed user disappears before it is loaded."""

    def __init__(self, vanishing_user_id: int) -> None:
        super().__init__()
        self._vanishing_user_id = vanishing_user_id

    async def get_user_by_id(self, user_id: int):
        if user_id == self._vanishing_user_id:
            raise NotFoundError(f"user {user_id} not found")
        return await super().get_user_by_id(user_id)


class BrokenUserStore(MemoryStore):
    """Store whose user lookup fails for one id with a non-lookup error."""

    def __init__(self, broken_user_id: int) -> None:
        super().__init__()
        self._broken_user_id = broken_user_id

    async def get_user_by_id(self, user_id: int):
        if user_id == self._broken_user_id:
            raise RuntimeError("database unavailable")
        return await super().get_user_by_id(user_id)


def test_start_all_skips_deleted_user() -> None:
    """Bulk start should start the remaining users when one vanished."""

    store = VanishingUserStore(vanishing_user_id=1)
    feed = FakeFeed()

    async def scenario():
        await _user_with_alert(store, 100)
        await _user_with_alert(store, 200, asset_id="B")
        registry = RunnerRegistry(store, feed, RecordingNotifier(), stop_grace_s=1.0)
        started = await registry.start_all()
        users = await registry.active_users()
        await registry.stop_all()
        return started, users

    started, users = asyncio.run(scenario())
    assert started == 1
    assert users == [200]


def test_start_all_logs_and_skips_load_errors(caplog) -> None:
    """Unexpected per-user load errors are logged and do not abort the batch."""

    caplog.set_level(logging.WARNING)
    store = BrokenUserStore(broken_user_id=1)

    async def scenario():
        await _user_with_alert(store, 100)
        await _user_with_alert(store, 200)
        await _user_with_alert(store, 300, threshold="bad")
        registry = RunnerRegistry(store, FakeFeed(), RecordingNotifier(), stop_grace_s=1.0)
        started = await registry.start_all()
        users = await registry.active_users()
        await registry.stop_all()
        return started, users

    started, users = asyncio.run(scenario())
    assert started == 1
    assert users == [200]
    assert any(record.message == "runner_user_load_failed" for record in caplog.records)
