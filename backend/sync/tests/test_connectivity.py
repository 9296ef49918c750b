"""Tests for ConnectivityMonitor edge detection and the actions each event triggers."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from recovery.cache import SessionCache
from recovery.manager import RecoveryManager
from recovery.models import ScopeState
from recovery.settings import RecoverySettings
from shared.storage import MemoryKeyValueStorage
from sync.connectivity import NOTICES, ConnectivityMonitor, LifecycleEvent


@pytest.fixture
def recovery():
    mock = MagicMock()
    mock.save_all = AsyncMock(return_value=[])
    mock.attempt_recovery = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def coordinator():
    mock = MagicMock()
    mock.sync_pending = AsyncMock(return_value={})
    return mock


@pytest.fixture
def remote():
    mock = MagicMock()
    mock.check_health = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def monitor(recovery, coordinator, remote):
    return ConnectivityMonitor(recovery, coordinator, remote)


class TestEdges:
    async def test_first_healthy_probe_restores_backend_and_catches_up(self, monitor, recovery, coordinator):
        events = await monitor.update(backend=True)

        assert events == [LifecycleEvent.BACKEND_RESTORED]
        assert monitor.backend_reachable is True
        recovery.attempt_recovery.assert_awaited_once()
        coordinator.sync_pending.assert_awaited_once()

    async def test_unchanged_signal_emits_nothing(self, monitor, coordinator):
        await monitor.update(backend=True)

        assert await monitor.update(network=True, backend=True) == []
        coordinator.sync_pending.assert_awaited_once()

    async def test_network_lost_saves_and_drops_backend_silently(self, recovery, coordinator, remote):
        monitor = ConnectivityMonitor(recovery, coordinator, remote, backend_reachable=True)

        events = await monitor.update(network=False)

        assert events == [LifecycleEvent.NETWORK_LOST]
        assert monitor.network_reachable is False
        assert monitor.backend_reachable is False
        recovery.save_all.assert_awaited_once_with(immediate=True)

    async def test_backend_edges_suppressed_while_offline(self, monitor, coordinator):
        await monitor.update(network=False)

        assert await monitor.update(backend=True) == []
        assert monitor.backend_reachable is False
        coordinator.sync_pending.assert_not_awaited()

    async def test_network_and_backend_restored_in_order(self, monitor, recovery, coordinator):
        await monitor.update(network=False)

        events = await monitor.update(network=True, backend=True)

        assert events == [LifecycleEvent.NETWORK_RESTORED, LifecycleEvent.BACKEND_RESTORED]
        assert recovery.attempt_recovery.await_count == 2
        coordinator.sync_pending.assert_awaited_once()

    async def test_backend_lost_saves_without_sync(self, monitor, recovery, coordinator):
        await monitor.update(backend=True)

        events = await monitor.update(backend=False)

        assert events == [LifecycleEvent.BACKEND_LOST]
        recovery.save_all.assert_awaited_once_with(immediate=True)
        coordinator.sync_pending.assert_awaited_once()

    async def test_save_finishes_before_later_recovery(self, monitor, recovery):
        calls = []

        async def slow_save(*, immediate):
            await asyncio.sleep(0.01)
            calls.append("save")

        async def recover():
            calls.append("recover")

        recovery.save_all.side_effect = slow_save
        recovery.attempt_recovery.side_effect = recover

        await asyncio.gather(monitor.update(network=False), monitor.update(network=True))

        assert calls == ["save", "recover"]


class TestLifecycleDispatch:
    @pytest.mark.parametrize("event", [LifecycleEvent.APP_HIDDEN, LifecycleEvent.APP_UNLOAD])
    async def test_leaving_events_save_immediately(self, monitor, recovery, event):
        await monitor.dispatch(event)

        recovery.save_all.assert_awaited_once_with(immediate=True)
        recovery.attempt_recovery.assert_not_awaited()

    @pytest.mark.parametrize("event", [LifecycleEvent.APP_VISIBLE, LifecycleEvent.COLD_START])
    async def test_returning_events_attempt_recovery(self, monitor, recovery, event):
        await monitor.dispatch(event)

        recovery.attempt_recovery.assert_awaited_once()
        recovery.save_all.assert_not_awaited()
        assert monitor.notice is None

    async def test_catch_up_failure_is_logged_not_raised(self, monitor, coordinator):
        coordinator.sync_pending.side_effect = RuntimeError("boom")

        await monitor.dispatch(LifecycleEvent.BACKEND_RESTORED)

        coordinator.sync_pending.assert_awaited_once()


class TestNotices:
    async def test_notice_shown_then_dismissed(self, recovery, coordinator, remote):
        shown = []
        monitor = ConnectivityMonitor(recovery, coordinator, remote, notice_seconds=0.01, on_notice=shown.append)

        await monitor.update(network=False)
        assert monitor.notice == NOTICES[LifecycleEvent.NETWORK_LOST]

        await asyncio.sleep(0.05)

        assert monitor.notice is None
        assert shown == [NOTICES[LifecycleEvent.NETWORK_LOST], None]

    async def test_newer_notice_replaces_older(self, recovery, coordinator, remote):
        shown = []
        monitor = ConnectivityMonitor(recovery, coordinator, remote, notice_seconds=10, on_notice=shown.append)

        await monitor.update(network=False)
        await monitor.update(network=True)

        assert monitor.notice == NOTICES[LifecycleEvent.NETWORK_RESTORED]
        assert shown == [NOTICES[LifecycleEvent.NETWORK_LOST], NOTICES[LifecycleEvent.NETWORK_RESTORED]]
        await monitor.close()
        assert monitor.notice is None


class TestProbing:
    async def test_check_backend_applies_probe_result(self, monitor, remote):
        assert await monitor.check_backend() is True
        assert monitor.backend_reachable is True

        remote.check_health.return_value = False
        assert await monitor.check_backend() is False
        assert monitor.backend_reachable is False

    async def test_check_backend_skips_probe_while_offline(self, monitor, remote):
        await monitor.update(network=False)

        assert await monitor.check_backend() is False
        remote.check_health.assert_not_awaited()

    async def test_start_probes_periodically_until_closed(self, monitor, remote):
        monitor.start(interval=0.01)
        monitor.start(interval=0.01)
        await asyncio.sleep(0.05)
        await monitor.close()
        probes = remote.check_health.await_count

        await asyncio.sleep(0.03)

        assert probes >= 2
        assert remote.check_health.await_count == probes
        assert monitor.backend_reachable is True

    async def test_probe_errors_do_not_stop_loop(self, monitor, remote):
        remote.check_health.side_effect = [RuntimeError("probe crashed"), True, True, True, True, True, True, True]

        monitor.start(interval=0.01)
        await asyncio.sleep(0.05)
        await monitor.close()

        assert monitor.backend_reachable is True


class TestMonitorWithRecoveryManager:
    async def test_network_loss_saves_healthy_scopes_when_one_scope_fails(self):
        cache = SessionCache(MemoryKeyValueStorage(), namespace="recovery")
        cache.initialize()
        recovery = RecoveryManager(cache, RecoverySettings())

        def broken():
            return {}["missing"]

        recovery.register_scope("a_broken", broken, lambda _: None)
        recovery.register_scope("b_game", lambda: {"round": 3}, lambda _: None)
        monitor = ConnectivityMonitor(recovery, MagicMock(), AsyncMock())

        events = await monitor.update(network=False)

        assert events == [LifecycleEvent.NETWORK_LOST]
        assert recovery.scope_state("b_game") == ScopeState.SNAPSHOTTED
        await monitor.close()
