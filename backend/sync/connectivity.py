"""Turn connectivity and app lifecycle changes into recovery and sync actions.

The monitor tracks two signals, raw network reachability and backend
reachability, and dispatches named edge events. Platform lifecycle events
(hidden, visible, unload, cold start) enter through the same dispatch()
entry point, so any polling or callback mechanism can drive it.
"""

from __future__ import annotations

import asyncio
import contextlib
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Callable

    from recovery.manager import RecoveryManager
    from sync.coordinator import SyncCoordinator
    from sync.remote import RemoteRecordStore

logger = structlog.get_logger()

DEFAULT_CHECK_INTERVAL_SECONDS = 30.0
DEFAULT_NOTICE_SECONDS = 5.0


class LifecycleEvent(StrEnum):
    NETWORK_LOST = "network_lost"
    NETWORK_RESTORED = "network_restored"
    BACKEND_LOST = "backend_lost"
    BACKEND_RESTORED = "backend_restored"
    APP_HIDDEN = "app_hidden"
    APP_VISIBLE = "app_visible"
    APP_UNLOAD = "app_unload"
    COLD_START = "cold_start"


_SAVE_EVENTS = {
    LifecycleEvent.NETWORK_LOST,
    LifecycleEvent.BACKEND_LOST,
    LifecycleEvent.APP_HIDDEN,
    LifecycleEvent.APP_UNLOAD,
}
_RECOVER_EVENTS = {
    LifecycleEvent.NETWORK_RESTORED,
    LifecycleEvent.APP_VISIBLE,
    LifecycleEvent.COLD_START,
    LifecycleEvent.BACKEND_RESTORED,
}

NOTICES = {
    LifecycleEvent.NETWORK_LOST: "You are offline. Games are saved on this device.",
    LifecycleEvent.NETWORK_RESTORED: "Back online.",
    LifecycleEvent.BACKEND_LOST: "Server unreachable. Games are saved on this device.",
    LifecycleEvent.BACKEND_RESTORED: "Server reachable again. Syncing saved games.",
}


class ConnectivityMonitor:
    """Edge-triggered driver for RecoveryManager and SyncCoordinator.

    Events are handled one at a time under a lock, so a save triggered by a
    lost edge always finishes before a later restored edge runs recovery.
    Backend edges are not reported while the network is down. The backend
    counts as unreachable until a probe succeeds, so the first healthy probe
    emits backend_restored and starts a catch-up sync.
    """

    def __init__(
        self,
        recovery: RecoveryManager,
        coordinator: SyncCoordinator,
        remote: RemoteRecordStore,
        *,
        notice_seconds: float = DEFAULT_NOTICE_SECONDS,
        on_notice: Callable[[str | None], None] | None = None,
        backend_reachable: bool = False,
    ) -> None:
        self._recovery = recovery
        self._coordinator = coordinator
        self._remote = remote
        self._notice_seconds = notice_seconds
        self._on_notice = on_notice
        self._network = True
        self._backend = backend_reachable
        self._lock = asyncio.Lock()
        self._probe_task: asyncio.Task[None] | None = None
        self._notice: str | None = None
        self._notice_handle: asyncio.TimerHandle | None = None

    @property
    def network_reachable(self) -> bool:
        return self._network

    @property
    def backend_reachable(self) -> bool:
        return self._backend

    @property
    def notice(self) -> str | None:
        """The transient status message currently shown, if any."""
        return self._notice

    def _edges(self, network: bool | None, backend: bool | None) -> list[LifecycleEvent]:
        events = []
        if network is not None and network != self._network:
            self._network = network
            events.append(LifecycleEvent.NETWORK_RESTORED if network else LifecycleEvent.NETWORK_LOST)
            if not network:
                # Without a network the backend is unreachable too; no separate edge.
                self._backend = False
        if backend is not None and backend != self._backend and self._network:
            self._backend = backend
            events.append(LifecycleEvent.BACKEND_RESTORED if backend else LifecycleEvent.BACKEND_LOST)
        return events

    async def update(self, *, network: bool | None = None, backend: bool | None = None) -> list[LifecycleEvent]:
        """Record new signal values and dispatch the resulting edges in order."""
        async with self._lock:
            events = self._edges(network, backend)
            for event in events:
                await self._handle(event)
        return events

    async def dispatch(self, event: LifecycleEvent) -> None:
        """Handle a single lifecycle or connectivity event."""
        async with self._lock:
            await self._handle(event)

    async def _handle(self, event: LifecycleEvent) -> None:
        logger.info("connectivity event", lifecycle_event=event)
        if event in NOTICES:
            self._show_notice(NOTICES[event])

        if event in _SAVE_EVENTS:
            await self._recovery.save_all(immediate=True)
        if event in _RECOVER_EVENTS:
            await self._recovery.attempt_recovery()
        if event == LifecycleEvent.BACKEND_RESTORED:
            await self._catch_up()

    async def _catch_up(self) -> None:
        try:
            outcomes = await self._coordinator.sync_pending()
        except Exception:
            logger.exception("catch-up sync failed")
            return
        logger.info("catch-up sync after reconnect", records=len(outcomes))

    async def check_backend(self) -> bool:
        """Probe the backend health endpoint and apply the result."""
        if not self._network:
            return False
        healthy = await self._remote.check_health()
        await self.update(backend=healthy)
        return healthy

    def start(self, interval: float = DEFAULT_CHECK_INTERVAL_SECONDS) -> None:
        """Start periodic backend probing. Idempotent."""
        if self._probe_task is not None and not self._probe_task.done():
            return
        self._probe_task = asyncio.create_task(self._probe_loop(interval))

    async def _probe_loop(self, interval: float) -> None:
        while True:
            try:
                await self.check_backend()
            except Exception:
                logger.exception("backend probe failed")
            await asyncio.sleep(interval)

    def _show_notice(self, text: str) -> None:
        self._cancel_notice_timer()
        self._notice = text
        if self._on_notice is not None:
            self._on_notice(text)
        self._notice_handle = asyncio.get_running_loop().call_later(self._notice_seconds, self._dismiss_notice)

    def _dismiss_notice(self) -> None:
        self._notice = None
        self._notice_handle = None
        if self._on_notice is not None:
            self._on_notice(None)

    def _cancel_notice_timer(self) -> None:
        if self._notice_handle is not None:
            self._notice_handle.cancel()
            self._notice_handle = None

    async def close(self) -> None:
        """Stop probing and cancel pending notice timers."""
        if self._probe_task is not None:
            self._probe_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._probe_task
            self._probe_task = None
        self._cancel_notice_timer()
        self._notice = None
