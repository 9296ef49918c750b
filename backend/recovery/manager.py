"""Snapshot volatile in-memory state per scope and restore it after a crash.

Each registered scope moves through clean -> dirty -> snapshotted and
back to clean once its owner confirms the state was persisted for real.
Snapshots written by a previous process are restored by attempt_recovery;
snapshots written by the running process are never restored over live state.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from recovery.models import LastRecovery, RecoveryInfo, RecoverySnapshot, ScopeAge, ScopeState
from recovery.settings import RecoverySettings
from shared.errors import RecoveryError, StorageExhaustedError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from recovery.cache import SessionCache

logger = structlog.get_logger()

SNAPSHOT_PREFIX = "snapshot:"
HEARTBEAT_KEY = "heartbeat"
LAST_RECOVERY_KEY = "last_recovery"

type GetState = Callable[[], Any]
type SetState = Callable[[Any], Awaitable[None] | None]


@dataclass
class _Scope:
    get_state: GetState
    set_state: SetState
    state: ScopeState = ScopeState.CLEAN
    debounce_task: asyncio.Task[None] | None = None


class RecoveryManager:
    """Best-effort recovery of in-flight state.

    Failures while reading or writing snapshots are logged and never raised
    to the caller: recovery must not block the operation that triggered it.
    """

    def __init__(
        self,
        cache: SessionCache,
        settings: RecoverySettings | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self._settings = settings or RecoverySettings()
        self._clock = clock
        self._session_id = uuid.uuid4().hex
        self._scopes: dict[str, _Scope] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._previous_heartbeat: float | None = None

    @property
    def session_id(self) -> str:
        return self._session_id

    def register_scope(self, key: str, get_state: GetState, set_state: SetState) -> None:
        if key in self._scopes:
            self._cancel_debounce(self._scopes[key])
        self._scopes[key] = _Scope(get_state=get_state, set_state=set_state)

    def unregister_scope(self, key: str) -> None:
        scope = self._scopes.pop(key, None)
        if scope is not None:
            self._cancel_debounce(scope)

    def scope_state(self, key: str) -> ScopeState | None:
        scope = self._scopes.get(key)
        return scope.state if scope else None

    # -- saving ---------------------------------------------------------

    def mark_dirty(self, key: str) -> None:
        """Record a mutation and schedule a debounced snapshot."""
        scope = self._scopes.get(key)
        if scope is None:
            logger.debug("mark_dirty on unknown scope", scope_key=key)
            return
        scope.state = ScopeState.DIRTY
        self._schedule_debounce(key, scope)

    def _schedule_debounce(self, key: str, scope: _Scope) -> None:
        self._cancel_debounce(scope)
        scope.debounce_task = asyncio.create_task(self._debounced_save(key))

    @staticmethod
    def _cancel_debounce(scope: _Scope) -> None:
        task = scope.debounce_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        scope.debounce_task = None

    async def _debounced_save(self, key: str) -> None:
        try:
            await asyncio.sleep(self._settings.debounce_seconds)
        except asyncio.CancelledError:
            return
        await self._write_snapshot(key)

    async def save_scope(self, key: str, *, immediate: bool = False) -> bool:
        """Snapshot one scope now, or schedule a debounced snapshot.

        Returns True when a snapshot was written by this call.
        """
        scope = self._scopes.get(key)
        if scope is None:
            return False
        if not immediate:
            self._schedule_debounce(key, scope)
            return False
        self._cancel_debounce(scope)
        return await self._write_snapshot(key)

    async def save_all(self, *, immediate: bool = False) -> list[str]:
        """Snapshot every registered scope. Returns the keys written."""
        saved = []
        for key in list(self._scopes):
            if await self.save_scope(key, immediate=immediate):
                saved.append(key)
        if saved:
            logger.info("saved recovery snapshots", scopes=saved)
        return saved

    async def _write_snapshot(self, key: str) -> bool:
        scope = self._scopes.get(key)
        if scope is None:
            return False
        try:
            payload = scope.get_state()
            if payload is None:
                return False
            snapshot = RecoverySnapshot(
                scope_key=key,
                payload=payload,
                saved_at=self._clock(),
                session_id=self._session_id,
            )
            self._cache.set(
                f"{SNAPSHOT_PREFIX}{key}",
                snapshot.model_dump(mode="json"),
                ttl=self._settings.max_age_seconds,
            )
        except StorageExhaustedError:
            logger.exception("storage exhausted writing recovery snapshot", scope_key=key)
            return False
        except Exception:
            logger.exception("recovery snapshot failed", scope_key=key)
            return False
        scope.state = ScopeState.SNAPSHOTTED
        return True

    async def _save_dirty(self) -> None:
        for key, scope in list(self._scopes.items()):
            if scope.state == ScopeState.DIRTY:
                self._cancel_debounce(scope)
                await self._write_snapshot(key)

    def confirm_persisted(self, key: str) -> None:
        """The owner saved the scope's state durably; its snapshot is no longer needed."""
        scope = self._scopes.get(key)
        if scope is not None:
            self._cancel_debounce(scope)
            scope.state = ScopeState.CLEAN
        try:
            self._cache.remove(f"{SNAPSHOT_PREFIX}{key}")
        except OSError:
            logger.exception("could not remove recovery snapshot", scope_key=key)

    # -- reading --------------------------------------------------------

    def _read_snapshots(self) -> list[RecoverySnapshot]:
        snapshots = []
        try:
            keys = self._cache.keys(SNAPSHOT_PREFIX)
        except OSError:
            logger.exception("could not list recovery snapshots")
            return snapshots
        for cache_key in keys:
            try:
                raw = self._cache.get(cache_key)
                if raw is not None:
                    snapshots.append(RecoverySnapshot.model_validate(raw))
            except (RecoveryError, ValidationError):
                logger.warning("discarding unreadable recovery snapshot", cache_key=cache_key)
                self._discard(cache_key.removeprefix(SNAPSHOT_PREFIX))
        return snapshots

    def _discard(self, key: str) -> None:
        try:
            self._cache.remove(f"{SNAPSHOT_PREFIX}{key}")
        except OSError:
            logger.exception("could not remove recovery snapshot", scope_key=key)

    def _age(self, snapshot: RecoverySnapshot) -> float:
        return max(0.0, self._clock() - snapshot.saved_at)

    def has_recoverable_state(self) -> RecoveryInfo:
        """Report snapshots left by a previous process that are young enough to restore."""
        states = []
        for snapshot in self._read_snapshots():
            if snapshot.session_id == self._session_id:
                continue
            age = self._age(snapshot)
            if age > self._settings.max_age_seconds:
                continue
            states.append(
                ScopeAge(
                    scope_key=snapshot.scope_key,
                    age=age,
                    saved_at=snapshot.saved_at,
                    is_recent=age <= self._settings.recent_window_seconds,
                )
            )
        states.sort(key=lambda s: s.age)
        return RecoveryInfo(has_recovery=bool(states), states=states)

    async def attempt_recovery(self) -> list[str]:
        """Hand unclaimed snapshots back to their registered scopes.

        Snapshots past the hard age ceiling are discarded. Snapshots for
        scopes that are not registered yet are left for a later call.
        Restored snapshots are removed, so a repeated call returns [].
        """
        restored = []
        for snapshot in self._read_snapshots():
            key = snapshot.scope_key
            if snapshot.session_id == self._session_id:
                continue
            if self._age(snapshot) > self._settings.max_age_seconds:
                logger.info("discarding expired recovery snapshot", scope_key=key, age=self._age(snapshot))
                self._discard(key)
                continue
            scope = self._scopes.get(key)
            if scope is None:
                continue
            try:
                result = scope.set_state(snapshot.payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("restoring recovery snapshot failed", scope_key=key)
                continue
            self._discard(key)
            scope.state = ScopeState.CLEAN
            restored.append(key)

        if restored:
            logger.info("recovered scopes", scopes=restored)
            self._record_last_recovery(restored)
        return restored

    def _record_last_recovery(self, scopes: list[str]) -> None:
        try:
            record = LastRecovery(timestamp=self._clock(), scopes=scopes)
            self._cache.set(LAST_RECOVERY_KEY, record.model_dump(mode="json"))
        except (RecoveryError, StorageExhaustedError):
            logger.exception("could not record last recovery")

    @property
    def last_recovery(self) -> LastRecovery | None:
        try:
            raw = self._cache.get(LAST_RECOVERY_KEY)
            return LastRecovery.model_validate(raw) if raw is not None else None
        except (RecoveryError, ValidationError):
            logger.warning("unreadable last recovery record")
            return None

    def collect_garbage(self) -> int:
        """Mark snapshots past the recent window stale and delete those past the ceiling.

        Returns the number of snapshots deleted.
        """
        deleted = 0
        for snapshot in self._read_snapshots():
            age = self._age(snapshot)
            if age > self._settings.max_age_seconds:
                self._discard(snapshot.scope_key)
                deleted += 1
            elif age > self._settings.recent_window_seconds:
                scope = self._scopes.get(snapshot.scope_key)
                if scope is not None and scope.state == ScopeState.SNAPSHOTTED:
                    scope.state = ScopeState.STALE
        if deleted:
            logger.info("collected expired recovery snapshots", count=deleted)
        return deleted

    # -- lifecycle ------------------------------------------------------

    def was_interrupted(self) -> bool:
        """True when the previous process left a heartbeat older than the crash window."""
        if self._previous_heartbeat is None:
            return False
        return self._clock() - self._previous_heartbeat > self._settings.crash_window_seconds

    def _beat(self) -> None:
        try:
            self._cache.set(HEARTBEAT_KEY, {"session_id": self._session_id, "timestamp": self._clock()})
        except (RecoveryError, StorageExhaustedError):
            logger.exception("could not write recovery heartbeat")

    def _read_previous_heartbeat(self) -> float | None:
        try:
            raw = self._cache.get(HEARTBEAT_KEY)
        except RecoveryError:
            logger.warning("unreadable recovery heartbeat")
            return None
        if not isinstance(raw, dict) or raw.get("session_id") == self._session_id:
            return None
        timestamp = raw.get("timestamp")
        return float(timestamp) if isinstance(timestamp, int | float) else None

    async def start(self) -> None:
        """Check for a crashed predecessor, then start the heartbeat and autosave loops."""
        self._previous_heartbeat = self._read_previous_heartbeat()
        if self.was_interrupted():
            logger.warning("previous session ended without a clean shutdown")
        self._beat()
        self.collect_garbage()
        self._tasks = [
            asyncio.create_task(self._every(self._settings.heartbeat_interval_seconds, self._heartbeat_tick)),
            asyncio.create_task(self._every(self._settings.autosave_interval_seconds, self._save_dirty)),
        ]

    async def _heartbeat_tick(self) -> None:
        self._beat()

    @staticmethod
    async def _every(seconds: float, action: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(seconds)
            try:
                await action()
            except Exception:
                logger.exception("recovery background task failed")

    async def stop(self) -> None:
        """Cancel every timer and clear the heartbeat to mark a clean shutdown."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for scope in self._scopes.values():
            self._cancel_debounce(scope)
        try:
            self._cache.remove(HEARTBEAT_KEY)
        except OSError:
            logger.exception("could not clear recovery heartbeat")
