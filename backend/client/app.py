"""Composition root for a scoresync client device."""

from __future__ import annotations

from typing import TYPE_CHECKING, Self

import structlog

from client.settings import ClientSettings
from records.store import LocalRecordStore
from recovery.cache import SessionCache
from recovery.manager import RecoveryManager
from recovery.settings import RecoverySettings
from share.importer import RecordImporter
from share.links import ShareKeyStore, shareable_link
from share.settings import ShareSettings
from share.validator import ShareValidator
from shared.errors import SyncError
from shared.logging import setup_logging
from shared.storage import FileKeyValueStorage
from sync.connectivity import ConnectivityMonitor, LifecycleEvent
from sync.coordinator import SyncCoordinator, SyncOutcome
from sync.remote import HttpRemoteRecordStore

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from records.models import GameRecord
    from shared.storage import KeyValueStorage
    from sync.remote import RemoteRecordStore

logger = structlog.get_logger()


class ScoreSyncClient:
    """Owns every component of one client process and their lifecycle.

    start() opens the cache, returns records left mid-sync by a crash to
    unsynced, starts autosave and dispatches cold_start; close() tears
    everything down in reverse order.
    """

    def __init__(
        self,
        *,
        settings: ClientSettings,
        share_settings: ShareSettings,
        storage: KeyValueStorage,
        cache: SessionCache,
        store: LocalRecordStore,
        remote: RemoteRecordStore,
        coordinator: SyncCoordinator,
        recovery: RecoveryManager,
        monitor: ConnectivityMonitor,
        share_keys: ShareKeyStore,
        importer: RecordImporter,
        owns_remote: bool = False,
    ) -> None:
        self.settings = settings
        self.share_settings = share_settings
        self.storage = storage
        self.cache = cache
        self.store = store
        self.remote = remote
        self.coordinator = coordinator
        self.recovery = recovery
        self.monitor = monitor
        self.share_keys = share_keys
        self.importer = importer
        self._owns_remote = owns_remote
        self._started = False

    async def start(self, *, probe: bool = True) -> None:
        if self._started:
            return
        self.cache.initialize()
        self.share_keys.purge_expired()
        await self.store.reset_interrupted()
        await self.recovery.start()
        await self.monitor.dispatch(LifecycleEvent.COLD_START)
        if probe:
            self.monitor.start(self.settings.health_check_interval)
        self._started = True
        logger.info("scoresync client started", storage_dir=self.settings.storage_dir)

    async def close(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.monitor.close()
        await self.recovery.stop()
        self.cache.close()
        if self._owns_remote and isinstance(self.remote, HttpRemoteRecordStore):
            await self.remote.aclose()
        logger.info("scoresync client closed")

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def record_game(self, record: GameRecord) -> SyncOutcome | None:
        """Store a finished game and try to upload it when the backend is reachable.

        StorageExhaustedError from the local write propagates. Returns None
        when the upload was deferred to the next catch-up pass.
        """
        await self.store.save(record)
        if not self.monitor.backend_reachable:
            logger.info("backend unreachable, upload deferred", record_id=record.id)
            return None
        return await self.coordinator.ensure_synced(record)

    async def share_link(self, record_id: str) -> str:
        """Return the share link for a stored record, uploading it first if needed.

        Raises KeyError for an unknown record and SyncError when the upload fails.
        """
        record = await self.store.get(record_id)
        if record is None:
            raise KeyError(record_id)
        if not record.is_imported and not record.remote_id:
            outcome = await self.coordinator.ensure_synced(record)
            if outcome.reason is not None:
                raise SyncError(outcome.reason, "record could not be uploaded for sharing")
            record = await self.store.get(record_id) or record
        return shareable_link(record, self.share_settings.base_url)


def create_client(
    settings: ClientSettings | None = None,
    *,
    remote: RemoteRecordStore | None = None,
    storage: KeyValueStorage | None = None,
    share_settings: ShareSettings | None = None,
    recovery_settings: RecoverySettings | None = None,
    is_authenticated: Callable[[], bool] | None = None,
    on_notice: Callable[[str | None], None] | None = None,
) -> ScoreSyncClient:
    """Wire a client from settings. Remote and storage can be injected (tests use in-memory ones)."""
    if settings is None:  # pragma: no cover
        settings = ClientSettings()
    share_settings = share_settings or ShareSettings()
    recovery_settings = recovery_settings or RecoverySettings()

    owns_remote = remote is None
    if remote is None:
        remote = HttpRemoteRecordStore(settings.backend_url, settings.auth_token, timeout=settings.request_timeout)
    if storage is None:
        storage = FileKeyValueStorage(settings.storage_dir)

    cache = SessionCache(
        storage,
        namespace=recovery_settings.cache_namespace,
        max_memory_entries=recovery_settings.memory_cache_size,
    )
    store = LocalRecordStore(storage)
    coordinator = SyncCoordinator(store, remote, is_authenticated=is_authenticated)
    recovery = RecoveryManager(cache, recovery_settings)
    monitor = ConnectivityMonitor(
        recovery,
        coordinator,
        remote,
        notice_seconds=settings.notice_seconds,
        on_notice=on_notice,
    )
    validator = ShareValidator(share_settings)
    share_keys = ShareKeyStore(storage, validator)
    importer = RecordImporter(store, validator, remote=remote, share_keys=share_keys)

    return ScoreSyncClient(
        settings=settings,
        share_settings=share_settings,
        storage=storage,
        cache=cache,
        store=store,
        remote=remote,
        coordinator=coordinator,
        recovery=recovery,
        monitor=monitor,
        share_keys=share_keys,
        importer=importer,
        owns_remote=owns_remote,
    )


def get_client() -> ScoreSyncClient:  # pragma: no cover
    """Build a client from environment configuration with logging set up."""
    s = ClientSettings()
    setup_logging("client", log_dir=s.log_dir)
    return create_client(settings=s)
