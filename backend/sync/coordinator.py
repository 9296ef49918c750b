"""Upload unsynced records at most once and adopt existing remote copies."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from records.identity import matches_candidate, matches_coarse
from records.models import GameRecord, SyncStatus
from shared.errors import StorageExhaustedError, SyncError, SyncErrorReason
from shared.logging import bind_record_context

if TYPE_CHECKING:
    from collections.abc import Callable

    from records.store import LocalRecordStore
    from sync.remote import RemoteRecordStore

logger = structlog.get_logger()


class OutcomeKind(StrEnum):
    ALREADY_SYNCED = "already_synced"
    UPLOADED = "uploaded"
    DUPLICATE_FOUND = "duplicate_found"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncOutcome:
    kind: OutcomeKind
    remote_id: str | None = None
    reason: SyncErrorReason | None = None

    @classmethod
    def already_synced(cls, remote_id: str | None = None) -> SyncOutcome:
        return cls(OutcomeKind.ALREADY_SYNCED, remote_id=remote_id)

    @classmethod
    def uploaded(cls, remote_id: str) -> SyncOutcome:
        return cls(OutcomeKind.UPLOADED, remote_id=remote_id)

    @classmethod
    def duplicate_found(cls, remote_id: str) -> SyncOutcome:
        return cls(OutcomeKind.DUPLICATE_FOUND, remote_id=remote_id)

    @classmethod
    def failed(cls, reason: SyncErrorReason) -> SyncOutcome:
        return cls(OutcomeKind.FAILED, reason=reason)

    @property
    def is_synced(self) -> bool:
        return self.kind != OutcomeKind.FAILED


class SyncCoordinator:
    """Reconcile local records with the remote store.

    Only this class moves a record's sync status. Calls for the same record
    id are serialized with a per-id asyncio.Lock: a concurrent second call
    waits for the first, then finds the record synced and returns without I/O.
    """

    def __init__(
        self,
        store: LocalRecordStore,
        remote: RemoteRecordStore,
        *,
        is_authenticated: Callable[[], bool] | None = None,
    ) -> None:
        self._store = store
        self._remote = remote
        self._is_authenticated = is_authenticated or (lambda: True)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def ensure_synced(self, record: GameRecord) -> SyncOutcome:
        """Make sure record exists remotely exactly once.

        Storage exhaustion raised while recording the result propagates to
        the caller; remote failures are returned as a failed outcome.
        """
        async with self._locks[record.id]:
            bind_record_context(record_id=record.id)
            try:
                return await self._ensure_synced_locked(record)
            finally:
                bind_record_context(record_id=None)

    async def _ensure_synced_locked(self, record: GameRecord) -> SyncOutcome:
        if record.is_imported or record.original_game_id:
            return SyncOutcome.already_synced(record.remote_id)

        stored = await self._store.get(record.id)
        if stored is None:
            await self._store.save(record.with_status(SyncStatus.UNSYNCED))
            stored = await self._store.get(record.id)
            if stored is None:  # pragma: no cover - store lost a write it just accepted
                return SyncOutcome.failed(SyncErrorReason.NETWORK)

        if stored.sync_status == SyncStatus.SYNCED:
            return SyncOutcome.already_synced(stored.remote_id)
        if stored.sync_status == SyncStatus.CONFLICT:
            return SyncOutcome.failed(SyncErrorReason.CONFLICT)
        if not self._is_authenticated():
            logger.info("sync skipped, not authenticated")
            return SyncOutcome.failed(SyncErrorReason.AUTH_REQUIRED)

        previous = stored.sync_status
        syncing = await self._store.compare_and_set(stored.id, previous, sync_status=SyncStatus.SYNCING)
        if syncing is None:
            return await self._after_lost_race(stored.id)

        try:
            return await self._upload_or_adopt(syncing)
        except SyncError as exc:
            await self._store.compare_and_set(syncing.id, SyncStatus.SYNCING, sync_status=previous)
            logger.warning("sync failed", reason=exc.reason, detail=exc.detail)
            return SyncOutcome.failed(exc.reason)
        except BaseException:
            await self._store.compare_and_set(syncing.id, SyncStatus.SYNCING, sync_status=previous)
            raise

    async def _after_lost_race(self, record_id: str) -> SyncOutcome:
        """The status changed between our read and our write; report what is there now."""
        current = await self._store.get(record_id)
        if current is not None and current.sync_status == SyncStatus.SYNCED:
            return SyncOutcome.already_synced(current.remote_id)
        logger.warning("sync aborted, record status changed concurrently")
        return SyncOutcome.failed(SyncErrorReason.CONFLICT)

    async def _upload_or_adopt(self, record: GameRecord) -> SyncOutcome:
        candidates = await self._remote.query(record.lookup_key)
        # Exact content matches first, then candidates agreeing only on players, rounds and scores.
        matching = sorted(
            (c for c in candidates if matches_coarse(record, c)),
            key=lambda c: not matches_candidate(record, c),
        )
        if matching:
            candidate = matching[0]
            if not matches_candidate(record, candidate):
                logger.warning(
                    "adopting remote record with different round details",
                    remote_id=candidate.remote_id,
                    remote_hash=candidate.content_hash,
                )
            await self._finish(record, candidate.remote_id)
            logger.info("adopted existing remote record", remote_id=candidate.remote_id)
            return SyncOutcome.duplicate_found(candidate.remote_id)

        result = await self._remote.create(record)
        await self._finish(record, result.remote_id)
        if result.duplicate:
            logger.info("server reported duplicate on create", remote_id=result.remote_id)
            return SyncOutcome.duplicate_found(result.remote_id)
        logger.info("uploaded record", remote_id=result.remote_id)
        return SyncOutcome.uploaded(result.remote_id)

    async def _finish(self, record: GameRecord, remote_id: str) -> None:
        updated = await self._store.compare_and_set(
            record.id,
            SyncStatus.SYNCING,
            sync_status=SyncStatus.SYNCED,
            remote_id=remote_id,
        )
        if updated is None:
            logger.warning("record changed while syncing, remote id not recorded", remote_id=remote_id)

    async def sync_pending(self) -> dict[str, SyncOutcome]:
        """Best-effort catch-up pass over every pending record.

        Never raises for sync failures: they are logged and reflected in the
        returned outcomes. Storage exhaustion stops the pass.
        """
        outcomes: dict[str, SyncOutcome] = {}
        try:
            pending = await self._store.list_pending()
        except OSError:
            logger.exception("could not read pending records")
            return outcomes

        for record in pending:
            try:
                outcomes[record.id] = await self.ensure_synced(record)
            except StorageExhaustedError:
                logger.exception("storage exhausted during catch-up sync", record_id=record.id)
                break
        failed = sum(1 for o in outcomes.values() if o.kind == OutcomeKind.FAILED)
        if outcomes:
            logger.info("catch-up sync finished", total=len(outcomes), failed=failed)
        return outcomes

    async def reconcile_duplicates(self) -> int:
        """Point every synced duplicate at the remote id of the earliest copy.

        Returns the number of records re-pointed.
        """
        records = await self._store.load_all()
        groups: defaultdict[str, list[GameRecord]] = defaultdict(list)
        for record in records.values():
            if record.sync_status == SyncStatus.SYNCED:
                groups[record.content_hash].append(record)

        repointed = 0
        for group in groups.values():
            group.sort(key=lambda r: (r.created_at, r.id))
            canonical_id = group[0].remote_id
            for duplicate in group[1:]:
                if duplicate.remote_id == canonical_id:
                    continue
                async with self._locks[duplicate.id]:
                    updated = await self._store.compare_and_set(
                        duplicate.id,
                        SyncStatus.SYNCED,
                        remote_id=canonical_id,
                    )
                if updated is not None:
                    repointed += 1
                    logger.info(
                        "re-pointed duplicate record",
                        record_id=duplicate.id,
                        old_remote_id=duplicate.remote_id,
                        remote_id=canonical_id,
                    )
        return repointed

    async def resolve_conflict(self, record_id: str, remote_id: str | None = None) -> SyncOutcome:
        """Settle a record in ``conflict`` status.

        With remote_id the record adopts that remote copy; without it the
        record is uploaded as a separate game.
        """
        async with self._locks[record_id]:
            stored = await self._store.get(record_id)
            if stored is None or stored.sync_status != SyncStatus.CONFLICT:
                msg = f"Record '{record_id}' is not in conflict"
                raise ValueError(msg)

            if remote_id is not None:
                await self._store.compare_and_set(
                    record_id,
                    SyncStatus.CONFLICT,
                    sync_status=SyncStatus.SYNCED,
                    remote_id=remote_id,
                )
                return SyncOutcome.duplicate_found(remote_id)

            syncing = await self._store.compare_and_set(record_id, SyncStatus.CONFLICT, sync_status=SyncStatus.SYNCING)
            if syncing is None:
                return await self._after_lost_race(record_id)
            try:
                result = await self._remote.create(syncing)
            except SyncError as exc:
                await self._store.compare_and_set(record_id, SyncStatus.SYNCING, sync_status=SyncStatus.CONFLICT)
                return SyncOutcome.failed(exc.reason)
            await self._finish(syncing, result.remote_id)
            return SyncOutcome.uploaded(result.remote_id)
