"""Turn validated share payloads into imported local records."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from records.models import GameRecord, SyncStatus
from shared.errors import RecordValidationError
from share.links import parse_shared_path

if TYPE_CHECKING:
    from collections.abc import Callable

    from records.store import LocalRecordStore
    from share.links import ShareKeyStore
    from share.schema import SharedGame, SharedGameEntry
    from share.validator import ShareValidator
    from sync.remote import RemoteRecordStore

logger = structlog.get_logger()


class SharedFrom:
    LINK = "link"
    BULK = "bulk"
    SHARE_KEY = "share_key"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class RecordImporter:
    """Imports shared games as local copies carrying their provenance.

    Imported copies are never uploaded: the coordinator treats them as
    synced by construction. Every import validates its whole input first
    and writes with a single store call, so a failed import leaves the
    store untouched.
    """

    def __init__(
        self,
        store: LocalRecordStore,
        validator: ShareValidator,
        *,
        remote: RemoteRecordStore | None = None,
        share_keys: ShareKeyStore | None = None,
        clock: Callable[[], datetime] = _utc_now,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._store = store
        self._validator = validator
        self._remote = remote
        self._share_keys = share_keys
        self._clock = clock
        self._id_factory = id_factory

    def _to_record(
        self,
        game: SharedGame,
        *,
        original_game_id: str,
        shared_from: str,
        name: str | None = None,
    ) -> GameRecord:
        now = self._clock()
        try:
            return GameRecord(
                id=self._id_factory(),
                name=name or game.name,
                players=game.players,
                round_data=game.round_data,
                final_scores=game.final_scores,
                winner_ids=game.winner_ids,
                total_rounds=game.total_rounds,
                game_mode=game.game_mode,
                created_at=game.created_at or now,
                duration_seconds=game.duration_seconds,
                sync_status=SyncStatus.UNSYNCED,
                is_imported=True,
                original_game_id=original_game_id,
                imported_at=now,
                shared_from=shared_from,
            )
        except ValidationError as exc:
            msg = f"Shared game '{original_game_id}' is not a valid record"
            raise RecordValidationError(msg) from exc

    async def _existing_copy(self, original_id: str) -> GameRecord | None:
        for record in (await self._store.load_all()).values():
            if original_id in (record.original_game_id, record.remote_id):
                return record
        return None

    async def import_shared(self, link_or_id: str) -> GameRecord | None:
        """Fetch a shared game by its remote id (or share link) and store a copy.

        Returns None when the remote store has no such game. Importing the
        same game twice returns the existing local copy. SyncError from the
        fetch propagates; invalid remote data raises RecordValidationError.
        """
        if self._remote is None:
            raise RuntimeError("Importing share links requires a remote record store")
        remote_id = parse_shared_path(link_or_id) if "/" in link_or_id else link_or_id
        if not remote_id or parse_shared_path(f"/shared/{remote_id}") is None:
            raise RecordValidationError("Invalid share link")

        existing = await self._existing_copy(remote_id)
        if existing is not None:
            logger.info("shared game already present", record_id=existing.id, remote_id=remote_id)
            return existing

        data = await self._remote.fetch(remote_id)
        if data is None:
            logger.info("shared game not found", remote_id=remote_id)
            return None
        result = self._validator.validate_data(data)
        if not result.is_valid or result.data is None:
            raise RecordValidationError(result.error or "Invalid shared game")

        record = self._to_record(result.data, original_game_id=remote_id, shared_from=SharedFrom.LINK)
        await self._store.save(record)
        logger.info("imported shared game", record_id=record.id, remote_id=remote_id)
        return record

    async def import_bulk(self, encoded: str) -> list[GameRecord]:
        """Import a base64 bulk map. All games are saved, or none."""
        result = self._validator.validate_bulk(encoded)
        if not result.is_valid or result.data is None:
            raise RecordValidationError(result.error or "Invalid import data")
        return await self._save_entries(result.data, SharedFrom.BULK)

    async def import_share_key(self, key: str) -> list[GameRecord]:
        """Import the games stashed under a legacy share key. The key is consumed."""
        if self._share_keys is None:
            raise RuntimeError("Importing share keys requires a share key store")
        result = self._share_keys.consume(key)
        if not result.is_valid or result.data is None:
            raise RecordValidationError(result.error or "Invalid share key")
        return await self._save_entries(result.data, SharedFrom.SHARE_KEY)

    async def _save_entries(self, entries: dict[str, SharedGameEntry], shared_from: str) -> list[GameRecord]:
        records = [
            self._to_record(entry.game, original_game_id=entry.id, shared_from=shared_from, name=entry.name)
            for entry in entries.values()
        ]
        await self._store.save_many(records)
        logger.info("imported games", count=len(records), shared_from=shared_from)
        return records
