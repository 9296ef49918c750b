"""Local record store: every game record on this device under one storage key."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from records.models import GameRecord, SyncStatus

if TYPE_CHECKING:
    from collections.abc import Iterable

    from shared.storage import KeyValueStorage

logger = structlog.get_logger()

RECORDS_STORAGE_KEY = "scoresync.records"


class LocalRecordStore:
    """Keyed persistent map of record id -> GameRecord.

    The storage layer has no partial-field updates: every operation reads the
    whole map, mutates it, and writes the whole map back. An asyncio.Lock
    serializes read-modify-write cycles within the process; the per-record
    ``sync_status`` is the token checked by compare_and_set.
    """

    def __init__(self, storage: KeyValueStorage, storage_key: str = RECORDS_STORAGE_KEY) -> None:
        self._storage = storage
        self._storage_key = storage_key
        self._lock = asyncio.Lock()

    def _read_map(self) -> dict[str, GameRecord]:
        """Read and parse the stored map.

        Raises OSError for unreadable content instead of returning an empty
        map, so a later write cannot silently discard records.
        """
        raw = self._storage.get(self._storage_key)
        if raw is None:
            return {}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            msg = f"Malformed JSON under storage key '{self._storage_key}'"
            raise OSError(msg) from exc

        # Older clients stored a plain list of finished games.
        if isinstance(data, list):
            data = {item["id"]: item for item in data if isinstance(item, dict) and item.get("id")}
        if not isinstance(data, dict):
            msg = f"Expected JSON object under storage key '{self._storage_key}'"
            raise OSError(msg)

        try:
            return {record_id: GameRecord.model_validate(item) for record_id, item in data.items()}
        except ValidationError as exc:
            msg = f"Invalid record data under storage key '{self._storage_key}'"
            raise OSError(msg) from exc

    def _write_map(self, records: dict[str, GameRecord]) -> None:
        data = {record_id: record.model_dump(mode="json") for record_id, record in records.items()}
        self._storage.set(self._storage_key, json.dumps(data, separators=(",", ":")))

    async def load_all(self) -> dict[str, GameRecord]:
        async with self._lock:
            return self._read_map()

    async def get(self, record_id: str) -> GameRecord | None:
        async with self._lock:
            return self._read_map().get(record_id)

    async def save(self, record: GameRecord) -> None:
        """Insert or replace a record. StorageExhaustedError propagates to the caller."""
        await self.save_many([record])

    async def save_many(self, records: Iterable[GameRecord]) -> None:
        """Insert or replace several records with a single write."""
        async with self._lock:
            current = self._read_map()
            for record in records:
                current[record.id] = record
            self._write_map(current)

    async def delete(self, record_id: str) -> bool:
        """Delete a record on explicit user request. Returns False when absent."""
        async with self._lock:
            current = self._read_map()
            if current.pop(record_id, None) is None:
                return False
            self._write_map(current)
            logger.info("deleted record", record_id=record_id)
            return True

    async def list_by_status(self, status: SyncStatus) -> list[GameRecord]:
        records = await self.load_all()
        return sorted((r for r in records.values() if r.sync_status == status), key=lambda r: r.created_at)

    async def list_pending(self) -> list[GameRecord]:
        """Unsynced local records in creation order; imported copies are excluded."""
        records = await self.load_all()
        return sorted((r for r in records.values() if r.is_pending), key=lambda r: r.created_at)

    async def compare_and_set(
        self,
        record_id: str,
        expected_status: SyncStatus,
        **changes: Any,  # noqa: ANN401
    ) -> GameRecord | None:
        """Apply changes only if the stored status still equals expected_status.

        Returns the updated record, or None when the record is missing or its
        status changed since the caller read it. The updated record is
        re-validated so sync invariants (remote id only when synced) hold.
        """
        async with self._lock:
            current = self._read_map()
            stored = current.get(record_id)
            if stored is None or stored.sync_status != expected_status:
                logger.info(
                    "compare-and-set rejected",
                    record_id=record_id,
                    expected=expected_status,
                    actual=stored.sync_status if stored else None,
                )
                return None
            updated = GameRecord.model_validate({**stored.model_dump(), **changes})
            current[record_id] = updated
            self._write_map(current)
            return updated

    async def reset_interrupted(self) -> int:
        """Return records left in ``syncing`` by a crashed process to ``unsynced``."""
        async with self._lock:
            current = self._read_map()
            stuck = [r for r in current.values() if r.sync_status == SyncStatus.SYNCING]
            if not stuck:
                return 0
            for record in stuck:
                current[record.id] = record.with_status(SyncStatus.UNSYNCED)
            self._write_map(current)
        logger.info("reset interrupted syncs", count=len(stuck))
        return len(stuck)

    async def export_json(self) -> str:
        """Export every record as a pretty-printed JSON map keyed by record id."""
        records = await self.load_all()
        return json.dumps({rid: r.model_dump(mode="json") for rid, r in records.items()}, indent=2)
