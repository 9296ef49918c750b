"""Record persistence for the reference remote store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from records.models import RemoteCandidate

if TYPE_CHECKING:
    from records.models import GameRecord
    from remote.db import Database

logger = structlog.get_logger()

# Device-local fields that are never stored remotely.
_LOCAL_ONLY_FIELDS = {"sync_status", "remote_id", "is_imported", "imported_at", "shared_from", "original_game_id"}


class RecordStoreFullError(Exception):
    """The remote store holds its configured maximum number of records."""


@dataclass(frozen=True)
class StoredRecord:
    remote_id: str
    duplicate: bool


class RemoteRecordRepository(ABC):
    """Abstract interface for authoritative record persistence."""

    @abstractmethod
    async def create(self, record: GameRecord) -> StoredRecord: ...

    @abstractmethod
    async def find_by_lookup_key(self, lookup_key: str, limit: int = 50) -> list[RemoteCandidate]: ...

    @abstractmethod
    async def get(self, remote_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    async def count(self) -> int: ...


class SqliteRemoteRecordRepository(RemoteRecordRepository):
    """SQLite implementation of RemoteRecordRepository.

    Records are stored as JSON with indexed lookup key and content hash
    columns. The unique content hash index makes create idempotent: a
    second upload of the same game returns the first copy's id.
    """

    def __init__(self, db: Database, max_records: int = 100_000) -> None:
        self._db = db
        self._max_records = max_records
        self._lock = asyncio.Lock()

    def _find_by_hash(self, content_hash: str) -> str | None:
        row = self._db.connection.execute(
            "SELECT id FROM records WHERE content_hash = ?",
            (content_hash,),
        ).fetchone()
        return row[0] if row else None

    async def create(self, record: GameRecord) -> StoredRecord:
        """Insert a record, or return the existing copy with the same content hash.

        Raises RecordStoreFullError when the store is at capacity.
        """
        content_hash = record.content_hash
        async with self._lock:
            existing = self._find_by_hash(content_hash)
            if existing is not None:
                logger.info("duplicate record upload", remote_id=existing)
                return StoredRecord(remote_id=existing, duplicate=True)

            if await self.count() >= self._max_records:
                raise RecordStoreFullError(f"Record store is full ({self._max_records} records)")

            remote_id = uuid.uuid4().hex
            data = record.model_dump(mode="json", exclude=_LOCAL_ONLY_FIELDS)
            data["id"] = remote_id
            try:
                self._db.connection.execute(
                    "INSERT INTO records (id, lookup_key, content_hash, created_at, data) VALUES (?, ?, ?, ?, ?)",
                    (remote_id, record.lookup_key, content_hash, record.created_at.isoformat(), json.dumps(data)),
                )
                self._db.connection.commit()
            except sqlite3.IntegrityError:
                self._db.connection.rollback()
                existing = self._find_by_hash(content_hash)
                if existing is None:
                    raise
                return StoredRecord(remote_id=existing, duplicate=True)

        logger.info("stored record", remote_id=remote_id)
        return StoredRecord(remote_id=remote_id, duplicate=False)

    async def find_by_lookup_key(self, lookup_key: str, limit: int = 50) -> list[RemoteCandidate]:
        """Candidate summaries for records sharing lookup_key, oldest first."""
        rows = self._db.connection.execute(
            "SELECT id, content_hash, data FROM records WHERE lookup_key = ? ORDER BY created_at, id LIMIT ?",
            (lookup_key, limit),
        ).fetchall()
        candidates = []
        for remote_id, content_hash, raw in rows:
            data = json.loads(raw)
            candidates.append(
                RemoteCandidate(
                    remote_id=remote_id,
                    lookup_key=lookup_key,
                    player_count=len(data.get("players", [])),
                    total_rounds=data.get("total_rounds", 0),
                    final_scores=data.get("final_scores", {}),
                    content_hash=content_hash,
                ),
            )
        return candidates

    async def get(self, remote_id: str) -> dict[str, Any] | None:
        row = self._db.connection.execute(
            "SELECT data FROM records WHERE id = ?",
            (remote_id,),
        ).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    async def count(self) -> int:
        row = self._db.connection.execute("SELECT COUNT(*) FROM records").fetchone()
        return row[0]
