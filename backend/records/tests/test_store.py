"""Tests for the local record store."""

import json

import pytest

from records.models import SyncStatus
from records.store import RECORDS_STORAGE_KEY, LocalRecordStore
from shared.errors import StorageExhaustedError
from shared.storage import FileKeyValueStorage, MemoryKeyValueStorage


@pytest.fixture
def storage():
    return MemoryKeyValueStorage()


@pytest.fixture
def store(storage):
    return LocalRecordStore(storage)


class TestLocalRecordStore:
    async def test_save_and_get(self, store, make_record):
        record = make_record()

        await store.save(record)

        assert await store.get("game-1") == record
        assert await store.get("missing") is None

    async def test_whole_map_under_single_key(self, store, storage, make_record):
        await store.save_many([make_record("game-1"), make_record("game-2")])

        assert storage.keys() == [RECORDS_STORAGE_KEY]
        assert set(json.loads(storage.get(RECORDS_STORAGE_KEY))) == {"game-1", "game-2"}

    async def test_persists_across_instances(self, tmp_path, make_record):
        await LocalRecordStore(FileKeyValueStorage(tmp_path)).save(make_record())

        reloaded = await LocalRecordStore(FileKeyValueStorage(tmp_path)).load_all()

        assert list(reloaded) == ["game-1"]

    async def test_delete(self, store, make_record):
        await store.save(make_record())

        assert await store.delete("game-1") is True
        assert await store.delete("game-1") is False
        assert await store.load_all() == {}

    async def test_list_pending_excludes_synced_and_imported(self, store, make_record):
        await store.save_many(
            [
                make_record("late", created_at=make_record().created_at.replace(hour=20)),
                make_record("early"),
                make_record("synced").mark_synced("remote-1"),
                make_record("imported", is_imported=True, original_game_id="remote-2"),
            ],
        )

        pending = await store.list_pending()

        assert [r.id for r in pending] == ["early", "late"]

    async def test_list_by_status(self, store, make_record):
        await store.save_many([make_record("a"), make_record("b", sync_status=SyncStatus.CONFLICT)])

        assert [r.id for r in await store.list_by_status(SyncStatus.CONFLICT)] == ["b"]

    async def test_reads_legacy_list_format(self, store, storage, make_record):
        legacy = [make_record("old-1").model_dump(mode="json"), make_record("old-2").model_dump(mode="json")]
        storage.set(RECORDS_STORAGE_KEY, json.dumps(legacy))

        assert set(await store.load_all()) == {"old-1", "old-2"}

    async def test_malformed_storage_raises_instead_of_overwriting(self, store, storage, make_record):
        storage.set(RECORDS_STORAGE_KEY, "{not json")

        with pytest.raises(OSError, match="Malformed JSON"):
            await store.save(make_record())

        assert storage.get(RECORDS_STORAGE_KEY) == "{not json"

    async def test_invalid_record_data_raises(self, store, storage):
        storage.set(RECORDS_STORAGE_KEY, json.dumps({"game-1": {"id": "game-1"}}))

        with pytest.raises(OSError, match="Invalid record data"):
            await store.load_all()

    async def test_storage_exhausted_propagates(self, make_record):
        store = LocalRecordStore(MemoryKeyValueStorage(quota_bytes=100))

        with pytest.raises(StorageExhaustedError):
            await store.save(make_record())

    async def test_export_json(self, store, make_record):
        await store.save(make_record())

        exported = json.loads(await store.export_json())

        assert exported["game-1"]["sync_status"] == "unsynced"


class TestCompareAndSet:
    async def test_applies_when_status_matches(self, store, make_record):
        await store.save(make_record())

        updated = await store.compare_and_set("game-1", SyncStatus.UNSYNCED, sync_status=SyncStatus.SYNCING)

        assert updated is not None
        assert updated.sync_status == SyncStatus.SYNCING
        assert (await store.get("game-1")).sync_status == SyncStatus.SYNCING

    async def test_rejects_when_status_changed(self, store, make_record):
        await store.save(make_record().mark_synced("remote-1"))

        result = await store.compare_and_set("game-1", SyncStatus.UNSYNCED, sync_status=SyncStatus.SYNCING)

        assert result is None
        assert (await store.get("game-1")).sync_status == SyncStatus.SYNCED

    async def test_missing_record_returns_none(self, store):
        assert await store.compare_and_set("missing", SyncStatus.UNSYNCED, sync_status=SyncStatus.SYNCING) is None

    async def test_changes_are_revalidated(self, store, make_record):
        await store.save(make_record(sync_status=SyncStatus.SYNCING))

        with pytest.raises(ValueError, match="must carry a remote id"):
            await store.compare_and_set("game-1", SyncStatus.SYNCING, sync_status=SyncStatus.SYNCED)

    async def test_reset_interrupted(self, store, make_record):
        await store.save_many([make_record("a", sync_status=SyncStatus.SYNCING), make_record("b")])

        assert await store.reset_interrupted() == 1
        assert (await store.get("a")).sync_status == SyncStatus.UNSYNCED
        assert await store.reset_interrupted() == 0
