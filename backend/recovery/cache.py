"""Process-scoped two-layer cache: a bounded memory layer over key/value storage."""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ValidationError

from shared.errors import RecoveryError

if TYPE_CHECKING:
    from collections.abc import Callable

    from shared.storage import KeyValueStorage

logger = structlog.get_logger()


class CacheEntry(BaseModel, frozen=True):
    value: Any
    timestamp: float
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class SessionCache:
    """Explicitly owned cache shared by the components of one client process.

    Call initialize() before use and close() on teardown; any access
    outside that window raises RuntimeError. Persisted entries survive a
    process restart, memory-only entries do not. Keys are stored in storage
    as ``<namespace>:<key>``.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        namespace: str = "cache",
        max_memory_entries: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._namespace = namespace
        self._max_memory_entries = max_memory_entries
        self._clock = clock
        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Open the cache and drop persisted entries that expired while the process was down."""
        self._initialized = True
        removed = self.purge_expired()
        logger.debug("session cache initialized", namespace=self._namespace, purged=removed)

    def close(self) -> None:
        self._memory.clear()
        self._initialized = False

    def _require_open(self) -> None:
        if not self._initialized:
            raise RuntimeError("SessionCache used before initialize() or after close()")

    def _storage_key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def _remember(self, key: str, entry: CacheEntry) -> None:
        self._memory[key] = entry
        self._memory.move_to_end(key)
        while len(self._memory) > self._max_memory_entries:
            self._memory.popitem(last=False)

    def _load(self, key: str) -> CacheEntry | None:
        try:
            raw = self._storage.get(self._storage_key(key))
        except OSError as exc:
            raise RecoveryError(f"Could not read cache entry '{key}'") from exc
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError as exc:
            self._storage.remove(self._storage_key(key))
            raise RecoveryError(f"Corrupt cache entry '{key}' removed") from exc

    def get_entry(self, key: str) -> CacheEntry | None:
        """Return the live entry for key, checking memory first. Expired entries are removed."""
        self._require_open()
        entry = self._memory.get(key)
        if entry is None:
            entry = self._load(key)
            if entry is None:
                return None
            self._remember(key, entry)
        else:
            self._memory.move_to_end(key)

        if entry.is_expired(self._clock()):
            self.remove(key)
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:  # noqa: ANN401
        entry = self.get_entry(key)
        return default if entry is None else entry.value

    def set(self, key: str, value: Any, *, ttl: float | None = None, persist: bool = True) -> CacheEntry:  # noqa: ANN401
        """Store value under key.

        Raises RecoveryError when the value cannot be serialized or written;
        StorageExhaustedError from the storage layer propagates unchanged.
        """
        self._require_open()
        now = self._clock()
        entry = CacheEntry(value=value, timestamp=now, expires_at=now + ttl if ttl is not None else None)
        if persist:
            try:
                self._storage.set(self._storage_key(key), entry.model_dump_json())
            except (OSError, TypeError, ValueError) as exc:
                raise RecoveryError(f"Could not persist cache entry '{key}'") from exc
        self._remember(key, entry)
        return entry

    def remove(self, key: str) -> None:
        self._require_open()
        self._memory.pop(key, None)
        self._storage.remove(self._storage_key(key))

    def keys(self, prefix: str = "") -> list[str]:
        """Keys in this namespace starting with prefix, from both layers."""
        self._require_open()
        namespaced = self._storage_key(prefix)
        offset = len(self._namespace) + 1
        persisted = {k[offset:] for k in self._storage.keys(namespaced)}
        return sorted(persisted | {k for k in self._memory if k.startswith(prefix)})

    def purge_expired(self) -> int:
        self._require_open()
        now = self._clock()
        removed = 0
        for key in self.keys():
            try:
                entry = self._memory.get(key) or self._load(key)
            except RecoveryError:
                logger.warning("dropped unreadable cache entry", key=key)
                removed += 1
                continue
            if entry is not None and entry.is_expired(now):
                self.remove(key)
                removed += 1
        return removed
