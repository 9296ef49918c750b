"""Key/value storage used for records, recovery snapshots and share keys.

Each key maps to one opaque string value that is always read and written
whole. File-backed values live in an owner-only directory (0o700) and are
written with owner-only permissions (0o600).
"""

import contextlib
import errno
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

import structlog

from shared.errors import StorageExhaustedError

logger = structlog.get_logger()

# Owner-only directory permissions for the storage root.
_STORAGE_DIR_MODE = 0o700

# Owner-only file permissions for stored values.
_STORAGE_FILE_MODE = 0o600

_VALUE_SUFFIX = ".json"

# Keys become file names, so only a conservative character set is accepted.
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,200}$")

_CAPACITY_ERRNOS = {errno.ENOSPC, errno.EDQUOT}


class KeyValueStorage(Protocol):
    """Protocol for whole-value persistent storage."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...


def _validate_key(key: str) -> None:
    if not _KEY_PATTERN.match(key) or key.startswith(".") or ".." in key:
        raise ValueError(f"Invalid storage key: {key!r}")


class FileKeyValueStorage:
    """Stores each key as a file under a single directory.

    Writes go through a temp file in the same directory followed by a
    rename, so readers never observe a partially written value.
    """

    def __init__(self, storage_dir: str | Path) -> None:
        self._storage_dir = Path(storage_dir).resolve()

    def _path_for(self, key: str) -> Path:
        _validate_key(key)
        target = (self._storage_dir / f"{key}{_VALUE_SUFFIX}").resolve()
        if not target.is_relative_to(self._storage_dir):
            raise ValueError(f"Path traversal rejected: '{key}' resolves outside storage directory")
        return target

    def get(self, key: str) -> str | None:
        path = self._path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        """Atomically replace the value stored under key.

        Raises StorageExhaustedError when the filesystem is out of space or
        quota; any other OSError propagates unchanged.
        """
        target = self._path_for(key)
        self._storage_dir.mkdir(mode=_STORAGE_DIR_MODE, parents=True, exist_ok=True)
        self._storage_dir.chmod(_STORAGE_DIR_MODE)

        fd, tmp_path = tempfile.mkstemp(dir=str(self._storage_dir), suffix=".tmp", prefix=".kv_")
        fd_owned = True
        try:
            with os.fdopen(fd, "wb") as f:
                fd_owned = False  # os.fdopen took ownership; it will close fd
                f.write(value.encode("utf-8"))
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, _STORAGE_FILE_MODE)  # noqa: PTH101
            Path(tmp_path).replace(target)
        except BaseException as exc:
            if fd_owned:
                with contextlib.suppress(OSError):
                    os.close(fd)
            with contextlib.suppress(OSError):
                Path(tmp_path).unlink()
            if isinstance(exc, OSError) and exc.errno in _CAPACITY_ERRNOS:
                logger.error("storage exhausted", key=key, path=str(target))
                raise StorageExhaustedError(f"No space left to store '{key}'") from exc
            raise

    def remove(self, key: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._path_for(key).unlink()

    def keys(self, prefix: str = "") -> list[str]:
        if not self._storage_dir.is_dir():
            return []
        found = []
        for path in self._storage_dir.iterdir():
            if path.name.startswith(".") or path.suffix != _VALUE_SUFFIX:
                continue
            key = path.name[: -len(_VALUE_SUFFIX)]
            if key.startswith(prefix):
                found.append(key)
        return sorted(found)


class MemoryKeyValueStorage:
    """In-process storage with an optional byte quota.

    The quota counts the UTF-8 size of all stored values and mirrors the
    capacity limit of browser-style local storage.
    """

    def __init__(self, quota_bytes: int | None = None) -> None:
        self._values: dict[str, str] = {}
        self._quota_bytes = quota_bytes

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        _validate_key(key)
        if self._quota_bytes is not None:
            current = sum(len(v.encode("utf-8")) for k, v in self._values.items() if k != key)
            if current + len(value.encode("utf-8")) > self._quota_bytes:
                raise StorageExhaustedError(f"Quota of {self._quota_bytes} bytes exceeded storing '{key}'")
        self._values[key] = value

    def remove(self, key: str) -> None:
        self._values.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._values if k.startswith(prefix))
