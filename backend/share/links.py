"""Share links and the legacy bulk share-key surface.

A share link carries only an opaque record id (``/shared/{id}``) that the
receiving device resolves with a remote fetch. The legacy bulk form stores
a base64 JSON map of games under a generated share key, with an expiry
timestamp (milliseconds) stored alongside it under ``<key>_expires``.
"""

from __future__ import annotations

import base64
import json
import re
import secrets
import string
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, unquote, urlsplit

import structlog

from shared.errors import RecordValidationError
from share.validator import ShareValidator, ValidationResult, is_valid_share_key

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from records.models import GameRecord
    from share.schema import SharedGameEntry
    from share.settings import ShareSettings
    from shared.storage import KeyValueStorage

logger = structlog.get_logger()

SHARED_PATH_PREFIX = "/shared/"
EXPIRES_SUFFIX = "_expires"
SHARE_KEY_PREFIX = "share_"

_SHARED_PATH = re.compile(r"^/shared/([A-Za-z0-9_-]{1,100})/?$")
_KEY_ALPHABET = string.ascii_lowercase + string.digits
_KEY_RANDOM_LENGTH = 9

# Sync and provenance metadata never leave the device.
_LOCAL_ONLY_FIELDS = {"sync_status", "remote_id", "is_imported", "imported_at", "shared_from", "original_game_id"}


def shareable_link(record: GameRecord, base_url: str) -> str:
    """Build the public link for a record.

    Synced records share their remote id; imported copies re-share the id
    of the game they were imported from. Anything else cannot be resolved
    by another device and raises ValueError.
    """
    if record.is_imported and record.original_game_id:
        target = record.original_game_id
    elif record.remote_id:
        target = record.remote_id
    else:
        msg = f"Record '{record.id}' must be synced before it can be shared"
        raise ValueError(msg)
    return f"{base_url.rstrip('/')}{SHARED_PATH_PREFIX}{quote(target, safe='')}"


def parse_shared_path(path: str) -> str | None:
    """Extract the record id from a share link or path, or None if it is not one."""
    match = _SHARED_PATH.match(unquote(urlsplit(path).path))
    return match.group(1) if match else None


def game_payload(record: GameRecord) -> dict[str, Any]:
    """The portable form of a record, as accepted by ShareValidator."""
    return record.model_dump(mode="json", exclude=_LOCAL_ONLY_FIELDS | {"content_hash", "lookup_key"})


def _encode(document: object) -> str:
    raw = json.dumps(document, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def encode_game(record: GameRecord) -> str:
    return _encode(game_payload(record))


def encode_bulk(records: Iterable[GameRecord]) -> str:
    """Encode records as the bulk import map {game_id: {id, name, game_state}}."""
    return _encode(
        {record.id: {"id": record.id, "name": record.name, "game_state": game_payload(record)} for record in records}
    )


class ShareKeyStore:
    """Device-local store for legacy bulk share keys.

    Both the payload and its expiry entry are removed once the key is
    consumed or found expired.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        validator: ShareValidator,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._validator = validator
        self._clock = clock

    @property
    def settings(self) -> ShareSettings:
        return self._validator.settings

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _new_key(self) -> str:
        suffix = "".join(secrets.choice(_KEY_ALPHABET) for _ in range(_KEY_RANDOM_LENGTH))
        return f"{SHARE_KEY_PREFIX}{self._now_ms():013d}_{suffix}"

    def _remove(self, key: str) -> None:
        self._storage.remove(key)
        self._storage.remove(f"{key}{EXPIRES_SUFFIX}")

    def _expires_at(self, key: str) -> int | None:
        raw = self._storage.get(f"{key}{EXPIRES_SUFFIX}")
        try:
            return int(raw) if raw is not None else None
        except ValueError:
            return None

    def stash(self, records: Iterable[GameRecord]) -> str:
        """Store records under a fresh share key and return the key.

        Raises RecordValidationError when there is nothing to share or the
        encoded map exceeds the import limits a receiver would enforce.
        """
        records = list(records)
        if not records or len(records) > self.settings.max_records_per_import:
            msg = f"A share must contain between 1 and {self.settings.max_records_per_import} games"
            raise RecordValidationError(msg)
        encoded = encode_bulk(records)
        if len(encoded) * 3 // 4 > self.settings.max_decoded_size:
            raise RecordValidationError("Shared games exceed the maximum share size")

        key = self._new_key()
        expires_at = self._now_ms() + self.settings.share_key_ttl_seconds * 1000
        self._storage.set(key, encoded)
        self._storage.set(f"{key}{EXPIRES_SUFFIX}", str(expires_at))
        logger.info("stashed share key", share_key=key, games=len(records))
        return key

    def consume(self, key: str) -> ValidationResult[dict[str, SharedGameEntry]]:
        """Validate and remove the games stored under key. Single use."""
        if not is_valid_share_key(key):
            return ValidationResult.fail("Invalid share key")

        encoded = self._storage.get(key)
        expires_at = self._expires_at(key)
        if encoded is None:
            self._remove(key)
            return ValidationResult.fail("Share link not found")
        if expires_at is None or self._now_ms() > expires_at:
            self._remove(key)
            logger.info("share key expired", share_key=key)
            return ValidationResult.fail("Share link has expired")

        result = self._validator.validate_bulk(encoded)
        self._remove(key)
        return result

    def purge_expired(self) -> int:
        """Remove every expired or orphaned share key. Returns the number removed."""
        now = self._now_ms()
        removed = 0
        share_keys = {key.removesuffix(EXPIRES_SUFFIX) for key in self._storage.keys(SHARE_KEY_PREFIX)}
        for key in sorted(share_keys):
            if not is_valid_share_key(key):
                continue
            expires_at = self._expires_at(key)
            if self._storage.get(key) is None or expires_at is None or now > expires_at:
                self._remove(key)
                removed += 1
        if removed:
            logger.info("purged expired share keys", count=removed)
        return removed
