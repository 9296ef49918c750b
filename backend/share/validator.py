"""Validation and sanitization boundary for shared record payloads.

Every payload arriving through a share link, a bulk import or a remote
fetch passes through ShareValidator before it can reach the local store.
Stages run in order and stop at the first failure:

1. encoding format check (base64 alphabet and padding)
2. size check on the estimated decoded length, before decoding
3. decode and JSON parse, with a generic error on any failure
4. dangerous key stripping, then a strict schema parse
5. sanitization of free text and clamping of numbers
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from typing import Any, NoReturn

import structlog
from pydantic import ValidationError

from records.models import GameMode, PlayerRef, RoundEntry, RoundResult, determine_winners
from share.sanitize import clamp_number, sanitize_text, strip_dangerous_keys
from share.schema import (
    GameEntryPayload,
    GamePayload,
    RoundPayload,
    SharedGame,
    SharedGameEntry,
    parse_created_at,
)
from share.settings import ShareSettings

logger = structlog.get_logger()

_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")
SHARE_KEY_PATTERN = re.compile(r"^share_\d{13}_[a-z0-9]{9}$")

INVALID_FORMAT_ERROR = "Invalid share data format"
TOO_LARGE_ERROR = "Share data is too large"


@dataclass(frozen=True)
class ValidationResult[T]:
    is_valid: bool
    data: T | None = None
    error: str | None = None

    @classmethod
    def ok(cls, data: T) -> ValidationResult[T]:
        return cls(is_valid=True, data=data)

    @classmethod
    def fail(cls, error: str) -> ValidationResult[T]:
        return cls(is_valid=False, error=error)


class _Rejected(Exception):
    """Internal short-circuit carrying the caller-facing error message."""


def _reject_constant(name: str) -> NoReturn:
    raise ValueError(f"Non-finite number {name} is not allowed")


def _describe(exc: ValidationError) -> str:
    """First schema error as 'location: message', without the offending input."""
    first = exc.errors(include_input=False, include_url=False)[0]
    location = ".".join(str(part) for part in first["loc"])
    message = first["msg"].removeprefix("Value error, ")
    return f"{location}: {message}" if location else message


def is_valid_share_key(key: object) -> bool:
    """Check the legacy bulk share key shape: share_<13 digit ms timestamp>_<9 chars>."""
    return isinstance(key, str) and SHARE_KEY_PATTERN.match(key) is not None


class ShareValidator:
    def __init__(self, settings: ShareSettings | None = None) -> None:
        self._settings = settings or ShareSettings()

    @property
    def settings(self) -> ShareSettings:
        return self._settings

    def validate(self, encoded: object) -> ValidationResult[SharedGame]:
        """Validate a single base64-encoded game."""
        try:
            decoded = self._decode(encoded)
            return ValidationResult.ok(self._validate_game(decoded))
        except _Rejected as exc:
            logger.info("rejected shared game", error=str(exc))
            return ValidationResult.fail(str(exc))

    def validate_data(self, data: object) -> ValidationResult[SharedGame]:
        """Validate an already-decoded game, e.g. the body of a remote fetch."""
        try:
            return ValidationResult.ok(self._validate_game(data))
        except _Rejected as exc:
            logger.info("rejected fetched game", error=str(exc))
            return ValidationResult.fail(str(exc))

    def validate_bulk(self, encoded: object) -> ValidationResult[dict[str, SharedGameEntry]]:
        """Validate a base64-encoded map of game id -> {id, name, game_state}.

        All-or-nothing: one invalid member fails the whole batch.
        """
        try:
            decoded = self._decode(encoded)
            return ValidationResult.ok(self._validate_entries(decoded))
        except _Rejected as exc:
            logger.info("rejected bulk import", error=str(exc))
            return ValidationResult.fail(str(exc))

    def _decode(self, encoded: object) -> Any:  # noqa: ANN401
        if not isinstance(encoded, str) or not encoded:
            raise _Rejected(INVALID_FORMAT_ERROR)
        if len(encoded) % 4 != 0 or not _BASE64_PATTERN.match(encoded):
            raise _Rejected(INVALID_FORMAT_ERROR)

        estimated_size = len(encoded) * 3 // 4
        if estimated_size > self._settings.max_decoded_size:
            logger.warning("share payload exceeds size limit", estimated_size=estimated_size)
            raise _Rejected(TOO_LARGE_ERROR)

        try:
            raw = base64.b64decode(encoded, validate=True)
            return json.loads(raw.decode("utf-8"), parse_constant=_reject_constant)
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise _Rejected(INVALID_FORMAT_ERROR) from exc

    def _validate_game(self, data: object) -> SharedGame:
        if not isinstance(data, dict):
            raise _Rejected("Invalid game data: expected an object")
        try:
            payload = GamePayload.model_validate(strip_dangerous_keys(data), context={"limits": self._settings})
        except ValidationError as exc:
            raise _Rejected(f"Invalid game data: {_describe(exc)}") from exc
        return self._sanitize_game(payload)

    def _validate_entries(self, data: object) -> dict[str, SharedGameEntry]:
        limit = self._settings.max_records_per_import
        if not isinstance(data, dict) or not data:
            raise _Rejected("Invalid import data: expected a non-empty map of games")
        if len(data) > limit:
            raise _Rejected(f"Too many games in one import (maximum {limit})")

        entries: dict[str, SharedGameEntry] = {}
        for position, item in enumerate(strip_dangerous_keys(data).values(), start=1):
            if not isinstance(item, dict):
                raise _Rejected(f"Invalid game at position {position}: expected an object")
            try:
                payload = GameEntryPayload.model_validate(item, context={"limits": self._settings})
            except ValidationError as exc:
                raise _Rejected(f"Invalid game at position {position}: {_describe(exc)}") from exc
            try:
                game = self._sanitize_game(payload.game_state)
            except _Rejected as exc:
                raise _Rejected(f"Invalid game at position {position}: {exc}") from exc

            entry_id = sanitize_text(payload.id, self._settings.max_id_length)
            if not entry_id:
                raise _Rejected(f"Invalid game at position {position}: empty id")
            if entry_id in entries:
                raise _Rejected(f"Invalid game at position {position}: duplicate id")
            name = sanitize_text(payload.name, self._settings.max_game_name_length) or None
            entries[entry_id] = SharedGameEntry(id=entry_id, name=name, game=game)
        return entries

    def _sanitize_id(self, value: str) -> str:
        return sanitize_text(value, self._settings.max_id_length)

    def _score(self, value: float) -> int:
        limit = self._settings.max_score
        return clamp_number(value, -limit, limit)

    def _count(self, value: float) -> int:
        return clamp_number(value, 0, self._settings.max_score)

    def _sanitize_round(self, payload: RoundPayload) -> RoundResult:
        entries = [
            RoundEntry(
                player_id=self._sanitize_id(entry.player_id),
                bid=self._count(entry.bid),
                made=self._count(entry.made),
                round_score=self._score(entry.round_score),
                cumulative_score=self._score(entry.cumulative_score),
            )
            for entry in payload.per_player
        ]
        return RoundResult(
            round_number=clamp_number(payload.round_number, 1, max(self._settings.max_rounds, 1)),
            cards_in_round=self._count(payload.cards_in_round),
            per_player=entries,
        )

    def _sanitize_game(self, payload: GamePayload) -> SharedGame:
        settings = self._settings
        game_id = self._sanitize_id(payload.id)
        if not game_id:
            raise _Rejected("Invalid game data: empty id")

        players = []
        for position, player in enumerate(payload.players, start=1):
            player_id = self._sanitize_id(player.id)
            if not player_id:
                raise _Rejected("Invalid player data: empty player id")
            name = sanitize_text(player.name, settings.max_player_name_length) or f"Player {position}"
            players.append(PlayerRef(id=player_id, name=name))
        player_ids = {p.id for p in players}

        final_scores: dict[str, int] = {}
        for raw_id, score in payload.final_scores.items():
            player_id = self._sanitize_id(raw_id)
            if player_id in player_ids:
                final_scores[player_id] = self._score(score)

        claimed = [*payload.winner_ids, *([payload.winner_id] if payload.winner_id else [])]
        winner_ids = sorted({pid for pid in map(self._sanitize_id, claimed) if pid in player_ids})
        if final_scores and not winner_ids:
            winner_ids = determine_winners(final_scores)

        duration = None
        if payload.duration_seconds is not None:
            duration = clamp_number(payload.duration_seconds, 0, settings.max_duration_seconds)

        try:
            return SharedGame(
                id=game_id,
                name=sanitize_text(payload.name, settings.max_game_name_length) or None,
                players=players,
                round_data=[self._sanitize_round(r) for r in payload.round_data],
                final_scores=final_scores,
                winner_ids=winner_ids,
                total_rounds=int(payload.total_rounds),
                game_mode=GameMode(payload.game_mode) if payload.game_mode else GameMode.LOCAL,
                created_at=parse_created_at(payload.created_at),
                duration_seconds=duration,
            )
        except ValidationError as exc:
            raise _Rejected(f"Invalid player data: {_describe(exc)}") from exc
