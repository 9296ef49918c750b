"""Strict structural types for untrusted share payloads.

Decoded JSON is parsed into these models before anything else touches it.
Unknown keys are dropped, numbers must be real JSON numbers (booleans and
numeric strings are rejected), and size bounds come from the ShareSettings
passed in the validation context under the ``limits`` key.
"""

from datetime import datetime
from typing import Annotated, Literal, Self

from pydantic import (
    AliasChoices,
    AllowInfNan,
    BaseModel,
    ConfigDict,
    Field,
    Strict,
    StrictInt,
    StrictStr,
    ValidationInfo,
    field_validator,
    model_validator,
)

from records.models import GameMode, PlayerRef, RoundResult
from share.settings import ShareSettings

PAYLOAD_SCHEMA_VERSION = 1

Number = StrictInt | Annotated[float, Strict(), AllowInfNan(False)]


def _limits(info: ValidationInfo) -> ShareSettings:
    context = info.context or {}
    limits = context.get("limits")
    if not isinstance(limits, ShareSettings):
        raise TypeError("Share payload validation requires a ShareSettings 'limits' context")
    return limits


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)


class PlayerPayload(_Payload):
    id: StrictStr = Field(min_length=1)
    name: StrictStr = Field(min_length=1)


class RoundEntryPayload(_Payload):
    player_id: StrictStr = Field(validation_alias=AliasChoices("player_id", "id"))
    bid: Number = Field(default=0, validation_alias=AliasChoices("bid", "call"))
    made: Number = 0
    round_score: Number = Field(default=0, validation_alias=AliasChoices("round_score", "score"))
    cumulative_score: Number = Field(default=0, validation_alias=AliasChoices("cumulative_score", "totalScore"))


class RoundPayload(_Payload):
    round_number: Number = Field(validation_alias=AliasChoices("round_number", "round"))
    cards_in_round: Number = Field(default=0, validation_alias=AliasChoices("cards_in_round", "cards"))
    per_player: list[RoundEntryPayload] = Field(
        default_factory=list,
        validation_alias=AliasChoices("per_player", "players"),
    )

    @field_validator("per_player")
    @classmethod
    def _bound_entries(cls, entries: list[RoundEntryPayload], info: ValidationInfo) -> list[RoundEntryPayload]:
        if len(entries) > _limits(info).max_players:
            raise ValueError("Too many player entries in round")
        return entries


class GamePayload(_Payload):
    """Compact single-game form carried by share links and remote fetches."""

    schema_version: Literal[1] = PAYLOAD_SCHEMA_VERSION
    id: StrictStr = Field(min_length=1)
    name: StrictStr | None = None
    players: list[PlayerPayload]
    total_rounds: Number
    round_data: list[RoundPayload] = Field(default_factory=list)
    final_scores: dict[StrictStr, Number] = Field(default_factory=dict)
    winner_ids: list[StrictStr] = Field(default_factory=list)
    winner_id: StrictStr | None = None
    game_mode: StrictStr | None = Field(default=None, validation_alias=AliasChoices("game_mode", "mode"))
    created_at: StrictStr | None = None
    duration_seconds: Number | None = None

    @field_validator("players")
    @classmethod
    def _bound_players(cls, players: list[PlayerPayload], info: ValidationInfo) -> list[PlayerPayload]:
        if not players or len(players) > _limits(info).max_players:
            raise ValueError("Invalid number of players")
        return players

    @field_validator("total_rounds")
    @classmethod
    def _bound_total_rounds(cls, total_rounds: float, info: ValidationInfo) -> float:
        max_rounds = _limits(info).max_rounds
        if total_rounds < 0 or total_rounds > max_rounds or total_rounds != int(total_rounds):
            raise ValueError(f"Invalid total rounds (must be between 0 and {max_rounds})")
        return total_rounds

    @field_validator("round_data")
    @classmethod
    def _bound_rounds(cls, rounds: list[RoundPayload], info: ValidationInfo) -> list[RoundPayload]:
        if len(rounds) > _limits(info).max_rounds:
            raise ValueError("Too many rounds")
        return rounds

    @field_validator("final_scores")
    @classmethod
    def _bound_scores(cls, scores: dict[str, float], info: ValidationInfo) -> dict[str, float]:
        if len(scores) > _limits(info).max_players:
            raise ValueError("Too many final scores")
        return scores

    @field_validator("game_mode")
    @classmethod
    def _known_mode(cls, mode: str | None, info: ValidationInfo) -> str | None:
        if mode is not None and mode not in _limits(info).valid_game_modes:
            raise ValueError("Invalid game mode")
        return mode


class GameEntryPayload(_Payload):
    """One member of a bulk import map: {id, name?, game_state}."""

    id: StrictStr = Field(min_length=1)
    name: StrictStr | None = None
    game_state: GamePayload = Field(validation_alias=AliasChoices("game_state", "gameState"))


class SharedGame(BaseModel, frozen=True):
    """A validated and sanitized game, ready to become a local record."""

    id: str
    name: str | None = None
    players: list[PlayerRef]
    round_data: list[RoundResult] = Field(default_factory=list)
    final_scores: dict[str, int] = Field(default_factory=dict)
    winner_ids: list[str] = Field(default_factory=list)
    total_rounds: int
    game_mode: GameMode = GameMode.LOCAL
    created_at: datetime | None = None
    duration_seconds: int | None = None

    @model_validator(mode="after")
    def _check_references(self) -> Self:
        player_ids = [p.id for p in self.players]
        if len(set(player_ids)) != len(player_ids):
            raise ValueError("Player ids must be unique after sanitization")
        return self


def parse_created_at(value: object) -> datetime | None:
    """Parse an ISO-8601 timestamp; unparseable provenance is dropped, not fatal."""
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class SharedGameEntry(BaseModel, frozen=True):
    """A validated member of a bulk import."""

    id: str
    name: str | None = None
    game: SharedGame
