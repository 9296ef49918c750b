"""Game record models persisted in the local record store."""

from datetime import datetime
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from records import identity

MAX_PLAYERS = 20
MAX_ROUNDS = 1000
MAX_SCORE = 1_000_000
MAX_PLAYER_NAME_LENGTH = 50


class SyncStatus(StrEnum):
    UNSYNCED = "unsynced"
    SYNCING = "syncing"
    SYNCED = "synced"
    CONFLICT = "conflict"


class GameMode(StrEnum):
    LOCAL = "Local"
    ONLINE = "Online"
    TOURNAMENT = "Tournament"


def clamp_score(value: int) -> int:
    return max(-MAX_SCORE, min(MAX_SCORE, value))


def determine_winners(final_scores: dict[str, int]) -> list[str]:
    """Return the ids holding the highest final score, keeping ties."""
    if not final_scores:
        return []
    best = max(final_scores.values())
    return sorted(pid for pid, score in final_scores.items() if score == best)


class PlayerRef(BaseModel, frozen=True):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=MAX_PLAYER_NAME_LENGTH)


class RoundEntry(BaseModel, frozen=True):
    """One player's line in a round: the bid, tricks made and resulting scores."""

    player_id: str
    bid: int
    made: int
    round_score: int
    cumulative_score: int


class RoundResult(BaseModel, frozen=True):
    round_number: int = Field(ge=1)
    cards_in_round: int = Field(ge=0)
    per_player: list[RoundEntry] = Field(default_factory=list)


class GameRecord(BaseModel, frozen=True):
    """A finished or in-progress game as stored on this device.

    ``sync_status`` and ``remote_id`` are only changed by the sync coordinator.
    ``content_hash`` and ``lookup_key`` are derived from content on every
    access; they are written to storage as a cache and ignored on input.
    """

    id: str = Field(min_length=1)
    name: str | None = None
    players: list[PlayerRef] = Field(min_length=1, max_length=MAX_PLAYERS)
    round_data: list[RoundResult] = Field(default_factory=list)
    final_scores: dict[str, int] = Field(default_factory=dict)
    winner_ids: list[str] = Field(default_factory=list)
    total_rounds: int = Field(ge=0, le=MAX_ROUNDS)
    game_mode: GameMode = GameMode.LOCAL
    created_at: datetime
    duration_seconds: int | None = None  # provenance only, not part of identity
    sync_status: SyncStatus = SyncStatus.UNSYNCED
    remote_id: str | None = None
    # provenance for copies that arrived through a share link or bulk import
    is_imported: bool = False
    original_game_id: str | None = None
    imported_at: datetime | None = None
    shared_from: str | None = None

    @field_validator("final_scores", mode="after")
    @classmethod
    def _clamp_final_scores(cls, scores: dict[str, int]) -> dict[str, int]:
        return {pid: clamp_score(score) for pid, score in scores.items()}

    @model_validator(mode="after")
    def _validate_consistency(self) -> Self:
        player_ids = [p.id for p in self.players]
        if len(set(player_ids)) != len(player_ids):
            raise ValueError("Player ids must be unique")
        if not set(self.winner_ids) <= set(player_ids):
            raise ValueError("Winner ids must belong to the game's players")
        if self.final_scores and not self.winner_ids:
            raise ValueError("A game with final scores must name at least one winner")
        if self.sync_status == SyncStatus.SYNCED and not self.remote_id:
            raise ValueError("Synced records must carry a remote id")
        if self.remote_id and self.sync_status != SyncStatus.SYNCED:
            raise ValueError("Only synced records may carry a remote id")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def content_hash(self) -> str:
        return identity.content_hash(self)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def lookup_key(self) -> str:
        return identity.lookup_key(self)

    @property
    def is_pending(self) -> bool:
        """True for local records still waiting for an upload."""
        return self.sync_status == SyncStatus.UNSYNCED and not self.is_imported

    def with_status(self, status: SyncStatus, remote_id: str | None = None) -> Self:
        return self.model_copy(update={"sync_status": status, "remote_id": remote_id})

    def mark_synced(self, remote_id: str) -> Self:
        return self.with_status(SyncStatus.SYNCED, remote_id)


class RemoteCandidate(BaseModel, frozen=True):
    """Summary of a remote record returned by a lookup-key query."""

    remote_id: str
    lookup_key: str
    player_count: int
    total_rounds: int
    final_scores: dict[str, int] = Field(default_factory=dict)
    content_hash: str | None = None
