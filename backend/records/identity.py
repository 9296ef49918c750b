"""Content-based identity for game records.

A record's identity is derived only from gameplay-semantic fields, so a
local draft and its remote copy hash the same even though their ids,
timestamps and sync metadata differ.
"""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from records.models import GameRecord, RemoteCandidate

LOOKUP_KEY_PREFIX = "lookup_"
_LOOKUP_DIGEST_LENGTH = 16


def _canonical_json(document: dict[str, Any]) -> str:
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _content_document(record: GameRecord) -> dict[str, Any]:
    players = sorted(({"id": p.id, "name": p.name} for p in record.players), key=lambda p: p["id"])
    rounds = [
        {
            "round_number": r.round_number,
            "cards_in_round": r.cards_in_round,
            "per_player": [
                {
                    "player_id": e.player_id,
                    "bid": e.bid,
                    "made": e.made,
                    "round_score": e.round_score,
                    "cumulative_score": e.cumulative_score,
                }
                for e in sorted(r.per_player, key=lambda e: e.player_id)
            ],
        }
        for r in record.round_data
    ]
    return {
        "players": players,
        "round_data": rounds,
        "final_scores": dict(sorted(record.final_scores.items())),
        "total_rounds": record.total_rounds,
        "game_mode": record.game_mode.value,
    }


def content_hash(record: GameRecord) -> str:
    """Return the SHA-256 hex digest of the record's gameplay content."""
    payload = _canonical_json(_content_document(record))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def lookup_key(record: GameRecord) -> str:
    """Return a coarse key for fetching duplicate candidates from the remote store.

    Built from sorted player names, round count and mode only, so it stays
    stable across devices that assign different player ids.
    """
    names = "|".join(sorted(p.name for p in record.players))
    payload = _canonical_json({"players": names, "total_rounds": record.total_rounds, "game_mode": record.game_mode.value})
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{LOOKUP_KEY_PREFIX}{digest[:_LOOKUP_DIGEST_LENGTH]}"


def are_duplicates(first: GameRecord, second: GameRecord) -> bool:
    return content_hash(first) == content_hash(second)


def matches_coarse(record: GameRecord, candidate: RemoteCandidate) -> bool:
    """Compare player count, total rounds and the final-score map."""
    return (
        candidate.player_count == len(record.players)
        and candidate.total_rounds == record.total_rounds
        and candidate.final_scores == record.final_scores
    )


def matches_candidate(record: GameRecord, candidate: RemoteCandidate) -> bool:
    """Return True when a remote candidate is the same logical game as record.

    Candidates that carry a content hash must also agree on it; candidates
    without one are matched on the coarse fields alone.
    """
    if not matches_coarse(record, candidate):
        return False
    return candidate.content_hash is None or candidate.content_hash == content_hash(record)
