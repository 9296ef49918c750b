"""Tests for content-based record identity."""

from datetime import timedelta

import pytest

from records.identity import LOOKUP_KEY_PREFIX, are_duplicates, content_hash, lookup_key, matches_candidate
from records.models import GameMode, PlayerRef, RemoteCandidate, RoundEntry, RoundResult, SyncStatus


def _candidate(record, **overrides):
    fields = {
        "remote_id": "remote-1",
        "lookup_key": record.lookup_key,
        "player_count": len(record.players),
        "total_rounds": record.total_rounds,
        "final_scores": record.final_scores,
        "content_hash": record.content_hash,
    }
    fields.update(overrides)
    return RemoteCandidate(**fields)


class TestContentHash:
    def test_is_sha256_hex_digest(self, make_record):
        digest = content_hash(make_record())

        assert len(digest) == 64
        assert all(c in "0123456789abcdef" for c in digest)

    def test_ignores_id_created_at_and_duration(self, make_record):
        original = make_record("game-1")
        copy = make_record(
            "game-2",
            created_at=original.created_at + timedelta(days=3),
            duration_seconds=42,
            name="Friday game",
        )

        assert content_hash(original) == content_hash(copy)
        assert are_duplicates(original, copy)

    def test_ignores_sync_and_provenance_metadata(self, make_record):
        record = make_record()
        synced = record.mark_synced("remote-9")
        imported = record.model_copy(update={"is_imported": True, "original_game_id": "remote-9"})

        assert synced.content_hash == record.content_hash
        assert imported.content_hash == record.content_hash

    def test_independent_of_player_and_entry_order(self, make_record):
        record = make_record()
        reordered = record.model_copy(
            update={
                "players": list(reversed(record.players)),
                "round_data": [
                    r.model_copy(update={"per_player": list(reversed(r.per_player))}) for r in record.round_data
                ],
                "final_scores": dict(reversed(list(record.final_scores.items()))),
            },
        )

        assert content_hash(reordered) == content_hash(record)

    @pytest.mark.parametrize("field", ["bid", "made", "round_score", "cumulative_score"])
    def test_changes_when_round_entry_changes(self, make_record, field):
        record = make_record()
        first_round = record.round_data[0]
        entry = first_round.per_player[0]
        changed_entry = entry.model_copy(update={field: getattr(entry, field) + 1})
        changed_round = first_round.model_copy(update={"per_player": [changed_entry, *first_round.per_player[1:]]})
        changed = record.model_copy(update={"round_data": [changed_round, *record.round_data[1:]]})

        assert content_hash(changed) != content_hash(record)

    def test_changes_with_round_order(self, make_record):
        record = make_record()
        swapped = record.model_copy(update={"round_data": [record.round_data[1], record.round_data[0], *record.round_data[2:]]})

        assert content_hash(swapped) != content_hash(record)

    def test_changes_with_game_mode_and_player_names(self, make_record):
        record = make_record()
        online = make_record(game_mode=GameMode.ONLINE)
        renamed = record.model_copy(update={"players": [PlayerRef(id="p1", name="Zed"), *record.players[1:]]})

        assert content_hash(online) != content_hash(record)
        assert content_hash(renamed) != content_hash(record)

    def test_computed_field_tracks_model_copy(self, make_record):
        record = make_record()
        extra_round = RoundResult(
            round_number=11,
            cards_in_round=11,
            per_player=[RoundEntry(player_id="p1", bid=0, made=0, round_score=20, cumulative_score=0)],
        )
        changed = record.model_copy(update={"round_data": [*record.round_data, extra_round]})

        assert changed.content_hash != record.content_hash


class TestLookupKey:
    def test_has_prefix_and_fixed_length(self, make_record):
        key = lookup_key(make_record())

        assert key.startswith(LOOKUP_KEY_PREFIX)
        assert len(key) == len(LOOKUP_KEY_PREFIX) + 16

    def test_stable_across_player_ids_and_scores(self, make_record):
        record = make_record()
        other_ids = record.model_copy(
            update={"players": [PlayerRef(id=f"x{i}", name=p.name) for i, p in enumerate(record.players)]},
        )
        other_scores = make_record(seed=1)

        assert lookup_key(other_ids) == lookup_key(record)
        assert lookup_key(other_scores) == lookup_key(record)

    def test_differs_by_round_count(self, make_record):
        assert lookup_key(make_record(num_rounds=9)) != lookup_key(make_record(num_rounds=10))


class TestMatchesCandidate:
    def test_matching_candidate(self, make_record):
        record = make_record()

        assert matches_candidate(record, _candidate(record))

    def test_candidate_without_hash_matches_on_coarse_fields(self, make_record):
        record = make_record()

        assert matches_candidate(record, _candidate(record, content_hash=None))

    def test_different_hash_does_not_match(self, make_record):
        record = make_record()

        assert not matches_candidate(record, _candidate(record, content_hash="0" * 64))

    @pytest.mark.parametrize(
        "override",
        [{"player_count": 3}, {"total_rounds": 9}, {"final_scores": {"p1": 1}}],
    )
    def test_coarse_mismatch(self, make_record, override):
        record = make_record(sync_status=SyncStatus.UNSYNCED)

        assert not matches_candidate(record, _candidate(record, **override))
