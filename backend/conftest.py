"""Root conftest: load test environment variables, configure structlog, and build game records."""

from datetime import UTC, datetime
from pathlib import Path

import pytest
import structlog
from dotenv import load_dotenv

from records.models import GameRecord, PlayerRef, RoundEntry, RoundResult, determine_winners

load_dotenv(Path(__file__).resolve().parent.parent / ".env.tests")

# Configure structlog to route through stdlib logging so caplog works in tests.
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=False,
)

PLAYER_NAMES = ["Alice", "Bob", "Carol", "Dave", "Erin", "Frank"]
BASE_TIME = datetime(2025, 6, 1, 18, 0, tzinfo=UTC)


def build_record(
    record_id: str = "game-1",
    *,
    num_players: int = 4,
    num_rounds: int = 10,
    created_at: datetime = BASE_TIME,
    seed: int = 0,
    **overrides,
) -> GameRecord:
    """Build a finished game with deterministic round data.

    Records built with the same num_players, num_rounds and seed hold the
    same gameplay content regardless of record_id and created_at.
    """
    players = [PlayerRef(id=f"p{i + 1}", name=PLAYER_NAMES[i % len(PLAYER_NAMES)]) for i in range(num_players)]
    totals = dict.fromkeys((p.id for p in players), 0)
    rounds = []
    for number in range(1, num_rounds + 1):
        entries = []
        for index, player in enumerate(players):
            bid = (number + index + seed) % 3
            made = bid if (number + index) % 2 == 0 else bid + 1
            score = 20 + 10 * bid if made == bid else -10 * abs(made - bid)
            totals[player.id] += score
            entries.append(
                RoundEntry(
                    player_id=player.id,
                    bid=bid,
                    made=made,
                    round_score=score,
                    cumulative_score=totals[player.id],
                ),
            )
        rounds.append(RoundResult(round_number=number, cards_in_round=number, per_player=entries))

    fields = {
        "id": record_id,
        "players": players,
        "round_data": rounds,
        "final_scores": totals,
        "winner_ids": determine_winners(totals),
        "total_rounds": num_rounds,
        "created_at": created_at,
        "duration_seconds": 1800,
    }
    fields.update(overrides)
    return GameRecord(**fields)


@pytest.fixture
def make_record():
    return build_record


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Prevent context leaking between tests."""
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()
