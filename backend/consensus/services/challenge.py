import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from consensus.core import errors
from consensus.core.errors import StateConflict
from consensus.core.timeutil import seconds_from_now, utcnow
from consensus.db.retry import run_serializable
from consensus.models.deliberation import Idea, IdeaStatus, Phase
from consensus.services.tiers import get_deliberation, open_tier, require_creator

logger = logging.getLogger(__name__)

MIN_POOL_SIZE = 5
RETIRE_AFTER_LOSSES = 2

STARTED = "started"
EXTENDED = "extended"
COMPLETED = "completed"


@dataclass
class ChallengeOutcome:
    outcome: str
    challenge_round: int
    challenger_ids: list[uuid.UUID] = field(default_factory=list)
    retired_ids: list[uuid.UUID] = field(default_factory=list)
    benched_ids: list[uuid.UUID] = field(default_factory=list)
    champion_seeded: bool = False


def min_pool_size(champion_entered_tier: int) -> int:
    return max(MIN_POOL_SIZE, champion_entered_tier * 2)


def apply_retirement(pool: Sequence[Idea], min_needed: int) -> tuple[list[Idea], list[Idea], list[Idea]]:
    """Split challengers into (retire, compete, bench).

    Repeat tier-1 losers are retired, most losses first, only while the pool
    stays at or above ``min_needed``; the rest of them sit this round out.
    """
    if len(pool) <= min_needed:
        return [], list(pool), []

    can_retire = len(pool) - min_needed
    retire: list[Idea] = []
    compete: list[Idea] = []
    bench: list[Idea] = []
    for idea in sorted(pool, key=lambda i: -i.tier1_losses):
        if idea.tier1_losses >= RETIRE_AFTER_LOSSES and len(retire) < can_retire:
            retire.append(idea)
        elif idea.tier1_losses >= RETIRE_AFTER_LOSSES:
            bench.append(idea)
        else:
            compete.append(idea)
    return retire, compete, bench


def _start_challenge(db: Session, deliberation_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> ChallengeOutcome:
    deliberation = get_deliberation(db, deliberation_id)
    require_creator(deliberation, user_id, "start a challenge round")
    if deliberation.phase != Phase.ACCUMULATING:
        raise StateConflict(errors.WRONG_PHASE, "Deliberation is not accumulating challengers")
    champion = db.get(Idea, deliberation.champion_id) if deliberation.champion_id else None
    if champion is None:
        raise StateConflict(errors.WRONG_PHASE, "There is no champion to challenge")

    now = utcnow()
    newcomers = (
        db.query(Idea)
        .filter(
            Idea.deliberation_id == deliberation.id,
            Idea.status == IdeaStatus.PENDING,
            Idea.is_new.is_(True),
        )
        .order_by(Idea.created_at.asc(), Idea.id.asc())
        .all()
    )
    benched = (
        db.query(Idea)
        .filter(Idea.deliberation_id == deliberation.id, Idea.status == IdeaStatus.BENCHED)
        .order_by(Idea.created_at.asc(), Idea.id.asc())
        .all()
    )
    retire, compete, bench = apply_retirement(
        newcomers + benched,
        min_pool_size(deliberation.champion_entered_tier or 2),
    )
    for idea in retire:
        idea.status = IdeaStatus.RETIRED
    for idea in bench:
        idea.status = IdeaStatus.BENCHED

    outcome = ChallengeOutcome(
        outcome=STARTED,
        challenge_round=deliberation.challenge_round,
        retired_ids=[idea.id for idea in retire],
        benched_ids=[idea.id for idea in bench],
    )

    if not compete:
        if deliberation.accumulation_enabled:
            deliberation.accumulation_ends_at = seconds_from_now(deliberation.accumulation_timeout_seconds, now)
            outcome.outcome = EXTENDED
        else:
            deliberation.phase = Phase.COMPLETED
            deliberation.completed_at = now
            deliberation.accumulation_ends_at = None
            outcome.outcome = COMPLETED
        logger.info("No challengers for deliberation %s: %s", deliberation.id, outcome.outcome)
        return outcome

    seeded = len(compete) <= deliberation.cell_size - 1
    champion.status = IdeaStatus.DEFENDING
    champion.is_champion = True
    # Tier 0 marks a champion waiting outside the bracket.
    champion.tier = 1 if seeded else 0
    for idea in compete:
        idea.status = IdeaStatus.IN_VOTING
        idea.tier = 1
        idea.is_new = False

    deliberation.challenge_round += 1
    deliberation.phase = Phase.VOTING
    deliberation.current_tier = 1
    deliberation.current_tier_started_at = now
    deliberation.accumulation_ends_at = None
    deliberation.completed_at = None
    db.flush()

    contenders = [idea.id for idea in compete] + ([champion.id] if seeded else [])
    open_tier(db, deliberation, 1, contenders, now)

    outcome.challenge_round = deliberation.challenge_round
    outcome.challenger_ids = [idea.id for idea in compete]
    outcome.champion_seeded = seeded
    logger.info(
        "Challenge round %s of deliberation %s started with %s challengers (champion %s)",
        deliberation.challenge_round,
        deliberation.id,
        len(compete),
        "seeded" if seeded else "waiting",
    )
    return outcome


def start_challenge_round(db: Session, deliberation_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> ChallengeOutcome:
    return run_serializable(
        db,
        lambda s: _start_challenge(s, deliberation_id, user_id),
        label="start_challenge_round",
    )
