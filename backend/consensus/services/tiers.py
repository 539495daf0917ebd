import logging
import random
import uuid
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from consensus.core import errors
from consensus.core.errors import NotFoundError, PermissionDenied, StateConflict
from consensus.core.timeutil import seconds_from_now, utcnow
from consensus.db.retry import run_serializable
from consensus.models.cell import Cell, CellParticipation, CellStatus, ParticipationStatus
from consensus.models.deliberation import Deliberation, DeliberationMember, Idea, IdeaStatus, Phase
from consensus.services.batches import decide_batch, split_evenly, tier_cells
from consensus.services.cells import create_cell
from consensus.services.events import CHAMPION, TIER_ADVANCED, PendingEvent, emit_all
from consensus.services.pollination import promote_top_comments

logger = logging.getLogger(__name__)

NO_IDEAS = "NO_IDEAS"
SINGLE_IDEA = "SINGLE_IDEA"
VOTING = "VOTING"

ADVANCED = "advanced"
CHAMPION_DECLARED = "champion"
CELL_FORMED = "cell"
FLUSHED = "flush"


class PartialClaim(Exception):
    """Another actor took some of the ideas a new cell was about to claim."""


def get_deliberation(db: Session, deliberation_id: uuid.UUID) -> Deliberation:
    deliberation = db.get(Deliberation, deliberation_id)
    if deliberation is None:
        raise NotFoundError("Deliberation")
    return deliberation


def require_creator(deliberation: Deliberation, user_id: Optional[uuid.UUID], action: str) -> None:
    """Facilitator actions belong to the creator; ``user_id=None`` is the timer sweep."""
    if user_id is not None and deliberation.creator_id != user_id:
        raise PermissionDenied(errors.NOT_CREATOR, f"Only the creator can {action}")


def eligible_members(db: Session, deliberation: Deliberation, tier: int) -> list[uuid.UUID]:
    members = [
        row[0]
        for row in db.query(DeliberationMember.user_id)
        .filter(DeliberationMember.deliberation_id == deliberation.id)
        .order_by(DeliberationMember.joined_at.asc(), DeliberationMember.user_id.asc())
        .all()
    ]
    if tier <= 1:
        return members
    dropped = {
        row[0]
        for row in db.query(CellParticipation.user_id)
        .join(Cell, Cell.id == CellParticipation.cell_id)
        .filter(
            Cell.deliberation_id == deliberation.id,
            Cell.challenge_round == deliberation.challenge_round,
            Cell.tier == tier - 1,
            CellParticipation.status == ParticipationStatus.DROPPED,
        )
    }
    return [user_id for user_id in members if user_id not in dropped]


def open_tier(
    db: Session,
    deliberation: Deliberation,
    tier: int,
    idea_ids: Sequence[uuid.UUID],
    now: Optional[datetime] = None,
) -> list[Cell]:
    """Form the cells of a freshly opened tier.

    FCFS gets one empty seed cell per batch; balanced mode spreads shuffled
    members evenly over the batches and fills cells of at most cell_size.
    """
    now = now or utcnow()
    batches = split_evenly(sorted(idea_ids), deliberation.cell_size)
    if deliberation.is_fcfs:
        return [create_cell(db, deliberation, tier, index, ids, now) for index, ids in enumerate(batches)]

    members = eligible_members(db, deliberation, tier)
    random.shuffle(members)
    cells: list[Cell] = []
    for index, ids in enumerate(batches):
        group = members[index::len(batches)]
        if not group:
            logger.warning(
                "No members left for batch %s at tier %s of deliberation %s",
                index,
                tier,
                deliberation.id,
            )
        for chunk in split_evenly(group, deliberation.cell_size) or [[]]:
            cells.append(create_cell(db, deliberation, tier, index, ids, now, members=chunk))
    return cells


def crown(
    db: Session,
    deliberation: Deliberation,
    idea: Idea,
    tier: int,
    now: datetime,
    pending: list[PendingEvent],
    from_phase: str = Phase.VOTING,
) -> bool:
    """Declare ``idea`` the champion; only the first caller in ``from_phase`` wins."""
    if deliberation.accumulation_enabled:
        values = {
            "phase": Phase.ACCUMULATING,
            "accumulation_ends_at": seconds_from_now(deliberation.accumulation_timeout_seconds, now),
        }
    else:
        values = {"phase": Phase.COMPLETED, "completed_at": now}
    claimed = db.execute(
        update(Deliberation)
        .where(Deliberation.id == deliberation.id, Deliberation.phase == from_phase)
        .values(champion_id=idea.id, champion_entered_tier=max(2, tier), **values)
    ).rowcount
    if not claimed:
        return False

    db.execute(
        update(Idea)
        .where(Idea.deliberation_id == deliberation.id, Idea.is_champion.is_(True), Idea.id != idea.id)
        .values(is_champion=False)
    )
    idea.status = IdeaStatus.WINNER
    idea.is_champion = True
    idea.is_new = False
    logger.info("Idea %s is the champion of deliberation %s", idea.id, deliberation.id)
    pending.append(
        PendingEvent(
            CHAMPION,
            {
                "deliberation_id": str(deliberation.id),
                "idea_id": str(idea.id),
                "tier": tier,
                "phase": values["phase"],
            },
        )
    )
    return True


def _claim_ideas(db: Session, idea_ids: Sequence[uuid.UUID], from_status: str, tier: int) -> None:
    claimed = db.execute(
        update(Idea)
        .where(Idea.id.in_(idea_ids), Idea.status == from_status)
        .values(status=IdeaStatus.IN_VOTING, tier=tier)
    ).rowcount
    if claimed != len(idea_ids):
        raise PartialClaim(f"claimed {claimed} of {len(idea_ids)} ideas")


def _bump_tier(db: Session, deliberation: Deliberation, tier: int, now: datetime) -> bool:
    return bool(
        db.execute(
            update(Deliberation)
            .where(Deliberation.id == deliberation.id, Deliberation.current_tier < tier)
            .values(current_tier=tier, current_tier_started_at=now)
        ).rowcount
    )


def _next_batch(db: Session, deliberation: Deliberation, tier: int) -> int:
    return (
        db.query(func.count(Cell.id))
        .filter(
            Cell.deliberation_id == deliberation.id,
            Cell.challenge_round == deliberation.challenge_round,
            Cell.tier == tier,
        )
        .scalar()
        or 0
    )


def form_continuous_cells(db: Session, deliberation: Deliberation, now: datetime) -> list[uuid.UUID]:
    created: list[uuid.UUID] = []
    while True:
        pooled = (
            db.query(Idea)
            .filter(Idea.deliberation_id == deliberation.id, Idea.status == IdeaStatus.SUBMITTED)
            .order_by(Idea.created_at.asc(), Idea.id.asc())
            .limit(deliberation.cell_size)
            .all()
        )
        if len(pooled) < deliberation.cell_size:
            return created
        ids = [idea.id for idea in pooled]
        _claim_ideas(db, ids, IdeaStatus.SUBMITTED, 1)
        cell = create_cell(db, deliberation, 1, _next_batch(db, deliberation, 1), ids, now)
        created.append(cell.id)
        logger.info("Formed tier 1 cell %s in deliberation %s", cell.id, deliberation.id)


def _start_voting(
    db: Session,
    deliberation_id: uuid.UUID,
    pending: list[PendingEvent],
    user_id: Optional[uuid.UUID] = None,
) -> str:
    pending.clear()
    deliberation = get_deliberation(db, deliberation_id)
    require_creator(deliberation, user_id, "start voting")
    if deliberation.phase != Phase.SUBMISSION:
        raise StateConflict(errors.WRONG_PHASE, "Voting can only start from the submission phase")

    now = utcnow()
    deliberation.submission_ends_at = None
    ideas = (
        db.query(Idea)
        .filter(Idea.deliberation_id == deliberation.id, Idea.status == IdeaStatus.SUBMITTED)
        .order_by(Idea.id.asc())
        .all()
    )

    if deliberation.continuous_flow:
        deliberation.phase = Phase.VOTING
        deliberation.current_tier = 1
        deliberation.current_tier_started_at = now
        db.flush()
        form_continuous_cells(db, deliberation, now)
        return VOTING

    if not ideas:
        deliberation.phase = Phase.COMPLETED
        deliberation.completed_at = now
        logger.info("Deliberation %s closed with no ideas", deliberation.id)
        return NO_IDEAS

    if len(ideas) == 1:
        db.flush()
        crown(db, deliberation, ideas[0], 1, now, pending, from_phase=Phase.SUBMISSION)
        return SINGLE_IDEA

    for idea in ideas:
        idea.status = IdeaStatus.IN_VOTING
        idea.tier = 1
    deliberation.phase = Phase.VOTING
    deliberation.current_tier = 1
    deliberation.current_tier_started_at = now
    db.flush()
    open_tier(db, deliberation, 1, [idea.id for idea in ideas], now)
    logger.info("Deliberation %s started voting with %s ideas", deliberation.id, len(ideas))
    return VOTING


def start_voting_phase(db: Session, deliberation_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> str:
    pending: list[PendingEvent] = []
    outcome = run_serializable(
        db,
        lambda s: _start_voting(s, deliberation_id, pending, user_id),
        label="start_voting",
    )
    emit_all(db, pending)
    return outcome


def waiting_champion(db: Session, deliberation: Deliberation) -> Optional[Idea]:
    """A defending champion that has not entered the bracket yet (tier 0)."""
    return (
        db.query(Idea)
        .filter(
            Idea.deliberation_id == deliberation.id,
            Idea.status == IdeaStatus.DEFENDING,
            Idea.tier == 0,
        )
        .first()
    )


def _complete_tier(db: Session, deliberation_id: uuid.UUID, tier: int, pending: list[PendingEvent]) -> Optional[str]:
    pending.clear()
    deliberation = get_deliberation(db, deliberation_id)
    if deliberation.phase != Phase.VOTING or deliberation.continuous_flow or deliberation.current_tier != tier:
        return None
    cells = tier_cells(db, deliberation, tier)
    if not cells or any(cell.status != CellStatus.COMPLETED for cell in cells):
        return None

    for batch in sorted({cell.batch or 0 for cell in cells}):
        decide_batch(db, deliberation, tier, batch)

    now = utcnow()
    advancing = (
        db.query(Idea)
        .filter(
            Idea.deliberation_id == deliberation.id,
            Idea.status == IdeaStatus.ADVANCING,
            Idea.tier == tier,
        )
        .order_by(Idea.id.asc())
        .all()
    )
    contenders = list(advancing)
    champion = waiting_champion(db, deliberation)
    if champion is not None and len(advancing) <= deliberation.cell_size - 1:
        contenders.append(champion)

    if not contenders:
        logger.warning("Tier %s of deliberation %s completed without an advancing idea", tier, deliberation.id)
        return None

    if len(contenders) == 1:
        return CHAMPION_DECLARED if crown(db, deliberation, contenders[0], tier, now, pending) else None

    claimed = db.execute(
        update(Deliberation)
        .where(
            Deliberation.id == deliberation.id,
            Deliberation.phase == Phase.VOTING,
            Deliberation.current_tier == tier,
        )
        .values(current_tier=tier + 1, current_tier_started_at=now)
    ).rowcount
    if not claimed:
        return None

    next_tier = tier + 1
    for idea in contenders:
        if idea.status == IdeaStatus.ADVANCING:
            idea.status = IdeaStatus.IN_VOTING
        idea.tier = next_tier
    db.flush()
    promote_top_comments(db, deliberation.id, tier, [idea.id for idea in advancing])
    open_tier(db, deliberation, next_tier, [idea.id for idea in contenders], now)
    logger.info(
        "Deliberation %s advanced to tier %s with %s ideas",
        deliberation.id,
        next_tier,
        len(contenders),
    )
    pending.append(
        PendingEvent(
            TIER_ADVANCED,
            {
                "deliberation_id": str(deliberation.id),
                "tier": next_tier,
                "idea_ids": [str(idea.id) for idea in contenders],
            },
        )
    )
    return ADVANCED


def check_tier_completion(db: Session, deliberation_id: uuid.UUID, tier: int) -> Optional[str]:
    pending: list[PendingEvent] = []
    outcome = run_serializable(
        db,
        lambda s: _complete_tier(s, deliberation_id, tier, pending),
        label="check_tier_completion",
    )
    emit_all(db, pending)
    return outcome


def _advance_continuous(db: Session, deliberation_id: uuid.UUID, tier: int, pending: list[PendingEvent]) -> Optional[str]:
    pending.clear()
    deliberation = get_deliberation(db, deliberation_id)
    if deliberation.phase != Phase.VOTING or not deliberation.continuous_flow:
        return None
    now = utcnow()

    advancing = (
        db.query(Idea)
        .filter(
            Idea.deliberation_id == deliberation.id,
            Idea.status == IdeaStatus.ADVANCING,
            Idea.tier == tier,
        )
        .order_by(Idea.created_at.asc(), Idea.id.asc())
        .all()
    )
    if len(advancing) >= deliberation.cell_size:
        group = [idea.id for idea in advancing[: deliberation.cell_size]]
        return _open_continuous_cell(db, deliberation, group, tier, now, pending, CELL_FORMED)

    open_cells = (
        db.query(func.count(Cell.id))
        .filter(
            Cell.deliberation_id == deliberation.id,
            Cell.challenge_round == deliberation.challenge_round,
            Cell.status.in_(CellStatus.OPEN),
        )
        .scalar()
    )
    if open_cells:
        return None

    remaining = (
        db.query(Idea)
        .filter(Idea.deliberation_id == deliberation.id, Idea.status == IdeaStatus.ADVANCING)
        .order_by(Idea.tier.desc(), Idea.created_at.asc(), Idea.id.asc())
        .all()
    )
    if len(remaining) == 1 and remaining[0].tier >= 2:
        won = crown(db, deliberation, remaining[0], remaining[0].tier, now, pending)
        return CHAMPION_DECLARED if won else None

    pooled = (
        db.query(func.count(Idea.id))
        .filter(Idea.deliberation_id == deliberation.id, Idea.status == IdeaStatus.SUBMITTED)
        .scalar()
    )
    if pooled or len(remaining) < 2:
        return None
    group = [idea.id for idea in remaining[: deliberation.cell_size]]
    return _open_continuous_cell(db, deliberation, group, remaining[0].tier, now, pending, FLUSHED)


def _open_continuous_cell(
    db: Session,
    deliberation: Deliberation,
    idea_ids: list[uuid.UUID],
    tier: int,
    now: datetime,
    pending: list[PendingEvent],
    outcome: str,
) -> str:
    next_tier = tier + 1
    _claim_ideas(db, idea_ids, IdeaStatus.ADVANCING, next_tier)
    promote_top_comments(db, deliberation.id, tier, idea_ids)
    cell = create_cell(db, deliberation, next_tier, _next_batch(db, deliberation, next_tier), idea_ids, now)
    if _bump_tier(db, deliberation, next_tier, now):
        pending.append(
            PendingEvent(
                TIER_ADVANCED,
                {
                    "deliberation_id": str(deliberation.id),
                    "tier": next_tier,
                    "idea_ids": [str(idea_id) for idea_id in idea_ids],
                },
            )
        )
    logger.info("Formed tier %s cell %s in deliberation %s (%s)", next_tier, cell.id, deliberation.id, outcome)
    return outcome


def _run_continuous(db: Session, label: str, work) -> Optional[object]:
    try:
        return run_serializable(db, work, label=label)
    except PartialClaim as exc:
        logger.info("%s skipped: %s", label, exc)
        return None


def try_create_continuous_cell(db: Session, deliberation_id: uuid.UUID) -> list[uuid.UUID]:
    def work(s: Session) -> list[uuid.UUID]:
        deliberation = get_deliberation(s, deliberation_id)
        if deliberation.phase != Phase.VOTING or not deliberation.continuous_flow:
            return []
        return form_continuous_cells(s, deliberation, utcnow())

    return _run_continuous(db, "try_create_continuous_cell", work) or []


def try_advance_continuous_tier(db: Session, deliberation_id: uuid.UUID, tier: int) -> Optional[str]:
    pending: list[PendingEvent] = []
    outcome = _run_continuous(
        db,
        "try_advance_continuous_tier",
        lambda s: _advance_continuous(s, deliberation_id, tier, pending),
    )
    if outcome is not None:
        emit_all(db, pending)
    return outcome


def _reopen(db: Session, deliberation_id: uuid.UUID, user_id: Optional[uuid.UUID]) -> Deliberation:
    deliberation = get_deliberation(db, deliberation_id)
    require_creator(deliberation, user_id, "reopen the deliberation")
    if deliberation.phase != Phase.COMPLETED:
        raise StateConflict(errors.WRONG_PHASE, "Only a completed deliberation can be reopened")
    if deliberation.champion_id is None:
        raise StateConflict(errors.WRONG_PHASE, "There is no champion to challenge")
    deliberation.phase = Phase.ACCUMULATING
    deliberation.accumulation_ends_at = seconds_from_now(deliberation.accumulation_timeout_seconds)
    deliberation.completed_at = None
    logger.info("Deliberation %s reopened for challengers", deliberation.id)
    return deliberation


def reopen(db: Session, deliberation_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> Deliberation:
    deliberation = run_serializable(db, lambda s: _reopen(s, deliberation_id, user_id), label="reopen")
    db.refresh(deliberation)
    return deliberation
