import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from consensus.core import errors
from consensus.core.config import get_settings
from consensus.core.errors import NotFoundError, PermissionDenied, StateConflict, ValidationError
from consensus.core.timeutil import is_past, seconds_from_now, utcnow
from consensus.db.retry import run_serializable
from consensus.models.cell import Cell, CellParticipation, CellStatus, ParticipationStatus, Vote
from consensus.models.deliberation import Deliberation, Idea
from consensus.services.events import VOTE_CAST, emit_event

logger = logging.getLogger(__name__)


@dataclass
class Allocation:
    idea_id: uuid.UUID
    points: int


@dataclass
class VoteResult:
    cell_id: uuid.UUID
    deliberation_id: uuid.UUID
    all_voted: bool
    voter_count: int
    allocations: list[Allocation] = field(default_factory=list)
    # Set only by the vote that completed the cell.
    finalizes_at: Optional[datetime] = None


def validate_allocations(allocations: Iterable[Any], budget: int) -> list[Allocation]:
    items = [Allocation(idea_id=a.idea_id, points=a.points) for a in allocations]
    if not items:
        raise ValidationError(errors.BAD_ALLOCATION, "At least one allocation is required")
    for item in items:
        if isinstance(item.points, bool) or not isinstance(item.points, int) or item.points < 1:
            raise ValidationError(errors.BAD_ALLOCATION, "Points must be whole numbers of at least 1")
    if len({item.idea_id for item in items}) != len(items):
        raise ValidationError(errors.DUPLICATE_IDEA, "Each idea may appear only once")
    total = sum(item.points for item in items)
    if total != budget:
        raise ValidationError(errors.BAD_ALLOCATION_SUM, f"Points must add up to {budget}", total=total)
    return items


def recompute_idea_totals(db: Session, idea_ids: Iterable[uuid.UUID]) -> None:
    """Rebuild total_votes / total_xp from the vote table."""
    ids = list(idea_ids)
    if not ids:
        return
    rows = (
        db.query(
            Vote.idea_id,
            func.count(func.distinct(Vote.user_id)),
            func.coalesce(func.sum(Vote.xp_points), 0),
        )
        .filter(Vote.idea_id.in_(ids))
        .group_by(Vote.idea_id)
        .all()
    )
    totals = {idea_id: (int(voters), int(xp)) for idea_id, voters, xp in rows}
    for idea in db.query(Idea).filter(Idea.id.in_(ids)).all():
        idea.total_votes, idea.total_xp = totals.get(idea.id, (0, 0))


def expected_voters(db: Session, cell: Cell, deliberation: Deliberation) -> int:
    if deliberation.is_fcfs or deliberation.continuous_flow:
        return deliberation.cell_size
    return (
        db.query(func.count(CellParticipation.id))
        .filter(
            CellParticipation.cell_id == cell.id,
            CellParticipation.status.in_(ParticipationStatus.SEATED),
        )
        .scalar()
        or 0
    )


def mark_complete_if_all_voted(
    db: Session,
    cell: Cell,
    deliberation: Deliberation,
    now: datetime,
) -> tuple[int, bool, Optional[datetime]]:
    """Start the grace period once every expected vote is in.

    Returns (distinct voters, all voted, finalizes_at set by this call).
    """
    voter_count = (
        db.query(func.count(func.distinct(Vote.user_id))).filter(Vote.cell_id == cell.id).scalar() or 0
    )
    expected = expected_voters(db, cell, deliberation)
    all_voted = expected > 0 and voter_count >= expected
    if not all_voted:
        return voter_count, False, None

    finalizes_at = seconds_from_now(get_settings().grace_period_seconds, now)
    claimed = db.execute(
        update(Cell)
        .where(Cell.id == cell.id, Cell.status == CellStatus.VOTING, Cell.finalizes_at.is_(None))
        .values(finalizes_at=finalizes_at)
    ).rowcount
    return voter_count, True, finalizes_at if claimed else None


def _cast_vote(db: Session, cell_id: uuid.UUID, user_id: uuid.UUID, items: list[Allocation]) -> VoteResult:
    now = utcnow()
    cell = db.get(Cell, cell_id)
    if cell is None:
        raise NotFoundError("Cell")

    participation = (
        db.query(CellParticipation)
        .filter(
            CellParticipation.cell_id == cell_id,
            CellParticipation.user_id == user_id,
            CellParticipation.status.in_(ParticipationStatus.SEATED),
        )
        .one_or_none()
    )
    if participation is None:
        raise PermissionDenied(errors.NOT_A_PARTICIPANT, "You are not a participant in this cell")
    if cell.status != CellStatus.VOTING:
        raise StateConflict(errors.CELL_NOT_VOTING, "Cell is not accepting votes")
    if is_past(cell.voting_deadline, now):
        raise StateConflict(errors.DEADLINE_PASSED, "Voting deadline has passed")

    cell_ideas = set(cell.idea_ids)
    unknown = [item.idea_id for item in items if item.idea_id not in cell_ideas]
    if unknown:
        raise ValidationError(
            errors.IDEA_NOT_IN_CELL,
            "Idea is not part of this cell",
            idea_ids=[str(idea_id) for idea_id in unknown],
        )

    # Re-voting replaces the earlier allocation in this cell only.
    db.query(Vote).filter(Vote.cell_id == cell_id, Vote.user_id == user_id).delete(synchronize_session=False)
    db.add_all(
        [
            Vote(cell_id=cell_id, user_id=user_id, idea_id=item.idea_id, xp_points=item.points, voted_at=now)
            for item in items
        ]
    )
    db.flush()
    recompute_idea_totals(db, cell_ideas)

    participation.status = ParticipationStatus.VOTED
    participation.voted_at = now

    voter_count, all_voted, finalizes_at = mark_complete_if_all_voted(db, cell, cell.deliberation, now)
    return VoteResult(
        cell_id=cell.id,
        deliberation_id=cell.deliberation_id,
        all_voted=all_voted,
        voter_count=voter_count,
        allocations=items,
        finalizes_at=finalizes_at,
    )


def cast_vote(db: Session, cell_id: uuid.UUID, user_id: uuid.UUID, allocations: Iterable[Any]) -> VoteResult:
    items = validate_allocations(allocations, get_settings().vote_budget)
    result = run_serializable(db, lambda s: _cast_vote(s, cell_id, user_id, items), label="cast_vote")
    if result.finalizes_at is not None:
        logger.info("Cell %s has every vote in; finalizes at %s", cell_id, result.finalizes_at.isoformat())
    emit_event(
        db,
        event_type=VOTE_CAST,
        payload={
            "cell_id": str(result.cell_id),
            "deliberation_id": str(result.deliberation_id),
            "voter_count": result.voter_count,
            "all_voted": result.all_voted,
        },
        actor_id=user_id,
    )
    return result
