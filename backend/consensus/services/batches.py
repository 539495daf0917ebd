"""Batch bookkeeping shared by assignment, finalization and tier advancement.

A batch is the set of cells at one tier that vote on the same ideas. Its
outcome is decided once every cell in it has completed. Under FCFS a cell
that finishes with votes also closes the unfilled cells of its batch.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence, TypeVar

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from consensus.models.cell import Cell, CellParticipation, CellStatus, ParticipationStatus, Vote
from consensus.models.deliberation import Deliberation, Idea, IdeaStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BatchOutcome:
    tier: int
    batch: int
    winner_ids: list[uuid.UUID] = field(default_factory=list)
    eliminated_ids: list[uuid.UUID] = field(default_factory=list)
    no_votes: bool = False


def split_evenly(items: Sequence[T], max_size: int) -> list[list[T]]:
    """Split into ceil(n / max_size) groups whose sizes differ by at most one."""
    if not items:
        return []
    groups = math.ceil(len(items) / max_size)
    base, extra = divmod(len(items), groups)
    result: list[list[T]] = []
    start = 0
    for index in range(groups):
        size = base + (1 if index < extra else 0)
        result.append(list(items[start:start + size]))
        start += size
    return result


def tier_cells(db: Session, deliberation: Deliberation, tier: int) -> list[Cell]:
    return (
        db.query(Cell)
        .filter(
            Cell.deliberation_id == deliberation.id,
            Cell.challenge_round == deliberation.challenge_round,
            Cell.tier == tier,
        )
        .order_by(Cell.batch.asc(), Cell.created_at.asc())
        .all()
    )


def seat_counts(db: Session, cell_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, int]:
    counts = {cell_id: 0 for cell_id in cell_ids}
    if not cell_ids:
        return counts
    rows = (
        db.query(CellParticipation.cell_id, func.count(CellParticipation.id))
        .filter(
            CellParticipation.cell_id.in_(cell_ids),
            CellParticipation.status.in_(ParticipationStatus.SEATED),
        )
        .group_by(CellParticipation.cell_id)
        .all()
    )
    counts.update({cell_id: int(n) for cell_id, n in rows})
    return counts


def batch_idea_sets(db: Session, deliberation: Deliberation, tier: int, cells: Sequence[Cell]) -> dict[int, list[uuid.UUID]]:
    """Idea ids per batch, read from the cells already formed at the tier.

    With no cell formed yet the contesting ideas of the tier are partitioned
    afresh, ordered by id.
    """
    batches: dict[int, list[uuid.UUID]] = {}
    for cell in cells:
        batches.setdefault(cell.batch or 0, cell.idea_ids)
    if batches:
        return batches
    ids = [
        row[0]
        for row in db.query(Idea.id)
        .filter(
            Idea.deliberation_id == deliberation.id,
            Idea.status.in_(IdeaStatus.CONTESTING),
            Idea.tier == tier,
        )
        .order_by(Idea.id.asc())
        .all()
    ]
    return dict(enumerate(split_evenly(ids, deliberation.cell_size)))


def close_partial_siblings(db: Session, completed: Cell, deliberation: Deliberation, now, is_timeout: bool) -> list[uuid.UUID]:
    """Close the open cells of ``completed``'s batch that never filled up.

    FCFS only: once one cell of a batch has finished with votes, a spill-over
    cell short of ``cell_size`` seats would otherwise hold the batch open
    until a timer fires, and without timers forever. Full siblings keep
    voting; their votes still count toward the batch.
    """
    if not deliberation.is_fcfs or deliberation.continuous_flow:
        return []
    batch = completed.batch or 0
    siblings = [
        cell
        for cell in tier_cells(db, deliberation, completed.tier)
        if cell.id != completed.id and (cell.batch or 0) == batch and cell.status in CellStatus.OPEN
    ]
    if not siblings:
        return []
    voted = db.query(func.count(Vote.id)).filter(Vote.cell_id == completed.id).scalar()
    if not voted:
        return []

    counts = seat_counts(db, [cell.id for cell in siblings])
    partial = [cell.id for cell in siblings if counts[cell.id] < deliberation.cell_size]
    if not partial:
        return []
    closed = db.execute(
        update(Cell)
        .where(Cell.id.in_(partial), Cell.status.in_(CellStatus.OPEN))
        .values(status=CellStatus.COMPLETED, completed_at=now, completed_by_timeout=is_timeout)
    ).rowcount
    if closed:
        logger.info(
            "Closed %s unfilled cell(s) of batch %s at tier %s alongside cell %s",
            closed,
            batch,
            completed.tier,
            completed.id,
        )
    return partial


def tally(db: Session, cell_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, tuple[int, int]]:
    """XP total and distinct voter count per idea over the given cells."""
    rows = (
        db.query(
            Vote.idea_id,
            func.coalesce(func.sum(Vote.xp_points), 0),
            func.count(func.distinct(Vote.user_id)),
        )
        .filter(Vote.cell_id.in_(cell_ids))
        .group_by(Vote.idea_id)
        .all()
    )
    return {idea_id: (int(xp), int(voters)) for idea_id, xp, voters in rows}


def pick_winner(idea_ids: Sequence[uuid.UUID], totals: dict[uuid.UUID, tuple[int, int]]) -> uuid.UUID:
    """Highest XP, then most distinct voters, then lowest idea id."""
    return min(idea_ids, key=lambda i: (-totals.get(i, (0, 0))[0], -totals.get(i, (0, 0))[1], i))


def decide_batch(db: Session, deliberation: Deliberation, tier: int, batch: int) -> Optional[BatchOutcome]:
    """Settle a batch whose cells have all completed; None while any is open.

    Idea status writes only touch ideas still contesting, so deciding the
    same batch again changes nothing.
    """
    cells = [cell for cell in tier_cells(db, deliberation, tier) if (cell.batch or 0) == batch]
    if not cells or any(cell.status != CellStatus.COMPLETED for cell in cells):
        return None

    idea_ids = sorted({idea_id for cell in cells for idea_id in cell.idea_ids})
    totals = tally(db, [cell.id for cell in cells])
    outcome = BatchOutcome(tier=tier, batch=batch)

    if not any(xp for xp, _ in totals.values()):
        logger.warning(
            "Batch %s at tier %s of deliberation %s closed without votes; advancing all %s ideas",
            batch,
            tier,
            deliberation.id,
            len(idea_ids),
        )
        outcome.no_votes = True
        outcome.winner_ids = list(idea_ids)
    else:
        winner = pick_winner(idea_ids, totals)
        outcome.winner_ids = [winner]
        outcome.eliminated_ids = [idea_id for idea_id in idea_ids if idea_id != winner]

    if outcome.winner_ids:
        db.execute(
            update(Idea)
            .where(Idea.id.in_(outcome.winner_ids), Idea.status.in_(IdeaStatus.CONTESTING))
            .values(status=IdeaStatus.ADVANCING, tier=tier)
        )
    if outcome.eliminated_ids:
        db.execute(
            update(Idea)
            .where(Idea.id.in_(outcome.eliminated_ids), Idea.status.in_(IdeaStatus.CONTESTING))
            .values(
                status=IdeaStatus.ELIMINATED,
                losses=Idea.losses + 1,
                tier1_losses=Idea.tier1_losses + (1 if tier == 1 else 0),
                is_champion=False,
            )
        )
    return outcome
