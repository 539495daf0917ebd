import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, insert, literal, select, update
from sqlalchemy.orm import Session

from consensus.core import errors
from consensus.core.errors import NotFoundError, PermissionDenied, StateConflict
from consensus.core.timeutil import ensure_aware, seconds_from_now, utcnow
from consensus.db.retry import run_serializable
from consensus.models.cell import Cell, CellIdea, CellParticipation, CellStatus, ParticipationStatus
from consensus.models.deliberation import Deliberation, Idea, IdeaStatus, Phase
from consensus.services.batches import batch_idea_sets, seat_counts, tier_cells
from consensus.services.voting import mark_complete_if_all_voted

logger = logging.getLogger(__name__)


@dataclass
class CellAssignment:
    cell_id: uuid.UUID
    deliberation_id: uuid.UUID
    tier: int
    batch: int
    status: str
    idea_ids: list[uuid.UUID] = field(default_factory=list)
    already_in_cell: bool = False


def open_voting(cell: Cell, deliberation: Deliberation, now: datetime) -> None:
    cell.status = CellStatus.VOTING
    cell.voting_started_at = now
    if deliberation.voting_timeout_seconds > 0:
        cell.voting_deadline = seconds_from_now(deliberation.voting_timeout_seconds, now)


def create_cell(
    db: Session,
    deliberation: Deliberation,
    tier: int,
    batch: int,
    idea_ids: Sequence[uuid.UUID],
    now: Optional[datetime] = None,
    members: Iterable[uuid.UUID] = (),
) -> Cell:
    now = now or utcnow()
    cell = Cell(
        deliberation_id=deliberation.id,
        challenge_round=deliberation.challenge_round,
        tier=tier,
        batch=batch,
        created_at=now,
    )
    if deliberation.discussion_seconds > 0:
        cell.status = CellStatus.DELIBERATING
        cell.discussion_ends_at = seconds_from_now(deliberation.discussion_seconds, now)
    else:
        open_voting(cell, deliberation, now)
    cell.ideas = [CellIdea(idea_id=idea_id) for idea_id in idea_ids]
    cell.participants = [
        CellParticipation(user_id=user_id, status=ParticipationStatus.ACTIVE, joined_at=now) for user_id in members
    ]
    db.add(cell)
    db.flush()
    return cell


def join_if_room(db: Session, cell_id: uuid.UUID, user_id: uuid.UUID, capacity: int, now: Optional[datetime] = None) -> bool:
    """Seat the user only while the cell has fewer than ``capacity`` seated participants.

    The cell row is locked first and the head count is checked inside the
    INSERT itself, so two racing joiners can never both take the last seat.
    """
    db.execute(select(Cell.id).where(Cell.id == cell_id).with_for_update())

    table = CellParticipation.__table__
    seated = (
        select(func.count())
        .select_from(table)
        .where(table.c.cell_id == cell_id, table.c.status.in_(ParticipationStatus.SEATED))
        .scalar_subquery()
    )
    row = select(
        literal(uuid.uuid4(), table.c.id.type),
        literal(cell_id, table.c.cell_id.type),
        literal(user_id, table.c.user_id.type),
        literal(ParticipationStatus.ACTIVE, table.c.status.type),
        literal(now or utcnow(), table.c.joined_at.type),
    ).where(seated < capacity)
    result = db.execute(
        insert(table).from_select(["id", "cell_id", "user_id", "status", "joined_at"], row)
    )
    return result.rowcount == 1


def lock_deliberation(db: Session, deliberation_id: uuid.UUID) -> None:
    """Take the deliberation row lock; serialises on-demand cell creation."""
    db.execute(
        update(Deliberation)
        .where(Deliberation.id == deliberation_id)
        .values(current_tier=Deliberation.current_tier)
        .execution_options(synchronize_session=False)
    )


def _assignment(cell: Cell, already_in_cell: bool = False) -> CellAssignment:
    return CellAssignment(
        cell_id=cell.id,
        deliberation_id=cell.deliberation_id,
        tier=cell.tier,
        batch=cell.batch,
        status=cell.status,
        idea_ids=cell.idea_ids,
        already_in_cell=already_in_cell,
    )


def _has_voted(participation: CellParticipation, cell: Cell, deliberation: Deliberation) -> bool:
    if participation.status == ParticipationStatus.DROPPED:
        return False
    if cell.status == CellStatus.COMPLETED:
        return not deliberation.allow_multi_cell
    return participation.status == ParticipationStatus.VOTED


def _join_open_cell(
    db: Session,
    deliberation: Deliberation,
    user_id: uuid.UUID,
    now: datetime,
    *,
    tier: Optional[int],
    skip_tiers: set[int],
    skip_cells: set[uuid.UUID],
) -> Optional[Cell]:
    query = db.query(Cell).filter(
        Cell.deliberation_id == deliberation.id,
        Cell.challenge_round == deliberation.challenge_round,
        Cell.status.in_(CellStatus.OPEN),
    )
    if tier is not None:
        query = query.filter(Cell.tier == tier)
    cells = [c for c in query.all() if c.tier not in skip_tiers and c.id not in skip_cells]
    counts = seat_counts(db, [c.id for c in cells])
    candidates = sorted(
        (c for c in cells if counts[c.id] < deliberation.cell_size),
        key=lambda c: (c.tier, counts[c.id], ensure_aware(c.created_at)),
    )
    for cell in candidates:
        if join_if_room(db, cell.id, user_id, deliberation.cell_size, now):
            return cell
        logger.debug("Lost the race for the last seat in cell %s", cell.id)
    return None


def _spill_into_new_cell(db: Session, deliberation: Deliberation, user_id: uuid.UUID, now: datetime) -> Optional[Cell]:
    tier = deliberation.current_tier
    cells = tier_cells(db, deliberation, tier)
    batches = batch_idea_sets(db, deliberation, tier, cells)
    contesting = {
        row[0]
        for row in db.query(Idea.id).filter(
            Idea.deliberation_id == deliberation.id,
            Idea.status.in_(IdeaStatus.CONTESTING),
        )
    }
    undecided = [b for b, idea_ids in batches.items() if any(i in contesting for i in idea_ids)]
    if not undecided:
        return None

    counts = seat_counts(db, [c.id for c in cells])
    load = {b: 0 for b in batches}
    for cell in cells:
        load[cell.batch or 0] += counts[cell.id]
    batch = min(undecided, key=lambda b: (load[b], b))

    cell = create_cell(db, deliberation, tier, batch, batches[batch], now)
    if not join_if_room(db, cell.id, user_id, deliberation.cell_size, now):
        return None
    logger.info(
        "Opened cell %s in batch %s at tier %s of deliberation %s",
        cell.id,
        batch,
        tier,
        deliberation.id,
    )
    return cell


def _enter_cell(db: Session, deliberation_id: uuid.UUID, user_id: uuid.UUID) -> CellAssignment:
    deliberation = db.get(Deliberation, deliberation_id)
    if deliberation is None:
        raise NotFoundError("Deliberation")
    if deliberation.phase != Phase.VOTING:
        raise StateConflict(errors.CHANT_NOT_VOTING, "Deliberation is not in the voting phase")

    now = utcnow()
    mine = (
        db.query(CellParticipation, Cell)
        .join(Cell, Cell.id == CellParticipation.cell_id)
        .filter(
            Cell.deliberation_id == deliberation.id,
            Cell.challenge_round == deliberation.challenge_round,
            CellParticipation.user_id == user_id,
        )
        .all()
    )
    for participation, cell in mine:
        in_scope = deliberation.continuous_flow or cell.tier == deliberation.current_tier
        if in_scope and participation.status == ParticipationStatus.ACTIVE and cell.status in CellStatus.OPEN:
            return _assignment(cell, already_in_cell=True)

    voted_tiers = {cell.tier for participation, cell in mine if _has_voted(participation, cell, deliberation)}
    joined = {cell.id for _, cell in mine}

    if deliberation.continuous_flow:
        cell = _join_open_cell(db, deliberation, user_id, now, tier=None, skip_tiers=voted_tiers, skip_cells=joined)
        if cell is None:
            raise StateConflict(errors.ROUND_FULL, "No open cell has room for you right now")
        return _assignment(cell)

    tier = deliberation.current_tier
    if tier in voted_tiers:
        raise StateConflict(errors.ALREADY_VOTED, "You already voted at this tier")

    cell = _join_open_cell(db, deliberation, user_id, now, tier=tier, skip_tiers=set(), skip_cells=joined)
    if cell is None and deliberation.is_fcfs:
        lock_deliberation(db, deliberation.id)
        cell = _join_open_cell(db, deliberation, user_id, now, tier=tier, skip_tiers=set(), skip_cells=joined)
        if cell is None:
            cell = _spill_into_new_cell(db, deliberation, user_id, now)
    if cell is None:
        raise StateConflict(errors.ROUND_FULL, "Every cell at this tier is full")
    return _assignment(cell)


def enter_cell(db: Session, deliberation_id: uuid.UUID, user_id: uuid.UUID) -> CellAssignment:
    return run_serializable(db, lambda s: _enter_cell(s, deliberation_id, user_id), label="enter_cell")


def _drop_out(db: Session, cell_id: uuid.UUID, user_id: uuid.UUID) -> str:
    cell = db.get(Cell, cell_id)
    if cell is None:
        raise NotFoundError("Cell")
    participation = (
        db.query(CellParticipation)
        .filter(CellParticipation.cell_id == cell_id, CellParticipation.user_id == user_id)
        .one_or_none()
    )
    if participation is None or participation.status == ParticipationStatus.DROPPED:
        raise PermissionDenied(errors.NOT_A_PARTICIPANT, "You are not a participant in this cell")
    if participation.status == ParticipationStatus.VOTED:
        raise StateConflict(errors.ALREADY_VOTED, "You already voted in this cell")
    if cell.status == CellStatus.COMPLETED:
        raise StateConflict(errors.CELL_NOT_VOTING, "Cell is already completed")

    db.execute(
        update(CellParticipation)
        .where(
            CellParticipation.id == participation.id,
            CellParticipation.status == ParticipationStatus.ACTIVE,
        )
        .values(status=ParticipationStatus.DROPPED)
    )
    if cell.status == CellStatus.VOTING:
        mark_complete_if_all_voted(db, cell, cell.deliberation, utcnow())
    return ParticipationStatus.DROPPED


def drop_out(db: Session, cell_id: uuid.UUID, user_id: uuid.UUID) -> str:
    return run_serializable(db, lambda s: _drop_out(s, cell_id, user_id), label="drop_out")
