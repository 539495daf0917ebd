import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from consensus.core import errors
from consensus.core.errors import NotFoundError, StateConflict, ValidationError
from consensus.core.timeutil import is_past, utcnow
from consensus.db.retry import run_serializable
from consensus.models.cell import Cell, CellStatus
from consensus.models.deliberation import Deliberation, Idea, IdeaStatus, Phase
from consensus.services import tiers
from consensus.services.batches import close_partial_siblings, decide_batch, pick_winner, tally, tier_cells
from consensus.services.events import CHAMPION, PendingEvent, emit_all

logger = logging.getLogger(__name__)

ADVANCE = "advance"
END = "end"
CLOSE_ACTIONS = (ADVANCE, END)


@dataclass
class FinalizationResult:
    cell_id: uuid.UUID
    deliberation_id: uuid.UUID
    tier: int
    batch: int
    completed_by_timeout: bool
    continuous_flow: bool = False
    batch_decided: bool = False
    winner_ids: list[uuid.UUID] = field(default_factory=list)
    eliminated_ids: list[uuid.UUID] = field(default_factory=list)
    no_votes: bool = False
    closed_sibling_ids: list[uuid.UUID] = field(default_factory=list)


def _finalize(db: Session, cell_id: uuid.UUID, is_timeout: bool) -> Optional[FinalizationResult]:
    cell = db.get(Cell, cell_id)
    if cell is None:
        raise NotFoundError("Cell")

    now = utcnow()
    claimed = db.execute(
        update(Cell)
        .where(Cell.id == cell_id, Cell.status.in_(CellStatus.OPEN))
        .values(status=CellStatus.COMPLETED, completed_at=now, completed_by_timeout=is_timeout)
    ).rowcount
    if not claimed:
        logger.debug("Cell %s was already completed", cell_id)
        return None

    deliberation: Deliberation = cell.deliberation
    result = FinalizationResult(
        cell_id=cell.id,
        deliberation_id=cell.deliberation_id,
        tier=cell.tier,
        batch=cell.batch or 0,
        completed_by_timeout=is_timeout,
        continuous_flow=deliberation.continuous_flow,
    )
    result.closed_sibling_ids = close_partial_siblings(db, cell, deliberation, now, is_timeout)
    outcome = decide_batch(db, deliberation, cell.tier, result.batch)
    if outcome is not None:
        result.batch_decided = True
        result.winner_ids = outcome.winner_ids
        result.eliminated_ids = outcome.eliminated_ids
        result.no_votes = outcome.no_votes
    logger.info(
        "Finalized cell %s (tier %s, batch %s, timeout=%s, batch decided=%s)",
        cell.id,
        cell.tier,
        result.batch,
        is_timeout,
        result.batch_decided,
    )
    return result


def finalize_cell(db: Session, cell_id: uuid.UUID, is_timeout: bool = False) -> Optional[FinalizationResult]:
    """Close a cell and settle its batch; None when someone else closed it first."""
    result = run_serializable(db, lambda s: _finalize(s, cell_id, is_timeout), label="finalize_cell")
    if result is None:
        return None
    if result.continuous_flow:
        tiers.try_advance_continuous_tier(db, result.deliberation_id, result.tier)
    elif result.batch_decided:
        tiers.check_tier_completion(db, result.deliberation_id, result.tier)
    return result


def finalize_if_due(db: Session, cell_id: uuid.UUID) -> Optional[FinalizationResult]:
    cell = db.get(Cell, cell_id)
    if cell is None or cell.status != CellStatus.VOTING or not is_past(cell.finalizes_at):
        return None
    db.rollback()
    return finalize_cell(db, cell_id)


def run_deferred_finalization(bind: Engine, cell_id: uuid.UUID, delay: float) -> None:
    """Background callback scheduled by the vote that completed a cell.

    Best effort: the timer sweep finalizes the cell anyway if this never runs.
    """
    if delay > 0:
        time.sleep(delay)
    db = Session(bind=bind)
    try:
        finalize_if_due(db, cell_id)
    except Exception:
        logger.exception("Deferred finalization of cell %s failed; leaving it to the timer sweep", cell_id)
    finally:
        db.close()


@dataclass
class CloseOutcome:
    action: str
    closed_cells: int
    phase: str
    current_tier: int
    priority_id: Optional[uuid.UUID] = None
    priority_xp: int = 0


def _open_cell_ids(db: Session, deliberation: Deliberation) -> list[uuid.UUID]:
    return [
        row[0]
        for row in db.query(Cell.id)
        .filter(
            Cell.deliberation_id == deliberation.id,
            Cell.challenge_round == deliberation.challenge_round,
            Cell.status.in_(CellStatus.OPEN),
        )
        .order_by(Cell.tier.asc(), Cell.created_at.asc())
        .all()
    ]


def _leader(db: Session, deliberation: Deliberation, tier: int) -> tuple[Optional[uuid.UUID], int]:
    """The idea with the most XP over the completed cells of ``tier``."""
    completed = [cell.id for cell in tier_cells(db, deliberation, tier) if cell.status == CellStatus.COMPLETED]
    totals = tally(db, completed) if completed else {}
    scored = sorted(idea_id for idea_id, (xp, _) in totals.items() if xp > 0)
    if not scored:
        return None, 0
    leader = pick_winner(scored, totals)
    return leader, totals[leader][0]


def _guard_close(db: Session, deliberation_id: uuid.UUID, user_id: Optional[uuid.UUID], action: str) -> Deliberation:
    deliberation = tiers.get_deliberation(db, deliberation_id)
    tiers.require_creator(deliberation, user_id, "close the deliberation")
    if deliberation.phase == Phase.COMPLETED:
        raise StateConflict(errors.WRONG_PHASE, "Deliberation is already completed")
    if action == ADVANCE and deliberation.phase != Phase.VOTING:
        raise StateConflict(errors.WRONG_PHASE, "Only a deliberation in the voting phase can be advanced")
    return deliberation


def _closed_count(result: Optional[FinalizationResult]) -> int:
    return 0 if result is None else 1 + len(result.closed_sibling_ids)


def _end(db: Session, deliberation_id: uuid.UUID, user_id: Optional[uuid.UUID], pending: list[PendingEvent]) -> CloseOutcome:
    pending.clear()
    deliberation = _guard_close(db, deliberation_id, user_id, END)
    closed = sum(_closed_count(_finalize(db, cell_id, True)) for cell_id in _open_cell_ids(db, deliberation))

    now = utcnow()
    tier = deliberation.current_tier
    outcome = CloseOutcome(action=END, closed_cells=closed, phase=Phase.COMPLETED, current_tier=tier)
    if deliberation.phase == Phase.VOTING:
        outcome.priority_id, outcome.priority_xp = _leader(db, deliberation, tier)

    # Without a leader a standing champion keeps the title.
    winner_id = outcome.priority_id or deliberation.champion_id
    if winner_id is not None:
        db.execute(
            update(Idea)
            .where(Idea.deliberation_id == deliberation.id, Idea.is_champion.is_(True), Idea.id != winner_id)
            .values(is_champion=False)
        )
        db.execute(
            update(Idea)
            .where(Idea.id == winner_id)
            .values(status=IdeaStatus.WINNER, is_champion=True, is_new=False)
        )
    if outcome.priority_id is not None:
        deliberation.champion_id = outcome.priority_id
        deliberation.champion_entered_tier = max(2, tier)
        pending.append(
            PendingEvent(
                CHAMPION,
                {
                    "deliberation_id": str(deliberation.id),
                    "idea_id": str(outcome.priority_id),
                    "tier": tier,
                    "phase": Phase.COMPLETED,
                },
            )
        )
    deliberation.phase = Phase.COMPLETED
    deliberation.completed_at = now
    deliberation.submission_ends_at = None
    deliberation.accumulation_ends_at = None
    return outcome


def _advance(db: Session, deliberation_id: uuid.UUID, user_id: Optional[uuid.UUID]) -> CloseOutcome:
    def plan(s: Session) -> tuple[int, bool, list[uuid.UUID]]:
        deliberation = _guard_close(s, deliberation_id, user_id, ADVANCE)
        return deliberation.current_tier, deliberation.continuous_flow, _open_cell_ids(s, deliberation)

    tier, continuous, open_ids = run_serializable(db, plan, label="close_deliberation")
    closed = sum(_closed_count(finalize_cell(db, cell_id, is_timeout=True)) for cell_id in open_ids)
    if continuous:
        for lower in range(1, tier + 1):
            tiers.try_advance_continuous_tier(db, deliberation_id, lower)
    else:
        # Also settles a tier whose last cell closed without triggering completion.
        tiers.check_tier_completion(db, deliberation_id, tier)

    deliberation = tiers.get_deliberation(db, deliberation_id)
    leader, xp = _leader(db, deliberation, tier)
    outcome = CloseOutcome(
        action=ADVANCE,
        closed_cells=closed,
        phase=deliberation.phase,
        current_tier=deliberation.current_tier,
        priority_id=leader,
        priority_xp=xp,
    )
    db.rollback()
    return outcome


def close_deliberation(
    db: Session,
    deliberation_id: uuid.UUID,
    user_id: Optional[uuid.UUID],
    action: str = ADVANCE,
) -> CloseOutcome:
    """Facilitator close: force-complete every open cell, then advance or end.

    ``advance`` settles the current tier the way timeouts would and reports
    the tier's leader. ``end`` crowns that leader and completes the
    deliberation, leaving no way to vote or submit further.
    """
    if action not in CLOSE_ACTIONS:
        raise ValidationError(errors.BAD_ACTION, f"Unknown close action {action!r}")
    if action == END:
        pending: list[PendingEvent] = []
        outcome = run_serializable(db, lambda s: _end(s, deliberation_id, user_id, pending), label="close_deliberation")
        emit_all(db, pending)
    else:
        outcome = _advance(db, deliberation_id, user_id)
    logger.info(
        "Deliberation %s closed with %s: %s cell(s) force-completed, now %s at tier %s",
        deliberation_id,
        action,
        outcome.closed_cells,
        outcome.phase,
        outcome.current_tier,
    )
    return outcome
