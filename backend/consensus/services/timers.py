"""Deadline-driven transitions.

``process_all_timers`` is called on a fixed external cadence. Every sweep
collects due ids first and then handles each entity on its own, so one
broken deliberation never blocks the rest. All transitions are guarded by a
status check inside the writing statement, which makes the processor safe to
run concurrently with request handlers and with itself.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Query, Session

from consensus.core import errors
from consensus.core.errors import StateConflict
from consensus.core.timeutil import ensure_aware, seconds_from_now, utcnow
from consensus.models.cell import Cell, CellStatus
from consensus.models.deliberation import AllocationMode, Deliberation, Idea, IdeaStatus, Phase
from consensus.services import challenge, finalization, tiers
from consensus.services.batches import tier_cells

logger = logging.getLogger(__name__)

CRON = "cron"
SUPERMAJORITY_MIN_CELLS = 3
SUPERMAJORITY_RATIO = 0.8
SUPERMAJORITY_QUIET = timedelta(minutes=10)
STUCK_GRACE = timedelta(minutes=5)


@dataclass
class TimerReport:
    trigger: str
    submissions: list[str] = field(default_factory=list)
    discussions: list[str] = field(default_factory=list)
    grace_periods: list[str] = field(default_factory=list)
    expired_tiers: list[str] = field(default_factory=list)
    expired_cells: list[str] = field(default_factory=list)
    supermajority: list[str] = field(default_factory=list)
    stalled_tiers: list[str] = field(default_factory=list)
    accumulations: list[str] = field(default_factory=list)
    stuck_cells: list[str] = field(default_factory=list)
    errors: int = 0

    @property
    def total(self) -> int:
        return sum(len(value) for value in asdict(self).values() if isinstance(value, list))

    def as_dict(self) -> dict:
        data = asdict(self)
        data["total"] = self.total
        return data


def _scoped(query: Query, column, deliberation_id: Optional[uuid.UUID]) -> Query:
    if deliberation_id is not None:
        query = query.filter(column == deliberation_id)
    return query


def _each(db: Session, report: TimerReport, sweep: str, ids: list, handle: Callable[[uuid.UUID], bool]) -> None:
    for entity_id in ids:
        try:
            if handle(entity_id):
                getattr(report, sweep).append(str(entity_id))
        except Exception:
            db.rollback()
            report.errors += 1
            logger.exception("Timer sweep %s failed for %s", sweep, entity_id)


def _tier_deadline(deliberation: Deliberation) -> Optional[datetime]:
    if deliberation.voting_timeout_seconds <= 0 or deliberation.current_tier_started_at is None:
        return None
    return ensure_aware(deliberation.current_tier_started_at) + timedelta(seconds=deliberation.voting_timeout_seconds)


def _finalize_open_cells(db: Session, deliberation: Deliberation, tier: int) -> bool:
    open_ids = [c.id for c in tier_cells(db, deliberation, tier) if c.status in CellStatus.OPEN]
    db.rollback()
    done = False
    for cell_id in open_ids:
        done = finalization.finalize_cell(db, cell_id, is_timeout=True) is not None or done
    return done


def _sweep_submissions(db: Session, now: datetime, report: TimerReport, deliberation_id=None) -> None:
    ids = [
        row[0]
        for row in _scoped(
            db.query(Deliberation.id).filter(
                Deliberation.phase == Phase.SUBMISSION,
                Deliberation.submission_ends_at.isnot(None),
                Deliberation.submission_ends_at <= now,
            ),
            Deliberation.id,
            deliberation_id,
        )
    ]
    db.rollback()

    def handle(d_id: uuid.UUID) -> bool:
        ideas = (
            db.query(func.count(Idea.id))
            .filter(Idea.deliberation_id == d_id, Idea.status == IdeaStatus.SUBMITTED)
            .scalar()
        )
        deliberation = db.get(Deliberation, d_id)
        if ideas >= 2 or deliberation.continuous_flow:
            db.rollback()
            try:
                tiers.start_voting_phase(db, d_id)
            except StateConflict as exc:
                if exc.code != errors.WRONG_PHASE:
                    raise
                logger.info("Deliberation %s left submission before its deadline sweep", d_id)
                return False
        else:
            logger.info("Submission deadline of %s passed with %s idea(s); waiting for more", d_id, ideas)
            db.execute(
                update(Deliberation)
                .where(Deliberation.id == d_id, Deliberation.phase == Phase.SUBMISSION)
                .values(submission_ends_at=None)
            )
            db.commit()
        return True

    _each(db, report, "submissions", ids, handle)


def _sweep_discussions(db: Session, now: datetime, report: TimerReport, deliberation_id=None) -> None:
    cells = _scoped(
        db.query(Cell).filter(
            Cell.status == CellStatus.DELIBERATING,
            Cell.discussion_ends_at.isnot(None),
            Cell.discussion_ends_at <= now,
        ),
        Cell.deliberation_id,
        deliberation_id,
    ).all()
    timeouts = {cell.id: cell.deliberation.voting_timeout_seconds for cell in cells}
    db.rollback()

    def handle(cell_id: uuid.UUID) -> bool:
        values = {"status": CellStatus.VOTING, "voting_started_at": now}
        if timeouts[cell_id] > 0:
            values["voting_deadline"] = seconds_from_now(timeouts[cell_id], now)
        moved = db.execute(
            update(Cell).where(Cell.id == cell_id, Cell.status == CellStatus.DELIBERATING).values(**values)
        ).rowcount
        db.commit()
        return bool(moved)

    _each(db, report, "discussions", list(timeouts), handle)


def _sweep_grace_periods(db: Session, now: datetime, report: TimerReport, deliberation_id=None) -> None:
    ids = [
        row[0]
        for row in _scoped(
            db.query(Cell.id).filter(
                Cell.status == CellStatus.VOTING,
                Cell.finalizes_at.isnot(None),
                Cell.finalizes_at <= now,
            ),
            Cell.deliberation_id,
            deliberation_id,
        )
    ]
    db.rollback()
    _each(db, report, "grace_periods", ids, lambda cell_id: finalization.finalize_cell(db, cell_id) is not None)


def _sweep_expired_tiers(db: Session, now: datetime, report: TimerReport, deliberation_id=None) -> None:
    """Balanced tiers share one deadline; the cells' own deadlines cover FCFS."""
    deliberations = _scoped(
        db.query(Deliberation).filter(
            Deliberation.phase == Phase.VOTING,
            Deliberation.continuous_flow.is_(False),
            Deliberation.allocation_mode == AllocationMode.BALANCED,
            Deliberation.voting_timeout_seconds > 0,
        ),
        Deliberation.id,
        deliberation_id,
    ).all()
    due = [d.id for d in deliberations if _tier_deadline(d) is not None and _tier_deadline(d) <= now]
    db.rollback()

    def handle(d_id: uuid.UUID) -> bool:
        deliberation = db.get(Deliberation, d_id)
        logger.info("Tier %s of deliberation %s timed out", deliberation.current_tier, d_id)
        return _finalize_open_cells(db, deliberation, deliberation.current_tier)

    _each(db, report, "expired_tiers", due, handle)


def _sweep_expired_cells(db: Session, now: datetime, report: TimerReport, deliberation_id=None) -> None:
    ids = [
        row[0]
        for row in _scoped(
            db.query(Cell.id).filter(
                Cell.status == CellStatus.VOTING,
                Cell.voting_deadline.isnot(None),
                Cell.voting_deadline <= now,
            ),
            Cell.deliberation_id,
            deliberation_id,
        )
    ]
    db.rollback()
    _each(
        db,
        report,
        "expired_cells",
        ids,
        lambda cell_id: finalization.finalize_cell(db, cell_id, is_timeout=True) is not None,
    )


def _sweep_supermajority(db: Session, now: datetime, report: TimerReport, deliberation_id=None) -> None:
    """Without a tier timer, close the stragglers once most cells are done and things went quiet."""
    deliberations = _scoped(
        db.query(Deliberation).filter(
            Deliberation.phase == Phase.VOTING,
            Deliberation.continuous_flow.is_(False),
            Deliberation.supermajority_enabled.is_(True),
            Deliberation.voting_timeout_seconds == 0,
        ),
        Deliberation.id,
        deliberation_id,
    ).all()
    due = []
    for deliberation in deliberations:
        cells = tier_cells(db, deliberation, deliberation.current_tier)
        completed = [c for c in cells if c.status == CellStatus.COMPLETED]
        if len(cells) < SUPERMAJORITY_MIN_CELLS or len(completed) == len(cells):
            continue
        if len(completed) / len(cells) < SUPERMAJORITY_RATIO:
            continue
        last = max(ensure_aware(c.completed_at) for c in completed if c.completed_at is not None)
        if now - last >= SUPERMAJORITY_QUIET:
            due.append(deliberation.id)
    db.rollback()

    def handle(d_id: uuid.UUID) -> bool:
        deliberation = db.get(Deliberation, d_id)
        logger.info("Supermajority reached at tier %s of %s; closing remaining cells", deliberation.current_tier, d_id)
        return _finalize_open_cells(db, deliberation, deliberation.current_tier)

    _each(db, report, "supermajority", due, handle)


def _sweep_stalled_tiers(db: Session, now: datetime, report: TimerReport, deliberation_id=None) -> None:
    deliberations = _scoped(
        db.query(Deliberation).filter(Deliberation.phase == Phase.VOTING),
        Deliberation.id,
        deliberation_id,
    ).all()
    stalled = []
    for deliberation in deliberations:
        if deliberation.continuous_flow:
            open_cells = (
                db.query(func.count(Cell.id))
                .filter(Cell.deliberation_id == deliberation.id, Cell.status.in_(CellStatus.OPEN))
                .scalar()
            )
            if not open_cells:
                stalled.append((deliberation.id, deliberation.current_tier, True))
            continue
        cells = tier_cells(db, deliberation, deliberation.current_tier)
        if cells and all(c.status == CellStatus.COMPLETED for c in cells):
            stalled.append((deliberation.id, deliberation.current_tier, False))
    db.rollback()

    for d_id, tier, continuous in stalled:
        try:
            if continuous:
                outcome = tiers.try_advance_continuous_tier(db, d_id, tier)
            else:
                outcome = tiers.check_tier_completion(db, d_id, tier)
            if outcome is not None:
                logger.warning("Recovered stalled tier %s of deliberation %s (%s)", tier, d_id, outcome)
                report.stalled_tiers.append(str(d_id))
        except Exception:
            db.rollback()
            report.errors += 1
            logger.exception("Timer sweep stalled_tiers failed for %s", d_id)


def _sweep_accumulations(db: Session, now: datetime, report: TimerReport, deliberation_id=None) -> None:
    ids = [
        row[0]
        for row in _scoped(
            db.query(Deliberation.id).filter(
                Deliberation.phase == Phase.ACCUMULATING,
                Deliberation.accumulation_ends_at.isnot(None),
                Deliberation.accumulation_ends_at <= now,
            ),
            Deliberation.id,
            deliberation_id,
        )
    ]
    db.rollback()

    def handle(d_id: uuid.UUID) -> bool:
        outcome = challenge.start_challenge_round(db, d_id)
        logger.info("Accumulation of %s ended: %s", d_id, outcome.outcome)
        return True

    _each(db, report, "accumulations", ids, handle)


def _sweep_stuck_cells(db: Session, now: datetime, report: TimerReport, deliberation_id=None) -> None:
    """Cells still voting well past their tier deadline are force-closed."""
    rows = _scoped(
        db.query(Cell, Deliberation)
        .join(Deliberation, Deliberation.id == Cell.deliberation_id)
        .filter(
            Cell.status == CellStatus.VOTING,
            Deliberation.phase == Phase.VOTING,
            Deliberation.voting_timeout_seconds > 0,
        ),
        Cell.deliberation_id,
        deliberation_id,
    ).all()
    stuck = []
    for cell, deliberation in rows:
        started = ensure_aware(cell.voting_started_at or deliberation.current_tier_started_at)
        if started is None:
            continue
        if started + timedelta(seconds=deliberation.voting_timeout_seconds) + STUCK_GRACE <= now:
            stuck.append(cell.id)
    db.rollback()

    def handle(cell_id: uuid.UUID) -> bool:
        result = finalization.finalize_cell(db, cell_id, is_timeout=True)
        if result is not None:
            logger.warning("Self-healed stuck cell %s", cell_id)
        return result is not None

    _each(db, report, "stuck_cells", stuck, handle)


def _run_sweeps(db: Session, report: TimerReport, deliberation_id: Optional[uuid.UUID] = None) -> TimerReport:
    now = utcnow()
    _sweep_submissions(db, now, report, deliberation_id)
    _sweep_discussions(db, now, report, deliberation_id)
    _sweep_grace_periods(db, now, report, deliberation_id)
    _sweep_expired_tiers(db, now, report, deliberation_id)
    _sweep_expired_cells(db, now, report, deliberation_id)
    _sweep_supermajority(db, now, report, deliberation_id)
    _sweep_stalled_tiers(db, now, report, deliberation_id)
    _sweep_accumulations(db, now, report, deliberation_id)
    if report.trigger == CRON:
        _sweep_stuck_cells(db, now, report, deliberation_id)
    return report


def process_all_timers(session_factory: Callable[[], Session], trigger: str = CRON) -> TimerReport:
    report = TimerReport(trigger=trigger)
    db = session_factory()
    try:
        _run_sweeps(db, report)
    finally:
        db.close()
    if report.total or report.errors:
        logger.info("Timer run (%s) processed %s item(s), %s error(s)", trigger, report.total, report.errors)
    return report


def check_and_transition(db: Session, deliberation_id: uuid.UUID) -> TimerReport:
    """Run the timer checks for one deliberation, lazily before a user action."""
    report = _run_sweeps(db, TimerReport(trigger="lazy"), deliberation_id)
    db.rollback()
    return report


def timer_health(db: Session) -> dict:
    now = utcnow()
    overdue_grace = (
        db.query(func.count(Cell.id))
        .filter(Cell.status == CellStatus.VOTING, Cell.finalizes_at.isnot(None), Cell.finalizes_at <= now)
        .scalar()
    )
    overdue_cells = (
        db.query(func.count(Cell.id))
        .filter(Cell.status == CellStatus.VOTING, Cell.voting_deadline.isnot(None), Cell.voting_deadline <= now)
        .scalar()
    )
    overdue_submissions = (
        db.query(func.count(Deliberation.id))
        .filter(
            Deliberation.phase == Phase.SUBMISSION,
            Deliberation.submission_ends_at.isnot(None),
            Deliberation.submission_ends_at <= now,
        )
        .scalar()
    )
    overdue_accumulations = (
        db.query(func.count(Deliberation.id))
        .filter(
            Deliberation.phase == Phase.ACCUMULATING,
            Deliberation.accumulation_ends_at.isnot(None),
            Deliberation.accumulation_ends_at <= now,
        )
        .scalar()
    )
    overdue = {
        "grace_periods": overdue_grace or 0,
        "expired_cells": overdue_cells or 0,
        "submissions": overdue_submissions or 0,
        "accumulations": overdue_accumulations or 0,
    }
    return {"status": "ok" if not any(overdue.values()) else "behind", "overdue": overdue, "checked_at": now}
