import uuid
from datetime import timedelta

from sqlalchemy import update
from sqlalchemy.orm import Session

from consensus.core.timeutil import ensure_aware, utcnow
from consensus.models.cell import Cell, CellStatus
from consensus.models.deliberation import AllocationMode, Deliberation, Phase
from consensus.services import cells, finalization, tiers, timers, voting
from consensus.services.voting import Allocation


def _backdate(db: Session, model, entity_id: uuid.UUID, **minutes_ago) -> None:
    past = utcnow()
    values = {column: past - timedelta(minutes=minutes) for column, minutes in minutes_ago.items()}
    db.execute(update(model).where(model.id == entity_id).values(**values))
    db.commit()


def _only_cell(db: Session, deliberation_id: uuid.UUID) -> uuid.UUID:
    cell_id = db.query(Cell.id).filter(Cell.deliberation_id == deliberation_id).one()[0]
    db.rollback()
    return cell_id


def test_submission_deadline_starts_voting(db: Session, make_deliberation) -> None:
    deliberation = make_deliberation(ideas=2, submission_seconds=60)
    assert timers.check_and_transition(db, deliberation.id).submissions == []

    _backdate(db, Deliberation, deliberation.id, submission_ends_at=1)
    report = timers.check_and_transition(db, deliberation.id)
    assert report.submissions == [str(deliberation.id)]

    db.expire_all()
    refreshed = db.get(Deliberation, deliberation.id)
    assert refreshed.phase == Phase.VOTING
    assert refreshed.submission_ends_at is None


def test_submission_deadline_with_one_idea_keeps_waiting(db: Session, make_deliberation) -> None:
    deliberation = make_deliberation(ideas=1, submission_seconds=60)
    _backdate(db, Deliberation, deliberation.id, submission_ends_at=1)

    assert timers.check_and_transition(db, deliberation.id).submissions == [str(deliberation.id)]
    assert timers.check_and_transition(db, deliberation.id).submissions == []

    db.expire_all()
    refreshed = db.get(Deliberation, deliberation.id)
    assert refreshed.phase == Phase.SUBMISSION
    assert refreshed.submission_ends_at is None


def test_discussion_window_opens_voting(db: Session, make_deliberation) -> None:
    deliberation = make_deliberation(ideas=3, discussion_seconds=300, voting_timeout_seconds=600)
    tiers.start_voting_phase(db, deliberation.id)
    cell_id = _only_cell(db, deliberation.id)
    assert db.get(Cell, cell_id).status == CellStatus.DELIBERATING
    db.rollback()

    _backdate(db, Cell, cell_id, discussion_ends_at=1)
    report = timers.check_and_transition(db, deliberation.id)
    assert report.discussions == [str(cell_id)]

    db.expire_all()
    cell = db.get(Cell, cell_id)
    assert cell.status == CellStatus.VOTING
    assert cell.voting_started_at is not None
    assert ensure_aware(cell.voting_deadline) > utcnow()


def test_cron_finalizes_cells_past_grace_period(db: Session, make_deliberation, make_users, session_factory) -> None:
    deliberation = make_deliberation(ideas=3)
    tiers.start_voting_phase(db, deliberation.id)
    users = make_users(5)
    assignments = [cells.enter_cell(db, deliberation.id, user) for user in users]
    cell_id, idea_ids = assignments[0].cell_id, assignments[0].idea_ids
    for user in users:
        voting.cast_vote(db, cell_id, user, [Allocation(idea_ids[1], 10)])

    report = timers.process_all_timers(session_factory)
    assert str(cell_id) in report.grace_periods

    db.expire_all()
    assert db.get(Cell, cell_id).status == CellStatus.COMPLETED
    assert db.get(Deliberation, deliberation.id).champion_id == idea_ids[1]


def test_expired_cell_is_finalized_by_timeout(db: Session, make_deliberation) -> None:
    deliberation = make_deliberation(ideas=3, voting_timeout_seconds=60)
    tiers.start_voting_phase(db, deliberation.id)
    cell_id = _only_cell(db, deliberation.id)

    _backdate(db, Cell, cell_id, voting_deadline=1)
    report = timers.check_and_transition(db, deliberation.id)
    assert report.expired_cells == [str(cell_id)]

    db.expire_all()
    cell = db.get(Cell, cell_id)
    assert cell.status == CellStatus.COMPLETED
    assert cell.completed_by_timeout is True
    assert db.get(Deliberation, deliberation.id).current_tier == 2


def test_balanced_tier_deadline_closes_every_cell(db: Session, make_deliberation) -> None:
    deliberation = make_deliberation(ideas=3, allocation_mode=AllocationMode.BALANCED, voting_timeout_seconds=60)
    tiers.start_voting_phase(db, deliberation.id)
    cell_id = _only_cell(db, deliberation.id)

    _backdate(db, Deliberation, deliberation.id, current_tier_started_at=2)
    report = timers.check_and_transition(db, deliberation.id)
    assert report.expired_tiers == [str(deliberation.id)]
    assert report.expired_cells == []

    db.expire_all()
    assert db.get(Cell, cell_id).completed_by_timeout is True


def test_supermajority_closes_stragglers_after_quiet_period(db: Session, make_deliberation) -> None:
    deliberation = make_deliberation(ideas=10, cell_size=2, supermajority_enabled=True)
    tiers.start_voting_phase(db, deliberation.id)
    cell_ids = [row[0] for row in db.query(Cell.id).filter(Cell.deliberation_id == deliberation.id).order_by(Cell.batch)]
    db.rollback()
    assert len(cell_ids) == 5

    for cell_id in cell_ids[:4]:
        finalization.finalize_cell(db, cell_id, is_timeout=True)
    assert timers.check_and_transition(db, deliberation.id).supermajority == []

    for cell_id in cell_ids[:4]:
        _backdate(db, Cell, cell_id, completed_at=11)
    report = timers.check_and_transition(db, deliberation.id)
    assert report.supermajority == [str(deliberation.id)]

    db.expire_all()
    assert db.get(Cell, cell_ids[4]).status == CellStatus.COMPLETED
    assert db.get(Deliberation, deliberation.id).current_tier == 2


def test_supermajority_needs_three_cells(db: Session, make_deliberation) -> None:
    deliberation = make_deliberation(ideas=4, cell_size=2, supermajority_enabled=True)
    tiers.start_voting_phase(db, deliberation.id)
    first = db.query(Cell.id).filter(Cell.deliberation_id == deliberation.id, Cell.batch == 0).one()[0]
    db.rollback()
    finalization.finalize_cell(db, first, is_timeout=True)
    _backdate(db, Cell, first, completed_at=30)

    assert timers.check_and_transition(db, deliberation.id).supermajority == []


def test_accumulation_without_challengers_is_extended(db: Session, make_deliberation) -> None:
    deliberation = make_deliberation(ideas=1, accumulation_enabled=True, accumulation_timeout_seconds=600)
    tiers.start_voting_phase(db, deliberation.id)

    _backdate(db, Deliberation, deliberation.id, accumulation_ends_at=1)
    report = timers.check_and_transition(db, deliberation.id)
    assert report.accumulations == [str(deliberation.id)]

    db.expire_all()
    refreshed = db.get(Deliberation, deliberation.id)
    assert refreshed.phase == Phase.ACCUMULATING
    assert ensure_aware(refreshed.accumulation_ends_at) > utcnow()


def test_stuck_cells_only_heal_on_cron(db: Session, make_deliberation, session_factory) -> None:
    deliberation = make_deliberation(ideas=3, voting_timeout_seconds=60)
    tiers.start_voting_phase(db, deliberation.id)
    cell_id = _only_cell(db, deliberation.id)
    db.execute(update(Cell).where(Cell.id == cell_id).values(voting_deadline=None))
    db.commit()
    _backdate(db, Cell, cell_id, voting_started_at=10)

    lazy = timers.check_and_transition(db, deliberation.id)
    assert lazy.stuck_cells == []
    db.expire_all()
    assert db.get(Cell, cell_id).status == CellStatus.VOTING
    db.rollback()

    report = timers.process_all_timers(session_factory)
    assert str(cell_id) in report.stuck_cells
    db.expire_all()
    assert db.get(Cell, cell_id).completed_by_timeout is True


def test_health_reports_overdue_work(client, db: Session, make_deliberation) -> None:
    deliberation = make_deliberation(ideas=1, submission_seconds=60)
    _backdate(db, Deliberation, deliberation.id, submission_ends_at=1)

    response = client.get("/v1/timers/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "behind"
    assert data["overdue"]["submissions"] >= 1


def test_process_endpoint_requires_admin_key(client) -> None:
    assert client.post("/v1/timers/process").status_code == 401
    assert client.post("/v1/timers/process", headers={"X-Admin-Key": "wrong"}).status_code == 401

    response = client.post("/v1/timers/process", headers={"X-Admin-Key": "test-admin"})
    assert response.status_code == 200
    data = response.json()
    assert data["trigger"] == timers.CRON
    assert data["total"] == sum(len(v) for v in data.values() if isinstance(v, list))


def test_submission_sweep_tolerates_voting_started_meanwhile(db: Session, make_deliberation, monkeypatch) -> None:
    deliberation = make_deliberation(ideas=2, submission_seconds=60)
    _backdate(db, Deliberation, deliberation.id, submission_ends_at=1)
    start_voting = tiers.start_voting_phase

    def started_by_creator_first(session, deliberation_id, user_id=None):
        start_voting(session, deliberation_id)
        return start_voting(session, deliberation_id)

    monkeypatch.setattr(tiers, "start_voting_phase", started_by_creator_first)
    report = timers.check_and_transition(db, deliberation.id)
    assert report.submissions == []
    assert report.errors == 0

    db.expire_all()
    assert db.get(Deliberation, deliberation.id).phase == Phase.VOTING
