import threading
import uuid
from collections import Counter

import pytest
from sqlalchemy import func
from sqlalchemy.orm import Session

from consensus.core import errors
from consensus.core.errors import EngineError, PermissionDenied, RetryableConflict, StateConflict
from consensus.models.cell import Cell, CellParticipation, ParticipationStatus
from consensus.services import cells, deliberations, tiers, voting


def _seated(db: Session, cell_id: uuid.UUID) -> int:
    return (
        db.query(func.count(CellParticipation.id))
        .filter(
            CellParticipation.cell_id == cell_id,
            CellParticipation.status.in_(ParticipationStatus.SEATED),
        )
        .scalar()
    )


def test_enter_requires_voting_phase(db: Session, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=3)
    with pytest.raises(StateConflict) as exc:
        cells.enter_cell(db, deliberation.id, make_users(1)[0])
    assert exc.value.code == errors.CHANT_NOT_VOTING


def test_enter_is_idempotent(db: Session, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=3)
    tiers.start_voting_phase(db, deliberation.id)
    user = make_users(1)[0]

    first = cells.enter_cell(db, deliberation.id, user)
    second = cells.enter_cell(db, deliberation.id, user)
    assert second.cell_id == first.cell_id
    assert second.already_in_cell is True
    assert _seated(db, first.cell_id) == 1
    assert len(first.idea_ids) == 3


def test_entering_again_after_voting_is_rejected(db: Session, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=3)
    tiers.start_voting_phase(db, deliberation.id)
    user = make_users(1)[0]
    assignment = cells.enter_cell(db, deliberation.id, user)
    voting.cast_vote(db, assignment.cell_id, user, [voting.Allocation(assignment.idea_ids[0], 10)])

    with pytest.raises(StateConflict) as exc:
        cells.enter_cell(db, deliberation.id, user)
    assert exc.value.code == errors.ALREADY_VOTED
    assert exc.value.http_status == 409


def test_sixth_joiner_spills_into_new_cell(db: Session, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=3)
    tiers.start_voting_phase(db, deliberation.id)
    users = make_users(6)

    assignments = [cells.enter_cell(db, deliberation.id, user) for user in users]
    first_cell = assignments[0].cell_id
    assert all(a.cell_id == first_cell for a in assignments[:5])

    spilled = assignments[5]
    assert spilled.cell_id != first_cell
    assert spilled.tier == 1
    assert spilled.batch == assignments[0].batch
    assert sorted(spilled.idea_ids) == sorted(assignments[0].idea_ids)
    assert _seated(db, first_cell) == 5
    assert _seated(db, spilled.cell_id) == 1


def test_concurrent_joins_never_exceed_capacity(session_factory, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=3, cell_size=3)
    deliberation_id = deliberation.id
    setup = session_factory()
    tiers.start_voting_phase(setup, deliberation_id)
    setup.close()
    users = make_users(9)

    joined: dict[uuid.UUID, uuid.UUID] = {}
    failures: list[Exception] = []
    lock = threading.Lock()
    barrier = threading.Barrier(len(users))

    def join(user_id: uuid.UUID) -> None:
        session = session_factory()
        try:
            barrier.wait()
            assignment = cells.enter_cell(session, deliberation_id, user_id)
            with lock:
                joined[user_id] = assignment.cell_id
        except (RetryableConflict, StateConflict) as exc:
            with lock:
                failures.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=join, args=(user,)) for user in users]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(joined) + len(failures) == len(users)
    assert len(joined) >= 3

    check = session_factory()
    try:
        tier_cells = check.query(Cell).filter(Cell.deliberation_id == deliberation_id).all()
        per_cell = Counter(joined.values())
        for cell in tier_cells:
            assert _seated(check, cell.id) <= 3
            assert _seated(check, cell.id) == per_cell.get(cell.id, 0)
        seated_users = [
            row[0]
            for row in check.query(CellParticipation.user_id)
            .join(Cell, Cell.id == CellParticipation.cell_id)
            .filter(Cell.deliberation_id == deliberation_id)
        ]
        assert len(seated_users) == len(set(seated_users)) == len(joined)
    finally:
        check.close()


def test_balanced_mode_spreads_members_over_cells(db: Session, make_deliberation, make_users) -> None:
    # Creator plus four authors are members already; seven more join.
    deliberation = make_deliberation(ideas=4, allocation_mode="balanced")
    for user in make_users(7):
        deliberations.join_deliberation(db, deliberation.id, user)

    assert tiers.start_voting_phase(db, deliberation.id) == tiers.VOTING
    db.expire_all()
    tier_cells = db.query(Cell).filter(Cell.deliberation_id == deliberation.id).all()
    assert len(tier_cells) == 3
    assert sorted(_seated(db, cell.id) for cell in tier_cells) == [4, 4, 4]
    idea_sets = {tuple(cell.idea_ids) for cell in tier_cells}
    assert len(idea_sets) == 1

    member = tier_cells[0].participants[0].user_id
    assignment = cells.enter_cell(db, deliberation.id, member)
    assert assignment.already_in_cell is True
    assert assignment.cell_id == tier_cells[0].id


def test_drop_out_frees_the_seat(db: Session, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=2, cell_size=2)
    tiers.start_voting_phase(db, deliberation.id)
    first, second, third = make_users(3)

    cell_id = cells.enter_cell(db, deliberation.id, first).cell_id
    assert cells.enter_cell(db, deliberation.id, second).cell_id == cell_id

    assert cells.drop_out(db, cell_id, first) == ParticipationStatus.DROPPED
    assert _seated(db, cell_id) == 1
    assert cells.enter_cell(db, deliberation.id, third).cell_id == cell_id

    with pytest.raises(PermissionDenied) as exc:
        cells.drop_out(db, cell_id, first)
    assert exc.value.code == errors.NOT_A_PARTICIPANT


def test_cannot_drop_after_voting(db: Session, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=3)
    tiers.start_voting_phase(db, deliberation.id)
    user = make_users(1)[0]
    assignment = cells.enter_cell(db, deliberation.id, user)
    voting.cast_vote(db, assignment.cell_id, user, [voting.Allocation(assignment.idea_ids[1], 10)])

    with pytest.raises(EngineError) as exc:
        cells.drop_out(db, assignment.cell_id, user)
    assert exc.value.code == errors.ALREADY_VOTED
