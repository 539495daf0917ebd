import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from consensus.core import errors
from consensus.core.errors import PermissionDenied, StateConflict, ValidationError
from consensus.core.timeutil import utcnow
from consensus.models.cell import Cell, CellParticipation, CellStatus, ParticipationStatus, Vote
from consensus.models.deliberation import Idea
from consensus.services import cells, finalization, tiers, voting
from consensus.services.voting import Allocation


def _open_cell(db: Session, make_deliberation, make_users, voters: int = 5):
    deliberation = make_deliberation(ideas=3)
    tiers.start_voting_phase(db, deliberation.id)
    users = make_users(voters)
    assignments = [cells.enter_cell(db, deliberation.id, user) for user in users]
    return assignments[0].cell_id, assignments[0].idea_ids, users


def test_allocations_must_sum_to_budget(db: Session, make_deliberation, make_users) -> None:
    cell_id, ideas, users = _open_cell(db, make_deliberation, make_users, voters=1)

    with pytest.raises(ValidationError) as exc:
        voting.cast_vote(db, cell_id, users[0], [Allocation(ideas[0], 4), Allocation(ideas[1], 5)])
    assert exc.value.code == errors.BAD_ALLOCATION_SUM
    assert exc.value.to_payload()["total"] == 9
    assert db.query(func.count(Vote.id)).filter(Vote.cell_id == cell_id).scalar() == 0


@pytest.mark.parametrize(
    "points, code",
    [
        ([10, 0], errors.BAD_ALLOCATION),
        ([11, -1], errors.BAD_ALLOCATION),
    ],
)
def test_non_positive_points_are_rejected(db: Session, make_deliberation, make_users, points, code) -> None:
    cell_id, ideas, users = _open_cell(db, make_deliberation, make_users, voters=1)
    allocations = [Allocation(idea_id, p) for idea_id, p in zip(ideas, points)]
    with pytest.raises(ValidationError) as exc:
        voting.cast_vote(db, cell_id, users[0], allocations)
    assert exc.value.code == code


def test_duplicate_and_foreign_ideas_are_rejected(db: Session, make_deliberation, make_users) -> None:
    cell_id, ideas, users = _open_cell(db, make_deliberation, make_users, voters=1)

    with pytest.raises(ValidationError) as exc:
        voting.cast_vote(db, cell_id, users[0], [Allocation(ideas[0], 5), Allocation(ideas[0], 5)])
    assert exc.value.code == errors.DUPLICATE_IDEA

    with pytest.raises(ValidationError) as exc:
        voting.cast_vote(db, cell_id, users[0], [Allocation(uuid.uuid4(), 10)])
    assert exc.value.code == errors.IDEA_NOT_IN_CELL


def test_only_participants_can_vote(db: Session, make_deliberation, make_users) -> None:
    cell_id, ideas, _ = _open_cell(db, make_deliberation, make_users, voters=1)
    stranger = make_users(1)[0]
    with pytest.raises(PermissionDenied) as exc:
        voting.cast_vote(db, cell_id, stranger, [Allocation(ideas[0], 10)])
    assert exc.value.code == errors.NOT_A_PARTICIPANT


def test_revote_replaces_earlier_allocation(db: Session, make_deliberation, make_users) -> None:
    cell_id, ideas, users = _open_cell(db, make_deliberation, make_users, voters=2)

    voting.cast_vote(db, cell_id, users[0], [Allocation(ideas[0], 10)])
    voting.cast_vote(db, cell_id, users[0], [Allocation(ideas[1], 7), Allocation(ideas[2], 3)])

    db.expire_all()
    totals = {idea.id: (idea.total_votes, idea.total_xp) for idea in db.query(Idea).filter(Idea.id.in_(ideas))}
    assert totals[ideas[0]] == (0, 0)
    assert totals[ideas[1]] == (1, 7)
    assert totals[ideas[2]] == (1, 3)


def test_counters_match_direct_aggregation(db: Session, make_deliberation, make_users) -> None:
    cell_id, ideas, users = _open_cell(db, make_deliberation, make_users, voters=4)
    splits = [(5, 3, 2), (1, 1, 8), (10, 0, 0), (4, 4, 2)]
    for user, split in zip(users, splits):
        allocations = [Allocation(idea_id, p) for idea_id, p in zip(ideas, split) if p]
        voting.cast_vote(db, cell_id, user, allocations)

    db.expire_all()
    for idea in db.query(Idea).filter(Idea.id.in_(ideas)):
        voters, xp = (
            db.query(func.count(func.distinct(Vote.user_id)), func.coalesce(func.sum(Vote.xp_points), 0))
            .filter(Vote.idea_id == idea.id)
            .one()
        )
        assert (idea.total_votes, idea.total_xp) == (voters, xp)

    per_user = (
        db.query(Vote.user_id, func.sum(Vote.xp_points))
        .filter(Vote.cell_id == cell_id)
        .group_by(Vote.user_id)
        .all()
    )
    assert len(per_user) == 4
    assert all(total == 10 for _, total in per_user)


def test_last_vote_starts_grace_period(db: Session, make_deliberation, make_users) -> None:
    cell_id, ideas, users = _open_cell(db, make_deliberation, make_users, voters=5)

    results = [voting.cast_vote(db, cell_id, user, [Allocation(ideas[2], 10)]) for user in users]
    assert [r.all_voted for r in results] == [False, False, False, False, True]
    assert results[-1].voter_count == 5
    assert results[-1].finalizes_at is not None

    db.expire_all()
    cell = db.get(Cell, cell_id)
    assert cell.status == CellStatus.VOTING
    assert cell.finalizes_at is not None


def test_vote_rejected_once_cell_completed(db: Session, make_deliberation, make_users) -> None:
    cell_id, ideas, users = _open_cell(db, make_deliberation, make_users, voters=2)
    db.query(Cell).filter(Cell.id == cell_id).update({"status": CellStatus.COMPLETED})
    db.commit()

    with pytest.raises(StateConflict) as exc:
        voting.cast_vote(db, cell_id, users[0], [Allocation(ideas[0], 10)])
    assert exc.value.code == errors.CELL_NOT_VOTING


def test_balanced_cell_completes_without_dropped_member(db: Session, make_deliberation) -> None:
    # Creator plus three authors are seated together in the only cell.
    deliberation = make_deliberation(ideas=3, allocation_mode="balanced")
    tiers.start_voting_phase(db, deliberation.id)
    cell = db.query(Cell).filter(Cell.deliberation_id == deliberation.id).one()
    cell_id, ideas = cell.id, cell.idea_ids
    members = [p.user_id for p in db.query(CellParticipation).filter(CellParticipation.cell_id == cell_id)]
    db.rollback()
    assert len(members) == 4

    results = [voting.cast_vote(db, cell_id, user, [Allocation(ideas[0], 10)]) for user in members[:3]]
    assert [r.all_voted for r in results] == [False, False, False]

    assert cells.drop_out(db, cell_id, members[3]) == ParticipationStatus.DROPPED

    db.expire_all()
    cell = db.get(Cell, cell_id)
    assert voting.expected_voters(db, cell, cell.deliberation) == 3
    assert cell.finalizes_at is not None
    assert cell.status == CellStatus.VOTING


def test_vote_after_deadline_is_rejected(db: Session, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=3, voting_timeout_seconds=60)
    tiers.start_voting_phase(db, deliberation.id)
    user = make_users(1)[0]
    assignment = cells.enter_cell(db, deliberation.id, user)
    db.execute(
        update(Cell)
        .where(Cell.id == assignment.cell_id)
        .values(voting_deadline=utcnow() - timedelta(seconds=1))
    )
    db.commit()

    with pytest.raises(StateConflict) as exc:
        voting.cast_vote(db, assignment.cell_id, user, [Allocation(assignment.idea_ids[0], 10)])
    assert exc.value.code == errors.DEADLINE_PASSED
    assert db.query(func.count(Vote.id)).filter(Vote.cell_id == assignment.cell_id).scalar() == 0


def test_multi_cell_votes_add_up(db: Session, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=2, cell_size=2, allow_multi_cell=True)
    deliberation_id = deliberation.id
    tiers.start_voting_phase(db, deliberation_id)
    first, second, third, fourth = make_users(4)
    home = cells.enter_cell(db, deliberation_id, first)
    assert cells.enter_cell(db, deliberation_id, second).cell_id == home.cell_id
    # A full sibling keeps the batch open after the first cell completes.
    other = cells.enter_cell(db, deliberation_id, third).cell_id
    assert cells.enter_cell(db, deliberation_id, fourth).cell_id == other != home.cell_id

    favourite = home.idea_ids[0]
    for user in (first, second):
        voting.cast_vote(db, home.cell_id, user, [Allocation(favourite, 10)])
    result = finalization.finalize_if_due(db, home.cell_id)
    assert result.batch_decided is False

    again = cells.enter_cell(db, deliberation_id, first)
    assert again.cell_id not in (home.cell_id, other)
    voting.cast_vote(db, again.cell_id, first, [Allocation(favourite, 10)])

    db.expire_all()
    assert db.query(func.count(func.distinct(Vote.cell_id))).filter(Vote.user_id == first).scalar() == 2
    assert db.get(Idea, favourite).total_xp == 30
