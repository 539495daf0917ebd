import uuid

from sqlalchemy.orm import Session

from consensus.models.cell import Cell, CellStatus
from consensus.models.deliberation import Deliberation, Idea, IdeaStatus, Phase
from consensus.services import cells, finalization, tiers, voting
from consensus.services.batches import pick_winner, split_evenly
from consensus.services.voting import Allocation


def test_split_evenly_balances_group_sizes() -> None:
    assert [len(g) for g in split_evenly(list(range(11)), 5)] == [4, 4, 3]
    assert [len(g) for g in split_evenly(list(range(10)), 5)] == [5, 5]
    assert [len(g) for g in split_evenly(list(range(3)), 5)] == [3]
    assert split_evenly([], 5) == []
    assert sum(split_evenly(list(range(7)), 3), []) == list(range(7))


def test_pick_winner_tie_breaks() -> None:
    a, b, c = sorted(uuid.uuid4() for _ in range(3))
    # XP first, then distinct voters.
    assert pick_winner([a, b, c], {a: (10, 2), b: (10, 3), c: (5, 5)}) == b
    # Full tie falls back to the lowest id.
    assert pick_winner([c, b, a], {a: (10, 2), b: (10, 2), c: (10, 2)}) == a
    assert pick_winner([a, b], {b: (1, 1)}) == b


def test_five_voter_cell_finalizes_with_highest_xp(db: Session, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=3)
    tiers.start_voting_phase(db, deliberation.id)
    users = make_users(5)
    assignments = [cells.enter_cell(db, deliberation.id, user) for user in users]
    cell_id = assignments[0].cell_id
    assert {a.cell_id for a in assignments} == {cell_id}
    first, favourite, third = assignments[0].idea_ids

    splits = [(2, 6, 2), (5, 5, 0), (0, 10, 0), (3, 3, 4), (4, 2, 4)]
    results = []
    for user, split in zip(users, splits):
        allocations = [Allocation(idea_id, p) for idea_id, p in zip((first, favourite, third), split) if p]
        results.append(voting.cast_vote(db, cell_id, user, allocations))
    assert results[-1].all_voted is True

    result = finalization.finalize_if_due(db, cell_id)
    assert result is not None
    assert result.batch_decided is True
    assert result.winner_ids == [favourite]
    assert sorted(result.eliminated_ids) == sorted([first, third])

    db.expire_all()
    cell = db.get(Cell, cell_id)
    assert cell.status == CellStatus.COMPLETED
    assert cell.completed_by_timeout is False
    ideas = {idea.id: idea for idea in db.query(Idea).filter(Idea.deliberation_id == deliberation.id)}
    assert ideas[favourite].total_xp == 26
    for loser in (first, third):
        assert ideas[loser].status == IdeaStatus.ELIMINATED
        assert ideas[loser].losses == 1
        assert ideas[loser].tier1_losses == 1
    # The only batch of the tier produced the only survivor.
    assert ideas[favourite].status == IdeaStatus.WINNER
    assert ideas[favourite].is_champion is True
    assert db.get(Deliberation, deliberation.id).phase == Phase.COMPLETED


def test_finalize_is_idempotent(db: Session, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=3)
    tiers.start_voting_phase(db, deliberation.id)
    user = make_users(1)[0]
    assignment = cells.enter_cell(db, deliberation.id, user)
    voting.cast_vote(db, assignment.cell_id, user, [Allocation(assignment.idea_ids[0], 10)])

    assert finalization.finalize_cell(db, assignment.cell_id, is_timeout=True) is not None
    assert finalization.finalize_cell(db, assignment.cell_id, is_timeout=True) is None

    db.expire_all()
    winner = db.get(Idea, assignment.idea_ids[0])
    assert winner.status == IdeaStatus.WINNER
    assert db.get(Cell, assignment.cell_id).completed_by_timeout is True


def test_finalize_if_due_waits_for_grace_deadline(db: Session, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=3)
    tiers.start_voting_phase(db, deliberation.id)
    user = make_users(1)[0]
    assignment = cells.enter_cell(db, deliberation.id, user)

    assert finalization.finalize_if_due(db, assignment.cell_id) is None
    db.expire_all()
    assert db.get(Cell, assignment.cell_id).status == CellStatus.VOTING


def test_silent_cell_advances_every_idea(db: Session, make_deliberation) -> None:
    deliberation = make_deliberation(ideas=3)
    tiers.start_voting_phase(db, deliberation.id)
    cell = db.query(Cell).filter(Cell.deliberation_id == deliberation.id).one()
    cell_id, idea_ids = cell.id, cell.idea_ids
    db.rollback()

    result = finalization.finalize_cell(db, cell_id, is_timeout=True)
    assert result.no_votes is True
    assert sorted(result.winner_ids) == sorted(idea_ids)
    assert result.eliminated_ids == []

    db.expire_all()
    assert db.get(Deliberation, deliberation.id).current_tier == 2
    for idea in db.query(Idea).filter(Idea.id.in_(idea_ids)):
        assert idea.status == IdeaStatus.IN_VOTING
        assert idea.tier == 2
        assert idea.losses == 0


def test_completed_cell_closes_unfilled_spill_cell(db: Session, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=3)
    deliberation_id = deliberation.id
    tiers.start_voting_phase(db, deliberation_id)
    users = make_users(6)
    assignments = [cells.enter_cell(db, deliberation_id, user) for user in users]
    full_cell = assignments[0].cell_id
    spill_cell = assignments[5].cell_id
    assert {a.cell_id for a in assignments[:5]} == {full_cell}
    assert spill_cell != full_cell
    favourite = assignments[0].idea_ids[1]

    for user in users[:5]:
        voting.cast_vote(db, full_cell, user, [Allocation(favourite, 10)])

    result = finalization.finalize_if_due(db, full_cell)
    assert result is not None
    assert result.closed_sibling_ids == [spill_cell]
    assert result.batch_decided is True
    assert result.winner_ids == [favourite]

    db.expire_all()
    assert db.get(Cell, spill_cell).status == CellStatus.COMPLETED
    assert db.get(Idea, favourite).status == IdeaStatus.WINNER
    assert db.get(Deliberation, deliberation_id).phase == Phase.COMPLETED


def test_full_sibling_keeps_voting(db: Session, make_deliberation, make_users) -> None:
    deliberation = make_deliberation(ideas=2, cell_size=2)
    deliberation_id = deliberation.id
    tiers.start_voting_phase(db, deliberation_id)
    users = make_users(4)
    assignments = [cells.enter_cell(db, deliberation_id, user) for user in users]
    first_cell, second_cell = assignments[0].cell_id, assignments[2].cell_id
    assert assignments[1].cell_id == first_cell
    assert assignments[3].cell_id == second_cell != first_cell
    pick = assignments[0].idea_ids[0]

    for user in users[:2]:
        voting.cast_vote(db, first_cell, user, [Allocation(pick, 10)])
    result = finalization.finalize_if_due(db, first_cell)
    assert result.closed_sibling_ids == []
    assert result.batch_decided is False

    db.expire_all()
    assert db.get(Cell, second_cell).status == CellStatus.VOTING
    db.rollback()

    for user in users[2:]:
        voting.cast_vote(db, second_cell, user, [Allocation(pick, 10)])
    result = finalization.finalize_if_due(db, second_cell)
    assert result.batch_decided is True
    assert result.winner_ids == [pick]
