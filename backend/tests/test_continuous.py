import uuid

from sqlalchemy.orm import Session

from consensus.models.cell import Cell, CellStatus
from consensus.models.deliberation import Deliberation, Idea, IdeaStatus, Phase
from consensus.services import cells, deliberations, finalization, tiers, voting
from consensus.services.voting import Allocation


def _flowing(db: Session, make_deliberation, ideas: int = 0) -> Deliberation:
    deliberation = make_deliberation(ideas=ideas, continuous_flow=True, cell_size=3)
    assert tiers.start_voting_phase(db, deliberation.id) == tiers.VOTING
    return deliberation


def _add_ideas(db: Session, deliberation_id: uuid.UUID, make_users, count: int) -> list[uuid.UUID]:
    return [
        deliberations.submit_idea(db, deliberation_id, author, f"Late idea {index}").id
        for index, author in enumerate(make_users(count))
    ]


def _cells(db: Session, deliberation_id: uuid.UUID, tier: int) -> list[Cell]:
    return db.query(Cell).filter(Cell.deliberation_id == deliberation_id, Cell.tier == tier).order_by(Cell.batch).all()


def _vote_and_close(db: Session, deliberation_id: uuid.UUID, user: uuid.UUID, pick: int = 0) -> tuple[uuid.UUID, uuid.UUID]:
    assignment = cells.enter_cell(db, deliberation_id, user)
    favourite = assignment.idea_ids[pick]
    voting.cast_vote(db, assignment.cell_id, user, [Allocation(favourite, 10)])
    finalization.finalize_cell(db, assignment.cell_id, is_timeout=True)
    return assignment.cell_id, favourite


def test_continuous_start_does_not_shortcut(db: Session, make_deliberation) -> None:
    deliberation = _flowing(db, make_deliberation, ideas=0)
    db.expire_all()
    refreshed = db.get(Deliberation, deliberation.id)
    assert refreshed.phase == Phase.VOTING
    assert refreshed.champion_id is None


def test_cells_form_as_ideas_arrive(db: Session, make_deliberation, make_users) -> None:
    deliberation = _flowing(db, make_deliberation, ideas=2)
    assert _cells(db, deliberation.id, 1) == []
    db.rollback()

    third = _add_ideas(db, deliberation.id, make_users, 1)[0]
    first_cells = _cells(db, deliberation.id, 1)
    assert len(first_cells) == 1
    assert third in first_cells[0].idea_ids
    assert db.get(Idea, third).status == IdeaStatus.IN_VOTING
    db.rollback()

    later = _add_ideas(db, deliberation.id, make_users, 3)
    formed = _cells(db, deliberation.id, 1)
    assert [cell.batch for cell in formed] == [0, 1]
    assert sorted(formed[1].idea_ids) == sorted(later)


def test_idea_pool_waits_below_cell_size(db: Session, make_deliberation, make_users) -> None:
    deliberation = _flowing(db, make_deliberation, ideas=3)
    leftover = _add_ideas(db, deliberation.id, make_users, 2)
    assert len(_cells(db, deliberation.id, 1)) == 1
    for idea_id in leftover:
        assert db.get(Idea, idea_id).status == IdeaStatus.SUBMITTED


def test_silent_cell_promotes_a_full_group(db: Session, make_deliberation) -> None:
    deliberation = _flowing(db, make_deliberation, ideas=3)
    cell = _cells(db, deliberation.id, 1)[0]
    cell_id, idea_ids = cell.id, cell.idea_ids
    db.rollback()

    finalization.finalize_cell(db, cell_id, is_timeout=True)

    db.expire_all()
    upper = _cells(db, deliberation.id, 2)
    assert len(upper) == 1
    assert sorted(upper[0].idea_ids) == sorted(idea_ids)
    assert db.get(Deliberation, deliberation.id).current_tier == 2


def test_flush_then_champion(db: Session, make_deliberation, make_users) -> None:
    deliberation = _flowing(db, make_deliberation, ideas=6)
    users = make_users(3)

    first_cell, first_winner = _vote_and_close(db, deliberation.id, users[0])
    db.expire_all()
    assert db.get(Idea, first_winner).status == IdeaStatus.ADVANCING
    assert _cells(db, deliberation.id, 2) == []
    db.rollback()

    second_cell, second_winner = _vote_and_close(db, deliberation.id, users[1], pick=2)
    assert second_cell != first_cell

    db.expire_all()
    upper = _cells(db, deliberation.id, 2)
    assert len(upper) == 1
    assert sorted(upper[0].idea_ids) == sorted([first_winner, second_winner])
    assert upper[0].status == CellStatus.VOTING
    db.rollback()

    final_cell, _ = _vote_and_close(db, deliberation.id, users[2], pick=upper[0].idea_ids.index(second_winner))
    assert final_cell == upper[0].id

    db.expire_all()
    refreshed = db.get(Deliberation, deliberation.id)
    assert refreshed.phase == Phase.COMPLETED
    assert refreshed.champion_id == second_winner
    assert db.get(Idea, first_winner).status == IdeaStatus.ELIMINATED
