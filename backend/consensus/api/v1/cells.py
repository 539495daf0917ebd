import uuid
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from consensus.api.v1.participants import get_db, resolve_identity
from consensus.core.config import get_settings
from consensus.core.errors import NotFoundError
from consensus.models.cell import Cell
from consensus.models.participant import Participant
from consensus.schemas.cell import CellResponse, DropResponse, VoteRequest, VoteResponse
from consensus.schemas.comment import CommentCreateRequest, CommentItem
from consensus.services import cells, pollination, voting
from consensus.services.finalization import run_deferred_finalization


router = APIRouter()


@router.get("/{cell_id}", response_model=CellResponse)
def get_cell(cell_id: uuid.UUID, db: Session = Depends(get_db)) -> CellResponse:
    cell = db.get(Cell, cell_id)
    if cell is None:
        raise NotFoundError("Cell")
    return CellResponse.model_validate(cell)


@router.post("/{cell_id}/vote", response_model=VoteResponse)
def cast_vote(
    cell_id: uuid.UUID,
    payload: VoteRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    participant: Participant = Depends(resolve_identity),
) -> VoteResponse:
    result = voting.cast_vote(db, cell_id, participant.id, payload.allocations)
    if result.finalizes_at is not None:
        background_tasks.add_task(
            run_deferred_finalization,
            db.get_bind(),
            cell_id,
            get_settings().grace_period_seconds,
        )
    return VoteResponse.model_validate(result)


@router.post("/{cell_id}/drop", response_model=DropResponse)
def drop_out(
    cell_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(resolve_identity),
) -> DropResponse:
    return DropResponse(cell_id=cell_id, status=cells.drop_out(db, cell_id, participant.id))


@router.get("/{cell_id}/comments", response_model=List[CommentItem])
def list_comments(cell_id: uuid.UUID, db: Session = Depends(get_db)) -> List[CommentItem]:
    return [CommentItem.model_validate(comment) for comment in pollination.cell_comment_feed(db, cell_id)]


@router.post("/{cell_id}/comments", response_model=CommentItem)
def post_comment(
    cell_id: uuid.UUID,
    payload: CommentCreateRequest,
    db: Session = Depends(get_db),
    participant: Participant = Depends(resolve_identity),
) -> CommentItem:
    comment = pollination.post_comment(db, cell_id, participant.id, payload.text, payload.idea_id)
    return CommentItem.model_validate(comment)
