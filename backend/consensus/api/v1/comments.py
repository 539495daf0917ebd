import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from consensus.api.v1.participants import get_db, resolve_identity
from consensus.models.participant import Participant
from consensus.schemas.comment import UpvoteResponse
from consensus.services import pollination


router = APIRouter()


@router.post("/{comment_id}/upvote", response_model=UpvoteResponse)
def toggle_upvote(
    comment_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(resolve_identity),
) -> UpvoteResponse:
    """Upvote a comment, or withdraw the caller's earlier upvote."""
    return UpvoteResponse.model_validate(pollination.toggle_upvote(db, comment_id, participant.id))
