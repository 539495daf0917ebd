import logging
import uuid
from functools import lru_cache

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from consensus.api.v1.participants import get_db, resolve_identity
from consensus.core.config import get_settings
from consensus.models.deliberation import Idea
from consensus.models.participant import Participant
from consensus.schemas.cell import CellAssignmentResponse
from consensus.schemas.deliberation import (
    ChallengeResponse,
    CloseRequest,
    CloseResponse,
    DeliberationCreateRequest,
    DeliberationDetail,
    DeliberationResponse,
    IdeaResponse,
    IdeaSubmitRequest,
    ProgressResponse,
    StartVotingResponse,
)
from consensus.services import cells, challenge, deliberations, finalization, tiers, timers
from consensus.services.cache import TTLCache

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache()
def get_progress_cache() -> TTLCache:
    settings = get_settings()
    return TTLCache(settings.progress_cache_ttl_seconds, settings.progress_cache_max_entries)


@router.post("", response_model=DeliberationResponse)
def create_deliberation(
    payload: DeliberationCreateRequest,
    db: Session = Depends(get_db),
    participant: Participant = Depends(resolve_identity),
) -> DeliberationResponse:
    deliberation = deliberations.create_deliberation(db, participant.id, **payload.model_dump())
    return DeliberationResponse.model_validate(deliberation)


@router.get("/{deliberation_id}", response_model=DeliberationDetail)
def get_deliberation(deliberation_id: uuid.UUID, db: Session = Depends(get_db)) -> DeliberationDetail:
    deliberation = tiers.get_deliberation(db, deliberation_id)
    ideas = (
        db.query(Idea)
        .filter(Idea.deliberation_id == deliberation.id)
        .order_by(Idea.created_at.asc(), Idea.id.asc())
        .all()
    )
    detail = DeliberationDetail.model_validate(deliberation)
    detail.ideas = [IdeaResponse.model_validate(idea) for idea in ideas]
    return detail


@router.post("/{deliberation_id}/join", response_model=DeliberationResponse)
def join_deliberation(
    deliberation_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(resolve_identity),
) -> DeliberationResponse:
    deliberations.join_deliberation(db, deliberation_id, participant.id)
    return DeliberationResponse.model_validate(tiers.get_deliberation(db, deliberation_id))


@router.post("/{deliberation_id}/ideas", response_model=IdeaResponse)
def submit_idea(
    deliberation_id: uuid.UUID,
    payload: IdeaSubmitRequest,
    db: Session = Depends(get_db),
    participant: Participant = Depends(resolve_identity),
) -> IdeaResponse:
    idea = deliberations.submit_idea(db, deliberation_id, participant.id, payload.text)
    return IdeaResponse.model_validate(idea)


@router.post("/{deliberation_id}/start-voting", response_model=StartVotingResponse)
def start_voting(
    deliberation_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(resolve_identity),
) -> StartVotingResponse:
    outcome = tiers.start_voting_phase(db, deliberation_id, participant.id)
    deliberation = tiers.get_deliberation(db, deliberation_id)
    logger.info("Participant %s started voting on %s: %s", participant.id, deliberation_id, outcome)
    return StartVotingResponse(deliberation_id=deliberation.id, outcome=outcome, phase=deliberation.phase)


@router.post("/{deliberation_id}/enter", response_model=CellAssignmentResponse)
def enter_cell(
    deliberation_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(resolve_identity),
) -> CellAssignmentResponse:
    # Overdue deadlines are applied before seating anyone.
    timers.check_and_transition(db, deliberation_id)
    deliberations.join_deliberation(db, deliberation_id, participant.id)
    assignment = cells.enter_cell(db, deliberation_id, participant.id)
    return CellAssignmentResponse.model_validate(assignment)


@router.get("/{deliberation_id}/progress", response_model=ProgressResponse)
def progress(
    deliberation_id: uuid.UUID,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_progress_cache),
) -> ProgressResponse:
    view = cache.get_or_set(
        ("progress", deliberation_id),
        lambda: deliberations.deliberation_progress(db, deliberation_id),
    )
    return ProgressResponse.model_validate(view)


@router.post("/{deliberation_id}/challenge", response_model=ChallengeResponse)
def start_challenge(
    deliberation_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(resolve_identity),
) -> ChallengeResponse:
    outcome = challenge.start_challenge_round(db, deliberation_id, participant.id)
    return ChallengeResponse(
        deliberation_id=deliberation_id,
        outcome=outcome.outcome,
        challenge_round=outcome.challenge_round,
        challengers=len(outcome.challenger_ids),
        retired=len(outcome.retired_ids),
        benched=len(outcome.benched_ids),
        champion_seeded=outcome.champion_seeded,
    )


@router.post("/{deliberation_id}/reopen", response_model=DeliberationResponse)
def reopen(
    deliberation_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(resolve_identity),
) -> DeliberationResponse:
    deliberation = tiers.reopen(db, deliberation_id, participant.id)
    logger.info("Participant %s reopened deliberation %s", participant.id, deliberation_id)
    return DeliberationResponse.model_validate(deliberation)


@router.post("/{deliberation_id}/close", response_model=CloseResponse)
def close(
    deliberation_id: uuid.UUID,
    payload: CloseRequest = CloseRequest(),
    db: Session = Depends(get_db),
    participant: Participant = Depends(resolve_identity),
) -> CloseResponse:
    outcome = finalization.close_deliberation(db, deliberation_id, participant.id, payload.action)
    return CloseResponse(
        deliberation_id=deliberation_id,
        action=outcome.action,
        closed_cells=outcome.closed_cells,
        phase=outcome.phase,
        current_tier=outcome.current_tier,
        priority_id=outcome.priority_id,
        priority_xp=outcome.priority_xp,
    )
