import logging
import uuid
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from consensus.core import errors
from consensus.core.config import get_settings
from consensus.core.errors import StateConflict, ValidationError
from consensus.core.timeutil import seconds_from_now, utcnow
from consensus.db.retry import run_serializable
from consensus.models.cell import Cell, CellStatus
from consensus.models.deliberation import (
    AllocationMode,
    Deliberation,
    DeliberationMember,
    Idea,
    IdeaStatus,
    MemberRole,
    Phase,
)
from consensus.services import tiers

logger = logging.getLogger(__name__)

MAX_IDEA_LENGTH = 1000


def create_deliberation(
    db: Session,
    creator_id: uuid.UUID,
    *,
    question: str,
    description: Optional[str] = None,
    allocation_mode: str = AllocationMode.FCFS,
    continuous_flow: bool = False,
    cell_size: Optional[int] = None,
    allow_multi_cell: bool = False,
    submission_seconds: Optional[int] = None,
    voting_timeout_seconds: int = 0,
    discussion_seconds: int = 0,
    supermajority_enabled: bool = False,
    accumulation_enabled: bool = False,
    accumulation_timeout_seconds: int = 86400,
) -> Deliberation:
    if allocation_mode not in (AllocationMode.FCFS, AllocationMode.BALANCED):
        raise ValidationError("BAD_ALLOCATION_MODE", "allocation_mode must be fcfs or balanced")
    now = utcnow()
    deliberation = Deliberation(
        question=question.strip(),
        description=description,
        creator_id=creator_id,
        phase=Phase.SUBMISSION,
        current_tier=1,
        allocation_mode=allocation_mode,
        continuous_flow=continuous_flow,
        cell_size=cell_size or get_settings().default_cell_size,
        allow_multi_cell=allow_multi_cell,
        submission_ends_at=seconds_from_now(submission_seconds, now) if submission_seconds else None,
        voting_timeout_seconds=voting_timeout_seconds,
        discussion_seconds=discussion_seconds,
        supermajority_enabled=supermajority_enabled,
        accumulation_enabled=accumulation_enabled,
        accumulation_timeout_seconds=accumulation_timeout_seconds,
        challenge_round=0,
        created_at=now,
    )
    db.add(deliberation)
    db.flush()
    db.add(
        DeliberationMember(
            deliberation_id=deliberation.id,
            user_id=creator_id,
            role=MemberRole.CREATOR,
            joined_at=now,
        )
    )
    db.commit()
    db.refresh(deliberation)
    logger.info("Created deliberation %s (%s, cell size %s)", deliberation.id, allocation_mode, deliberation.cell_size)
    return deliberation


def ensure_member(db: Session, deliberation_id: uuid.UUID, user_id: uuid.UUID) -> None:
    """Add the user as a participant unless already a member; caller commits."""
    exists = (
        db.query(DeliberationMember.id)
        .filter(DeliberationMember.deliberation_id == deliberation_id, DeliberationMember.user_id == user_id)
        .first()
    )
    if exists is None:
        db.add(
            DeliberationMember(
                deliberation_id=deliberation_id,
                user_id=user_id,
                role=MemberRole.PARTICIPANT,
                joined_at=utcnow(),
            )
        )
        db.flush()


def join_deliberation(db: Session, deliberation_id: uuid.UUID, user_id: uuid.UUID) -> None:
    def work(s: Session) -> None:
        tiers.get_deliberation(s, deliberation_id)
        ensure_member(s, deliberation_id, user_id)

    try:
        run_serializable(db, work, attempts=1, label="join_deliberation")
    except errors.RetryableConflict:
        # Lost a race with the same user joining twice; the row exists now.
        logger.debug("Member %s already joined %s", user_id, deliberation_id)


def _submit_idea(db: Session, deliberation_id: uuid.UUID, user_id: uuid.UUID, text: str) -> Idea:
    deliberation = tiers.get_deliberation(db, deliberation_id)
    if deliberation.phase == Phase.SUBMISSION:
        status, is_new = IdeaStatus.SUBMITTED, False
    elif deliberation.phase == Phase.VOTING and deliberation.continuous_flow:
        status, is_new = IdeaStatus.SUBMITTED, False
    elif deliberation.phase == Phase.ACCUMULATING:
        status, is_new = IdeaStatus.PENDING, True
    else:
        raise StateConflict(errors.WRONG_PHASE, "Ideas are not being accepted right now")

    ensure_member(db, deliberation.id, user_id)
    idea = Idea(
        deliberation_id=deliberation.id,
        author_id=user_id,
        text=text,
        status=status,
        tier=0,
        is_new=is_new,
        created_at=utcnow(),
    )
    db.add(idea)
    db.flush()
    return idea


def submit_idea(db: Session, deliberation_id: uuid.UUID, user_id: uuid.UUID, text: str) -> Idea:
    text = (text or "").strip()
    if not text or len(text) > MAX_IDEA_LENGTH:
        raise ValidationError("BAD_IDEA", f"Idea must be between 1 and {MAX_IDEA_LENGTH} characters")
    idea = run_serializable(db, lambda s: _submit_idea(s, deliberation_id, user_id, text), label="submit_idea")
    db.refresh(idea)
    deliberation = db.get(Deliberation, idea.deliberation_id)
    if deliberation.phase == Phase.VOTING and deliberation.continuous_flow:
        db.rollback()
        tiers.try_create_continuous_cell(db, deliberation_id)
        db.refresh(idea)
    return idea


def deliberation_progress(db: Session, deliberation_id: uuid.UUID) -> dict[str, Any]:
    deliberation = tiers.get_deliberation(db, deliberation_id)

    idea_counts = {
        status: int(n)
        for status, n in db.query(Idea.status, func.count(Idea.id))
        .filter(Idea.deliberation_id == deliberation.id)
        .group_by(Idea.status)
        .all()
    }
    cell_rows = (
        db.query(Cell.tier, Cell.status, func.count(Cell.id))
        .filter(Cell.deliberation_id == deliberation.id, Cell.challenge_round == deliberation.challenge_round)
        .group_by(Cell.tier, Cell.status)
        .all()
    )
    tiers_view: dict[int, dict[str, int]] = {}
    for tier, status, n in cell_rows:
        view = tiers_view.setdefault(tier, {"cells": 0, "completed": 0})
        view["cells"] += int(n)
        if status == CellStatus.COMPLETED:
            view["completed"] += int(n)
    members = (
        db.query(func.count(DeliberationMember.id))
        .filter(DeliberationMember.deliberation_id == deliberation.id)
        .scalar()
    )
    return {
        "deliberation_id": str(deliberation.id),
        "phase": deliberation.phase,
        "current_tier": deliberation.current_tier,
        "challenge_round": deliberation.challenge_round,
        "champion_id": str(deliberation.champion_id) if deliberation.champion_id else None,
        "members": int(members or 0),
        "ideas": idea_counts,
        "tiers": [{"tier": tier, **view} for tier, view in sorted(tiers_view.items())],
    }
