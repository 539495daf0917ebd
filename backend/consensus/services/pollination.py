"""Up-pollination: well-received discussion comments travel to other cells.

Idea-linked comments gain ``spread_count`` for every two upvotes; spread
raises ``reach_tier``, and a comment whose reach falls short of a cell's
tier still shows up there with probability ``5 ** (reach_tier - tier)``,
decided by a stable hash of the (comment, cell) pair.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from consensus.core import errors
from consensus.core.errors import NotFoundError, PermissionDenied, ValidationError
from consensus.core.timeutil import utcnow
from consensus.db.retry import run_serializable
from consensus.models.cell import Cell, CellIdea, CellParticipation
from consensus.models.comment import Comment, CommentUpvote
from consensus.services.events import COMMENT_UP_POLLINATE, emit_event

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 2000
SPREAD_EVERY = 2
VISIBILITY_BASE = 5


@dataclass
class UpvoteResult:
    comment_id: uuid.UUID
    upvoted: bool
    upvote_count: int
    spread_count: int
    reach_tier: int
    spread: bool = False


def string_hash(value: str) -> int:
    """32-bit signed rolling hash (``h * 31 + c``), stable across processes."""
    h = 0
    for ch in value:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    return h - 0x100000000 if h >= 0x80000000 else h


def should_show_comment(comment_id: uuid.UUID, target_cell_id: uuid.UUID, reach_tier: int, tier: int) -> bool:
    if reach_tier >= tier:
        return True
    probability = VISIBILITY_BASE ** (reach_tier - tier)
    return abs(string_hash(f"{comment_id}{target_cell_id}")) % 1000 < probability * 1000


def reach_for_spread(spread_count: int, cell_size: int) -> int:
    """Absolute reach earned by spread: ``spread >= cell_size ** k`` gives k + 1.

    Reach is independent of the tier the comment was written at, so a
    comment spreading from an upper tier reaches its sibling cells only by
    chance until it is promoted.
    """
    if spread_count < 1:
        return 0
    k = 0
    while spread_count >= cell_size ** (k + 1):
        k += 1
    return k + 1


def _post_comment(
    db: Session,
    cell_id: uuid.UUID,
    user_id: uuid.UUID,
    text: str,
    idea_id: Optional[uuid.UUID],
) -> Comment:
    cell = db.get(Cell, cell_id)
    if cell is None:
        raise NotFoundError("Cell")
    member = (
        db.query(CellParticipation.id)
        .filter(CellParticipation.cell_id == cell_id, CellParticipation.user_id == user_id)
        .first()
    )
    if member is None:
        raise PermissionDenied(errors.NOT_A_PARTICIPANT, "Only cell participants can comment")
    if idea_id is not None and idea_id not in cell.idea_ids:
        raise ValidationError(errors.IDEA_NOT_IN_CELL, "Idea is not part of this cell")

    comment = Comment(cell_id=cell_id, user_id=user_id, idea_id=idea_id, text=text, created_at=utcnow())
    db.add(comment)
    db.flush()
    return comment


def post_comment(
    db: Session,
    cell_id: uuid.UUID,
    user_id: uuid.UUID,
    text: str,
    idea_id: Optional[uuid.UUID] = None,
) -> Comment:
    text = (text or "").strip()
    if not text or len(text) > MAX_COMMENT_LENGTH:
        raise ValidationError("BAD_COMMENT", f"Comment must be between 1 and {MAX_COMMENT_LENGTH} characters")
    comment = run_serializable(db, lambda s: _post_comment(s, cell_id, user_id, text, idea_id), label="post_comment")
    db.refresh(comment)
    return comment


def _toggle_upvote(db: Session, comment_id: uuid.UUID, user_id: uuid.UUID) -> UpvoteResult:
    comment = db.get(Comment, comment_id)
    if comment is None:
        raise NotFoundError("Comment")

    existing = (
        db.query(CommentUpvote)
        .filter(CommentUpvote.comment_id == comment_id, CommentUpvote.user_id == user_id)
        .one_or_none()
    )
    if existing is not None:
        db.delete(existing)
    else:
        db.add(CommentUpvote(comment_id=comment_id, user_id=user_id, created_at=utcnow()))
    db.flush()

    count = db.query(func.count(CommentUpvote.id)).filter(CommentUpvote.comment_id == comment_id).scalar() or 0
    comment.upvote_count = count

    spread = False
    if comment.idea_id is not None:
        if existing is None and count % SPREAD_EVERY == 0:
            comment.spread_count += 1
            spread = True
        elif existing is not None and (count + 1) % SPREAD_EVERY == 0 and comment.spread_count > 0:
            comment.spread_count -= 1
        earned = reach_for_spread(comment.spread_count, comment.cell.deliberation.cell_size)
        # Withdrawn upvotes never shrink reach.
        comment.reach_tier = max(comment.reach_tier, earned)

    return UpvoteResult(
        comment_id=comment.id,
        upvoted=existing is None,
        upvote_count=comment.upvote_count,
        spread_count=comment.spread_count,
        reach_tier=comment.reach_tier,
        spread=spread,
    )


def toggle_upvote(db: Session, comment_id: uuid.UUID, user_id: uuid.UUID) -> UpvoteResult:
    result = run_serializable(db, lambda s: _toggle_upvote(s, comment_id, user_id), label="toggle_upvote")
    if result.spread:
        emit_event(
            db,
            event_type=COMMENT_UP_POLLINATE,
            payload={
                "comment_id": str(result.comment_id),
                "spread_count": result.spread_count,
                "reach_tier": result.reach_tier,
            },
            actor_id=user_id,
        )
    return result


def cell_comment_feed(db: Session, cell_id: uuid.UUID) -> list[Comment]:
    cell = db.get(Cell, cell_id)
    if cell is None:
        raise NotFoundError("Cell")
    idea_ids = cell.idea_ids

    feed: dict[uuid.UUID, Comment] = {}
    for comment in db.query(Comment).filter(Comment.cell_id == cell.id).all():
        feed[comment.id] = comment

    if idea_ids:
        linked = (
            db.query(Comment)
            .filter(
                Comment.idea_id.in_(idea_ids),
                Comment.cell_id != cell.id,
                Comment.reach_tier >= cell.tier,
            )
            .all()
        )
        for comment in linked:
            feed.setdefault(comment.id, comment)

        sibling_ids = [
            row[0]
            for row in db.query(CellIdea.cell_id)
            .join(Cell, Cell.id == CellIdea.cell_id)
            .filter(
                CellIdea.idea_id.in_(idea_ids),
                Cell.id != cell.id,
                Cell.deliberation_id == cell.deliberation_id,
                Cell.challenge_round == cell.challenge_round,
                Cell.tier == cell.tier,
            )
            .distinct()
            .all()
        ]
        if sibling_ids:
            for comment in db.query(Comment).filter(Comment.cell_id.in_(sibling_ids), Comment.reach_tier >= 1).all():
                if comment.id not in feed and should_show_comment(comment.id, cell.id, comment.reach_tier, cell.tier):
                    feed[comment.id] = comment

    return sorted(feed.values(), key=lambda c: (-c.reach_tier, -c.upvote_count, c.created_at))


def promote_top_comments(db: Session, deliberation_id: uuid.UUID, tier: int, idea_ids: Iterable[uuid.UUID]) -> int:
    """Carry the best comment(s) of each advancing idea into the next tier.

    Runs inside the caller's transaction.
    """
    promoted = 0
    for idea_id in idea_ids:
        top = (
            db.query(func.max(Comment.upvote_count))
            .join(Cell, Cell.id == Comment.cell_id)
            .filter(Comment.idea_id == idea_id, Cell.deliberation_id == deliberation_id)
            .scalar()
        )
        if not top:
            continue
        for comment in db.query(Comment).filter(Comment.idea_id == idea_id, Comment.upvote_count == top).all():
            comment.reach_tier = max(comment.reach_tier, tier + 1)
            comment.spread_count = 0
            promoted += 1
    if promoted:
        logger.info("Promoted %s comment(s) of deliberation %s into tier %s", promoted, deliberation_id, tier + 1)
    return promoted
