from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class CommentCreateRequest(BaseModel):
    text: str
    idea_id: Optional[UUID] = None


class CommentItem(BaseModel):
    id: UUID
    cell_id: UUID
    user_id: UUID
    idea_id: Optional[UUID] = None
    text: str
    upvote_count: int
    spread_count: int
    reach_tier: int
    created_at: datetime

    class Config:
        from_attributes = True


class UpvoteResponse(BaseModel):
    comment_id: UUID
    upvoted: bool
    upvote_count: int
    spread_count: int
    reach_tier: int

    class Config:
        from_attributes = True
