from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class CellAssignmentResponse(BaseModel):
    cell_id: UUID
    deliberation_id: UUID
    tier: int
    batch: int
    status: str
    idea_ids: List[UUID] = Field(default_factory=list)
    already_in_cell: bool = False

    class Config:
        from_attributes = True


class CellParticipantItem(BaseModel):
    user_id: UUID
    status: str
    joined_at: datetime
    voted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CellResponse(BaseModel):
    id: UUID
    deliberation_id: UUID
    tier: int
    batch: int
    status: str
    idea_ids: List[UUID] = Field(default_factory=list)
    participants: List[CellParticipantItem] = Field(default_factory=list)
    discussion_ends_at: Optional[datetime] = None
    voting_started_at: Optional[datetime] = None
    voting_deadline: Optional[datetime] = None
    finalizes_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by_timeout: bool = False

    class Config:
        from_attributes = True


class AllocationItem(BaseModel):
    idea_id: UUID
    points: int

    class Config:
        from_attributes = True


class VoteRequest(BaseModel):
    allocations: List[AllocationItem]


class VoteResponse(BaseModel):
    cell_id: UUID
    all_voted: bool
    voter_count: int
    allocations: List[AllocationItem] = Field(default_factory=list)
    finalizes_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DropResponse(BaseModel):
    cell_id: UUID
    status: str
