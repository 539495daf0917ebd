from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class DeliberationCreateRequest(BaseModel):
    question: str = Field(min_length=3, max_length=500)
    description: Optional[str] = Field(default=None, max_length=5000)
    allocation_mode: Literal["fcfs", "balanced"] = "fcfs"
    continuous_flow: bool = False
    cell_size: Optional[int] = Field(default=None, ge=2, le=50)
    allow_multi_cell: bool = False
    submission_seconds: Optional[int] = Field(default=None, ge=1)
    voting_timeout_seconds: int = Field(default=0, ge=0)
    discussion_seconds: int = Field(default=0, ge=0)
    supermajority_enabled: bool = False
    accumulation_enabled: bool = False
    accumulation_timeout_seconds: int = Field(default=86400, ge=1)


class DeliberationResponse(BaseModel):
    id: UUID
    question: str
    description: Optional[str] = None
    creator_id: Optional[UUID] = None
    phase: str
    current_tier: int
    allocation_mode: str
    continuous_flow: bool
    cell_size: int
    allow_multi_cell: bool
    submission_ends_at: Optional[datetime] = None
    voting_timeout_seconds: int
    discussion_seconds: int
    supermajority_enabled: bool
    accumulation_enabled: bool
    accumulation_ends_at: Optional[datetime] = None
    champion_id: Optional[UUID] = None
    challenge_round: int
    created_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class IdeaSubmitRequest(BaseModel):
    text: str


class IdeaResponse(BaseModel):
    id: UUID
    deliberation_id: UUID
    author_id: Optional[UUID] = None
    text: str
    status: str
    tier: int
    total_votes: int
    total_xp: int
    losses: int
    is_champion: bool
    is_new: bool
    created_at: datetime

    class Config:
        from_attributes = True


class DeliberationDetail(DeliberationResponse):
    ideas: List[IdeaResponse] = Field(default_factory=list)


class StartVotingResponse(BaseModel):
    deliberation_id: UUID
    outcome: str
    phase: str


class ChallengeResponse(BaseModel):
    deliberation_id: UUID
    outcome: str
    challenge_round: int
    challengers: int
    retired: int
    benched: int
    champion_seeded: bool


class CloseRequest(BaseModel):
    action: Literal["advance", "end"] = "advance"


class CloseResponse(BaseModel):
    deliberation_id: UUID
    action: str
    closed_cells: int
    phase: str
    current_tier: int
    priority_id: Optional[UUID] = None
    priority_xp: int = 0


class ProgressResponse(BaseModel):
    deliberation_id: UUID
    phase: str
    current_tier: int
    challenge_round: int
    champion_id: Optional[UUID] = None
    members: int
    ideas: dict[str, int] = Field(default_factory=dict)
    tiers: List[dict[str, Any]] = Field(default_factory=list)
