from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class ParticipantRegisterRequest(BaseModel):
    display_name: str = Field(min_length=1, max_length=255)


class ParticipantResponse(BaseModel):
    participant_id: UUID
    display_name: str
    api_key: str
    created_at: datetime

    class Config:
        from_attributes = True


class ParticipantMe(BaseModel):
    participant_id: UUID
    display_name: str


class EmbedTokenResponse(BaseModel):
    token: str
    expires_in_minutes: int
