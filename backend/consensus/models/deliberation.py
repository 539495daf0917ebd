import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from consensus.db.base import Base


class Phase:
    SUBMISSION = "SUBMISSION"
    VOTING = "VOTING"
    ACCUMULATING = "ACCUMULATING"
    COMPLETED = "COMPLETED"


class AllocationMode:
    FCFS = "fcfs"
    BALANCED = "balanced"


class IdeaStatus:
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    IN_VOTING = "IN_VOTING"
    ADVANCING = "ADVANCING"
    DEFENDING = "DEFENDING"
    WINNER = "WINNER"
    ELIMINATED = "ELIMINATED"
    BENCHED = "BENCHED"
    RETIRED = "RETIRED"

    # Still contesting a batch at the current tier.
    CONTESTING = (IN_VOTING, DEFENDING)


class MemberRole:
    CREATOR = "CREATOR"
    PARTICIPANT = "PARTICIPANT"


class Deliberation(Base):
    __tablename__ = "deliberations"
    __table_args__ = (Index("ix_deliberations_phase", "phase"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    question: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    creator_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("participants.id"),
        nullable=True,
    )
    phase: Mapped[str] = mapped_column(String(length=16), nullable=False, default=Phase.SUBMISSION)
    current_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    current_tier_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    allocation_mode: Mapped[str] = mapped_column(String(length=16), nullable=False, default=AllocationMode.FCFS)
    continuous_flow: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cell_size: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    allow_multi_cell: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    submission_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # 0 means no tier timer: cells close on completion or supermajority only.
    voting_timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discussion_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    supermajority_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    accumulation_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    accumulation_timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=86400)
    accumulation_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    champion_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    champion_entered_tier: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    challenge_round: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    ideas: Mapped[list["Idea"]] = relationship("Idea", back_populates="deliberation")
    members: Mapped[list["DeliberationMember"]] = relationship("DeliberationMember", back_populates="deliberation")
    cells: Mapped[list["Cell"]] = relationship("Cell", back_populates="deliberation")

    @property
    def is_fcfs(self) -> bool:
        return self.allocation_mode == AllocationMode.FCFS


class DeliberationMember(Base):
    __tablename__ = "deliberation_members"
    __table_args__ = (
        UniqueConstraint("deliberation_id", "user_id", name="uq_members_deliberation_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    deliberation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deliberations.id"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("participants.id"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(length=16), nullable=False, default=MemberRole.PARTICIPANT)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    deliberation: Mapped["Deliberation"] = relationship("Deliberation", back_populates="members")


class Idea(Base):
    __tablename__ = "ideas"
    __table_args__ = (
        Index("ix_ideas_deliberation_status", "deliberation_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    deliberation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deliberations.id"),
        nullable=False,
    )
    author_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("participants.id"),
        nullable=True,
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(length=16), nullable=False, default=IdeaStatus.SUBMITTED)
    tier: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_votes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    losses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tier1_losses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_champion: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Challenger submitted while a champion reigns.
    is_new: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    deliberation: Mapped["Deliberation"] = relationship("Deliberation", back_populates="ideas")
