import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from consensus.db.base import Base


class CellStatus:
    DELIBERATING = "DELIBERATING"
    VOTING = "VOTING"
    COMPLETED = "COMPLETED"

    OPEN = (DELIBERATING, VOTING)


class ParticipationStatus:
    ACTIVE = "ACTIVE"
    VOTED = "VOTED"
    DROPPED = "DROPPED"

    SEATED = (ACTIVE, VOTED)


class Cell(Base):
    __tablename__ = "cells"
    __table_args__ = (
        Index("ix_cells_deliberation_tier", "deliberation_id", "tier"),
        Index("ix_cells_status", "status"),
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
    # Deliberation.challenge_round the cell belongs to; tiers restart at 1 each round.
    challenge_round: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tier: Mapped[int] = mapped_column(Integer, nullable=False)
    batch: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(length=16), nullable=False, default=CellStatus.VOTING)
    discussion_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    voting_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    voting_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Grace-period deadline set once every expected vote is in.
    finalizes_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by_timeout: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    deliberation: Mapped["Deliberation"] = relationship("Deliberation", back_populates="cells")
    ideas: Mapped[list["CellIdea"]] = relationship("CellIdea", back_populates="cell", order_by="CellIdea.idea_id")
    participants: Mapped[list["CellParticipation"]] = relationship("CellParticipation", back_populates="cell")
    votes: Mapped[list["Vote"]] = relationship("Vote", back_populates="cell")

    @property
    def idea_ids(self) -> list[uuid.UUID]:
        return [ci.idea_id for ci in self.ideas]


class CellIdea(Base):
    """Fixed idea set of a cell; written once when the cell is created."""

    __tablename__ = "cell_ideas"

    cell_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("cells.id"),
        primary_key=True,
    )
    idea_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ideas.id"),
        primary_key=True,
    )

    cell: Mapped["Cell"] = relationship("Cell", back_populates="ideas")
    idea: Mapped["Idea"] = relationship("Idea")


class CellParticipation(Base):
    __tablename__ = "cell_participations"
    __table_args__ = (
        UniqueConstraint("cell_id", "user_id", name="uq_participations_cell_user"),
        Index("ix_participations_user_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    cell_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("cells.id"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("participants.id"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(length=16), nullable=False, default=ParticipationStatus.ACTIVE)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    voted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    cell: Mapped["Cell"] = relationship("Cell", back_populates="participants")


class Vote(Base):
    __tablename__ = "votes"
    __table_args__ = (
        UniqueConstraint("cell_id", "user_id", "idea_id", name="uq_votes_cell_user_idea"),
        Index("ix_votes_idea_id", "idea_id"),
        Index("ix_votes_cell_id", "cell_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    cell_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("cells.id"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("participants.id"),
        nullable=False,
    )
    idea_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ideas.id"),
        nullable=False,
    )
    xp_points: Mapped[int] = mapped_column(Integer, nullable=False)
    voted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    cell: Mapped["Cell"] = relationship("Cell", back_populates="votes")
