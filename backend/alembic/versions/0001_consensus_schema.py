"""Participants, deliberations, cells, votes, comments and events.

Revision ID: 0001_consensus_schema
Revises: 
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_consensus_schema"
down_revision = None
branch_labels = None
depends_on = None


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def upgrade() -> None:
    op.create_table(
        "participants",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("api_key_hash", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "deliberations",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("creator_id", _uuid(), nullable=True),
        sa.Column("phase", sa.String(length=16), nullable=False),
        sa.Column("current_tier", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("current_tier_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("allocation_mode", sa.String(length=16), nullable=False, server_default="fcfs"),
        sa.Column("continuous_flow", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cell_size", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("allow_multi_cell", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("submission_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voting_timeout_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discussion_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("supermajority_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("accumulation_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("accumulation_timeout_seconds", sa.Integer(), nullable=False, server_default="86400"),
        sa.Column("accumulation_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("champion_id", _uuid(), nullable=True),
        sa.Column("champion_entered_tier", sa.Integer(), nullable=True),
        sa.Column("challenge_round", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["creator_id"], ["participants.id"]),
    )
    op.create_index("ix_deliberations_phase", "deliberations", ["phase"])

    op.create_table(
        "deliberation_members",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("deliberation_id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deliberation_id"], ["deliberations.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["participants.id"]),
        sa.UniqueConstraint("deliberation_id", "user_id", name="uq_members_deliberation_user"),
    )

    op.create_table(
        "ideas",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("deliberation_id", _uuid(), nullable=False),
        sa.Column("author_id", _uuid(), nullable=True),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("tier", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_votes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_xp", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("losses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier1_losses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_champion", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_new", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deliberation_id"], ["deliberations.id"]),
        sa.ForeignKeyConstraint(["author_id"], ["participants.id"]),
    )
    op.create_index("ix_ideas_deliberation_status", "ideas", ["deliberation_id", "status"])

    op.create_table(
        "cells",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("deliberation_id", _uuid(), nullable=False),
        sa.Column("challenge_round", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier", sa.Integer(), nullable=False),
        sa.Column("batch", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("discussion_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voting_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voting_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finalizes_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by_timeout", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deliberation_id"], ["deliberations.id"]),
    )
    op.create_index("ix_cells_deliberation_tier", "cells", ["deliberation_id", "tier"])
    op.create_index("ix_cells_status", "cells", ["status"])

    op.create_table(
        "cell_ideas",
        sa.Column("cell_id", _uuid(), primary_key=True, nullable=False),
        sa.Column("idea_id", _uuid(), primary_key=True, nullable=False),
        sa.ForeignKeyConstraint(["cell_id"], ["cells.id"]),
        sa.ForeignKeyConstraint(["idea_id"], ["ideas.id"]),
    )

    op.create_table(
        "cell_participations",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("cell_id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("voted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["cell_id"], ["cells.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["participants.id"]),
        sa.UniqueConstraint("cell_id", "user_id", name="uq_participations_cell_user"),
    )
    op.create_index("ix_participations_user_id", "cell_participations", ["user_id"])

    op.create_table(
        "votes",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("cell_id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("idea_id", _uuid(), nullable=False),
        sa.Column("xp_points", sa.Integer(), nullable=False),
        sa.Column("voted_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["cell_id"], ["cells.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["participants.id"]),
        sa.ForeignKeyConstraint(["idea_id"], ["ideas.id"]),
        sa.UniqueConstraint("cell_id", "user_id", "idea_id", name="uq_votes_cell_user_idea"),
    )
    op.create_index("ix_votes_idea_id", "votes", ["idea_id"])
    op.create_index("ix_votes_cell_id", "votes", ["cell_id"])

    op.create_table(
        "comments",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("cell_id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("idea_id", _uuid(), nullable=True),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("upvote_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reach_tier", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["cell_id"], ["cells.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["participants.id"]),
        sa.ForeignKeyConstraint(["idea_id"], ["ideas.id"]),
    )
    op.create_index("ix_comments_cell_id", "comments", ["cell_id"])
    op.create_index("ix_comments_idea_id", "comments", ["idea_id"])

    op.create_table(
        "comment_upvotes",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("comment_id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["comment_id"], ["comments.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["participants.id"]),
        sa.UniqueConstraint("comment_id", "user_id", name="uq_comment_upvotes_comment_user"),
    )

    op.create_table(
        "events",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("actor_id", _uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["actor_id"], ["participants.id"]),
    )
    op.create_index("ix_events_created_at", "events", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_events_created_at", table_name="events")
    op.drop_table("events")
    op.drop_table("comment_upvotes")
    op.drop_index("ix_comments_idea_id", table_name="comments")
    op.drop_index("ix_comments_cell_id", table_name="comments")
    op.drop_table("comments")
    op.drop_index("ix_votes_cell_id", table_name="votes")
    op.drop_index("ix_votes_idea_id", table_name="votes")
    op.drop_table("votes")
    op.drop_index("ix_participations_user_id", table_name="cell_participations")
    op.drop_table("cell_participations")
    op.drop_table("cell_ideas")
    op.drop_index("ix_cells_status", table_name="cells")
    op.drop_index("ix_cells_deliberation_tier", table_name="cells")
    op.drop_table("cells")
    op.drop_index("ix_ideas_deliberation_status", table_name="ideas")
    op.drop_table("ideas")
    op.drop_table("deliberation_members")
    op.drop_index("ix_deliberations_phase", table_name="deliberations")
    op.drop_table("deliberations")
    op.drop_table("participants")
