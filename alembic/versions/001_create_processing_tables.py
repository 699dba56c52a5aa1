"""Create notes, processing_attempts and api_usage tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

What:  Initial schema for the note processing orchestrator.
How:   Portable column types (Uuid, TIMESTAMP WITH TIME ZONE, JSON with a
       JSONB variant on PostgreSQL) so the same migration runs on SQLite
       for local development.

Rollback: downgrade() drops all three tables (destructive).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "notes",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False,
                  comment="Owner identifier; the only link to user records"),
        sa.Column("audio_ref", sa.String(512), nullable=False,
                  comment="Blob reference resolved by the audio store"),
        sa.Column("audio_size_bytes", sa.BigInteger(), nullable=True,
                  comment="Recording size; summed for the storage quota"),
        sa.Column("recorded_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("transcription", sa.Text(), nullable=True,
                  comment="Checkpointed as soon as transcription succeeds"),
        sa.Column("analysis", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
                  nullable=True),
        sa.Column("processing_started_at", sa.TIMESTAMP(timezone=True), nullable=True,
                  comment="Claim timestamp; NULL when no worker holds the note"),
        sa.Column("processed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("processing_attempts", sa.Integer(), nullable=False,
                  server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("last_error_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notes_owner_id", "notes", ["owner_id"])
    # Batch selection: pending notes, oldest first
    op.create_index("idx_notes_pending", "notes", ["processed_at", "recorded_at"])
    # Stuck-job sweep
    op.create_index("idx_notes_processing_started_at", "notes", ["processing_started_at"])

    op.create_table(
        "processing_attempts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("note_id", sa.Uuid(), nullable=False),
        sa.Column("attempted_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_processing_attempts_owner_time", "processing_attempts",
                    ["owner_id", "attempted_at"])

    op.create_table(
        "api_usage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("usage_date", sa.Date(), nullable=False),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_id", "usage_date", name="uq_api_usage_owner_date"),
    )


def downgrade() -> None:
    op.drop_table("api_usage")
    op.drop_index("idx_processing_attempts_owner_time", table_name="processing_attempts")
    op.drop_table("processing_attempts")
    op.drop_index("idx_notes_processing_started_at", table_name="notes")
    op.drop_index("idx_notes_pending", table_name="notes")
    op.drop_index("ix_notes_owner_id", table_name="notes")
    op.drop_table("notes")
