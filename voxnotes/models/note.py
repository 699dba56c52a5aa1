"""
VoxNotes Backend — SQLAlchemy Models
======================================

What:  ORM models for `notes`, `processing_attempts` and `api_usage`.
Why:   Maps Python objects to database rows for type-safe database operations.
How:   Inherits from SQLAlchemy's DeclarativeBase; Alembic reads these for migrations.
Who:   Used by NoteStore (notes) and QuotaGuard (all three tables).

Table Design Rationale:
    notes
        The timestamps are the durable source of truth for processing state:
        - processing_started_at set, processed_at unset → claimed by one worker
        - processed_at set → transcription and analysis are both present
        - transcription set, analysis unset → resumable "analyzing-only" state
        `NoteStatus` derives an explicit enum from these fields; it is never
        stored, so the stuck-job sweep can keep reasoning on timestamps.
    processing_attempts
        One row per successful claim. The hourly processing quota counts rows
        in the trailing hour, so usage is recomputed on every decision.
    api_usage
        One row per owner per UTC day with the tokens spent that day.
"""

import enum
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from voxnotes.database import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class NoteStatus(str, enum.Enum):
    """Processing status derived from a note's timestamp/content fields."""

    UNPROCESSED = "unprocessed"
    IN_PROGRESS = "in_progress"
    ANALYZING_ONLY = "analyzing_only"
    COMPLETED = "completed"
    FAILED = "failed"


class Note(Base):
    """
    A voice recording moving through transcription and analysis.

    Lifecycle:
        1. Created by the upload collaborator (audio_ref, recorded_at)
        2. Claimed: processing_started_at = now, processing_attempts += 1
        3. Transcription checkpointed as soon as it is available
        4. Completed: analysis + processed_at written, claim cleared
        5. On failure: error_message / last_error_at written, claim cleared
    """

    __tablename__ = "notes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Owner by value; the orchestrator never touches user records
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Opaque handle resolved by the audio store into bytes + MIME type
    audio_ref: Mapped[str] = mapped_column(String(512), nullable=False)
    audio_size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )

    # ── Stage outputs ─────────────────────────────────────────────────────
    transcription: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    analysis: Mapped[Optional[dict]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=True,
    )

    # ── Processing bookkeeping ────────────────────────────────────────────
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    # ── Indexes ───────────────────────────────────────────────────────────
    # (processed_at, recorded_at): the batch selection scans pending notes oldest first
    # processing_started_at: the stuck-job sweep
    __table_args__ = (
        Index("idx_notes_pending", "processed_at", "recorded_at"),
        Index("idx_notes_processing_started_at", "processing_started_at"),
    )

    @property
    def status(self) -> NoteStatus:
        if self.processing_started_at is not None:
            return NoteStatus.IN_PROGRESS
        if self.processed_at is not None:
            return NoteStatus.COMPLETED
        if self.error_message:
            return NoteStatus.FAILED
        if self.transcription:
            return NoteStatus.ANALYZING_ONLY
        return NoteStatus.UNPROCESSED

    def is_stuck(self, now: datetime, threshold: timedelta) -> bool:
        """Claimed, not finished, and the claim is older than `threshold`."""
        started = as_utc(self.processing_started_at)
        if started is None or self.processed_at is not None:
            return False
        return as_utc(now) - started > threshold

    def __repr__(self) -> str:
        return (
            f"<Note(id={self.id}, owner='{self.owner_id}', "
            f"status='{self.status.value}', attempts={self.processing_attempts})>"
        )


class ProcessingAttempt(Base):
    """One claimed processing attempt; counted by the hourly quota."""

    __tablename__ = "processing_attempts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    note_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_processing_attempts_owner_time", "owner_id", "attempted_at"),
    )


class ApiUsage(Base):
    """Tokens spent by an owner on one UTC day."""

    __tablename__ = "api_usage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)
    tokens_used: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "usage_date", name="uq_api_usage_owner_date"),
    )
