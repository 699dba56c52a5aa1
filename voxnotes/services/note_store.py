"""
VoxNotes Backend — Note Store
===============================

What:  Storage collaborator for the orchestrator: reads notes, claims them,
       checkpoints stage output and sweeps stuck claims.
Why:   The claim and the stuck-job reset are the only shared mutable state
       in the system. Both are expressed here as single conditional UPDATEs
       so two workers (or a worker and the sweep) can never both win.
How:   Every operation opens its own short-lived session from the injected
       `async_sessionmaker` and commits before returning; no session is held
       across an external provider call.
Who:   NoteProcessor, BatchScheduler, StuckJobRecovery and the HTTP routes.

Claim Protocol:
    claim_note:    SET processing_started_at = now, processing_attempts += 1
                   WHERE id = :id AND (processing_started_at IS NULL
                                       OR processing_started_at < :stale_before)
                         AND processed_at IS NULL  (unless force_reprocess)
                   → returns `now` (the claim token) or None
    update_note:   guarded writes add WHERE processing_started_at = :token, so
                   a worker whose claim was swept and re-taken cannot overwrite
                   the new owner's progress
    reset_stuck:   SET processing_started_at = NULL
                   WHERE id = :id AND processing_started_at = :observed
                   (compare-and-swap against the value the sweep saw)

Database errors are wrapped in DatabaseError; SQL detail stays in the logs.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voxnotes.exceptions import ConcurrentModificationError, DatabaseError, NotFoundError
from voxnotes.models.note import Note, NoteStatus, utc_now

logger = logging.getLogger(__name__)

# Columns the orchestrator may write through update_note
UPDATABLE_FIELDS = frozenset({
    "transcription",
    "analysis",
    "audio_size_bytes",
    "processing_started_at",
    "processed_at",
    "error_message",
    "last_error_at",
})


def _unclaimed_or_stale(stale_before: Optional[datetime]):
    if stale_before is None:
        return Note.processing_started_at.is_(None)
    return or_(
        Note.processing_started_at.is_(None),
        Note.processing_started_at < stale_before,
    )


class NoteStore:
    """Async SQLAlchemy implementation of the note storage contract."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self._clock = clock

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("Database error during %s: %s", operation, str(e), exc_info=True)
                raise DatabaseError(context={"operation": operation}) from e

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_note(self, note_id: UUID) -> Optional[Note]:
        async with self._session("get_note") as session:
            return await session.get(Note, note_id)

    async def list_eligible_notes(
        self,
        limit: int,
        stale_before: Optional[datetime] = None,
        max_per_owner: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> List[Note]:
        """
        Oldest-first pending notes, at most `max_per_owner` per owner.

        Pending means: not processed, not claimed (or claimed before
        `stale_before`), and fewer than `max_attempts` claims so far.

        Query plan:
            row_number() OVER (PARTITION BY owner_id ORDER BY recorded_at, id)
            inside a subquery over idx_notes_pending, filtered by rank
        """
        conditions = [Note.processed_at.is_(None), _unclaimed_or_stale(stale_before)]
        if max_attempts is not None:
            conditions.append(Note.processing_attempts < max_attempts)

        ranked = (
            select(
                Note.id.label("note_id"),
                func.row_number()
                .over(partition_by=Note.owner_id, order_by=(Note.recorded_at, Note.id))
                .label("owner_rank"),
            )
            .where(and_(*conditions))
            .subquery()
        )
        query = select(Note).join(ranked, Note.id == ranked.c.note_id)
        if max_per_owner is not None:
            query = query.where(ranked.c.owner_rank <= max_per_owner)
        query = query.order_by(Note.recorded_at.asc(), Note.id.asc()).limit(limit)

        async with self._session("list_eligible_notes") as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_stuck_notes(self, stale_before: datetime, limit: int) -> List[Note]:
        """Claimed, unfinished notes whose claim predates `stale_before`, oldest claim first."""
        query = (
            select(Note)
            .where(
                Note.processing_started_at.is_not(None),
                Note.processing_started_at < stale_before,
                Note.processed_at.is_(None),
            )
            .order_by(Note.processing_started_at.asc())
            .limit(limit)
        )
        async with self._session("list_stuck_notes") as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def knowledge_context(
        self,
        owner_id: str,
        exclude_note_id: Optional[UUID] = None,
        limit: int = 5,
    ) -> List[str]:
        """Topic and summary of the owner's most recently completed notes."""
        query = (
            select(Note.analysis)
            .where(
                Note.owner_id == owner_id,
                Note.processed_at.is_not(None),
                Note.analysis.is_not(None),
            )
            .order_by(Note.processed_at.desc())
            .limit(limit)
        )
        if exclude_note_id is not None:
            query = query.where(Note.id != exclude_note_id)

        async with self._session("knowledge_context") as session:
            rows = (await session.execute(query)).scalars().all()

        context = []
        for analysis in rows:
            if not isinstance(analysis, dict) or not analysis.get("summary"):
                continue
            topic = analysis.get("topic")
            context.append(f"{topic}: {analysis['summary']}" if topic else analysis["summary"])
        return context

    async def processing_stats(self, owner_id: str) -> Dict[str, int]:
        """Note counts per derived status for one owner."""
        status = case(
            (Note.processing_started_at.is_not(None), NoteStatus.IN_PROGRESS.value),
            (Note.processed_at.is_not(None), NoteStatus.COMPLETED.value),
            (and_(Note.error_message.is_not(None), Note.error_message != ""),
             NoteStatus.FAILED.value),
            (and_(Note.transcription.is_not(None), Note.transcription != ""),
             NoteStatus.ANALYZING_ONLY.value),
            else_=NoteStatus.UNPROCESSED.value,
        ).label("status")
        query = select(status, func.count()).where(Note.owner_id == owner_id).group_by(status)

        async with self._session("processing_stats") as session:
            rows = (await session.execute(query)).all()

        counts = {s.value: 0 for s in NoteStatus}
        for label, count in rows:
            counts[label] = count
        counts["total"] = sum(counts.values())
        return counts

    async def recovery_counts(self, stale_before: datetime, max_attempts: int) -> Dict[str, int]:
        """Counts of stuck, failed-and-idle and attempt-exhausted notes across all owners."""
        pending = Note.processed_at.is_(None)
        query = select(
            func.count(case((and_(pending, Note.processing_started_at < stale_before), 1))),
            func.count(case((and_(pending, Note.processing_started_at.is_(None),
                                  Note.error_message.is_not(None)), 1))),
            func.count(case((and_(pending, Note.processing_attempts >= max_attempts), 1))),
        )
        async with self._session("recovery_counts") as session:
            stuck, failed, exhausted = (await session.execute(query)).one()
        return {"stuck": stuck, "failed": failed, "exhausted": exhausted}

    # ── Claim / release ───────────────────────────────────────────────────

    async def claim_note(
        self,
        note_id: UUID,
        stale_before: Optional[datetime] = None,
        force_reprocess: bool = False,
    ) -> Optional[datetime]:
        """
        Atomically claim `note_id` for one worker.

        A completed note is only claimable with `force_reprocess`, so a note
        finished by another worker after the caller's read is not redone.

        Returns the claim timestamp (pass it back as `claimed_at` on guarded
        writes) or None if the note is held by a live claim or already done.
        """
        claimed_at = self._clock()
        conditions = [Note.id == note_id, _unclaimed_or_stale(stale_before)]
        if not force_reprocess:
            conditions.append(Note.processed_at.is_(None))
        statement = (
            update(Note)
            .where(*conditions)
            .values(
                processing_started_at=claimed_at,
                processing_attempts=Note.processing_attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session("claim_note") as session:
            result = await session.execute(statement)
        if result.rowcount != 1:
            logger.info("Claim on note %s refused: already claimed or processed", note_id)
            return None
        logger.info("Note %s claimed at %s", note_id, claimed_at.isoformat())
        return claimed_at

    async def update_note(
        self,
        note_id: UUID,
        fields: Dict[str, Any],
        claimed_at: Optional[datetime] = None,
    ) -> None:
        """
        Write `fields` to the note.

        Raises:
            NotFoundError: the note does not exist.
            ConcurrentModificationError: `claimed_at` was given and the note
                is no longer held under that claim.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable through update_note: {sorted(unknown)}")

        conditions = [Note.id == note_id]
        if claimed_at is not None:
            conditions.append(Note.processing_started_at == claimed_at)
        statement = (
            update(Note)
            .where(*conditions)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        async with self._session("update_note") as session:
            result = await session.execute(statement)
            if result.rowcount == 1:
                return
            exists = await session.scalar(select(Note.id).where(Note.id == note_id))

        if exists is None:
            raise NotFoundError(resource="Note", resource_id=str(note_id))
        raise ConcurrentModificationError(note_id=str(note_id))

    async def release_claim(self, note_id: UUID, claimed_at: datetime, error_message: str) -> bool:
        """
        Record a failure and hand the note back.

        Returns False (and leaves the note alone) if the claim was already
        lost to the stuck sweep or another worker.
        """
        statement = (
            update(Note)
            .where(Note.id == note_id, Note.processing_started_at == claimed_at)
            .values(
                processing_started_at=None,
                error_message=error_message,
                last_error_at=self._clock(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session("release_claim") as session:
            result = await session.execute(statement)
        if result.rowcount != 1:
            logger.warning("Note %s: claim lost before failure could be recorded", note_id)
            return False
        return True

    async def reset_stuck(self, note_id: UUID, observed_started_at: datetime) -> bool:
        """
        Clear a stale claim if it is still the one the sweep observed.

        Transcription and analysis are left untouched, so the next pass
        resumes from whatever was checkpointed.
        """
        statement = (
            update(Note)
            .where(
                Note.id == note_id,
                Note.processing_started_at == observed_started_at,
                Note.processed_at.is_(None),
            )
            .values(processing_started_at=None)
            .execution_options(synchronize_session=False)
        )
        async with self._session("reset_stuck") as session:
            result = await session.execute(statement)
        return result.rowcount == 1
