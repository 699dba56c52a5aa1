"""
VoxNotes Backend — Quota Guard
================================

What:  Per-owner admission control for processing (and uploads).
Why:   Transcription and analysis cost real money per call; one owner must
       not be able to burn the whole provider budget.
How:   Usage is recomputed from the database on every decision:
           notes_count          COUNT(notes)                 for the owner
           processing_this_hour COUNT(processing_attempts)   in the trailing hour
           tokens_today         api_usage.tokens_used        for today (UTC)
           storage_mb           SUM(notes.audio_size_bytes)  / 1 MiB
       and compared against the configured limits in a fixed order
       (notes, processing, tokens, storage). The first violated dimension
       is reported.
Who:   NoteProcessor (check, record_*), the stats route (status).

Fail-closed Policy:
    If usage cannot be computed (database down, query error) the guard
    denies with `verified=False` and a reason distinct from any quota
    violation, so callers can answer "try later" instead of "over quota".
"""

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voxnotes.config import settings
from voxnotes.exceptions import QuotaUnavailableError
from voxnotes.models.note import ApiUsage, Note, ProcessingAttempt, utc_now
from voxnotes.schemas.processing import QuotaCheck, QuotaLimits, QuotaStatus, QuotaUsage

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024

UNVERIFIED_REASON = "Unable to verify quota at this time. Please try again shortly."

# Driver-level failures (refused connection, pool timeout) are not wrapped by SQLAlchemy
USAGE_LOOKUP_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def limits_from_settings() -> QuotaLimits:
    return QuotaLimits(
        max_notes_per_user=settings.quota_max_notes_per_user,
        max_processing_per_hour=settings.quota_max_processing_per_hour,
        max_tokens_per_day=settings.quota_max_tokens_per_day,
        max_storage_mb=settings.quota_max_storage_mb,
    )


class QuotaGuard:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        limits: Optional[QuotaLimits] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.limits = limits or limits_from_settings()
        self._clock = clock

    # ── Usage ─────────────────────────────────────────────────────────────

    async def usage(self, owner_id: str) -> QuotaUsage:
        """Current usage for `owner_id`. Raises one of USAGE_LOOKUP_ERRORS on DB failure."""
        now = self._clock()
        async with self.session_factory() as session:
            notes_count = await session.scalar(
                select(func.count(Note.id)).where(Note.owner_id == owner_id)
            )
            processing = await session.scalar(
                select(func.count(ProcessingAttempt.id)).where(
                    ProcessingAttempt.owner_id == owner_id,
                    ProcessingAttempt.attempted_at >= now - timedelta(hours=1),
                )
            )
            tokens = await session.scalar(
                select(ApiUsage.tokens_used).where(
                    ApiUsage.owner_id == owner_id,
                    ApiUsage.usage_date == now.date(),
                )
            )
            storage_bytes = await session.scalar(
                select(func.coalesce(func.sum(Note.audio_size_bytes), 0)).where(
                    Note.owner_id == owner_id
                )
            )
        return QuotaUsage(
            notes_count=notes_count or 0,
            processing_this_hour=processing or 0,
            tokens_today=tokens or 0,
            storage_mb=round((storage_bytes or 0) / BYTES_PER_MB, 2),
        )

    # ── Decisions ─────────────────────────────────────────────────────────

    async def check(self, owner_id: str) -> QuotaCheck:
        """
        May `owner_id` process one more note right now?

        The note being processed already exists, so the notes ceiling is
        only violated when the count is strictly above the limit.
        """
        try:
            usage = await self.usage(owner_id)
        except USAGE_LOOKUP_ERRORS as e:
            logger.error("Quota usage lookup failed for %s: %s", owner_id, str(e))
            return QuotaCheck(allowed=False, reason=UNVERIFIED_REASON, verified=False,
                              limits=self.limits)

        limits = self.limits
        reason = None
        if usage.notes_count > limits.max_notes_per_user:
            reason = (
                f"Note limit of {limits.max_notes_per_user} exceeded. "
                "Please delete some notes to continue processing."
            )
        elif usage.processing_this_hour >= limits.max_processing_per_hour:
            reason = (
                f"Processing limit of {limits.max_processing_per_hour} per hour exceeded. "
                "Please wait before processing more notes."
            )
        elif usage.tokens_today >= limits.max_tokens_per_day:
            reason = (
                f"Daily token limit of {limits.max_tokens_per_day} reached. "
                "Processing resumes tomorrow (UTC)."
            )
        elif usage.storage_mb >= limits.max_storage_mb:
            reason = (
                f"Storage limit of {limits.max_storage_mb}MB exceeded. "
                "Please delete some notes to free up space."
            )

        if reason:
            logger.info("Quota denied for %s: %s", owner_id, reason)
        return QuotaCheck(allowed=reason is None, reason=reason, usage=usage, limits=limits)

    async def check_upload(self, owner_id: str) -> QuotaCheck:
        """May `owner_id` store one more recording? Only notes and storage apply."""
        try:
            usage = await self.usage(owner_id)
        except USAGE_LOOKUP_ERRORS as e:
            logger.error("Quota usage lookup failed for %s: %s", owner_id, str(e))
            return QuotaCheck(allowed=False, reason=UNVERIFIED_REASON, verified=False,
                              limits=self.limits)

        reason = None
        if usage.notes_count >= self.limits.max_notes_per_user:
            reason = (
                f"Maximum of {self.limits.max_notes_per_user} notes reached. "
                "Please delete some notes to upload new ones."
            )
        elif usage.storage_mb >= self.limits.max_storage_mb:
            reason = (
                f"Storage limit of {self.limits.max_storage_mb}MB exceeded. "
                "Please delete some notes to free up space."
            )
        return QuotaCheck(allowed=reason is None, reason=reason, usage=usage, limits=self.limits)

    async def status(self, owner_id: str) -> QuotaStatus:
        try:
            usage = await self.usage(owner_id)
        except USAGE_LOOKUP_ERRORS as e:
            raise QuotaUnavailableError(context={"owner_id": owner_id}) from e
        return QuotaStatus(usage=usage, limits=self.limits, percentages=self._percentages(usage))

    def _percentages(self, usage: QuotaUsage) -> Dict[str, float]:
        limits = self.limits
        return {
            "notes": round(usage.notes_count / limits.max_notes_per_user * 100, 1),
            "processing": round(usage.processing_this_hour / limits.max_processing_per_hour * 100, 1),
            "tokens": round(usage.tokens_today / limits.max_tokens_per_day * 100, 1),
            "storage": round(usage.storage_mb / limits.max_storage_mb * 100, 1),
        }

    # ── Accounting ────────────────────────────────────────────────────────

    async def record_processing_attempt(self, owner_id: str, note_id: UUID) -> None:
        async with self.session_factory() as session:
            session.add(ProcessingAttempt(owner_id=owner_id, note_id=note_id,
                                          attempted_at=self._clock()))
            await session.commit()

    async def record_token_usage(self, owner_id: str, tokens: int) -> None:
        """Adds `tokens` to today's counter, creating the row on first use."""
        if tokens <= 0:
            return
        today: date = self._clock().date()
        async with self.session_factory() as session:
            bumped = await session.execute(
                update(ApiUsage)
                .where(ApiUsage.owner_id == owner_id, ApiUsage.usage_date == today)
                .values(tokens_used=ApiUsage.tokens_used + tokens)
            )
            if bumped.rowcount == 0:
                session.add(ApiUsage(owner_id=owner_id, usage_date=today, tokens_used=tokens))
            try:
                await session.commit()
            except IntegrityError:
                # Another worker inserted today's row first
                await session.rollback()
                await session.execute(
                    update(ApiUsage)
                    .where(ApiUsage.owner_id == owner_id, ApiUsage.usage_date == today)
                    .values(tokens_used=ApiUsage.tokens_used + tokens)
                )
                await session.commit()
        logger.debug("Recorded %d tokens for %s", tokens, owner_id)
