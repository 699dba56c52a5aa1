"""
VoxNotes Backend — Stuck Job Recovery
=======================================

What:  Releases claims held by workers that died (or hung) mid-processing.
How:   A note is stuck when processing_started_at is set, processed_at is
       not, and the claim is older than the threshold. Each stuck note is
       reset with a compare-and-swap on the claim timestamp the sweep
       observed, so a worker that finishes (or a new claim that lands)
       between the read and the reset wins and the reset is a no-op.
       Transcription and analysis are never touched: the next batch picks
       the note up and resumes from its last checkpoint.
Who:   POST /api/process/reset (cron) and the health endpoint (stats).
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from voxnotes.config import settings
from voxnotes.models.note import utc_now
from voxnotes.schemas.processing import RecoveryStats, ResetResult
from voxnotes.services.note_store import NoteStore

logger = logging.getLogger(__name__)


class StuckJobRecovery:

    def __init__(
        self,
        store: NoteStore,
        threshold_minutes: int = settings.stuck_threshold_minutes,
        batch_size: int = settings.stuck_reset_batch_size,
        max_attempts: int = settings.max_processing_attempts,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.threshold_minutes = threshold_minutes
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self._clock = clock

    async def reset_stuck(
        self,
        threshold_minutes: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> ResetResult:
        minutes = threshold_minutes or self.threshold_minutes
        stale_before = self._clock() - timedelta(minutes=minutes)
        stuck = await self.store.list_stuck_notes(stale_before, limit=batch_size or self.batch_size)

        reset = 0
        for note in stuck:
            if await self.store.reset_stuck(note.id, note.processing_started_at):
                reset += 1
                logger.info(
                    "Reset stuck note %s (claimed at %s, %d attempt(s))",
                    note.id, note.processing_started_at, note.processing_attempts,
                )
            else:
                logger.info("Note %s changed before reset, leaving it alone", note.id)

        if stuck:
            logger.info("Stuck sweep: reset %d of %d note(s) older than %d min",
                        reset, len(stuck), minutes)
        return ResetResult(reset=reset, examined=len(stuck))

    async def stats(self, threshold_minutes: Optional[int] = None) -> RecoveryStats:
        minutes = threshold_minutes or self.threshold_minutes
        counts = await self.store.recovery_counts(
            stale_before=self._clock() - timedelta(minutes=minutes),
            max_attempts=self.max_attempts,
        )
        return RecoveryStats(threshold_minutes=minutes, **counts)
