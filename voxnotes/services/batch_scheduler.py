"""
VoxNotes Backend — Batch Scheduler
====================================

What:  Picks up a bounded set of pending notes and processes them with a
       bounded worker pool.
Who:   The cron trigger (POST /api/process/batch).

Selection:
    processed_at IS NULL, unclaimed (or claimed longer ago than the stuck
    threshold), fewer than `max_processing_attempts` claims, oldest
    recorded_at first, at most `max_per_owner` notes per owner per batch.

Concurrency:
    asyncio.gather over all selected notes, gated by a Semaphore of
    min(batch_size, max_concurrency). Several scheduler runs may overlap;
    the per-note claim keeps them from doing the same work twice.

Isolation:
    Each worker catches everything its note raises, so one note's failure
    is counted and reported without cancelling its siblings.
"""

import asyncio
import logging
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, Union

from voxnotes.config import settings
from voxnotes.models.note import Note, utc_now
from voxnotes.schemas.processing import BatchError, BatchResult, ProcessOutcome, ProcessResult
from voxnotes.services.error_classifier import classify_error
from voxnotes.services.note_processor import NoteProcessor
from voxnotes.services.note_store import NoteStore

logger = logging.getLogger(__name__)

SKIPPED_OUTCOMES = frozenset({
    ProcessOutcome.ALREADY_PROCESSED,
    ProcessOutcome.BUSY,
    ProcessOutcome.QUOTA_EXCEEDED,
})

WorkerOutcome = Tuple[Note, Union[ProcessResult, Exception]]


class BatchScheduler:

    def __init__(
        self,
        store: NoteStore,
        processor: NoteProcessor,
        batch_size: int = settings.batch_size,
        max_concurrency: int = settings.batch_max_concurrency,
        max_per_owner: Optional[int] = settings.batch_max_per_owner,
        max_errors: int = settings.batch_max_errors,
        max_attempts: Optional[int] = settings.max_processing_attempts,
        stuck_threshold_minutes: int = settings.stuck_threshold_minutes,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.processor = processor
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self.max_per_owner = max_per_owner
        self.max_errors = max_errors
        self.max_attempts = max_attempts
        self.stuck_threshold = timedelta(minutes=stuck_threshold_minutes)
        self._clock = clock

    async def process_next_batch(self, batch_size: Optional[int] = None) -> BatchResult:
        """Select up to `batch_size` pending notes and process them concurrently."""
        size = batch_size or self.batch_size
        start_time = time.perf_counter()

        notes = await self.store.list_eligible_notes(
            limit=size,
            stale_before=self._clock() - self.stuck_threshold,
            max_per_owner=self.max_per_owner,
            max_attempts=self.max_attempts,
        )
        if not notes:
            logger.info("Batch: no eligible notes")
            return BatchResult(duration_ms=round((time.perf_counter() - start_time) * 1000, 2))

        semaphore = asyncio.Semaphore(min(size, self.max_concurrency))

        async def worker(note: Note) -> WorkerOutcome:
            async with semaphore:
                try:
                    return note, await self.processor.process(note.id)
                except Exception as e:
                    logger.error("Batch worker for note %s raised: %s", note.id, str(e),
                                 exc_info=True)
                    return note, e

        logger.info("Batch: processing %d note(s) with %d worker(s)",
                    len(notes), min(size, self.max_concurrency))
        outcomes = await asyncio.gather(*(worker(note) for note in notes))

        result = self._aggregate(outcomes)
        result.duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        logger.info(
            "Batch complete: %d processed, %d failed, %d skipped of %d selected in %.0fms",
            result.processed, result.failed, result.skipped, result.selected, result.duration_ms,
        )
        return result

    def _aggregate(self, outcomes: List[WorkerOutcome]) -> BatchResult:
        result = BatchResult(selected=len(outcomes))
        breakdown: Counter = Counter()

        for note, outcome in outcomes:
            if isinstance(outcome, Exception):
                result.failed += 1
                breakdown[classify_error(outcome).error_type.value] += 1
                self._add_error(result, note, getattr(outcome, "message", None)
                                or "Unexpected error while processing the note")
            elif outcome.outcome == ProcessOutcome.SUCCESS:
                result.processed += 1
            elif outcome.outcome in SKIPPED_OUTCOMES:
                result.skipped += 1
            else:
                result.failed += 1
                error = outcome.error
                breakdown[error.error_type if error else "unknown"] += 1
                self._add_error(result, note, error.message if error else "Processing failed")

        result.error_breakdown = dict(breakdown)
        return result

    def _add_error(self, result: BatchResult, note: Note, message: str) -> None:
        if len(result.errors) < self.max_errors:
            result.errors.append(BatchError(note_id=note.id, message=message))
        else:
            result.errors_truncated += 1
