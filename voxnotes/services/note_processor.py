"""
VoxNotes Backend — Note Processor (Per-Note State Machine)
============================================================

What:  Drives one note from Unclaimed to Completed (or Failed).
Who:   The single-note trigger (POST /api/process) and the BatchScheduler.

State Machine:
    ┌───────────┐   ┌─────────┐   ┌──────────────┐   ┌───────────┐   ┌───────────┐
    │ Unclaimed │──▶│ Claimed │──▶│ Transcribing │──▶│ Analyzing │──▶│ Completed │
    └───────────┘   └────┬────┘   └──────┬───────┘   └─────┬─────┘   └───────────┘
                         │               │                 │
                         └───────────────┴────────┬────────┘
                                                  ▼
                                             ┌────────┐
                                             │ Failed │  (claim released, error recorded)
                                             └────────┘

Side-effect Ordering:
    1. Idempotence: a completed note returns ALREADY_PROCESSED, no calls made
    2. Quota check (read-only; never mutates the note)
    3. Claim (atomic conditional UPDATE); refused → BUSY
    4. Transcription, checkpointed immediately (skipped when already present)
    5. Analysis, then analysis + processed_at written and the claim cleared
    Quota, busy and already-processed are result variants, not exceptions.

Failure Handling:
    Any VoxNotesError after the claim is recorded on the note (error_message,
    last_error_at), the claim is released, and a FAILED result carries the
    classified error. Anything unexpected is logged with its traceback and
    reported as InternalError, so no exception escapes `process`.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from voxnotes.config import settings
from voxnotes.exceptions import (
    ConcurrentModificationError,
    DatabaseError,
    InternalError,
    NotFoundError,
    QuotaUnavailableError,
    VoxNotesError,
)
from voxnotes.models.note import Note, as_utc, utc_now
from voxnotes.schemas.processing import (
    ErrorInfo,
    ProcessingStage,
    ProcessOutcome,
    ProcessResult,
)
from voxnotes.services.analysis_stage import AnalysisStage
from voxnotes.services.audio_store import AudioStore
from voxnotes.services.error_classifier import classify_error, error_category
from voxnotes.services.note_store import NoteStore
from voxnotes.services.quota_guard import QuotaGuard
from voxnotes.services.retry_executor import RetryExecutor
from voxnotes.services.transcription_stage import TranscriptionStage

logger = logging.getLogger(__name__)

STORAGE_KEY = "storage"


def build_error_info(exc: VoxNotesError, stage: Optional[ProcessingStage] = None) -> ErrorInfo:
    """Caller-safe description of a failure. Never includes provider internals."""
    retry_after = getattr(exc, "retry_after", None) or getattr(exc, "recovery_time", None)
    return ErrorInfo(
        error=exc.error_code,
        category=error_category(exc),
        error_type=classify_error(exc).error_type.value,
        message=exc.message,
        retryable=exc.retryable,
        stage=stage,
        attempts=exc.attempts,
        retry_after=int(retry_after) if retry_after else None,
        status_code=exc.status_code,
    )


class NoteProcessor:

    def __init__(
        self,
        store: NoteStore,
        quota_guard: QuotaGuard,
        audio_store: AudioStore,
        executor: RetryExecutor,
        transcription_stage: TranscriptionStage,
        analysis_stage: AnalysisStage,
        stuck_threshold_minutes: int = settings.stuck_threshold_minutes,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.quota_guard = quota_guard
        self.audio_store = audio_store
        self.executor = executor
        self.transcription_stage = transcription_stage
        self.analysis_stage = analysis_stage
        self.stuck_threshold = timedelta(minutes=stuck_threshold_minutes)
        self._clock = clock

    async def process(
        self,
        note_id: UUID,
        owner_id: Optional[str] = None,
        force_reprocess: bool = False,
    ) -> ProcessResult:
        """
        Process one note.

        Args:
            note_id:         Note to process.
            owner_id:        Caller identity; a note owned by someone else is
                             reported as not found. None skips the ownership
                             check (scheduler path).
            force_reprocess: Re-run both stages even on a completed note.

        Raises:
            NotFoundError: the note does not exist (or is not the caller's).
        """
        start_time = time.perf_counter()
        note = await self.store.get_note(note_id)
        if note is None or (owner_id is not None and note.owner_id != owner_id):
            raise NotFoundError(resource="Note", resource_id=str(note_id))

        if note.processed_at is not None and not force_reprocess:
            logger.info("Note %s already processed, skipping", note_id)
            return self._already_processed(note, start_time)

        # ── Admission ─────────────────────────────────────────────────────
        quota = await self.quota_guard.check(note.owner_id)
        if not quota.allowed:
            if not quota.verified:
                return self._result(
                    note_id,
                    ProcessOutcome.FAILED,
                    start_time,
                    error=build_error_info(QuotaUnavailableError(), ProcessingStage.UNCLAIMED),
                    quota=quota,
                )
            return self._result(note_id, ProcessOutcome.QUOTA_EXCEEDED, start_time, quota=quota)

        # ── Claim ─────────────────────────────────────────────────────────
        claimed_at = await self.store.claim_note(
            note_id,
            stale_before=self._clock() - self.stuck_threshold,
            force_reprocess=force_reprocess,
        )
        if claimed_at is None:
            current = await self.store.get_note(note_id)
            if current is not None and current.processed_at is not None and not force_reprocess:
                return self._already_processed(current, start_time)
            return self._result(note_id, ProcessOutcome.BUSY, start_time)

        try:
            await self.quota_guard.record_processing_attempt(note.owner_id, note_id)
        except SQLAlchemyError as e:
            logger.error("Failed to record processing attempt for note %s: %s", note_id, str(e))

        return await self._run_stages(note, claimed_at, force_reprocess, start_time)

    async def _run_stages(
        self,
        note: Note,
        claimed_at: datetime,
        force_reprocess: bool,
        start_time: float,
    ) -> ProcessResult:
        stage = ProcessingStage.CLAIMED
        tokens = 0
        try:
            transcription = note.transcription
            if not transcription or force_reprocess:
                stage = ProcessingStage.TRANSCRIBING
                logger.info("Note %s: %s", note.id, stage.value)
                fetched = await self.executor.execute(
                    STORAGE_KEY, lambda: self.audio_store.fetch_audio(note.audio_ref)
                )
                audio, mime_type = fetched.value
                transcribed = await self.transcription_stage.run(audio, mime_type)
                transcription = transcribed.text
                tokens += transcribed.total_tokens

                checkpoint = {"transcription": transcription}
                if note.audio_size_bytes is None:
                    checkpoint["audio_size_bytes"] = len(audio)
                await self.store.update_note(note.id, checkpoint, claimed_at=claimed_at)
            else:
                logger.info("Note %s: resuming from stored transcription", note.id)

            stage = ProcessingStage.ANALYZING
            logger.info("Note %s: %s", note.id, stage.value)
            knowledge = await self.store.knowledge_context(note.owner_id, exclude_note_id=note.id)
            analyzed = await self.analysis_stage.run(
                transcription, knowledge, as_utc(note.recorded_at)
            )
            tokens += analyzed.total_tokens
            analysis = analyzed.analysis.to_storage()

            await self.store.update_note(
                note.id,
                {
                    "analysis": analysis,
                    "processed_at": self._clock(),
                    "processing_started_at": None,
                    "error_message": None,
                    "last_error_at": None,
                },
                claimed_at=claimed_at,
            )
            stage = ProcessingStage.COMPLETED
        except ConcurrentModificationError:
            logger.warning("Note %s: claim lost during %s, abandoning", note.id, stage.value)
            return self._result(note.id, ProcessOutcome.BUSY, start_time)
        except VoxNotesError as e:
            return await self._fail(note.id, claimed_at, e, stage, start_time)
        except Exception as e:
            logger.error("Unexpected error processing note %s during %s: %s",
                         note.id, stage.value, str(e), exc_info=True)
            error = InternalError(context={"original_error": type(e).__name__})
            return await self._fail(note.id, claimed_at, error, stage, start_time)

        await self._record_tokens(note.owner_id, tokens)
        logger.info("Note %s: %s in %.0fms", note.id, stage.value,
                    (time.perf_counter() - start_time) * 1000)
        return self._result(
            note.id,
            ProcessOutcome.SUCCESS,
            start_time,
            transcription=transcription,
            analysis=analysis,
            warning=analyzed.warning,
        )

    async def _fail(
        self,
        note_id: UUID,
        claimed_at: datetime,
        error: VoxNotesError,
        stage: ProcessingStage,
        start_time: float,
    ) -> ProcessResult:
        logger.warning(
            "Note %s failed during %s: %s [%s, attempts=%s]",
            note_id, stage.value, error.message, error.error_code, error.attempts,
        )
        try:
            await self.store.release_claim(note_id, claimed_at, error.message)
        except DatabaseError:
            # The stuck-job sweep will release the claim eventually
            logger.error("Could not release claim on note %s after failure", note_id)
        return self._result(
            note_id, ProcessOutcome.FAILED, start_time, error=build_error_info(error, stage)
        )

    async def _record_tokens(self, owner_id: str, tokens: int) -> None:
        try:
            await self.quota_guard.record_token_usage(owner_id, tokens)
        except SQLAlchemyError as e:
            logger.error("Failed to record %d tokens for %s: %s", tokens, owner_id, str(e))

    def _already_processed(self, note: Note, start_time: float) -> ProcessResult:
        return self._result(
            note.id,
            ProcessOutcome.ALREADY_PROCESSED,
            start_time,
            transcription=note.transcription,
            analysis=note.analysis,
        )

    @staticmethod
    def _result(note_id: UUID, outcome: ProcessOutcome, start_time: float, **fields) -> ProcessResult:
        return ProcessResult(
            note_id=note_id,
            outcome=outcome,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            **fields,
        )
