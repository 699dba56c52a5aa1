"""
VoxNotes Backend — Batch Scheduler Tests
==========================================

What we test:
    ✅ One failing note does not affect its siblings (4 processed / 1 failed)
    ✅ Already-processed, busy and quota outcomes count as skipped
    ✅ A worker exception is counted, not propagated
    ✅ Error list is bounded; the overflow is counted
    ✅ Worker pool never exceeds max_concurrency
    ✅ Stuck notes re-enter the batch after a reset
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from tests.sample_data import TRANSCRIPT, utc
from voxnotes.models.note import NoteStatus
from voxnotes.schemas.processing import ErrorInfo, ProcessOutcome, ProcessResult
from voxnotes.services.batch_scheduler import BatchScheduler


def fake_result(note_id, outcome: ProcessOutcome, message: str = "boom") -> ProcessResult:
    error = None
    if outcome == ProcessOutcome.FAILED:
        error = ErrorInfo(error="provider_timeout", category="ExternalServiceError",
                          error_type="timeout", message=message, retryable=True,
                          status_code=503)
    return ProcessResult(note_id=note_id, outcome=outcome, error=error)


class TestBatchWithRealProcessor:

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, orchestrator, make_note):
        notes = []
        for i in range(5):
            audio_ref = "silence.webm" if i == 2 else "memo.webm"
            notes.append(await make_note(owner_id=f"user-{i}", audio_ref=audio_ref))

        result = await orchestrator.scheduler.process_next_batch(batch_size=5)

        assert result.selected == 5
        assert result.processed == 4
        assert result.failed == 1
        assert result.skipped == 0
        assert result.error_breakdown == {"processing": 1}
        assert [e.note_id for e in result.errors] == [notes[2].id]

        for i, note in enumerate(notes):
            stored = await orchestrator.store.get_note(note.id)
            if i == 2:
                assert stored.status == NoteStatus.FAILED
                assert stored.processing_started_at is None
                assert stored.error_message
            else:
                assert stored.status == NoteStatus.COMPLETED
                assert stored.transcription == TRANSCRIPT

    @pytest.mark.asyncio
    async def test_empty_batch(self, orchestrator):
        result = await orchestrator.scheduler.process_next_batch()
        assert result.selected == 0
        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_per_owner_cap_applies(self, orchestrator, make_note):
        for _ in range(4):
            await make_note(owner_id="busy-user")

        result = await orchestrator.scheduler.process_next_batch(batch_size=5)

        assert result.selected == 2
        assert result.processed == 2

    @pytest.mark.asyncio
    async def test_reset_notes_are_picked_up_again(self, orchestrator, make_note):
        stuck = await make_note(owner_id="a", processing_started_at=utc(20),
                                transcription=TRANSCRIPT)
        await make_note(owner_id="b", processing_started_at=utc(5))

        reset = await orchestrator.recovery.reset_stuck(threshold_minutes=15)
        assert reset.reset == 1

        eligible = await orchestrator.store.list_eligible_notes(limit=10)
        assert [n.id for n in eligible] == [stuck.id]

        result = await orchestrator.scheduler.process_next_batch()
        assert result.processed == 1
        assert (await orchestrator.store.get_note(stuck.id)).status == NoteStatus.COMPLETED


class TestAggregation:

    @pytest.mark.asyncio
    async def test_outcome_buckets(self, store, make_note):
        notes = [await make_note(owner_id=f"user-{i}") for i in range(5)]
        outcomes = {
            notes[0].id: ProcessOutcome.SUCCESS,
            notes[1].id: ProcessOutcome.ALREADY_PROCESSED,
            notes[2].id: ProcessOutcome.BUSY,
            notes[3].id: ProcessOutcome.QUOTA_EXCEEDED,
            notes[4].id: ProcessOutcome.FAILED,
        }
        processor = AsyncMock()
        processor.process.side_effect = lambda note_id: fake_result(note_id, outcomes[note_id])

        result = await BatchScheduler(store, processor, batch_size=5).process_next_batch()

        assert (result.processed, result.skipped, result.failed) == (1, 3, 1)
        assert result.error_breakdown == {"timeout": 1}

    @pytest.mark.asyncio
    async def test_worker_exception_is_counted(self, store, make_note):
        ok = await make_note(owner_id="a")
        broken = await make_note(owner_id="b")

        async def process(note_id):
            if note_id == broken.id:
                raise RuntimeError("unexpected")
            return fake_result(note_id, ProcessOutcome.SUCCESS)

        processor = AsyncMock()
        processor.process.side_effect = process

        result = await BatchScheduler(store, processor).process_next_batch()

        assert result.processed == 1
        assert result.failed == 1
        assert result.errors[0].note_id == broken.id
        assert "unexpected" not in result.errors[0].message
        assert ok.id not in [e.note_id for e in result.errors]

    @pytest.mark.asyncio
    async def test_error_list_is_bounded(self, store, make_note):
        for i in range(5):
            await make_note(owner_id=f"user-{i}")
        processor = AsyncMock()
        processor.process.side_effect = lambda note_id: fake_result(note_id, ProcessOutcome.FAILED)

        result = await BatchScheduler(store, processor, batch_size=5, max_errors=2).process_next_batch()

        assert result.failed == 5
        assert len(result.errors) == 2
        assert result.errors_truncated == 3
        assert result.error_breakdown == {"timeout": 5}


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_worker_pool_is_bounded(self, store, make_note):
        for i in range(6):
            await make_note(owner_id=f"user-{i}")
        in_flight = 0
        peak = 0

        async def process(note_id):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return fake_result(note_id, ProcessOutcome.SUCCESS)

        processor = AsyncMock()
        processor.process.side_effect = process

        result = await BatchScheduler(store, processor, batch_size=6,
                                      max_concurrency=2).process_next_batch()

        assert result.processed == 6
        assert peak == 2
