"""
VoxNotes Backend — Stuck Job Recovery Tests
"""

import pytest

from tests.sample_data import utc
from voxnotes.services.stuck_job_recovery import StuckJobRecovery


class TestResetStuck:

    @pytest.mark.asyncio
    async def test_resets_only_claims_older_than_threshold(self, store, make_note):
        old = await make_note(processing_started_at=utc(20), transcription="partial work")
        recent = await make_note(processing_started_at=utc(5))

        result = await StuckJobRecovery(store, threshold_minutes=15).reset_stuck()

        assert result.reset == 1
        assert result.examined == 1
        reset_note = await store.get_note(old.id)
        assert reset_note.processing_started_at is None
        assert reset_note.transcription == "partial work"
        assert (await store.get_note(recent.id)).processing_started_at is not None

    @pytest.mark.asyncio
    async def test_threshold_override(self, store, make_note):
        await make_note(processing_started_at=utc(5))
        result = await StuckJobRecovery(store, threshold_minutes=15).reset_stuck(threshold_minutes=1)
        assert result.reset == 1

    @pytest.mark.asyncio
    async def test_completed_notes_are_never_reset(self, store, make_note):
        await make_note(processing_started_at=utc(30), processed_at=utc(29),
                        analysis={"summary": "done"})
        result = await StuckJobRecovery(store, threshold_minutes=15).reset_stuck()
        assert result.examined == 0

    @pytest.mark.asyncio
    async def test_batch_size_limits_one_sweep(self, store, make_note):
        for i in range(3):
            await make_note(owner_id=f"user-{i}", processing_started_at=utc(30 + i))

        recovery = StuckJobRecovery(store, threshold_minutes=15, batch_size=2)

        assert (await recovery.reset_stuck()).reset == 2
        assert (await recovery.reset_stuck()).reset == 1
        assert (await recovery.reset_stuck()).reset == 0

    @pytest.mark.asyncio
    async def test_reset_notes_can_be_claimed(self, store, make_note):
        note = await make_note(processing_started_at=utc(20))
        await StuckJobRecovery(store, threshold_minutes=15).reset_stuck()
        assert await store.claim_note(note.id) is not None


class TestStats:

    @pytest.mark.asyncio
    async def test_stats(self, store, make_note):
        await make_note(processing_started_at=utc(20))
        await make_note(processing_started_at=utc(5))
        await make_note(error_message="Transcription was empty")
        await make_note(error_message="again", processing_attempts=5)

        stats = await StuckJobRecovery(store, threshold_minutes=15, max_attempts=5).stats()

        assert stats.stuck == 1
        assert stats.failed == 2
        assert stats.exhausted == 1
        assert stats.threshold_minutes == 15
