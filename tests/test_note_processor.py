"""
VoxNotes Backend — Note Processor Tests
=========================================

What:  End-to-end tests of the per-note state machine against a real
       SQLite database, real audio files and mocked providers.

What we test:
    ✅ Happy path: transcription + analysis persisted, claim cleared, usage recorded
    ✅ Idempotence: completed notes cost nothing and return the stored analysis
    ✅ At most one concurrent claim per note
    ✅ Quota denial leaves the note untouched
    ✅ Checkpoint/resume: analysis failure keeps the transcription
    ✅ Failures are recorded on the note and classified in the result
    ✅ Losing the claim mid-flight abandons the note instead of overwriting
"""

import asyncio
import copy
import json
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from tests.sample_data import TRANSCRIPT, VALID_ANALYSIS, utc
from voxnotes.exceptions import NotFoundError
from voxnotes.models.note import NoteStatus, ProcessingAttempt
from voxnotes.schemas.processing import ProcessingStage, ProcessOutcome, QuotaCheck
from voxnotes.services.llm_base import ProviderReply
from voxnotes.services.quota_guard import UNVERIFIED_REASON, limits_from_settings


async def attempt_rows(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count(ProcessingAttempt.id)))


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_processes_note(self, orchestrator, make_note, transcription_provider,
                                  analysis_provider):
        note = await make_note()

        result = await orchestrator.processor.process(note.id, owner_id="user-1")

        assert result.outcome == ProcessOutcome.SUCCESS
        assert result.transcription == TRANSCRIPT
        assert result.analysis["summary"] == VALID_ANALYSIS["summary"]
        assert result.analysis["kind"] == "complete"
        assert result.warning is None
        assert result.error is None
        transcription_provider.transcribe.assert_awaited_once()
        assert transcription_provider.transcribe.await_args.args[1] == "audio/webm"
        analysis_provider.complete.assert_awaited_once()

        stored = await orchestrator.store.get_note(note.id)
        assert stored.status == NoteStatus.COMPLETED
        assert stored.transcription == TRANSCRIPT
        assert stored.analysis["theOneThing"] == VALID_ANALYSIS["theOneThing"]
        assert stored.processing_started_at is None
        assert stored.processing_attempts == 1
        assert stored.audio_size_bytes > 0

    @pytest.mark.asyncio
    async def test_usage_is_recorded(self, orchestrator, make_note):
        note = await make_note()
        await orchestrator.processor.process(note.id)

        usage = await orchestrator.quota_guard.usage("user-1")
        assert usage.processing_this_hour == 1
        assert usage.tokens_today == 160

    @pytest.mark.asyncio
    async def test_prior_notes_feed_the_prompt(self, orchestrator, make_note, analysis_provider):
        await make_note(processed_at=utc(30), transcription="t",
                        analysis={"summary": "Demo moved to Friday", "topic": "Launch"})
        note = await make_note()

        await orchestrator.processor.process(note.id)

        prompt = analysis_provider.complete.await_args.args[0]
        assert "- Launch: Demo moved to Friday" in prompt
        assert TRANSCRIPT in prompt

    @pytest.mark.asyncio
    async def test_partial_analysis_succeeds_with_warning(self, orchestrator, make_note,
                                                          analysis_provider):
        data = copy.deepcopy(VALID_ANALYSIS)
        data["mood"] = "thrilled"
        analysis_provider.complete.return_value = ProviderReply(text=json.dumps(data))
        note = await make_note()

        result = await orchestrator.processor.process(note.id)

        assert result.outcome == ProcessOutcome.SUCCESS
        assert "mood" in result.warning
        stored = await orchestrator.store.get_note(note.id)
        assert stored.analysis["kind"] == "partial"
        assert stored.analysis["warning"] == result.warning


class TestIdempotence:

    @pytest.mark.asyncio
    async def test_second_call_is_free(self, orchestrator, session_factory, make_note,
                                       transcription_provider, analysis_provider):
        note = await make_note()
        first = await orchestrator.processor.process(note.id)
        transcription_provider.transcribe.reset_mock()
        analysis_provider.complete.reset_mock()

        second = await orchestrator.processor.process(note.id)

        assert second.outcome == ProcessOutcome.ALREADY_PROCESSED
        assert second.analysis == first.analysis
        assert second.transcription == first.transcription
        transcription_provider.transcribe.assert_not_awaited()
        analysis_provider.complete.assert_not_awaited()
        assert await attempt_rows(session_factory) == 1

    @pytest.mark.asyncio
    async def test_note_completed_after_read_is_not_redone(self, orchestrator, make_note,
                                                          transcription_provider,
                                                          analysis_provider):
        """Another worker finishes the note between the first read and the claim."""
        note = await make_note()
        store = orchestrator.store
        real_check = orchestrator.processor.quota_guard.check

        async def finish_elsewhere_then_check(owner_id):
            await store.update_note(note.id, {
                "transcription": "done elsewhere",
                "analysis": {"summary": "elsewhere"},
                "processed_at": utc(0),
            })
            return await real_check(owner_id)

        orchestrator.processor.quota_guard.check = finish_elsewhere_then_check

        result = await orchestrator.processor.process(note.id)

        assert result.outcome == ProcessOutcome.ALREADY_PROCESSED
        assert result.analysis == {"summary": "elsewhere"}
        transcription_provider.transcribe.assert_not_awaited()
        analysis_provider.complete.assert_not_awaited()
        stored = await store.get_note(note.id)
        assert stored.processing_attempts == 0
        assert stored.transcription == "done elsewhere"

    @pytest.mark.asyncio
    async def test_force_reprocess_runs_both_stages(self, orchestrator, make_note,
                                                    transcription_provider):
        note = await make_note(processed_at=utc(10), transcription="old",
                               analysis={"summary": "old"})

        result = await orchestrator.processor.process(note.id, force_reprocess=True)

        assert result.outcome == ProcessOutcome.SUCCESS
        assert result.transcription == TRANSCRIPT
        transcription_provider.transcribe.assert_awaited_once()


class TestClaiming:

    @pytest.mark.asyncio
    async def test_at_most_one_claim(self, orchestrator, make_note, transcription_provider):
        note = await make_note()
        gate = asyncio.Event()

        async def slow_transcribe(audio, mime_type, *, timeout):
            await gate.wait()
            return ProviderReply(text=TRANSCRIPT, total_tokens=40)

        transcription_provider.transcribe.side_effect = slow_transcribe
        tasks = [asyncio.create_task(orchestrator.processor.process(note.id)) for _ in range(5)]

        async def losers_done():
            while sum(task.done() for task in tasks) < 4:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(losers_done(), timeout=10)
        gate.set()
        results = await asyncio.gather(*tasks)

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["busy"] * 4 + ["success"]
        transcription_provider.transcribe.assert_awaited_once()
        assert (await orchestrator.store.get_note(note.id)).processing_attempts == 1

    @pytest.mark.asyncio
    async def test_live_claim_reports_busy(self, orchestrator, make_note, transcription_provider):
        note = await make_note(processing_started_at=utc(2))

        result = await orchestrator.processor.process(note.id)

        assert result.outcome == ProcessOutcome.BUSY
        transcription_provider.transcribe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_claim_lost_mid_flight_is_abandoned(self, orchestrator, make_note,
                                                      transcription_provider):
        note = await make_note()
        store = orchestrator.store

        async def swept_during_call(audio, mime_type, *, timeout):
            current = await store.get_note(note.id)
            await store.reset_stuck(note.id, current.processing_started_at)
            return ProviderReply(text=TRANSCRIPT)

        transcription_provider.transcribe.side_effect = swept_during_call

        result = await orchestrator.processor.process(note.id)

        assert result.outcome == ProcessOutcome.BUSY
        stored = await store.get_note(note.id)
        assert stored.transcription is None
        assert stored.error_message is None

    @pytest.mark.asyncio
    async def test_other_owner_sees_not_found(self, orchestrator, make_note):
        note = await make_note(owner_id="user-1")
        with pytest.raises(NotFoundError):
            await orchestrator.processor.process(note.id, owner_id="intruder")

    @pytest.mark.asyncio
    async def test_missing_note(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.processor.process(uuid4())


class TestQuota:

    @pytest.mark.asyncio
    async def test_quota_denial_leaves_note_unclaimed(self, orchestrator, session_factory,
                                                      make_note, transcription_provider):
        note = await make_note()
        async with session_factory() as session:
            for _ in range(10):
                session.add(ProcessingAttempt(owner_id="user-1", note_id=uuid4()))
            await session.commit()

        result = await orchestrator.processor.process(note.id)

        assert result.outcome == ProcessOutcome.QUOTA_EXCEEDED
        assert "Processing limit" in result.quota.reason
        assert result.quota.usage.processing_this_hour == 10
        stored = await orchestrator.store.get_note(note.id)
        assert stored.processing_started_at is None
        assert stored.processing_attempts == 0
        assert stored.status == NoteStatus.UNPROCESSED
        transcription_provider.transcribe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unverifiable_quota_fails_without_claim(self, orchestrator, make_note):
        note = await make_note()
        orchestrator.processor.quota_guard.check = AsyncMock(return_value=QuotaCheck(
            allowed=False, reason=UNVERIFIED_REASON, verified=False,
            limits=limits_from_settings(),
        ))

        result = await orchestrator.processor.process(note.id)

        assert result.outcome == ProcessOutcome.FAILED
        assert result.error.error == "quota_unavailable"
        assert result.error.retryable is True
        assert result.error.stage == ProcessingStage.UNCLAIMED
        assert (await orchestrator.store.get_note(note.id)).processing_attempts == 0


class TestFailures:

    @pytest.mark.asyncio
    async def test_analysis_failure_keeps_transcription_and_resumes(
        self, orchestrator, make_note, transcription_provider, analysis_provider
    ):
        note = await make_note()
        analysis_provider.complete.return_value = ProviderReply(text="no json here")

        failed = await orchestrator.processor.process(note.id)

        assert failed.outcome == ProcessOutcome.FAILED
        assert failed.error.error == "invalid_analysis"
        assert failed.error.category == "ProcessingError"
        assert failed.error.stage == ProcessingStage.ANALYZING
        assert failed.error.status_code == 422
        stored = await orchestrator.store.get_note(note.id)
        assert stored.transcription == TRANSCRIPT
        assert stored.processing_started_at is None
        assert stored.error_message
        assert stored.status == NoteStatus.FAILED

        analysis_provider.complete.return_value = ProviderReply(text=json.dumps(VALID_ANALYSIS))
        resumed = await orchestrator.processor.process(note.id)

        assert resumed.outcome == ProcessOutcome.SUCCESS
        transcription_provider.transcribe.assert_awaited_once()
        stored = await orchestrator.store.get_note(note.id)
        assert stored.error_message is None
        assert stored.last_error_at is None
        assert stored.processing_attempts == 2

    @pytest.mark.asyncio
    async def test_empty_transcription(self, orchestrator, make_note):
        note = await make_note(audio_ref="silence.webm")

        result = await orchestrator.processor.process(note.id)

        assert result.outcome == ProcessOutcome.FAILED
        assert result.error.error == "empty_transcription"
        assert result.error.stage == ProcessingStage.TRANSCRIBING
        assert result.error.attempts == 1
        stored = await orchestrator.store.get_note(note.id)
        assert stored.transcription is None
        assert stored.error_message == result.error.message

    @pytest.mark.asyncio
    async def test_missing_audio(self, orchestrator, make_note, transcription_provider):
        note = await make_note(audio_ref="gone.webm")

        result = await orchestrator.processor.process(note.id)

        assert result.outcome == ProcessOutcome.FAILED
        assert result.error.error == "not_found"
        assert result.error.retryable is False
        transcription_provider.transcribe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_open_breaker_fails_fast(self, orchestrator, make_note, transcription_provider):
        orchestrator.breakers.force_open("transcription")
        note = await make_note()

        result = await orchestrator.processor.process(note.id)

        assert result.outcome == ProcessOutcome.FAILED
        assert result.error.error == "circuit_open"
        assert result.error.error_type == "circuit_open"
        assert result.error.attempts == 0
        assert result.error.status_code == 503
        transcription_provider.transcribe.assert_not_awaited()
        assert (await orchestrator.store.get_note(note.id)).processing_started_at is None

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported_as_internal(self, orchestrator, make_note):
        note = await make_note()
        orchestrator.store.knowledge_context = AsyncMock(side_effect=RuntimeError("db cursor gone"))

        result = await orchestrator.processor.process(note.id)

        assert result.outcome == ProcessOutcome.FAILED
        assert result.error.error == "internal_error"
        assert "cursor" not in result.error.message
        stored = await orchestrator.store.get_note(note.id)
        assert stored.processing_started_at is None
        assert stored.transcription == TRANSCRIPT
