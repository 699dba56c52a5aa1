"""
VoxNotes Backend — API Route Tests
====================================

What:  HTTP-level tests through the full middleware stack (request ID,
       logging, exception handlers) using httpx's ASGI transport.

What we test:
    ✅ POST /api/process: 200 / 401 / 404 / 409 / 422 / 429 mapping
    ✅ Cron triggers reject missing or wrong bearer tokens
    ✅ Batch and reset triggers return their result bodies
    ✅ Stats, note status and health endpoints
    ✅ X-Request-ID is echoed and carried in error bodies
"""

import logging
from uuid import uuid4

import pytest

from tests.sample_data import CRON_HEADERS, TRANSCRIPT, utc
from voxnotes.middleware.logging import access_log_level
from voxnotes.models.note import ProcessingAttempt

OWNER = {"X-User-ID": "user-1"}


class TestProcessRoute:

    @pytest.mark.asyncio
    async def test_success(self, test_client, make_note):
        note = await make_note()

        response = await test_client.post("/api/process", json={"note_id": str(note.id)},
                                          headers=OWNER)

        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "success"
        assert body["transcription"] == TRANSCRIPT
        assert body["analysis"]["kind"] == "complete"

    @pytest.mark.asyncio
    async def test_already_processed_is_200(self, test_client, make_note):
        note = await make_note(processed_at=utc(5), transcription="t", analysis={"summary": "s"})

        response = await test_client.post("/api/process", json={"note_id": str(note.id)},
                                          headers=OWNER)

        assert response.status_code == 200
        assert response.json()["outcome"] == "already_processed"
        assert response.json()["analysis"] == {"summary": "s"}

    @pytest.mark.asyncio
    async def test_missing_identity(self, test_client, make_note):
        note = await make_note()
        response = await test_client.post("/api/process", json={"note_id": str(note.id)})
        assert response.status_code == 401
        assert response.json()["error"] == "auth_required"

    @pytest.mark.asyncio
    async def test_someone_elses_note(self, test_client, make_note):
        note = await make_note(owner_id="user-2")
        response = await test_client.post("/api/process", json={"note_id": str(note.id)},
                                          headers=OWNER)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_note(self, test_client):
        response = await test_client.post("/api/process", json={"note_id": str(uuid4())},
                                          headers=OWNER)
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_busy(self, test_client, make_note):
        note = await make_note(processing_started_at=utc(1))
        response = await test_client.post("/api/process", json={"note_id": str(note.id)},
                                          headers=OWNER)
        assert response.status_code == 409
        assert response.json()["error"] == "busy"

    @pytest.mark.asyncio
    async def test_quota_exceeded(self, test_client, session_factory, make_note):
        note = await make_note()
        async with session_factory() as session:
            for _ in range(10):
                session.add(ProcessingAttempt(owner_id="user-1", note_id=uuid4()))
            await session.commit()

        response = await test_client.post("/api/process", json={"note_id": str(note.id)},
                                          headers=OWNER)

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "quota_exceeded"
        assert "Processing limit" in body["message"]
        assert body["details"]["usage"]["processing_this_hour"] == 10
        assert body["details"]["limits"]["max_processing_per_hour"] == 10

    @pytest.mark.asyncio
    async def test_processing_failure_returns_result_body(self, test_client, make_note):
        note = await make_note(audio_ref="silence.webm")

        response = await test_client.post("/api/process", json={"note_id": str(note.id)},
                                          headers=OWNER)

        assert response.status_code == 422
        body = response.json()
        assert body["outcome"] == "failed"
        assert body["error"]["error"] == "empty_transcription"
        assert body["error"]["stage"] == "transcribing"

    @pytest.mark.asyncio
    async def test_open_circuit_sets_retry_after(self, test_client, orchestrator, make_note):
        orchestrator.breakers.force_open("transcription")
        note = await make_note()

        response = await test_client.post("/api/process", json={"note_id": str(note.id)},
                                          headers=OWNER)

        assert response.status_code == 503
        assert response.json()["error"]["error"] == "circuit_open"
        assert int(response.headers["Retry-After"]) > 0

    @pytest.mark.asyncio
    async def test_invalid_body(self, test_client):
        response = await test_client.post("/api/process", json={"note_id": "not-a-uuid"},
                                          headers=OWNER)
        assert response.status_code == 422


class TestCronRoutes:

    @pytest.mark.asyncio
    async def test_batch_requires_bearer(self, test_client):
        response = await test_client.post("/api/process/batch")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_batch_rejects_wrong_secret(self, test_client):
        response = await test_client.post("/api/process/batch",
                                          headers={"Authorization": "Bearer guess"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid cron credentials"

    @pytest.mark.asyncio
    async def test_batch(self, test_client, make_note):
        for i in range(3):
            await make_note(owner_id=f"user-{i}")

        response = await test_client.post("/api/process/batch", json={"batch_size": 2},
                                          headers=CRON_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["selected"] == 2
        assert body["processed"] == 2
        assert body["failed"] == 0

    @pytest.mark.asyncio
    async def test_batch_without_body_uses_defaults(self, test_client):
        response = await test_client.post("/api/process/batch", headers=CRON_HEADERS)
        assert response.status_code == 200
        assert response.json()["selected"] == 0

    @pytest.mark.asyncio
    async def test_reset(self, test_client, make_note):
        await make_note(processing_started_at=utc(20))
        await make_note(processing_started_at=utc(5))

        response = await test_client.post("/api/process/reset", json={"threshold_minutes": 15},
                                          headers=CRON_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"reset": 1, "examined": 1}

    @pytest.mark.asyncio
    async def test_reset_requires_bearer(self, test_client):
        response = await test_client.post("/api/process/reset")
        assert response.status_code == 401


class TestReadRoutes:

    @pytest.mark.asyncio
    async def test_stats(self, test_client, make_note):
        await make_note()
        await make_note(processed_at=utc(1), transcription="t", analysis={"summary": "s"})

        response = await test_client.get("/api/process/stats", headers=OWNER)

        assert response.status_code == 200
        body = response.json()
        assert body["owner_id"] == "user-1"
        assert body["notes"]["unprocessed"] == 1
        assert body["notes"]["completed"] == 1
        assert body["notes"]["total"] == 2
        assert body["quota"]["limits"]["max_notes_per_user"] == 100
        assert body["quota"]["percentages"]["notes"] == 2.0

    @pytest.mark.asyncio
    async def test_note_status(self, test_client, make_note):
        note = await make_note(transcription="half done")

        response = await test_client.get(f"/api/notes/{note.id}/status", headers=OWNER)

        assert response.status_code == 200
        assert response.headers["Cache-Control"] == "no-store"
        body = response.json()
        assert body["status"] == "analyzing_only"
        assert body["has_transcription"] is True
        assert body["has_analysis"] is False
        assert body["stuck"] is False

    @pytest.mark.asyncio
    async def test_note_status_flags_stuck_claim(self, test_client, make_note):
        note = await make_note(processing_started_at=utc(30))

        body = (await test_client.get(f"/api/notes/{note.id}/status", headers=OWNER)).json()

        assert body["status"] == "in_progress"
        assert body["stuck"] is True

    @pytest.mark.asyncio
    async def test_note_status_hides_other_owners(self, test_client, make_note):
        note = await make_note(owner_id="user-2")
        response = await test_client.get(f"/api/notes/{note.id}/status", headers=OWNER)
        assert response.status_code == 404


class TestHealthAndMiddleware:

    @pytest.mark.asyncio
    async def test_health(self, test_client, make_note):
        await make_note(processing_started_at=utc(30))

        response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["stuck_notes"] == 1
        assert body["circuits"] == {}
        assert body["providers"] == {"transcription": "available", "analysis": "available"}

    @pytest.mark.asyncio
    async def test_health_degraded_when_breaker_open(self, test_client, orchestrator):
        orchestrator.breakers.force_open("analysis")

        body = (await test_client.get("/health")).json()

        assert body["status"] == "degraded"
        assert body["circuits"]["analysis"]["state"] == "open"

    @pytest.mark.asyncio
    async def test_health_degraded_when_provider_unavailable(self, test_client,
                                                             transcription_provider,
                                                             analysis_provider):
        transcription_provider.health_check.return_value = False
        analysis_provider.health_check.side_effect = ConnectionError("unreachable")

        body = (await test_client.get("/health")).json()

        assert body["status"] == "degraded"
        assert body["providers"] == {"transcription": "unavailable", "analysis": "unavailable"}

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, test_client):
        response = await test_client.post("/api/process", json={"note_id": str(uuid4())},
                                          headers={**OWNER, "X-Request-ID": "trace-abc123"})

        assert response.headers["X-Request-ID"] == "trace-abc123"
        assert response.json()["request_id"] == "trace-abc123"

    @pytest.mark.asyncio
    async def test_request_id_is_generated(self, test_client):
        response = await test_client.get("/health")
        assert len(response.headers["X-Request-ID"]) == 8


@pytest.mark.parametrize(
    "status, duration_ms, level",
    [
        (200, 12.0, logging.INFO),
        (200, 15_000.0, logging.WARNING),
        (429, 3.0, logging.WARNING),
        (503, 3.0, logging.ERROR),
    ],
)
def test_access_log_level(status, duration_ms, level):
    assert access_log_level(status, duration_ms) == level
