"""
VoxNotes Backend — Test Configuration (conftest.py)
=====================================================

What:  Shared pytest fixtures for the test suite.
How:   Environment variables are set BEFORE any voxnotes import so the
       settings singleton never sees production values. Database tests run
       against a throwaway file-backed SQLite database (aiosqlite) created
       per test with `Base.metadata.create_all`; providers are AsyncMocks;
       time is injected (fake sleep, fixed breaker clocks).

Fixture Hierarchy:
    session_factory ─┬─ store
                     ├─ quota_guard
                     └─ orchestrator ─── test_client
    audio_root ───── audio_store ──┘
    transcription_provider / analysis_provider / fake_sleep ──┘
"""

import json
import os
import tempfile
from unittest.mock import AsyncMock

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_voxnotes.db"
os.environ["GEMINI_API_KEY"] = "test-key-not-real"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["AUDIO_STORAGE_ROOT"] = tempfile.mkdtemp(prefix="voxnotes_test_")
os.environ["LOG_LEVEL"] = "WARNING"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from voxnotes.database import Base  # noqa: E402
from voxnotes.models.note import Note  # noqa: E402
from voxnotes.services.audio_store import AudioStore  # noqa: E402
from voxnotes.services.circuit_breaker import CircuitBreakerRegistry  # noqa: E402
from voxnotes.services.llm_base import (  # noqa: E402
    AnalysisProvider,
    ProviderReply,
    TranscriptionProvider,
)
from voxnotes.services.note_store import NoteStore  # noqa: E402
from voxnotes.services.orchestrator import Orchestrator  # noqa: E402
from voxnotes.services.quota_guard import QuotaGuard  # noqa: E402
from tests.sample_data import TRANSCRIPT, VALID_ANALYSIS, utc  # noqa: E402


# ══════════════════════════════════════════════════════════════════════════
# Database
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database per test, schema created from the models."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'voxnotes.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return NoteStore(session_factory)


@pytest.fixture
def quota_guard(session_factory):
    return QuotaGuard(session_factory)


@pytest.fixture
def make_note(session_factory):
    """
    Insert a note and return it.

    Usage:
        note = await make_note(owner_id="user-2", recorded_at=utc(30))
    """
    counter = {"n": 0}

    async def _make(owner_id: str = "user-1", **fields) -> Note:
        counter["n"] += 1
        fields.setdefault("audio_ref", "memo.webm")
        fields.setdefault("recorded_at", utc(60 - counter["n"]))
        note = Note(owner_id=owner_id, **fields)
        async with session_factory() as session:
            session.add(note)
            await session.commit()
        return note

    return _make


# ══════════════════════════════════════════════════════════════════════════
# Audio + providers
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def audio_root(tmp_path):
    root = tmp_path / "audio"
    root.mkdir()
    (root / "memo.webm").write_bytes(b"\x1aE\xdf\xa3 fake webm voice memo")
    (root / "silence.webm").write_bytes(b"silence")
    return root


@pytest.fixture
def audio_store(audio_root):
    return AudioStore(storage_root=str(audio_root), timeout=5)


@pytest.fixture
def transcription_provider():
    provider = AsyncMock(spec=TranscriptionProvider)
    provider.name = "transcription"
    provider.health_check.return_value = True

    async def transcribe(audio: bytes, mime_type: str, *, timeout: float) -> ProviderReply:
        # silence.webm stands in for a recording with no speech
        if audio == b"silence":
            return ProviderReply(text="   ", total_tokens=5)
        return ProviderReply(text=TRANSCRIPT, total_tokens=40)

    provider.transcribe.side_effect = transcribe
    return provider


@pytest.fixture
def analysis_provider():
    provider = AsyncMock(spec=AnalysisProvider)
    provider.name = "analysis"
    provider.health_check.return_value = True
    provider.complete.return_value = ProviderReply(text=json.dumps(VALID_ANALYSIS), total_tokens=120)
    return provider


@pytest.fixture
def fake_sleep():
    return AsyncMock()


# ══════════════════════════════════════════════════════════════════════════
# Orchestrator + HTTP client
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def orchestrator(session_factory, transcription_provider, analysis_provider, audio_store, fake_sleep):
    return Orchestrator.build(
        session_factory,
        transcription_provider=transcription_provider,
        analysis_provider=analysis_provider,
        audio_store=audio_store,
        breakers=CircuitBreakerRegistry(failure_threshold=5, cooldown_seconds=60),
        sleep=fake_sleep,
    )


@pytest_asyncio.fixture
async def test_client(orchestrator):
    """
    HTTPX AsyncClient wired to an app holding the test orchestrator.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
    """
    from voxnotes.main import create_app

    app = create_app(orchestrator=orchestrator)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
