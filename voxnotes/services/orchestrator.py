"""
VoxNotes Backend — Orchestrator Wiring
========================================

What:  Builds and owns one instance of every orchestrator component.
Why:   Breaker state and retry budgets are shared across all notes in the
       process, but must not be module-global: tests and app instances each
       get their own registry, created at startup and reset at shutdown.
How:   `Orchestrator.build()` wires store → quota → breakers → executor →
       stages → processor → scheduler → recovery. Every collaborator can be
       overridden (tests inject AsyncMock providers, fake sleeps, clocks).
Who:   Created in the FastAPI lifespan and stored on `app.state`; routes
       reach it through the `get_orchestrator` dependency.

Dependency Graph:
    NoteProcessor
    ├── NoteStore ─────────────┐
    ├── QuotaGuard             ├── async_sessionmaker
    ├── AudioStore             │
    ├── RetryExecutor ── CircuitBreakerRegistry
    ├── TranscriptionStage ── TranscriptionProvider (Gemini)
    └── AnalysisStage ─────── AnalysisProvider (Gemini)
    BatchScheduler ── NoteStore, NoteProcessor
    StuckJobRecovery ── NoteStore
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Union

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voxnotes.config import settings
from voxnotes.models.note import utc_now
from voxnotes.services.analysis_stage import AnalysisStage
from voxnotes.services.audio_store import AudioStore
from voxnotes.services.batch_scheduler import BatchScheduler
from voxnotes.services.circuit_breaker import CircuitBreakerRegistry
from voxnotes.services.llm_base import AnalysisProvider, TranscriptionProvider
from voxnotes.services.note_processor import NoteProcessor
from voxnotes.services.note_store import NoteStore
from voxnotes.services.quota_guard import QuotaGuard
from voxnotes.services.retry_executor import RetryExecutor
from voxnotes.services.stuck_job_recovery import StuckJobRecovery
from voxnotes.services.transcription_stage import TranscriptionStage

logger = logging.getLogger(__name__)


@dataclass
class Orchestrator:
    store: NoteStore
    quota_guard: QuotaGuard
    breakers: CircuitBreakerRegistry
    executor: RetryExecutor
    processor: NoteProcessor
    scheduler: BatchScheduler
    recovery: StuckJobRecovery
    providers: List[Union[TranscriptionProvider, AnalysisProvider]]

    @classmethod
    def build(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        transcription_provider: Optional[TranscriptionProvider] = None,
        analysis_provider: Optional[AnalysisProvider] = None,
        audio_store: Optional[AudioStore] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> "Orchestrator":
        if transcription_provider is None or analysis_provider is None:
            # Imported lazily so tests with injected providers never load the SDK
            from voxnotes.services.gemini_service import (
                GeminiAnalysisProvider,
                GeminiTranscriptionProvider,
            )
            transcription_provider = transcription_provider or GeminiTranscriptionProvider()
            analysis_provider = analysis_provider or GeminiAnalysisProvider()

        store = NoteStore(session_factory, clock=clock)
        quota_guard = QuotaGuard(session_factory, clock=clock)
        breakers = breakers or CircuitBreakerRegistry.from_settings()
        executor = RetryExecutor.from_settings(breakers, sleep=sleep)

        processor = NoteProcessor(
            store=store,
            quota_guard=quota_guard,
            audio_store=audio_store or AudioStore(),
            executor=executor,
            transcription_stage=TranscriptionStage(transcription_provider, executor),
            analysis_stage=AnalysisStage(analysis_provider, executor),
            clock=clock,
        )
        logger.info(
            "Orchestrator ready (retry attempts=%d, breaker threshold=%d, batch size=%d)",
            settings.retry_max_attempts,
            settings.cb_failure_threshold,
            settings.batch_size,
        )
        return cls(
            store=store,
            quota_guard=quota_guard,
            breakers=breakers,
            executor=executor,
            processor=processor,
            scheduler=BatchScheduler(store, processor, clock=clock),
            recovery=StuckJobRecovery(store, clock=clock),
            providers=[transcription_provider, analysis_provider],
        )

    async def provider_health(self) -> Dict[str, str]:
        """`available` or `unavailable` per provider, keyed by provider name."""
        report = {}
        for provider in self.providers:
            try:
                healthy = await provider.health_check()
            except Exception as e:
                logger.warning("Health check for %s provider raised: %s", provider.name, str(e))
                healthy = False
            report[provider.name] = "available" if healthy else "unavailable"
        return report

    def shutdown(self) -> None:
        """Drops all breaker state; the next build starts closed."""
        self.breakers.reset()
        logger.info("Orchestrator shut down")


def get_orchestrator(request: Request) -> Orchestrator:
    """FastAPI dependency: the orchestrator built at startup."""
    return request.app.state.orchestrator
