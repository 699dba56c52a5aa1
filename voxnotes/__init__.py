"""
VoxNotes Backend — Application Package Initializer
===================================================

What: Marks the `voxnotes` directory as a Python package.
Why:  Enables module imports like `from voxnotes.config import settings`.
Who:  Used implicitly by Python's import system and explicitly by Alembic, pytest, and uvicorn.

Architecture Note:
    The backend turns uploaded voice recordings into transcribed, analyzed notes.
    The heart of it is the processing orchestrator:

    ┌─────────────────────────────────────┐
    │      Routes (trigger surface)       │  ← single note, batch, reset, health
    ├─────────────────────────────────────┤
    │   BatchScheduler / StuckJobRecovery │  ← select, fan out, sweep
    ├─────────────────────────────────────┤
    │           NoteProcessor             │  ← per-note state machine
    ├─────────────────────────────────────┤
    │  QuotaGuard │ Transcription/Analysis│  ← admission, provider stages
    ├─────────────────────────────────────┤
    │  RetryExecutor + CircuitBreakers    │  ← resilience around providers
    ├─────────────────────────────────────┤
    │   NoteStore │ AudioStore │ Gemini   │  ← collaborators
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
