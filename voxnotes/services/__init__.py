# Services package init
"""
VoxNotes Backend — Services Layer
===================================

What:  The note processing orchestrator and its collaborators.
How:   Components receive their dependencies through constructors; nothing
       here holds module-level mutable state. `orchestrator.Orchestrator`
       wires a complete set.

Service Inventory:
    Resilience
        - CircuitBreakerRegistry: per-service-key CLOSED / OPEN / HALF_OPEN breakers
        - RetryExecutor:          bounded backoff retries consulting the breakers
        - error_classifier:       exception → ErrorType + retryability
    Providers
        - TranscriptionProvider / AnalysisProvider (abstract)
        - GeminiTranscriptionProvider / GeminiAnalysisProvider
    Stages
        - TranscriptionStage: audio → text
        - AnalysisStage:      text → Analysis | PartialAnalysis
    Storage
        - NoteStore:  claims, checkpoints, eligibility and stuck queries
        - AudioStore: audio_ref → (bytes, MIME type)
        - QuotaGuard: per-owner admission control and usage accounting
    Orchestration
        - NoteProcessor:    per-note state machine
        - BatchScheduler:   bounded concurrent batch runs
        - StuckJobRecovery: releases stale claims
"""
