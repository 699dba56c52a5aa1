"""
VoxNotes Backend — Orchestrator Result Models
===============================================

What:  Pydantic models returned by the orchestrator: quota decisions,
       per-note process results, batch results and recovery results.
Why:   Every trigger (single note, cron batch, reset sweep) must return a
       JSON-serializable value a thin HTTP layer can pass straight through.
       Quota and busy outcomes are first-class variants here, not exceptions.
"""

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ══════════════════════════════════════════════════════════════════════════
# Quota
# ══════════════════════════════════════════════════════════════════════════

class QuotaUsage(BaseModel):
    notes_count: int = 0
    processing_this_hour: int = 0
    tokens_today: int = 0
    storage_mb: float = 0.0


class QuotaLimits(BaseModel):
    max_notes_per_user: int
    max_processing_per_hour: int
    max_tokens_per_day: int
    max_storage_mb: int


class QuotaCheck(BaseModel):
    """
    Outcome of a quota decision.

    `verified=False` means usage could not be computed and the guard failed
    closed; callers treat that as "try later" rather than "over quota".
    """
    allowed: bool
    reason: Optional[str] = None
    verified: bool = True
    usage: Optional[QuotaUsage] = None
    limits: QuotaLimits


class QuotaStatus(BaseModel):
    usage: QuotaUsage
    limits: QuotaLimits
    percentages: Dict[str, float]


# ══════════════════════════════════════════════════════════════════════════
# Single-note processing
# ══════════════════════════════════════════════════════════════════════════

class ProcessOutcome(str, Enum):
    SUCCESS = "success"
    ALREADY_PROCESSED = "already_processed"
    QUOTA_EXCEEDED = "quota_exceeded"
    BUSY = "busy"
    FAILED = "failed"


class ProcessingStage(str, Enum):
    """States of the per-note state machine."""
    UNCLAIMED = "unclaimed"
    CLAIMED = "claimed"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorInfo(BaseModel):
    """Classified failure, safe to show to a caller."""
    error: str = Field(description="Machine-readable error code")
    category: str = Field(description="Error class from the taxonomy, e.g. ProcessingError")
    error_type: str = Field(description="Classifier bucket: timeout, rate_limit, auth, ...")
    message: str
    retryable: bool
    stage: Optional[ProcessingStage] = None
    attempts: Optional[int] = None
    retry_after: Optional[int] = None
    status_code: int = 500


class ProcessResult(BaseModel):
    note_id: uuid.UUID
    outcome: ProcessOutcome
    transcription: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None
    warning: Optional[str] = None
    error: Optional[ErrorInfo] = None
    quota: Optional[QuotaCheck] = None
    duration_ms: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (ProcessOutcome.SUCCESS, ProcessOutcome.ALREADY_PROCESSED)


# ══════════════════════════════════════════════════════════════════════════
# Batch / recovery
# ══════════════════════════════════════════════════════════════════════════

class BatchError(BaseModel):
    note_id: uuid.UUID
    message: str


class BatchResult(BaseModel):
    """Ephemeral summary of one scheduler run. Never persisted."""
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    selected: int = 0
    errors: List[BatchError] = Field(default_factory=list)
    errors_truncated: int = Field(default=0, description="Errors omitted from `errors`")
    error_breakdown: Dict[str, int] = Field(default_factory=dict)
    duration_ms: float = 0.0


class ResetResult(BaseModel):
    reset: int
    examined: int = 0


class RecoveryStats(BaseModel):
    stuck: int
    failed: int
    exhausted: int
    threshold_minutes: int
