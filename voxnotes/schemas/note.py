"""
VoxNotes Backend — Pydantic Request/Response Schemas
======================================================

What:  Pydantic models defining the HTTP contract of the trigger surface.
Why:   Strict input validation, automatic serialization, and OpenAPI doc generation.
How:   FastAPI validates request bodies against these models and serializes
       responses from them.
Who:   Used by route handlers as body types and return types.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from voxnotes.models.note import NoteStatus
from voxnotes.schemas.processing import QuotaStatus


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════

class ProcessRequest(BaseModel):
    note_id: uuid.UUID = Field(description="Note to process")
    force_reprocess: bool = Field(
        default=False,
        description="Re-run transcription and analysis even if the note is complete",
    )


class BatchRequest(BaseModel):
    batch_size: Optional[int] = Field(
        default=None, ge=1, le=100,
        description="Maximum notes to pick up (defaults to BATCH_SIZE)",
    )


class ResetRequest(BaseModel):
    threshold_minutes: Optional[int] = Field(default=None, ge=1, le=1440)
    batch_size: Optional[int] = Field(default=None, ge=1, le=1000)


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════

class NoteStatusResponse(BaseModel):
    """Derived processing state of a note, plus its bookkeeping timestamps."""
    id: uuid.UUID
    status: NoteStatus
    processing_attempts: int
    processing_started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    last_error_at: Optional[datetime] = None
    has_transcription: bool
    has_analysis: bool
    stuck: bool = Field(default=False, description="Claimed longer than the stuck threshold")

    model_config = {"from_attributes": True}


class ProcessingStatsResponse(BaseModel):
    owner_id: str
    notes: Dict[str, int] = Field(description="Note counts per derived status")
    quota: Optional[QuotaStatus] = None


class ErrorResponse(BaseModel):
    """
    Standardized error response format for all API errors.

    Example:
        {
            "error": "quota_exceeded",
            "message": "Processing limit of 10 per hour exceeded. ...",
            "details": {"usage": {...}, "limits": {...}},
            "request_id": "a1b2c3d4"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """Service health with dependency and breaker status."""
    status: str = Field(description="Overall status: healthy, degraded, unhealthy")
    version: str
    database: str = Field(description="connected or disconnected")
    circuits: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    providers: Dict[str, str] = Field(default_factory=dict,
                                      description="available or unavailable per provider")
    stuck_notes: Optional[int] = None
    uptime_seconds: float
