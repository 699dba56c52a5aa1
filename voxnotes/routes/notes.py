"""
VoxNotes Backend — Note Status Route
======================================

What:  GET /api/notes/{id}/status returns the derived processing status of
       one of the caller's notes.
Why:   Clients poll this after triggering processing instead of holding the
       process request open.

Caching:
    Cache-Control: no-store. Status changes from one poll to the next.
"""

import logging
from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, Response

from voxnotes.config import settings
from voxnotes.exceptions import NotFoundError
from voxnotes.models.note import utc_now
from voxnotes.routes.dependencies import require_owner
from voxnotes.schemas.note import ErrorResponse, NoteStatusResponse
from voxnotes.services.orchestrator import Orchestrator, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Notes"])


@router.get(
    "/notes/{note_id}/status",
    response_model=NoteStatusResponse,
    responses={
        401: {"description": "Missing caller identity", "model": ErrorResponse},
        404: {"description": "Note not found", "model": ErrorResponse},
    },
    summary="Get the processing status of a note",
)
async def get_note_status(
    note_id: UUID,
    response: Response,
    owner_id: str = Depends(require_owner),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> NoteStatusResponse:
    note = await orchestrator.store.get_note(note_id)
    # Someone else's note is reported exactly like a missing one
    if note is None or note.owner_id != owner_id:
        raise NotFoundError(resource="Note", resource_id=str(note_id))

    response.headers["Cache-Control"] = "no-store"
    return NoteStatusResponse(
        id=note.id,
        status=note.status,
        processing_attempts=note.processing_attempts,
        processing_started_at=note.processing_started_at,
        processed_at=note.processed_at,
        error_message=note.error_message,
        last_error_at=note.last_error_at,
        has_transcription=bool(note.transcription),
        has_analysis=note.analysis is not None,
        stuck=note.is_stuck(utc_now(), timedelta(minutes=settings.stuck_threshold_minutes)),
    )
