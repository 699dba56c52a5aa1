"""
VoxNotes Backend — Processing Triggers
========================================

What:  HTTP surface over the orchestrator: single-note processing, the cron
       batch run, the stuck-job sweep and per-owner stats.
How:   Thin handlers. The orchestrator returns result variants; this module
       only maps them onto status codes:
           success / already processed → 200 with the ProcessResult
           quota exceeded              → 429 (QuotaExceededError, usage + limits)
           busy                        → 409 (BusyError)
           failed                      → the failure's own status, with the
                                         ProcessResult (and Retry-After when known)
"""

import logging
from typing import Optional, Union

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from voxnotes.exceptions import BusyError, QuotaExceededError, QuotaUnavailableError
from voxnotes.routes.dependencies import require_cron_secret, require_owner
from voxnotes.schemas.note import (
    BatchRequest,
    ErrorResponse,
    ProcessingStatsResponse,
    ProcessRequest,
    ResetRequest,
)
from voxnotes.schemas.processing import BatchResult, ProcessOutcome, ProcessResult, ResetResult
from voxnotes.services.orchestrator import Orchestrator, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/process", tags=["Processing"])


@router.post(
    "",
    response_model=ProcessResult,
    responses={
        401: {"description": "Missing caller identity", "model": ErrorResponse},
        404: {"description": "Note not found", "model": ErrorResponse},
        409: {"description": "Note is being processed elsewhere", "model": ErrorResponse},
        429: {"description": "Quota exceeded", "model": ErrorResponse},
        503: {"description": "Provider or quota temporarily unavailable"},
    },
    summary="Transcribe and analyze one note",
)
async def process_note(
    payload: ProcessRequest,
    owner_id: str = Depends(require_owner),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Union[ProcessResult, JSONResponse]:
    result = await orchestrator.processor.process(
        payload.note_id,
        owner_id=owner_id,
        force_reprocess=payload.force_reprocess,
    )
    if result.succeeded:
        return result

    if result.outcome == ProcessOutcome.QUOTA_EXCEEDED:
        quota = result.quota
        raise QuotaExceededError(
            reason=quota.reason or "Quota exceeded",
            usage=quota.usage.model_dump() if quota.usage else None,
            limits=quota.limits.model_dump(),
        )
    if result.outcome == ProcessOutcome.BUSY:
        raise BusyError(note_id=str(payload.note_id))

    error = result.error
    headers = {"Retry-After": str(error.retry_after)} if error.retry_after else None
    return JSONResponse(
        status_code=error.status_code,
        content=result.model_dump(mode="json"),
        headers=headers,
    )


@router.post(
    "/batch",
    response_model=BatchResult,
    dependencies=[Depends(require_cron_secret)],
    summary="Process the next batch of pending notes (cron)",
)
async def process_batch(
    payload: Optional[BatchRequest] = Body(default=None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> BatchResult:
    batch_size = payload.batch_size if payload else None
    return await orchestrator.scheduler.process_next_batch(batch_size)


@router.post(
    "/reset",
    response_model=ResetResult,
    dependencies=[Depends(require_cron_secret)],
    summary="Release claims held longer than the stuck threshold (cron)",
)
async def reset_stuck(
    payload: Optional[ResetRequest] = Body(default=None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ResetResult:
    payload = payload or ResetRequest()
    return await orchestrator.recovery.reset_stuck(
        threshold_minutes=payload.threshold_minutes,
        batch_size=payload.batch_size,
    )


@router.get(
    "/stats",
    response_model=ProcessingStatsResponse,
    summary="Note counts per status and quota usage for the caller",
)
async def processing_stats(
    owner_id: str = Depends(require_owner),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ProcessingStatsResponse:
    notes = await orchestrator.store.processing_stats(owner_id)
    try:
        quota = await orchestrator.quota_guard.status(owner_id)
    except QuotaUnavailableError:
        logger.warning("Quota status unavailable for %s", owner_id)
        quota = None
    return ProcessingStatsResponse(owner_id=owner_id, notes=notes, quota=quota)
