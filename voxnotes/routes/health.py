"""
VoxNotes Backend — Health Check Route
=======================================

What:  Health check endpoint for monitoring and load balancer probes.
How:   Probes the database and each provider (a free model listing), and
       reports every circuit breaker and the number of stuck notes.

Status levels:
    - healthy:   database reachable, every breaker closed, providers answer
    - degraded:  database reachable, but a breaker is open or half-open or a
                 provider is unavailable (other work continues)
    - unhealthy: database unreachable (nothing can be claimed or persisted)
"""

import logging
import time

from fastapi import APIRouter, Depends
from sqlalchemy import text

from voxnotes import __version__
from voxnotes.exceptions import DatabaseError
from voxnotes.schemas.note import HealthResponse
from voxnotes.services.orchestrator import Orchestrator, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(orchestrator: Orchestrator = Depends(get_orchestrator)) -> HealthResponse:
    db_status = "connected"
    overall = "healthy"
    stuck_notes = None

    # ── Check Database ────────────────────────────────────────────────────
    try:
        async with orchestrator.store.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    # ── Circuit Breakers ──────────────────────────────────────────────────
    circuits = orchestrator.breakers.snapshot()
    if overall == "healthy" and any(c["state"] != "closed" for c in circuits.values()):
        overall = "degraded"

    # ── Providers ─────────────────────────────────────────────────────────
    providers = await orchestrator.provider_health()
    if overall == "healthy" and "unavailable" in providers.values():
        overall = "degraded"

    # ── Stuck Notes ───────────────────────────────────────────────────────
    if db_status == "connected":
        try:
            stuck_notes = (await orchestrator.recovery.stats()).stuck
        except DatabaseError:
            logger.warning("Health check: stuck note count unavailable")

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        circuits=circuits,
        providers=providers,
        stuck_notes=stuck_notes,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
