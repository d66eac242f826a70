"""
Inkwell Backend: Health Check Route
===================================

What:  Health check endpoint for monitoring and load balancer probes.
How:   Probes the database with SELECT 1 and reports the OCR dispatcher's
       circuit state, the dispatch queue depth and the scheduler state.

Status levels:
    - healthy:   database up, circuit closed, scheduler running (or disabled)
    - degraded:  database up, but the OCR circuit is not closed or the
                 scheduler has stopped; uploads still work, extraction lags
    - unhealthy: database unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from inkwell import __version__
from inkwell.schemas.asset import HealthResponse
from inkwell.services.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"description": "Database unreachable", "model": HealthResponse}},
    summary="Service health check",
)
async def health_check(request: Request):
    state = request.app.state
    overall = "healthy"

    db_status = "connected"
    try:
        async with state.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    circuit = state.dispatcher.circuit_state
    if circuit != CircuitBreaker.CLOSED and overall == "healthy":
        overall = "degraded"

    if not state.scheduler_enabled:
        reconciliation = "disabled"
    elif state.scheduler.is_running:
        reconciliation = "running"
    else:
        reconciliation = "stopped"
        if overall == "healthy":
            overall = "degraded"

    body = HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        ocr_dispatcher=circuit,
        dispatch_queue_depth=state.dispatch_pool.queue_depth,
        reconciliation=reconciliation,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
    status_code = 503 if overall == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=body.model_dump())
