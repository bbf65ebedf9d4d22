"""
NoteX Backend — Health Check Route
====================================

What:  Health check endpoint for container and load balancer probes.
How:   Probes the database with SELECT 1, reports the Gemini circuit state
       (calling the model list only when the circuit is closed), and reports
       whether Stripe keys are present. Stripe itself is not called.

Status levels:
    - healthy:   every dependency operational (HTTP 200)
    - degraded:  Gemini or Stripe unavailable; marketplace reads still work (HTTP 200)
    - unhealthy: database unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Depends, Response
from sqlalchemy import text

from notex import __version__
from notex.database import engine
from notex.dependencies import get_llm_service, get_payment_gateway
from notex.schemas.common import HealthResponse
from notex.services.llm_base import LLMService
from notex.services.payment_gateway import StripeGateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(
    response: Response,
    llm: LLMService = Depends(get_llm_service),
    payments: StripeGateway = Depends(get_payment_gateway),
) -> HealthResponse:
    db_status = "connected"
    gemini_status = "available"
    overall = "healthy"

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    breaker = getattr(llm, "circuit_breaker", None)
    if breaker is not None and breaker.state == "open":
        gemini_status = "circuit_open"
    elif not await llm.health_check():
        gemini_status = "unavailable"

    stripe_status = "configured" if payments.configured else "not_configured"

    if overall != "unhealthy" and (gemini_status != "available" or stripe_status != "configured"):
        overall = "degraded"
    if overall == "unhealthy":
        response.status_code = 503

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        gemini=gemini_status,
        stripe=stripe_status,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
