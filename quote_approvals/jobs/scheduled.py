"""
Escalation tick: triggered by Cloud Scheduler → API endpoint, or by the
in-process loop when SCHEDULER_ENABLED is set.

Both paths call the same EscalationScheduler.tick(now); running it twice for
the same moment is harmless.
"""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request, status
import structlog

from quote_approvals.config import settings
from quote_approvals.engine import Engine, get_engine

logger = structlog.get_logger()
router = APIRouter()


async def _require_internal_auth(request: Request):
    """
    Verify request comes from Cloud Scheduler or internal service.
    Validates X-Internal-Secret header against INTERNAL_JOB_SECRET from settings.
    """
    secret = settings.INTERNAL_JOB_SECRET
    if not secret:
        # In development (DEBUG=True), allow unauthenticated internal calls
        if settings.DEBUG:
            return
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="INTERNAL_JOB_SECRET is not configured",
        )
    provided = request.headers.get("X-Internal-Secret")
    if not provided or provided != secret:
        logger.warning("internal_auth_failed", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )


@router.post("/escalation-tick")
async def escalation_tick(
    engine: Engine = Depends(get_engine),
    _auth: None = Depends(_require_internal_auth),
):
    """Every few minutes: reminders, escalations, expiries, deferred flush, delivery retries."""
    report = await engine.scheduler.tick()
    return report.as_dict()


async def run_scheduler(engine: Engine, interval_seconds: int) -> None:
    """Background loop started from the app lifespan; cancelled on shutdown."""
    logger.info("scheduler_started", interval_seconds=interval_seconds)
    while True:
        try:
            await engine.scheduler.tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("scheduler_tick_failed", error=str(e), exc_info=True)
        await asyncio.sleep(interval_seconds)
