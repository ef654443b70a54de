from typing import Optional

from fastapi import APIRouter, Depends, Query

from quote_approvals.engine import Engine, get_engine
from quote_approvals.middleware.actor import get_current_actor
from quote_approvals.schemas.common import PaginatedResponse, paginate
from quote_approvals.schemas.notification import NotificationLogResponse, NotificationStatsResponse

router = APIRouter()


@router.get("", response_model=PaginatedResponse[NotificationLogResponse])
async def list_notifications(
    approval_id: Optional[str] = Query(None),
    quote_id: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=50),
    engine: Engine = Depends(get_engine),
):
    """Delivery records, newest first."""
    logs = await engine.repo.list_notifications(approval_id)
    if quote_id:
        logs = [log for log in logs if log.quote_id == quote_id]
    if status_filter:
        logs = [log for log in logs if log.status == status_filter]
    logs.reverse()

    return paginate(logs, page, limit, NotificationLogResponse)


@router.get("/stats", response_model=NotificationStatsResponse)
async def notification_stats(engine: Engine = Depends(get_engine)):
    return NotificationStatsResponse(**await engine.dispatcher.stats())


@router.post("/{log_id}/acknowledge", response_model=NotificationLogResponse)
async def acknowledge_notification(
    log_id: str,
    current_actor: dict = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    log = await engine.dispatcher.acknowledge(log_id)
    return NotificationLogResponse.model_validate(log)
