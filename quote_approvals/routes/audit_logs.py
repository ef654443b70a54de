from datetime import date, datetime, time, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query

from quote_approvals.engine import Engine, get_engine
from quote_approvals.middleware.actor import get_current_actor
from quote_approvals.schemas.audit_log import AuditLogResponse
from quote_approvals.schemas.common import PaginatedResponse, paginate
from quote_approvals.services.audit_service import list_audit_logs

router = APIRouter()


@router.get("", response_model=PaginatedResponse[AuditLogResponse])
async def get_audit_logs(
    quote_id: Optional[str] = Query(None),
    approval_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=50),
    current_actor: dict = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    """Chronological audit trail, oldest first."""
    entries = await list_audit_logs(
        engine.store, quote_id=quote_id, approval_id=approval_id, action=action
    )
    if actor_id:
        entries = [e for e in entries if e.actor_id == actor_id]
    if from_date:
        from_dt = datetime.combine(from_date, time.min, tzinfo=timezone.utc)
        entries = [e for e in entries if e.timestamp >= from_dt]
    if to_date:
        to_dt = datetime.combine(to_date, time.max, tzinfo=timezone.utc)
        entries = [e for e in entries if e.timestamp <= to_dt]

    return paginate(entries, page, limit, AuditLogResponse)
