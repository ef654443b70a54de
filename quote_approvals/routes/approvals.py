"""
Approvals API routes: list approvals, approve, reject or delegate a step.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
import structlog

from quote_approvals.engine import Engine, get_engine
from quote_approvals.middleware.actor import get_current_actor
from quote_approvals.schemas.approval import (
    ApprovalActionRequest,
    ApprovalResponse,
    DelegateRequest,
)
from quote_approvals.schemas.common import PaginatedResponse, paginate

logger = structlog.get_logger()
router = APIRouter()

PRIVILEGED_ROLES = {"admin", "sales_director", "finance_head"}


@router.get("", response_model=PaginatedResponse[ApprovalResponse])
async def list_approvals(
    status_filter: Optional[str] = Query(None, alias="status"),
    quote_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=50),
    current_actor: dict = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    """An approver sees their own queue; privileged roles can list a quote's full chain."""
    approvals = await engine.repo.list_approvals(quote_id)
    if not (quote_id and current_actor.get("role") in PRIVILEGED_ROLES):
        approvals = [a for a in approvals if a.approver_id == current_actor["user_id"]]
    if status_filter:
        approvals = [a for a in approvals if a.status == status_filter]
    approvals.sort(key=lambda a: a.requested_at, reverse=True)

    return paginate(approvals, page, limit, ApprovalResponse)


@router.post("/{approval_id}/approve", response_model=ApprovalResponse)
async def approve_step(
    approval_id: str,
    body: ApprovalActionRequest = ApprovalActionRequest(),
    current_actor: dict = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    approval = await engine.approvals.respond(
        approval_id,
        current_actor["user_id"],
        "approve",
        comments=body.comments,
        actor_role=current_actor.get("role"),
    )
    return ApprovalResponse.model_validate(approval)


@router.post("/{approval_id}/reject", response_model=ApprovalResponse)
async def reject_step(
    approval_id: str,
    body: ApprovalActionRequest,
    current_actor: dict = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    approval = await engine.approvals.respond(
        approval_id,
        current_actor["user_id"],
        "reject",
        comments=body.comments,
        actor_role=current_actor.get("role"),
    )
    return ApprovalResponse.model_validate(approval)


@router.post("/{approval_id}/delegate", response_model=ApprovalResponse)
async def delegate_step(
    approval_id: str,
    body: DelegateRequest,
    current_actor: dict = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    """Returns the delegate's new pending approval."""
    approval = await engine.approvals.delegate(
        approval_id,
        current_actor["user_id"],
        body.delegate_to,
        reason=body.reason,
        actor_role=current_actor.get("role"),
    )
    return ApprovalResponse.model_validate(approval)
