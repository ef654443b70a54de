"""
Workflow templates API: create, list, get.

Templates are immutable once created and quotes reference them by id;
there is no update route.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
import structlog

from quote_approvals.engine import Engine, get_engine
from quote_approvals.middleware.actor import get_current_actor
from quote_approvals.models.workflow import ApprovalWorkflow
from quote_approvals.schemas.common import PaginatedResponse, paginate
from quote_approvals.schemas.workflow import WorkflowCreate

logger = structlog.get_logger()
router = APIRouter()


@router.post("", response_model=ApprovalWorkflow, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    body: WorkflowCreate,
    current_actor: dict = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    workflow = ApprovalWorkflow(**body.model_dump(), created_by=current_actor["user_id"])
    await engine.repo.add_workflow(workflow)
    logger.info("workflow_created", workflow_id=workflow.id, levels=len(workflow.levels))
    return workflow


@router.get("", response_model=PaginatedResponse[ApprovalWorkflow])
async def list_workflows(
    is_active: Optional[bool] = Query(None),
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=50),
    engine: Engine = Depends(get_engine),
):
    workflows = await engine.repo.list_workflows()
    if is_active is not None:
        workflows = [w for w in workflows if w.is_active == is_active]
    workflows.sort(key=lambda w: w.created_at, reverse=True)
    return paginate(workflows, page, limit)


@router.get("/{workflow_id}", response_model=ApprovalWorkflow)
async def get_workflow(workflow_id: str, engine: Engine = Depends(get_engine)):
    return await engine.repo.get_workflow(workflow_id)
