from typing import Optional

from fastapi import APIRouter, Depends, Query, status
import structlog

from quote_approvals.engine import Engine, get_engine
from quote_approvals.middleware.actor import get_current_actor
from quote_approvals.models.notification import NotificationRule
from quote_approvals.schemas.common import PaginatedResponse, paginate
from quote_approvals.schemas.notification import NotificationRuleCreate

logger = structlog.get_logger()
router = APIRouter()


@router.post("", response_model=NotificationRule, status_code=status.HTTP_201_CREATED)
async def create_rule(
    body: NotificationRuleCreate,
    current_actor: dict = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    rule = NotificationRule(**body.model_dump())
    await engine.repo.save_rule(rule)
    logger.info(
        "notification_rule_created",
        rule_id=rule.id,
        trigger_type=rule.trigger_type,
        actor_id=current_actor["user_id"],
    )
    return rule


@router.get("", response_model=PaginatedResponse[NotificationRule])
async def list_rules(
    trigger_type: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None),
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=50),
    engine: Engine = Depends(get_engine),
):
    rules = await engine.repo.list_rules()
    if trigger_type:
        rules = [r for r in rules if r.trigger_type == trigger_type]
    if is_active is not None:
        rules = [r for r in rules if r.is_active == is_active]
    return paginate(rules, page, limit)


@router.get("/{rule_id}", response_model=NotificationRule)
async def get_rule(rule_id: str, engine: Engine = Depends(get_engine)):
    return await engine.repo.get_rule(rule_id)
