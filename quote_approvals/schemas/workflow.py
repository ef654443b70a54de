from typing import List, Optional
from pydantic import BaseModel, Field

from quote_approvals.models.workflow import ApprovalLevel, TriggerCondition, WorkflowSettings


class WorkflowCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    is_active: bool = True
    conditions: List[TriggerCondition] = []
    levels: List[ApprovalLevel] = Field(..., min_length=1)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
