from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class ApprovalResponse(BaseModel):
    id: str
    quote_id: str
    workflow_id: str
    submission: int
    level_id: str
    level_order: int
    slot: int
    approver_id: str
    approver_role: Optional[str] = None
    status: str
    requested_at: datetime
    responded_at: Optional[datetime] = None
    comments: Optional[str] = None
    reason: Optional[str] = None
    reminders_sent: int
    escalation_step: int
    escalation_target: Optional[str] = None
    delegated_to: Optional[str] = None
    flagged: bool = False

    model_config = {"from_attributes": True}


class ApprovalActionRequest(BaseModel):
    comments: Optional[str] = Field(None, max_length=2000)


class DelegateRequest(BaseModel):
    delegate_to: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=2000)
