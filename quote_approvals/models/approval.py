from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from quote_approvals.models.common import new_id, utcnow

ApprovalState = Literal["pending", "approved", "rejected", "escalated", "delegated", "expired"]

AuditAction = Literal[
    "requested", "approved", "rejected", "escalated", "delegated", "expired", "reminder"
]


class QuoteApproval(BaseModel):
    id: str = Field(default_factory=new_id)
    quote_id: str
    workflow_id: str
    submission: int = 1
    level_id: str
    level_order: int
    slot: int = 0
    approver_id: str
    approver_role: Optional[str] = None
    status: ApprovalState = "pending"
    requested_at: datetime = Field(default_factory=utcnow)
    responded_at: Optional[datetime] = None
    comments: Optional[str] = None
    reason: Optional[str] = None
    reminders_sent: int = 0
    last_reminder_at: Optional[datetime] = None
    escalation_step: int = 0
    escalation_target: Optional[str] = None
    delegated_to: Optional[str] = None
    rule_id: Optional[str] = None
    flagged: bool = False
    version: int = 0


class ApprovalAuditLog(BaseModel):
    id: str = Field(default_factory=new_id)
    quote_id: str
    approval_id: str
    action: AuditAction
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    comments: Optional[str] = None
    reason: Optional[str] = None
