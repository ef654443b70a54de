from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from quote_approvals.models.common import new_id, utcnow
from quote_approvals.models.workflow import TriggerCondition

TriggerType = Literal[
    "quote_pending",
    "approval_overdue",
    "escalation_due",
    "approval_timeout",
    "quote_rejected",
    "quote_approved",
]
# Rules of these types govern reminder/escalation/expiry timing
TIMING_TRIGGERS = frozenset({"quote_pending", "approval_overdue", "escalation_due", "approval_timeout"})

EventType = Literal[
    "requested", "reminder", "escalated", "delegated", "expired", "approved", "rejected"
]

# Which rule trigger types listen to which engine events
EVENT_TRIGGERS: dict[str, frozenset] = {
    "requested": frozenset({"quote_pending"}),
    "reminder": TIMING_TRIGGERS,
    "delegated": frozenset({"quote_pending"}),
    "escalated": frozenset({"approval_overdue", "escalation_due"}),
    "expired": frozenset({"approval_timeout"}),
    "approved": frozenset({"quote_approved"}),
    "rejected": frozenset({"quote_rejected"}),
}

PRIORITY_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}


class RuleConditions(BaseModel):
    quote: list[TriggerCondition] = Field(default_factory=list)
    departments: list[str] = Field(default_factory=list)
    customer_types: list[str] = Field(default_factory=list)
    level_ids: list[str] = Field(default_factory=list)
    priority: Literal["low", "medium", "high", "critical"] = "medium"


class NotificationChannel(BaseModel):
    id: str = Field(default_factory=new_id)
    type: Literal["email", "sms", "push", "slack", "teams", "webhook"]
    enabled: bool = True
    recipients: list[str] = Field(default_factory=list)
    role_id: Optional[str] = None
    webhook: Optional[str] = None
    channel: Optional[str] = None
    template: Optional[str] = None
    priority: Literal["normal", "high", "urgent"] = "normal"


class EscalationTarget(BaseModel):
    type: Literal["role", "user", "department", "manager_hierarchy"]
    role_id: Optional[str] = None
    user_id: Optional[str] = None
    department_id: Optional[str] = None
    level: Optional[int] = None


class EscalationLevel(BaseModel):
    id: str = Field(default_factory=new_id)
    order: int
    name: str
    trigger_after_hours: float
    escalate_to: list[EscalationTarget] = Field(default_factory=list)
    requires_acknowledgment: bool = False


class ReminderSettings(BaseModel):
    enabled: bool = True
    intervals: list[float] = Field(default_factory=lambda: [24.0])
    # First reminder goes out this many hours after the request; later ones keep the interval gaps
    initial_notification_hours: Optional[float] = Field(default=None, gt=0)
    max_reminders: int = 2
    escalate_on_max_reminders: bool = False
    business_hours_only: bool = False
    weekend_handling: Literal["pause", "continue", "extend"] = "continue"
    smart_timing: bool = False
    urgency_multiplier: float = Field(default=1.0, gt=0)


class NotificationRule(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    is_active: bool = True
    trigger_type: TriggerType
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    channels: list[NotificationChannel] = Field(default_factory=list)
    escalation_chain: list[EscalationLevel] = Field(default_factory=list)
    reminder_settings: ReminderSettings = Field(default_factory=ReminderSettings)
    escalation_after_hours: float = 24.0
    final_timeout_hours: Optional[float] = None
    min_interval_minutes: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)

    def ordered_chain(self) -> list[EscalationLevel]:
        return sorted(self.escalation_chain, key=lambda lvl: lvl.order)


class NotificationEvent(BaseModel):
    rule_id: str
    approval_id: str
    type: EventType


class NotificationLog(BaseModel):
    id: str = Field(default_factory=new_id)
    rule_id: str
    quote_id: str
    approval_id: str
    event_type: str
    channel: str
    recipient: str
    status: Literal["sent", "delivered", "failed", "acknowledged", "abandoned"] = "sent"
    attempts: int = 1
    sent_at: datetime = Field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    error: Optional[str] = None


class DeferredNotification(BaseModel):
    id: str = Field(default_factory=new_id)
    event: NotificationEvent
    reason: Literal["rate_limit", "business_hours"]
    # Set when only one (channel, recipient) pair of the event is owed
    channel_id: Optional[str] = None
    recipient: Optional[str] = None
    deferred_at: datetime = Field(default_factory=utcnow)


class Alert(BaseModel):
    id: str
    kind: Literal["resolution_failure", "delivery_failure"]
    subject_id: str
    message: str
    raised_at: datetime = Field(default_factory=utcnow)
