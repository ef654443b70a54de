from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from quote_approvals.models.notification import (
    EscalationLevel,
    NotificationChannel,
    ReminderSettings,
    RuleConditions,
    TriggerType,
)


class NotificationRuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    is_active: bool = True
    trigger_type: TriggerType
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    channels: List[NotificationChannel] = Field(..., min_length=1)
    escalation_chain: List[EscalationLevel] = []
    reminder_settings: ReminderSettings = Field(default_factory=ReminderSettings)
    escalation_after_hours: float = Field(24.0, gt=0)
    final_timeout_hours: Optional[float] = Field(None, gt=0)
    min_interval_minutes: Optional[int] = Field(None, ge=0)


class NotificationLogResponse(BaseModel):
    id: str
    rule_id: str
    quote_id: str
    approval_id: str
    event_type: str
    channel: str
    recipient: str
    status: str
    attempts: int
    sent_at: datetime
    delivered_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    error: Optional[str] = None

    model_config = {"from_attributes": True}


class NotificationStatsResponse(BaseModel):
    total_notifications: int
    sent_today: int
    escalations_today: int
    failed: int
    delivery_rate: int
    deferred: int
    alerts: int
