"""
Workflow templates: trigger conditions, approval levels, settings.

Trigger conditions are a tagged variant on ``type``. Types the evaluator does
not know parse into ``UnrecognizedCondition`` instead of failing validation,
so a stored workflow with a newer condition type simply never matches.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Discriminator, Field, Tag

from quote_approvals.models.common import new_id, utcnow


class _ConditionBase(BaseModel):
    id: str = Field(default_factory=new_id)
    operator: str
    priority: int = 0


class AmountThresholdCondition(_ConditionBase):
    type: Literal["amount_threshold"] = "amount_threshold"
    value: Optional[int] = None  # cents
    secondary_value: Optional[int] = None


class DiscountPercentageCondition(_ConditionBase):
    type: Literal["discount_percentage"] = "discount_percentage"
    value: Optional[float] = None
    secondary_value: Optional[float] = None


class CustomerTypeCondition(_ConditionBase):
    type: Literal["customer_type"] = "customer_type"
    value: Union[str, list[str], None] = None
    secondary_value: None = None


class DepartmentCondition(_ConditionBase):
    type: Literal["department"] = "department"
    value: Union[str, list[str], None] = None
    secondary_value: None = None


class UnrecognizedCondition(_ConditionBase):
    type: str
    value: Any = None
    secondary_value: Any = None


CONDITION_TYPES = {
    "amount_threshold",
    "discount_percentage",
    "customer_type",
    "department",
}


def _condition_tag(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return kind if kind in CONDITION_TYPES else "unrecognized"


TriggerCondition = Annotated[
    Union[
        Annotated[AmountThresholdCondition, Tag("amount_threshold")],
        Annotated[DiscountPercentageCondition, Tag("discount_percentage")],
        Annotated[CustomerTypeCondition, Tag("customer_type")],
        Annotated[DepartmentCondition, Tag("department")],
        Annotated[UnrecognizedCondition, Tag("unrecognized")],
    ],
    Discriminator(_condition_tag),
]


class Approver(BaseModel):
    id: str = Field(default_factory=new_id)
    type: Literal["user", "role", "department", "manager"]
    user_id: Optional[str] = None
    role_id: Optional[str] = None
    department_id: Optional[str] = None
    manager_level: Optional[int] = None  # 1 = direct manager
    max_approval_cents: Optional[int] = None
    is_backup: bool = False
    order: int = 0


class ApprovalLevel(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    order: int
    approval_type: Literal[
        "any_user",
        "specific_users",
        "role_based",
        "department",
        "manager_hierarchy",
        "amount_based",
    ] = "role_based"
    approvers: list[Approver] = Field(default_factory=list)
    required_approvals: int = Field(default=1, ge=1)
    timeout_hours: Optional[float] = None
    parallel_approval: bool = False


class WorkflowReminders(BaseModel):
    enabled: bool = True
    intervals: list[float] = Field(default_factory=lambda: [24.0])
    max_reminders: int = 2


class WorkflowSettings(BaseModel):
    allow_parallel_approval: bool = True
    require_comments: bool = True
    allow_delegation: bool = False
    notify_creator: bool = True
    reminders: WorkflowReminders = Field(default_factory=WorkflowReminders)
    timeout_hours: float = 48.0


class ApprovalWorkflow(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    is_active: bool = True
    conditions: list[TriggerCondition] = Field(default_factory=list)
    levels: list[ApprovalLevel] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def aggregate_priority(self) -> int:
        return sum(c.priority for c in self.conditions)

    def level(self, level_id: str) -> Optional[ApprovalLevel]:
        for level in self.levels:
            if level.id == level_id:
                return level
        return None
