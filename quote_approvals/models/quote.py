from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from quote_approvals.models.common import new_id, utcnow

ApprovalStatus = Literal["not_required", "pending", "approved", "rejected", "expired"]

# Edits to any of these re-run workflow selection (or are refused once bound)
APPROVAL_FIELDS = ("total_cents", "currency", "discount_rate", "customer_type", "department_id")


class Quote(BaseModel):
    id: str = Field(default_factory=new_id)
    quote_number: Optional[str] = None
    title: str = ""
    total_cents: int = Field(ge=0)
    currency: str = "USD"
    discount_rate: float = 0.0  # percent
    customer_type: Optional[str] = None
    department_id: Optional[str] = None
    created_by: Optional[str] = None
    notes: Optional[str] = None

    approval_status: Optional[ApprovalStatus] = None
    workflow_id: Optional[str] = None
    submission: int = 1
    bound_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_bound(self) -> bool:
        return self.workflow_id is not None and self.bound_at is not None
