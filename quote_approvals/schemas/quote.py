from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from quote_approvals.schemas.approval import ApprovalResponse


class QuoteCreate(BaseModel):
    quote_number: Optional[str] = Field(None, max_length=50)
    title: str = Field("", max_length=300)
    total_cents: int = Field(..., ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    discount_rate: float = Field(0.0, ge=0, le=100)
    customer_type: Optional[str] = None
    department_id: Optional[str] = None
    notes: Optional[str] = None


class QuoteUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=300)
    total_cents: Optional[int] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    discount_rate: Optional[float] = Field(None, ge=0, le=100)
    customer_type: Optional[str] = None
    department_id: Optional[str] = None
    notes: Optional[str] = None


class QuoteResponse(BaseModel):
    id: str
    quote_number: Optional[str] = None
    title: str
    total_cents: int
    currency: str
    discount_rate: float
    customer_type: Optional[str] = None
    department_id: Optional[str] = None
    created_by: Optional[str] = None
    notes: Optional[str] = None
    approval_status: Optional[str] = None
    workflow_id: Optional[str] = None
    submission: int
    bound_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ApprovalStatusResponse(BaseModel):
    quote_id: str
    status: str
    workflow_id: Optional[str] = None
    submission: int
    progress_percentage: int
    approvals: List[ApprovalResponse] = []
