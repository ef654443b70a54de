from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class AuditLogResponse(BaseModel):
    id: str
    quote_id: str
    approval_id: str
    action: str
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    timestamp: datetime
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    comments: Optional[str] = None
    reason: Optional[str] = None

    model_config = {"from_attributes": True}
