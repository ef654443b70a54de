"""Audit logging service: append-only record of approval state changes."""

import time
from datetime import datetime
from typing import Optional

import structlog

from quote_approvals.models.approval import ApprovalAuditLog, QuoteApproval
from quote_approvals.models.common import utcnow
from quote_approvals.services.store import Store

logger = structlog.get_logger()


def _entry_key(entry: ApprovalAuditLog) -> str:
    # perf_counter keeps same-timestamp entries in write order
    stamp = entry.timestamp.strftime("%Y%m%dT%H%M%S%f")
    return f"audit/{entry.quote_id}/{stamp}-{time.perf_counter_ns():020d}-{entry.id}"


async def create_audit_log(
    store: Store,
    approval: QuoteApproval,
    action: str,
    previous_status: Optional[str],
    new_status: Optional[str],
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
    comments: Optional[str] = None,
    reason: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> ApprovalAuditLog:
    """
    Append one audit entry. Entries are written insert-only and there is no
    update or delete path.
    """
    entry = ApprovalAuditLog(
        quote_id=approval.quote_id,
        approval_id=approval.id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        timestamp=timestamp or utcnow(),
        previous_status=previous_status,
        new_status=new_status,
        comments=comments,
        reason=reason,
    )
    await store.add(_entry_key(entry), entry.model_dump(mode="json"))

    logger.info(
        "audit_log_created",
        action=action,
        quote_id=approval.quote_id,
        approval_id=approval.id,
        actor_id=actor_id,
    )
    return entry


async def list_audit_logs(
    store: Store,
    quote_id: Optional[str] = None,
    approval_id: Optional[str] = None,
    action: Optional[str] = None,
) -> list[ApprovalAuditLog]:
    """Chronological entries, optionally filtered."""
    prefix = f"audit/{quote_id}/" if quote_id else "audit/"
    entries = [ApprovalAuditLog.model_validate(d) for d in await store.list(prefix)]
    if approval_id:
        entries = [e for e in entries if e.approval_id == approval_id]
    if action:
        entries = [e for e in entries if e.action == action]
    return sorted(entries, key=lambda e: e.timestamp)
