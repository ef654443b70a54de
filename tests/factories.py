"""Builders for the engine's documents, shared by unit and integration tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from quote_approvals.models.notification import (
    EscalationLevel,
    EscalationTarget,
    NotificationChannel,
    NotificationRule,
    ReminderSettings,
)
from quote_approvals.models.quote import Quote
from quote_approvals.models.workflow import (
    AmountThresholdCondition,
    ApprovalLevel,
    ApprovalWorkflow,
    Approver,
    WorkflowSettings,
)
from quote_approvals.services.delivery_service import DeliveryResult
from quote_approvals.services.store import InMemoryStore

# Monday 09:00 UTC
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

DIRECTORY = {
    "roles": {
        "sales_manager": "u-sales-mgr",
        "sales_director": "u-director",
        "finance": "u-finance",
        "vp_sales": "u-vp",
    },
    "departments": {"sales": "u-sales-head"},
    "managers": {"sales": ["u-mgr-1", "u-mgr-2"]},
}


def hours(n: float) -> datetime:
    return T0 + timedelta(hours=n)


class RecordingGateway:
    """Delivery gateway that remembers every send; channels in ``failing`` fail."""

    def __init__(self, failing=()):
        self.sent: list[tuple[str, str, dict]] = []
        self.failing = set(failing)

    async def send(self, channel: str, recipient: str, payload: dict) -> DeliveryResult:
        self.sent.append((channel, recipient, payload))
        if channel in self.failing:
            return DeliveryResult(ok=False, error=f"{channel} unavailable")
        return DeliveryResult(ok=True)

    def events(self) -> list[str]:
        return [payload["event_type"] for _, _, payload in self.sent]


def role_approver(role_id: str, **kwargs) -> Approver:
    return Approver(type="role", role_id=role_id, **kwargs)


def make_level(
    name: str = "Sales Manager", order: int = 1, roles=("sales_manager",), **kwargs
) -> ApprovalLevel:
    return ApprovalLevel(
        name=name,
        order=order,
        approvers=[role_approver(r, order=i) for i, r in enumerate(roles)],
        **kwargs,
    )


def make_workflow(
    levels: Optional[list] = None,
    threshold_cents: Optional[int] = 5_000_000,
    settings: Optional[WorkflowSettings] = None,
    **kwargs,
) -> ApprovalWorkflow:
    conditions = []
    if threshold_cents is not None:
        conditions.append(AmountThresholdCondition(operator="gt", value=threshold_cents, priority=1))
    return ApprovalWorkflow(
        name=kwargs.pop("name", "Large deals"),
        conditions=conditions,
        levels=levels if levels is not None else [make_level()],
        settings=settings or WorkflowSettings(),
        created_at=kwargs.pop("created_at", T0 - timedelta(days=30)),
        **kwargs,
    )


def make_quote(total_cents: int = 7_500_000, **kwargs) -> Quote:
    return Quote(
        quote_number=kwargs.pop("quote_number", "Q-1001"),
        title="Annual licence",
        total_cents=total_cents,
        department_id=kwargs.pop("department_id", "sales"),
        created_by=kwargs.pop("created_by", "u-rep"),
        created_at=T0,
        updated_at=T0,
        **kwargs,
    )


def make_rule(
    intervals=(12.0,),
    max_reminders: int = 1,
    chain=(("Sales Director", 24.0, "sales_director"),),
    **kwargs,
) -> NotificationRule:
    reminder_kwargs = kwargs.pop("reminders", {})
    return NotificationRule(
        name=kwargs.pop("name", "Pending quote follow-up"),
        trigger_type=kwargs.pop("trigger_type", "quote_pending"),
        channels=kwargs.pop("channels", [NotificationChannel(type="email")]),
        escalation_chain=[
            EscalationLevel(
                order=i + 1,
                name=name,
                trigger_after_hours=after,
                escalate_to=[EscalationTarget(type="role", role_id=role)],
            )
            for i, (name, after, role) in enumerate(chain)
        ],
        reminder_settings=ReminderSettings(
            intervals=list(intervals), max_reminders=max_reminders, **reminder_kwargs
        ),
        created_at=kwargs.pop("created_at", T0 - timedelta(days=30)),
        **kwargs,
    )


class YieldingStore(InMemoryStore):
    """In-memory store that gives up the event loop on every call, like a database driver."""

    async def get(self, key: str) -> Optional[dict]:
        await asyncio.sleep(0)
        return await super().get(key)

    async def put(self, key: str, value: dict) -> None:
        await asyncio.sleep(0)
        await super().put(key, value)

    async def list(self, prefix: str) -> list[dict]:
        await asyncio.sleep(0)
        return await super().list(prefix)
