"""
Typed access to the documents the engine keeps behind the store.

Key layout:
  quotes/{quote_id}
  workflows/{workflow_id}
  approvals/{quote_id}/{approval_id}
  approval-index/{approval_id}            -> {"quote_id": ...}
  stages/{quote_id}/{submission}/{index}  -> claimed once when the stage opens
  audit/{quote_id}/{timestamp}-{entry_id}
  rules/{rule_id}
  notifications/{approval_id}/{log_id}
  deferred/{deferred_id}
  alerts/{alert_id}
"""

from typing import Optional

from quote_approvals.errors import InvalidTransition, NotFound
from quote_approvals.models.approval import QuoteApproval
from quote_approvals.models.notification import (
    Alert,
    DeferredNotification,
    NotificationLog,
    NotificationRule,
)
from quote_approvals.models.quote import Quote
from quote_approvals.models.workflow import ApprovalWorkflow
from quote_approvals.services.store import Store


def _dump(model) -> dict:
    return model.model_dump(mode="json")


class Repository:
    def __init__(self, store: Store):
        self.store = store

    # ---------- quotes ----------

    async def get_quote(self, quote_id: str) -> Quote:
        data = await self.store.get(f"quotes/{quote_id}")
        if data is None:
            raise NotFound("Quote not found", subject_id=quote_id)
        return Quote.model_validate(data)

    async def save_quote(self, quote: Quote) -> Quote:
        await self.store.put(f"quotes/{quote.id}", _dump(quote))
        return quote

    async def list_quotes(self) -> list[Quote]:
        return [Quote.model_validate(d) for d in await self.store.list("quotes/")]

    # ---------- workflows ----------

    async def get_workflow(self, workflow_id: str) -> ApprovalWorkflow:
        data = await self.store.get(f"workflows/{workflow_id}")
        if data is None:
            raise NotFound("Workflow not found", subject_id=workflow_id)
        return ApprovalWorkflow.model_validate(data)

    async def add_workflow(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow:
        # Templates are immutable: a second write under the same id is refused
        if not await self.store.add(f"workflows/{workflow.id}", _dump(workflow)):
            raise InvalidTransition("Workflow already exists", subject_id=workflow.id)
        return workflow

    async def list_workflows(self, active_only: bool = False) -> list[ApprovalWorkflow]:
        workflows = [
            ApprovalWorkflow.model_validate(d) for d in await self.store.list("workflows/")
        ]
        if active_only:
            workflows = [w for w in workflows if w.is_active]
        return workflows

    # ---------- approvals ----------

    async def add_approval(self, approval: QuoteApproval) -> QuoteApproval:
        await self.store.put(
            f"approval-index/{approval.id}", {"quote_id": approval.quote_id}
        )
        await self.store.add(
            f"approvals/{approval.quote_id}/{approval.id}", _dump(approval)
        )
        return approval

    async def get_approval(self, approval_id: str) -> QuoteApproval:
        index = await self.store.get(f"approval-index/{approval_id}")
        if index is None:
            raise NotFound("Approval not found", subject_id=approval_id)
        data = await self.store.get(f"approvals/{index['quote_id']}/{approval_id}")
        if data is None:
            raise NotFound("Approval not found", subject_id=approval_id)
        return QuoteApproval.model_validate(data)

    async def swap_approval(self, current: QuoteApproval, updated: QuoteApproval) -> QuoteApproval:
        """Persist ``updated`` only if nobody changed the record since ``current`` was read."""
        ok = await self.store.swap(
            f"approvals/{current.quote_id}/{current.id}",
            _dump(updated),
            current.version,
        )
        if not ok:
            raise InvalidTransition(
                "Approval was modified concurrently", subject_id=current.id
            )
        return updated.model_copy(update={"version": current.version + 1})

    async def list_approvals(
        self,
        quote_id: Optional[str] = None,
        submission: Optional[int] = None,
    ) -> list[QuoteApproval]:
        prefix = f"approvals/{quote_id}/" if quote_id else "approvals/"
        approvals = [QuoteApproval.model_validate(d) for d in await self.store.list(prefix)]
        if submission is not None:
            approvals = [a for a in approvals if a.submission == submission]
        approvals.sort(key=lambda a: (a.requested_at, a.level_order, a.slot))
        return approvals

    async def list_pending_approvals(self) -> list[QuoteApproval]:
        return [a for a in await self.list_approvals() if a.status == "pending"]

    async def claim_stage(self, quote_id: str, submission: int, stage_index: int) -> bool:
        """
        True for exactly one caller per (quote, submission, stage). Index
        ``len(stages)`` stands for the final approval of the chain.
        """
        return await self.store.add(
            f"stages/{quote_id}/{submission}/{stage_index}",
            {"quote_id": quote_id, "submission": submission, "stage": stage_index},
        )

    # ---------- notification rules ----------

    async def get_rule(self, rule_id: str) -> NotificationRule:
        data = await self.store.get(f"rules/{rule_id}")
        if data is None:
            raise NotFound("Notification rule not found", subject_id=rule_id)
        return NotificationRule.model_validate(data)

    async def save_rule(self, rule: NotificationRule) -> NotificationRule:
        await self.store.put(f"rules/{rule.id}", _dump(rule))
        return rule

    async def list_rules(self, active_only: bool = False) -> list[NotificationRule]:
        rules = [NotificationRule.model_validate(d) for d in await self.store.list("rules/")]
        if active_only:
            rules = [r for r in rules if r.is_active]
        return rules

    # ---------- notification logs ----------

    async def save_notification(self, log: NotificationLog) -> NotificationLog:
        await self.store.put(f"notifications/{log.approval_id}/{log.id}", _dump(log))
        return log

    async def list_notifications(self, approval_id: Optional[str] = None) -> list[NotificationLog]:
        prefix = f"notifications/{approval_id}/" if approval_id else "notifications/"
        logs = [NotificationLog.model_validate(d) for d in await self.store.list(prefix)]
        logs.sort(key=lambda log: log.sent_at)
        return logs

    async def get_notification(self, log_id: str) -> NotificationLog:
        for log in await self.list_notifications():
            if log.id == log_id:
                return log
        raise NotFound("Notification not found", subject_id=log_id)

    # ---------- deferred queue / alerts ----------

    async def save_deferred(self, item: DeferredNotification) -> None:
        await self.store.put(f"deferred/{item.id}", _dump(item))

    async def list_deferred(self) -> list[DeferredNotification]:
        items = [DeferredNotification.model_validate(d) for d in await self.store.list("deferred/")]
        return sorted(items, key=lambda i: i.deferred_at)

    async def remove_deferred(self, item_id: str) -> None:
        # The store has no delete; flushed entries are tombstoned instead
        await self.store.put(f"deferred-done/{item_id}", {"id": item_id})

    async def pending_deferred(self) -> list[DeferredNotification]:
        done = {d["id"] for d in await self.store.list("deferred-done/")}
        return [i for i in await self.list_deferred() if i.id not in done]

    async def raise_alert(self, alert: Alert) -> bool:
        """Alerts are keyed by id, so re-raising the same condition is a no-op."""
        return await self.store.add(f"alerts/{alert.id}", _dump(alert))

    async def list_alerts(self) -> list[Alert]:
        return [Alert.model_validate(d) for d in await self.store.list("alerts/")]
