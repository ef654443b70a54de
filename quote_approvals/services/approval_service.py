"""
Approval service: chain activation, responses, delegation, escalation.

Lifecycle of one QuoteApproval:
  pending → approved | rejected | escalated | delegated | expired
All right-hand states are terminal for that instance; escalated and delegated
hand the same level/slot to a new pending instance.

Chain rules:
  - levels sharing an ``order`` form a stage and activate together
  - a stage activates once every level of the previous stage is satisfied
  - a level needs ``required_approvals`` approvals; parallel levels open that
    many slots at once, sequential levels open one slot at a time
  - one rejection rejects the chain; every other pending approval expires
    with reason ``chain_rejected``

Every status write is a compare-and-set on the approval's version, so a human
response racing a scheduler transition loses cleanly with InvalidTransition.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog

from quote_approvals.errors import (
    DelegationNotAllowed,
    InvalidTransition,
    MissingComments,
    NotCurrentApprover,
    ResolutionFailure,
)
from quote_approvals.models.approval import QuoteApproval
from quote_approvals.models.common import utcnow
from quote_approvals.models.notification import Alert, EscalationLevel
from quote_approvals.models.quote import Quote
from quote_approvals.models.workflow import ApprovalLevel, ApprovalWorkflow
from quote_approvals.services.audit_service import create_audit_log
from quote_approvals.services.directory import Directory
from quote_approvals.services.repository import Repository
from quote_approvals.services.workflow_selector import build_chain

logger = structlog.get_logger()

SYSTEM_ACTOR = "system"
SYSTEM_ROLE = "scheduler"


@dataclass
class Candidate:
    actor_id: str
    role: Optional[str]


def level_satisfied(level: ApprovalLevel, approvals: list[QuoteApproval]) -> bool:
    approved = sum(1 for a in approvals if a.level_id == level.id and a.status == "approved")
    return approved >= level.required_approvals


def chain_status(workflow: ApprovalWorkflow, approvals: list[QuoteApproval]) -> str:
    """Aggregate status, derived only from the approvals themselves."""
    if any(a.status == "rejected" for a in approvals):
        return "rejected"
    if any(a.status == "expired" and a.reason == "timeout" for a in approvals):
        return "expired"
    if all(level_satisfied(level, approvals) for level in workflow.levels):
        return "approved"
    return "pending"


def chain_progress(workflow: ApprovalWorkflow, approvals: list[QuoteApproval]) -> float:
    """Fraction of levels whose required approvals are met."""
    if not workflow.levels:
        return 1.0
    done = sum(1 for level in workflow.levels if level_satisfied(level, approvals))
    return done / len(workflow.levels)


class ApprovalService:
    def __init__(self, repo: Repository, directory: Directory, notifier=None):
        self.repo = repo
        self.directory = directory
        self.notifier = notifier

    async def _notify(self, event_type: str, approval: QuoteApproval, now: datetime) -> None:
        # Delivery problems are recorded by the dispatcher; they never undo a transition
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(event_type, approval, now=now)
        except Exception as e:
            logger.error(
                "approval_notification_failed",
                approval_id=approval.id,
                event_type=event_type,
                error=str(e),
            )

    async def _raise_resolution_alert(self, subject_id: str, message: str, now: datetime) -> None:
        await self.repo.raise_alert(Alert(
            id=f"resolution-{subject_id}",
            kind="resolution_failure",
            subject_id=subject_id,
            message=message,
            raised_at=now,
        ))

    # ---------- activation ----------

    async def _candidates(self, level: ApprovalLevel, quote: Quote) -> list[Candidate]:
        """Primary approvers before backups; amount caps below the quote total are skipped."""
        ordered = sorted(level.approvers, key=lambda a: (a.is_backup, a.order))
        candidates: list[Candidate] = []
        seen: set[str] = set()
        for approver in ordered:
            if approver.max_approval_cents is not None and approver.max_approval_cents < quote.total_cents:
                continue
            actor_id = await self.directory.resolve_approver(approver, quote)
            if not actor_id:
                logger.warning(
                    "approver_unresolved",
                    quote_id=quote.id,
                    level_id=level.id,
                    approver_type=approver.type,
                )
                continue
            if actor_id in seen:
                continue
            seen.add(actor_id)
            candidates.append(Candidate(actor_id, approver.role_id or approver.type))
        return candidates

    async def _create(
        self,
        quote: Quote,
        workflow: ApprovalWorkflow,
        level: ApprovalLevel,
        slot: int,
        candidate: Candidate,
        now: datetime,
        **extra,
    ) -> QuoteApproval:
        approval = QuoteApproval(
            quote_id=quote.id,
            workflow_id=workflow.id,
            submission=quote.submission,
            level_id=level.id,
            level_order=level.order,
            slot=slot,
            approver_id=candidate.actor_id,
            approver_role=candidate.role,
            requested_at=now,
            **extra,
        )
        return await self.repo.add_approval(approval)

    async def request_approval(
        self,
        level: ApprovalLevel,
        quote: Quote,
        workflow: ApprovalWorkflow,
        now: Optional[datetime] = None,
    ) -> list[QuoteApproval]:
        """Open the level: N slots when parallel, otherwise the first slot only."""
        now = now or utcnow()
        candidates = await self._candidates(level, quote)
        if len(candidates) < level.required_approvals:
            message = (
                f"Level '{level.name}' needs {level.required_approvals} approver(s), "
                f"resolved {len(candidates)}"
            )
            await self._raise_resolution_alert(f"{quote.id}-{level.id}", message, now)
            logger.error("approval_level_unresolvable", quote_id=quote.id, level_id=level.id)
            raise ResolutionFailure(message, subject_id=level.id)

        parallel = level.parallel_approval and workflow.settings.allow_parallel_approval
        slots = level.required_approvals if parallel else 1

        created = []
        for slot, candidate in enumerate(candidates[:slots]):
            approval = await self._create(quote, workflow, level, slot, candidate, now)
            await create_audit_log(
                self.repo.store,
                approval,
                "requested",
                previous_status=None,
                new_status="pending",
                actor_id=quote.created_by,
                timestamp=now,
            )
            created.append(approval)

        logger.info(
            "approval_requested",
            quote_id=quote.id,
            level_id=level.id,
            approvals=len(created),
            parallel=parallel,
        )
        for approval in created:
            await self._notify("requested", approval, now)
        return created

    async def start_chain(
        self, quote: Quote, workflow: ApprovalWorkflow, now: Optional[datetime] = None
    ) -> list[QuoteApproval]:
        now = now or utcnow()
        chain = build_chain(workflow)
        if not chain.stages:
            return []
        created: list[QuoteApproval] = []
        for level in chain.stages[0]:
            created.extend(await self.request_approval(level, quote, workflow, now))
        return created

    # ---------- transitions ----------

    async def _transition(
        self,
        approval: QuoteApproval,
        status: str,
        action: str,
        now: datetime,
        actor_id: Optional[str],
        actor_role: Optional[str],
        comments: Optional[str] = None,
        reason: Optional[str] = None,
        **fields,
    ) -> QuoteApproval:
        if approval.status != "pending":
            raise InvalidTransition(
                f"Approval is {approval.status}, not pending", subject_id=approval.id
            )
        updated = approval.model_copy(update={
            "status": status,
            "responded_at": now,
            "comments": comments if comments is not None else approval.comments,
            "reason": reason,
            **fields,
        })
        saved = await self.repo.swap_approval(approval, updated)
        await create_audit_log(
            self.repo.store,
            saved,
            action,
            previous_status=approval.status,
            new_status=status,
            actor_id=actor_id,
            actor_role=actor_role,
            comments=comments,
            reason=reason,
            timestamp=now,
        )
        return saved

    async def _expire_pending(
        self,
        quote: Quote,
        reason: str,
        now: datetime,
        exclude_id: Optional[str] = None,
        level_id: Optional[str] = None,
    ) -> list[QuoteApproval]:
        expired = []
        for other in await self.repo.list_approvals(quote.id, quote.submission):
            if other.status != "pending" or other.id == exclude_id:
                continue
            if level_id is not None and other.level_id != level_id:
                continue
            try:
                expired.append(await self._transition(
                    other, "expired", "expired", now, SYSTEM_ACTOR, SYSTEM_ROLE, reason=reason
                ))
            except InvalidTransition:
                # Someone else moved it first; its own transition is already audited
                logger.info("approval_cancel_skipped", approval_id=other.id, reason=reason)
        return expired

    async def respond(
        self,
        approval_id: str,
        actor_id: str,
        decision: str,
        comments: Optional[str] = None,
        actor_role: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> QuoteApproval:
        now = now or utcnow()
        approval = await self.repo.get_approval(approval_id)
        if approval.status != "pending":
            raise InvalidTransition(
                f"Approval is {approval.status}, not pending", subject_id=approval.id
            )
        if str(approval.approver_id) != str(actor_id):
            raise NotCurrentApprover(
                "You are not the current approver for this step", subject_id=approval.id
            )
        if decision not in ("approve", "reject"):
            raise InvalidTransition(f"Unknown decision '{decision}'", subject_id=approval.id)

        workflow = await self.repo.get_workflow(approval.workflow_id)
        if decision == "reject" and workflow.settings.require_comments and not (comments or "").strip():
            raise MissingComments("Comments are required to reject", subject_id=approval.id)

        status = "approved" if decision == "approve" else "rejected"
        saved = await self._transition(
            approval, status, status, now, actor_id, actor_role, comments=comments
        )
        logger.info(
            "approval_responded",
            approval_id=approval.id,
            quote_id=approval.quote_id,
            decision=decision,
            actor_id=actor_id,
        )

        quote = await self.repo.get_quote(approval.quote_id)
        if status == "rejected":
            await self._expire_pending(quote, "chain_rejected", now, exclude_id=saved.id)
            quote = quote.model_copy(update={"approval_status": "rejected", "updated_at": now})
            await self.repo.save_quote(quote)
            logger.info("approval_chain_rejected", quote_id=quote.id)
            if workflow.settings.notify_creator:
                await self._notify("rejected", saved, now)
        else:
            await self._advance(quote, workflow, saved, now)
        return saved

    async def _advance(
        self,
        quote: Quote,
        workflow: ApprovalWorkflow,
        approval: QuoteApproval,
        now: datetime,
    ) -> None:
        level = workflow.level(approval.level_id)
        approvals = await self.repo.list_approvals(quote.id, quote.submission)

        if not level_satisfied(level, approvals):
            in_level = [a for a in approvals if a.level_id == level.id]
            if any(a.status == "pending" for a in in_level):
                return
            # Sequential collection: hand the next slot to an approver not yet asked
            asked = {a.approver_id for a in in_level}
            remaining = [c for c in await self._candidates(level, quote) if c.actor_id not in asked]
            if not remaining:
                message = f"Level '{level.name}' ran out of approvers before reaching its quota"
                await self._raise_resolution_alert(f"{quote.id}-{level.id}", message, now)
                logger.error("approval_level_stalled", quote_id=quote.id, level_id=level.id)
                return
            next_slot = max(a.slot for a in in_level) + 1
            created = await self._create(quote, workflow, level, next_slot, remaining[0], now)
            await create_audit_log(
                self.repo.store, created, "requested", None, "pending",
                actor_id=SYSTEM_ACTOR, actor_role=SYSTEM_ROLE, timestamp=now,
            )
            await self._notify("requested", created, now)
            return

        logger.info("approval_level_complete", quote_id=quote.id, level_id=level.id)
        await self._expire_pending(quote, "level_complete", now, level_id=level.id)

        chain = build_chain(workflow)
        index = chain.stage_index(level.id)
        if not all(level_satisfied(lvl, approvals) for lvl in chain.stages[index]):
            return

        next_stage = chain.next_stage(level.id)
        if next_stage is not None:
            # Parallel responses can both see the stage complete; one of them opens the next
            if not await self.repo.claim_stage(quote.id, quote.submission, index + 1):
                logger.info("approval_stage_already_opened", quote_id=quote.id, stage=index + 1)
                return
            opened = {a.level_id for a in approvals}
            for next_level in next_stage:
                if next_level.id in opened:
                    continue
                try:
                    await self.request_approval(next_level, quote, workflow, now)
                except ResolutionFailure as e:
                    # Alert already raised; the chain stays pending for an operator
                    logger.error("approval_stage_stalled", quote_id=quote.id, error=e.message)
            return

        if chain_status(workflow, approvals) == "approved":
            if not await self.repo.claim_stage(quote.id, quote.submission, len(chain.stages)):
                return
            quote = quote.model_copy(update={"approval_status": "approved", "updated_at": now})
            await self.repo.save_quote(quote)
            logger.info("approval_chain_approved", quote_id=quote.id, workflow_id=workflow.id)
            if workflow.settings.notify_creator:
                await self._notify("approved", approval, now)

    async def delegate(
        self,
        approval_id: str,
        actor_id: str,
        delegate_to: str,
        reason: Optional[str] = None,
        actor_role: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> QuoteApproval:
        """Hand a pending approval to another user; returns the delegate's new approval."""
        now = now or utcnow()
        approval = await self.repo.get_approval(approval_id)
        if approval.status != "pending":
            raise InvalidTransition(
                f"Approval is {approval.status}, not pending", subject_id=approval.id
            )
        if str(approval.approver_id) != str(actor_id):
            raise NotCurrentApprover(
                "You are not the current approver for this step", subject_id=approval.id
            )
        workflow = await self.repo.get_workflow(approval.workflow_id)
        if not workflow.settings.allow_delegation:
            raise DelegationNotAllowed("Workflow does not allow delegation", subject_id=approval.id)
        if delegate_to == actor_id:
            raise InvalidTransition("Cannot delegate to yourself", subject_id=approval.id)

        await self._transition(
            approval, "delegated", "delegated", now, actor_id, actor_role,
            comments=reason, reason="delegated", delegated_to=delegate_to,
        )
        quote = await self.repo.get_quote(approval.quote_id)
        level = workflow.level(approval.level_id)
        replacement = await self._create(
            quote, workflow, level, approval.slot, Candidate(delegate_to, approval.approver_role), now,
            escalation_step=approval.escalation_step,
            rule_id=approval.rule_id,
        )
        logger.info(
            "approval_delegated",
            approval_id=approval.id,
            delegated_to=delegate_to,
            new_approval_id=replacement.id,
        )
        await self._notify("delegated", replacement, now)
        return replacement

    # ---------- scheduler-driven transitions ----------

    async def remind(self, approval: QuoteApproval, reminders_sent: int, now: datetime) -> QuoteApproval:
        """Record a reminder; not a status change, but audited like one."""
        if approval.status != "pending":
            raise InvalidTransition(
                f"Approval is {approval.status}, not pending", subject_id=approval.id
            )
        updated = approval.model_copy(update={
            "reminders_sent": reminders_sent,
            "last_reminder_at": now,
        })
        saved = await self.repo.swap_approval(approval, updated)
        await create_audit_log(
            self.repo.store, saved, "reminder", "pending", "pending",
            actor_id=SYSTEM_ACTOR, actor_role=SYSTEM_ROLE,
            reason=f"reminder {reminders_sent}", timestamp=now,
        )
        return saved

    async def flag(self, approval: QuoteApproval) -> QuoteApproval:
        if approval.flagged:
            return approval
        return await self.repo.swap_approval(approval, approval.model_copy(update={"flagged": True}))

    async def escalate(
        self,
        approval: QuoteApproval,
        target_actor_id: str,
        target: EscalationLevel,
        rule_id: Optional[str],
        now: datetime,
    ) -> QuoteApproval:
        """Hand the approval to the next escalation-chain holder; returns the new approval."""
        quote = await self.repo.get_quote(approval.quote_id)
        workflow = await self.repo.get_workflow(approval.workflow_id)
        level = workflow.level(approval.level_id)
        await self._transition(
            approval, "escalated", "escalated", now, SYSTEM_ACTOR, SYSTEM_ROLE,
            reason="timeout", escalation_target=target_actor_id,
            comments=f"Escalated to {target.name}",
        )
        try:
            replacement = await self._create(
                quote, workflow, level, approval.slot, Candidate(target_actor_id, target.name), now,
                escalation_step=approval.escalation_step + 1,
                rule_id=rule_id,
            )
        except Exception as e:
            # The original is already escalated; without a successor the level is stuck
            await self._raise_resolution_alert(
                approval.id,
                f"Escalation to {target_actor_id} left no pending approval: {e}",
                now,
            )
            logger.error(
                "approval_escalation_incomplete",
                approval_id=approval.id,
                escalated_to=target_actor_id,
                error=str(e),
            )
            raise
        logger.warning(
            "approval_escalated",
            approval_id=approval.id,
            quote_id=approval.quote_id,
            escalated_to=target_actor_id,
            step=replacement.escalation_step,
        )
        return replacement

    async def expire(self, approval: QuoteApproval, reason: str, now: datetime) -> QuoteApproval:
        """Time out an approval. A timeout leaves its level unsatisfiable, so the chain expires."""
        saved = await self._transition(
            approval, "expired", "expired", now, SYSTEM_ACTOR, SYSTEM_ROLE, reason=reason
        )
        if reason == "timeout":
            quote = await self.repo.get_quote(approval.quote_id)
            await self._expire_pending(quote, "chain_expired", now, exclude_id=saved.id)
            quote = quote.model_copy(update={"approval_status": "expired", "updated_at": now})
            await self.repo.save_quote(quote)
            logger.warning("approval_chain_expired", quote_id=quote.id, approval_id=approval.id)
        return saved

    async def cancel_submission(self, quote: Quote, reason: str, now: Optional[datetime] = None) -> list[QuoteApproval]:
        return await self._expire_pending(quote, reason, now or utcnow())
