"""
Escalation scheduler: turns elapsed time into reminders, escalations, expiries.

A tick is a pure function of ``now`` and persisted state, so it can be driven
by the background loop, the internal jobs endpoint, or a test with a fixed
clock. Re-running a tick for the same ``now`` does nothing: reminders are
guarded by ``reminders_sent``, transitions by the approval's status and version.

Timing policy for one pending approval:
  rule     = the rule that assigned it, else the highest-priority active rule
             with a timing trigger that matches; else workflow settings
  elapsed  = eligible hours since requested_at (business hours / weekends);
             with weekend_handling "extend" nothing comes due on a weekend
  reminder = offsets are the reminder intervals, shifted so the first lands on
             initial_notification_hours when set; past the configured list
             the last gap repeats; at most max_reminders are ever sent
  escalate = elapsed >= threshold and a next escalation-chain level exists
  expire   = elapsed >= final timeout and no escalation level remains
"""

import asyncio
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional

import structlog

from quote_approvals.config import settings
from quote_approvals.errors import InvalidTransition
from quote_approvals.models.approval import QuoteApproval
from quote_approvals.models.common import utcnow
from quote_approvals.models.notification import (
    Alert,
    EscalationLevel,
    NotificationEvent,
    NotificationRule,
)
from quote_approvals.models.quote import Quote
from quote_approvals.models.workflow import ApprovalWorkflow
from quote_approvals.services.approval_service import ApprovalService
from quote_approvals.services.business_hours import BusinessCalendar, as_aware
from quote_approvals.services.notification_service import NotificationDispatcher, timing_rule
from quote_approvals.services.repository import Repository

logger = structlog.get_logger()


@dataclass
class TimingPolicy:
    rule: Optional[NotificationRule]
    reminders_enabled: bool
    offsets: list[float]
    max_reminders: int
    escalate_on_max_reminders: bool
    business_hours_only: bool = False
    weekend_handling: str = "continue"
    next_target: Optional[EscalationLevel] = None
    escalation_threshold: Optional[float] = None
    final_timeout: Optional[float] = None


@dataclass
class TickReport:
    now: datetime
    processed: int = 0
    reminders: int = 0
    escalations: int = 0
    expirations: int = 0
    flagged: int = 0
    errors: int = 0
    deferred_flushed: int = 0
    retried: int = 0
    error_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["now"] = self.now.isoformat()
        return data


def reminder_offsets(intervals: list[float], count: int) -> list[float]:
    """
    First ``count`` reminder offsets in hours after the request. Intervals are
    offsets themselves; when more are needed the last gap keeps repeating.
    """
    offsets = sorted(i for i in intervals if i > 0)
    if not offsets or count <= 0:
        return []
    gap = offsets[-1] - offsets[-2] if len(offsets) > 1 else offsets[0]
    while len(offsets) < count:
        offsets.append(offsets[-1] + gap)
    return offsets[:count]


def build_policy(
    rule: Optional[NotificationRule],
    workflow: ApprovalWorkflow,
    approval: QuoteApproval,
) -> TimingPolicy:
    level = workflow.level(approval.level_id)
    level_timeout = level.timeout_hours if level is not None else None

    if rule is None:
        reminders = workflow.settings.reminders
        return TimingPolicy(
            rule=None,
            reminders_enabled=reminders.enabled,
            offsets=reminder_offsets(reminders.intervals, reminders.max_reminders + 1),
            max_reminders=reminders.max_reminders,
            escalate_on_max_reminders=False,
            final_timeout=(level_timeout if approval.escalation_step == 0 else None)
            or workflow.settings.timeout_hours,
        )

    rs = rule.reminder_settings
    scale = rs.urgency_multiplier if rs.smart_timing else 1.0
    offsets = reminder_offsets(rs.intervals, rs.max_reminders + 1)
    if offsets and rs.initial_notification_hours is not None:
        offsets = [rs.initial_notification_hours + (o - offsets[0]) for o in offsets]
    chain = rule.ordered_chain()
    next_target = chain[approval.escalation_step] if approval.escalation_step < len(chain) else None

    threshold = None
    if next_target is not None:
        if approval.escalation_step == 0:
            threshold = level_timeout or rule.escalation_after_hours
        else:
            threshold = next_target.trigger_after_hours

    final = rule.final_timeout_hours
    if final is None and approval.escalation_step == 0:
        final = level_timeout
    if final is None:
        final = rule.escalation_after_hours

    return TimingPolicy(
        rule=rule,
        reminders_enabled=rs.enabled,
        offsets=[o * scale for o in offsets],
        max_reminders=rs.max_reminders,
        escalate_on_max_reminders=rs.escalate_on_max_reminders,
        business_hours_only=rs.business_hours_only,
        weekend_handling=rs.weekend_handling,
        next_target=next_target,
        escalation_threshold=threshold * scale if threshold is not None else None,
        final_timeout=final * scale,
    )


def reminders_due(policy: TimingPolicy, elapsed: float) -> int:
    if not policy.reminders_enabled:
        return 0
    due = sum(1 for offset in policy.offsets if offset <= elapsed)
    return min(due, policy.max_reminders)


def escalation_due(policy: TimingPolicy, approval: QuoteApproval, elapsed: float) -> bool:
    if policy.next_target is None:
        return False
    if policy.escalation_threshold is not None and elapsed >= policy.escalation_threshold:
        return True
    # Early escalation once every reminder went unanswered
    if policy.escalate_on_max_reminders and approval.reminders_sent >= policy.max_reminders:
        if len(policy.offsets) > policy.max_reminders:
            return elapsed >= policy.offsets[policy.max_reminders]
    return False


class EscalationScheduler:
    def __init__(
        self,
        repo: Repository,
        approvals: ApprovalService,
        dispatcher: NotificationDispatcher,
        calendar: Optional[BusinessCalendar] = None,
        concurrency: Optional[int] = None,
    ):
        self.repo = repo
        self.approvals = approvals
        self.dispatcher = dispatcher
        self.calendar = calendar or BusinessCalendar.from_settings()
        self.concurrency = concurrency or settings.SCHEDULER_CONCURRENCY

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        now = as_aware(now or utcnow())
        report = TickReport(now=now)
        pending = await self.repo.list_pending_approvals()
        rules = await self.repo.list_rules()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(approval: QuoteApproval) -> None:
            async with semaphore:
                await self._process_safely(approval, rules, now, report)

        await asyncio.gather(*(guarded(a) for a in pending))

        report.deferred_flushed = await self.dispatcher.flush_deferred(now)
        report.retried = await self.dispatcher.retry_failed(now)

        logger.info("scheduler_tick_complete", **{k: v for k, v in report.as_dict().items() if k != "error_ids"})
        return report

    async def _process_safely(
        self,
        approval: QuoteApproval,
        rules: list[NotificationRule],
        now: datetime,
        report: TickReport,
    ) -> None:
        report.processed += 1
        try:
            await self._process(approval, rules, now, report)
        except InvalidTransition as e:
            # A human response or another tick won the race; next tick sees the new state
            logger.info("scheduler_transition_skipped", approval_id=approval.id, reason=e.message)
        except Exception as e:
            report.errors += 1
            report.error_ids.append(approval.id)
            logger.error(
                "scheduler_approval_failed",
                approval_id=approval.id,
                quote_id=approval.quote_id,
                error=str(e),
                exc_info=True,
            )

    async def _process(
        self,
        approval: QuoteApproval,
        rules: list[NotificationRule],
        now: datetime,
        report: TickReport,
    ) -> None:
        quote = await self.repo.get_quote(approval.quote_id)
        if quote.submission != approval.submission:
            return
        workflow = await self.repo.get_workflow(approval.workflow_id)
        rule = timing_rule(rules, quote, approval)
        policy = build_policy(rule, workflow, approval)

        if policy.weekend_handling == "extend" and self.calendar.is_weekend(now):
            return

        elapsed = self.calendar.eligible_hours(
            as_aware(approval.requested_at),
            now,
            business_hours_only=policy.business_hours_only,
            weekend_handling=policy.weekend_handling,
        )

        if escalation_due(policy, approval, elapsed):
            escalated = await self._escalate(approval, policy, quote, now, report)
            if escalated:
                return
            approval = await self.repo.get_approval(approval.id)
        elif policy.next_target is None and policy.final_timeout is not None and elapsed >= policy.final_timeout:
            await self.approvals.expire(approval, "timeout", now)
            report.expirations += 1
            await self._emit("expired", approval, policy.rule, now)
            return

        due = reminders_due(policy, elapsed)
        if approval.reminders_sent < due:
            reminded = await self.approvals.remind(approval, due, now)
            report.reminders += 1
            logger.info(
                "approval_reminder_sent",
                approval_id=approval.id,
                reminders_sent=due,
                elapsed_hours=round(elapsed, 2),
            )
            await self._emit("reminder", reminded, policy.rule, now)

    async def _escalate(
        self,
        approval: QuoteApproval,
        policy: TimingPolicy,
        quote: Quote,
        now: datetime,
        report: TickReport,
    ) -> bool:
        target = policy.next_target
        actor_id = None
        for candidate in target.escalate_to:
            actor_id = await self.approvals.directory.resolve_approver(candidate, quote)
            if actor_id:
                break

        if not actor_id:
            if not approval.flagged:
                await self.approvals.flag(approval)
                report.flagged += 1
            await self.repo.raise_alert(Alert(
                id=f"resolution-{approval.id}-{approval.escalation_step}",
                kind="resolution_failure",
                subject_id=approval.id,
                message=f"No holder found for escalation level '{target.name}'",
                raised_at=now,
            ))
            logger.error(
                "escalation_target_unresolved",
                approval_id=approval.id,
                escalation_level=target.name,
            )
            return False

        replacement = await self.approvals.escalate(
            approval, actor_id, target, policy.rule.id if policy.rule else None, now
        )
        report.escalations += 1
        await self._emit("escalated", replacement, policy.rule, now)
        return True

    async def _emit(
        self,
        event_type: str,
        approval: QuoteApproval,
        rule: Optional[NotificationRule],
        now: datetime,
    ) -> None:
        try:
            if rule is not None:
                event = NotificationEvent(rule_id=rule.id, approval_id=approval.id, type=event_type)
                await self.dispatcher.dispatch(event, now=now)
            else:
                await self.dispatcher.notify(event_type, approval, now=now)
        except Exception as e:
            logger.error(
                "scheduler_notification_failed",
                approval_id=approval.id,
                event_type=event_type,
                error=str(e),
            )
