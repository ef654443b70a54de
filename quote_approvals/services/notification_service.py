"""
Notification dispatcher: engine events → rule → channel → recipient → delivery.

One NotificationLog row per (channel, recipient) attempt. Repeat deliveries of
the same logical event are suppressed by (approval_id, channel, recipient,
event type) inside the rule's minimum interval. Rate limits and business-hours
rules never drop an event: it is queued as a DeferredNotification and flushed
by the next scheduler tick that finds the window open. The hourly limit is a
budget spent one delivery at a time (retries included); pairs past it are
queued individually. Events addressed to the current approver are dropped
once the approval has left ``pending``.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from quote_approvals.config import settings
from quote_approvals.models.approval import QuoteApproval
from quote_approvals.models.common import utcnow
from quote_approvals.models.notification import (
    EVENT_TRIGGERS,
    PRIORITY_RANK,
    TIMING_TRIGGERS,
    Alert,
    DeferredNotification,
    EscalationTarget,
    NotificationChannel,
    NotificationEvent,
    NotificationLog,
    NotificationRule,
)
from quote_approvals.models.quote import Quote
from quote_approvals.services.business_hours import BusinessCalendar
from quote_approvals.services.condition_evaluator import evaluate
from quote_approvals.services.delivery_service import DeliveryGateway
from quote_approvals.services.directory import Directory
from quote_approvals.services.repository import Repository

logger = structlog.get_logger()

DELIVERED_STATES = ("sent", "delivered", "acknowledged")
# Events that only make sense while the approval is still waiting on someone
PENDING_ONLY_EVENTS = frozenset({"requested", "reminder", "escalated", "delegated"})


# ---------- rule matching ----------

def rule_matches(rule: NotificationRule, quote: Quote, approval: QuoteApproval) -> bool:
    conditions = rule.conditions
    if conditions.departments and quote.department_id not in conditions.departments:
        return False
    if conditions.customer_types and quote.customer_type not in conditions.customer_types:
        return False
    if conditions.level_ids and approval.level_id not in conditions.level_ids:
        return False
    return evaluate(quote, conditions.quote)


def _rule_rank(rule: NotificationRule) -> tuple:
    return (PRIORITY_RANK[rule.conditions.priority], rule.created_at, rule.id)


def timing_rule(
    rules: list[NotificationRule], quote: Quote, approval: QuoteApproval
) -> Optional[NotificationRule]:
    """The rule that governs reminders/escalation for an approval, if any."""
    if approval.rule_id:
        for rule in rules:
            if rule.id == approval.rule_id and rule.is_active:
                return rule
    candidates = [
        r for r in rules
        if r.is_active and r.trigger_type in TIMING_TRIGGERS and rule_matches(r, quote, approval)
    ]
    if not candidates:
        return None
    return max(candidates, key=_rule_rank)


@dataclass
class DispatchLimits:
    per_hour: int = 200
    escalations_per_day: int = 50
    dedup_minutes: int = 60
    max_attempts: int = 3

    @classmethod
    def from_settings(cls) -> "DispatchLimits":
        return cls(
            per_hour=settings.NOTIFICATIONS_PER_HOUR,
            escalations_per_day=settings.ESCALATIONS_PER_DAY,
            dedup_minutes=settings.NOTIFICATION_DEDUP_MINUTES,
            max_attempts=settings.MAX_DELIVERY_ATTEMPTS,
        )


class NotificationDispatcher:
    def __init__(
        self,
        repo: Repository,
        gateway: DeliveryGateway,
        directory: Directory,
        limits: Optional[DispatchLimits] = None,
        calendar: Optional[BusinessCalendar] = None,
    ):
        self.repo = repo
        self.gateway = gateway
        self.directory = directory
        self.limits = limits or DispatchLimits.from_settings()
        self.calendar = calendar or BusinessCalendar.from_settings()
        self._locks: dict[tuple, asyncio.Lock] = {}
        self._lock_waiters: dict[tuple, int] = {}
        # Limits are global: check-then-deliver runs one event at a time
        self._limit_lock = asyncio.Lock()

    @asynccontextmanager
    async def _keyed_lock(self, key: tuple):
        """Per-delivery lock; the entry is dropped once nobody holds or waits on it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_waiters[key] = self._lock_waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_waiters[key] -= 1
            if not self._lock_waiters[key]:
                del self._lock_waiters[key]
                del self._locks[key]

    # ---------- entry points ----------

    async def notify(
        self, event_type: str, approval: QuoteApproval, now: Optional[datetime] = None
    ) -> list[NotificationLog]:
        """Dispatch an engine event to every active rule listening for it."""
        now = now or utcnow()
        quote = await self.repo.get_quote(approval.quote_id)
        triggers = EVENT_TRIGGERS.get(event_type, frozenset())
        logs: list[NotificationLog] = []
        for rule in await self.repo.list_rules(active_only=True):
            if rule.trigger_type in triggers and rule_matches(rule, quote, approval):
                event = NotificationEvent(rule_id=rule.id, approval_id=approval.id, type=event_type)
                logs.extend(await self.dispatch(event, now=now))
        return logs

    async def dispatch(
        self,
        event: NotificationEvent,
        now: Optional[datetime] = None,
        channel_id: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> list[NotificationLog]:
        """
        Deliver one event through its rule. ``channel_id``/``recipient`` narrow
        delivery to a single pair left over from an earlier hourly budget.
        """
        now = now or utcnow()
        rule = await self.repo.get_rule(event.rule_id)
        if not rule.is_active:
            logger.info("notification_rule_inactive", rule_id=rule.id)
            return []

        async with self._limit_lock:
            approval = await self.repo.get_approval(event.approval_id)
            if self._is_stale(event, approval):
                return []

            blocked = await self._blocked_reason(rule, event, now)
            if blocked:
                await self._defer(event, blocked, now, channel_id=channel_id, recipient=recipient)
                return []

            quote = await self.repo.get_quote(approval.quote_id)
            payload = self._payload(rule, event, approval, quote)
            pairs = await self._deliveries(rule, event, approval, quote, now, channel_id, recipient)

            budget = await self._hourly_budget(now)
            for channel, address in pairs[budget:]:
                await self._defer(event, "rate_limit", now, channel_id=channel.id, recipient=address)

            results = await asyncio.gather(*(
                self._deliver(rule, channel, address, event, approval, quote, payload, now)
                for channel, address in pairs[:budget]
            ))
            logs = [log for log in results if log is not None]

        logger.info(
            "notification_dispatched",
            rule_id=rule.id,
            approval_id=approval.id,
            event_type=event.type,
            deliveries=len(logs),
        )
        return logs

    def _is_stale(self, event: NotificationEvent, approval: QuoteApproval) -> bool:
        if event.type not in PENDING_ONLY_EVENTS or approval.status == "pending":
            return False
        logger.info(
            "notification_dropped_stale",
            approval_id=approval.id,
            event_type=event.type,
            approval_status=approval.status,
        )
        return True

    # ---------- limits ----------

    async def _hourly_budget(self, now: datetime, logs: Optional[list[NotificationLog]] = None) -> int:
        if logs is None:
            logs = await self.repo.list_notifications()
        hour_ago = now - timedelta(hours=1)
        used = sum(1 for log in logs if log.sent_at >= hour_ago)
        return max(0, self.limits.per_hour - used)

    async def _blocked_reason(
        self, rule: NotificationRule, event: NotificationEvent, now: datetime
    ) -> Optional[str]:
        if rule.reminder_settings.business_hours_only and not self.calendar.is_open(now):
            return "business_hours"

        logs = await self.repo.list_notifications()
        if await self._hourly_budget(now, logs) <= 0:
            return "rate_limit"
        if event.type == "escalated":
            day_ago = now - timedelta(days=1)
            escalations = {
                log.approval_id
                for log in logs
                if log.event_type == "escalated" and log.sent_at >= day_ago
            }
            if len(escalations) >= self.limits.escalations_per_day:
                return "rate_limit"
        return None

    async def _defer(
        self,
        event: NotificationEvent,
        reason: str,
        now: datetime,
        channel_id: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> None:
        await self.repo.save_deferred(DeferredNotification(
            event=event,
            reason=reason,
            deferred_at=now,
            channel_id=channel_id,
            recipient=recipient,
        ))
        logger.warning(
            "notification_deferred",
            rule_id=event.rule_id,
            approval_id=event.approval_id,
            event_type=event.type,
            recipient=recipient,
            reason=reason,
        )

    async def deferred_count(self) -> int:
        return len(await self.repo.pending_deferred())

    async def flush_deferred(self, now: Optional[datetime] = None) -> int:
        """Re-dispatch queued events whose window has opened. Returns the number flushed."""
        now = now or utcnow()
        flushed = 0
        for item in await self.repo.pending_deferred():
            approval = await self.repo.get_approval(item.event.approval_id)
            if self._is_stale(item.event, approval):
                await self.repo.remove_deferred(item.id)
                continue
            rule = await self.repo.get_rule(item.event.rule_id)
            if await self._blocked_reason(rule, item.event, now):
                continue
            await self.repo.remove_deferred(item.id)
            await self.dispatch(item.event, now=now, channel_id=item.channel_id, recipient=item.recipient)
            flushed += 1
        if flushed:
            logger.info("deferred_notifications_flushed", count=flushed)
        return flushed

    # ---------- delivery ----------

    async def _recipients(
        self,
        channel: NotificationChannel,
        event: NotificationEvent,
        approval: QuoteApproval,
        quote: Quote,
    ) -> list[str]:
        recipients = list(channel.recipients)
        if channel.role_id:
            holder = await self.directory.resolve_approver(
                EscalationTarget(type="role", role_id=channel.role_id), quote
            )
            if holder:
                recipients.append(holder)
            else:
                logger.warning("notification_role_unresolved", role_id=channel.role_id)
        if channel.type == "webhook" and channel.webhook:
            recipients.append(channel.webhook)
        if channel.channel:
            recipients.append(channel.channel)

        if not recipients:
            if event.type in ("approved", "rejected") and quote.created_by:
                recipients.append(quote.created_by)
            else:
                recipients.append(approval.approver_id)
        return list(dict.fromkeys(recipients))

    async def _deliveries(
        self,
        rule: NotificationRule,
        event: NotificationEvent,
        approval: QuoteApproval,
        quote: Quote,
        now: datetime,
        channel_id: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> list[tuple[NotificationChannel, str]]:
        """(channel, recipient) pairs still owed for this event, duplicates removed."""
        window = self._dedup_window(rule)
        existing = await self.repo.list_notifications(approval.id)
        pairs: list[tuple[NotificationChannel, str]] = []
        seen: set[tuple[str, str]] = set()
        for channel in rule.channels:
            if not channel.enabled or (channel_id and channel.id != channel_id):
                continue
            for address in await self._recipients(channel, event, approval, quote):
                if recipient and address != recipient:
                    continue
                if (channel.type, address) in seen:
                    continue
                seen.add((channel.type, address))
                if self._is_duplicate(existing, channel.type, address, event.type, window, now):
                    logger.info(
                        "notification_deduplicated",
                        approval_id=approval.id,
                        channel=channel.type,
                        recipient=address,
                        event_type=event.type,
                    )
                    continue
                pairs.append((channel, address))
        return pairs

    def _payload(
        self,
        rule: NotificationRule,
        event: NotificationEvent,
        approval: QuoteApproval,
        quote: Quote,
    ) -> dict:
        reference = quote.quote_number or quote.id
        return {
            "event_type": event.type,
            "rule_id": rule.id,
            "rule_name": rule.name,
            "priority": rule.conditions.priority,
            "approval_id": approval.id,
            "approver_id": approval.approver_id,
            "level_id": approval.level_id,
            "reminders_sent": approval.reminders_sent,
            "quote_id": quote.id,
            "quote_number": quote.quote_number,
            "total_cents": quote.total_cents,
            "currency": quote.currency,
            "subject": f"[{settings.APP_NAME}] Quote {reference}: {event.type}",
            "summary": f"Quote {reference} approval event '{event.type}'.",
        }

    def _dedup_window(self, rule: NotificationRule) -> timedelta:
        return timedelta(minutes=rule.min_interval_minutes or self.limits.dedup_minutes)

    def _is_duplicate(
        self,
        logs: list[NotificationLog],
        channel: str,
        recipient: str,
        event_type: str,
        window: timedelta,
        now: datetime,
    ) -> bool:
        return any(
            log.channel == channel
            and log.recipient == recipient
            and log.event_type == event_type
            and log.status in DELIVERED_STATES
            and now - log.sent_at < window
            for log in logs
        )

    async def _deliver(
        self,
        rule: NotificationRule,
        channel: NotificationChannel,
        recipient: str,
        event: NotificationEvent,
        approval: QuoteApproval,
        quote: Quote,
        payload: dict,
        now: datetime,
    ) -> Optional[NotificationLog]:
        key = (approval.id, channel.type, recipient, event.type)
        async with self._keyed_lock(key):
            existing = await self.repo.list_notifications(approval.id)
            if self._is_duplicate(existing, channel.type, recipient, event.type, self._dedup_window(rule), now):
                return None

            send_payload = dict(payload, template_id=channel.template, channel_priority=channel.priority)
            result = await self.gateway.send(channel.type, recipient, send_payload)
            log = NotificationLog(
                rule_id=rule.id,
                quote_id=quote.id,
                approval_id=approval.id,
                event_type=event.type,
                channel=channel.type,
                recipient=recipient,
                status="sent" if result.ok else "failed",
                sent_at=now,
                error=result.error,
            )
            await self.repo.save_notification(log)
        if not result.ok:
            logger.error(
                "notification_delivery_failed",
                approval_id=approval.id,
                channel=channel.type,
                recipient=recipient,
                error=result.error,
            )
        return log

    async def retry_failed(self, now: Optional[datetime] = None) -> int:
        """
        Retry failed deliveries inside the hourly budget. A delivery that has
        used up MAX_DELIVERY_ATTEMPTS raises an alert instead; one whose
        approval has since closed is marked ``abandoned``.
        """
        now = now or utcnow()
        retried = 0
        postponed = 0
        async with self._limit_lock:
            logs = await self.repo.list_notifications()
            budget = await self._hourly_budget(now, logs)
            for log in logs:
                if log.status != "failed":
                    continue
                if log.attempts >= self.limits.max_attempts:
                    await self._give_up(log, now)
                    continue
                approval = await self.repo.get_approval(log.approval_id)
                event = NotificationEvent(rule_id=log.rule_id, approval_id=approval.id, type=log.event_type)
                if self._is_stale(event, approval):
                    await self.repo.save_notification(log.model_copy(update={"status": "abandoned"}))
                    continue
                if budget <= 0:
                    postponed += 1
                    continue

                rule = await self.repo.get_rule(log.rule_id)
                quote = await self.repo.get_quote(log.quote_id)
                payload = self._payload(rule, event, approval, quote)
                result = await self.gateway.send(log.channel, log.recipient, payload)
                updated = log.model_copy(update={
                    "attempts": log.attempts + 1,
                    "status": "sent" if result.ok else "failed",
                    "sent_at": now,
                    "error": result.error,
                })
                await self.repo.save_notification(updated)
                budget -= 1
                retried += 1

                if not result.ok and updated.attempts >= self.limits.max_attempts:
                    await self._give_up(updated, now)

        if postponed:
            logger.warning("notification_retries_postponed", count=postponed, reason="rate_limit")
        return retried

    async def _give_up(self, log: NotificationLog, now: datetime) -> None:
        raised = await self.repo.raise_alert(Alert(
            id=f"delivery-{log.id}",
            kind="delivery_failure",
            subject_id=log.id,
            message=(
                f"{log.channel} delivery to {log.recipient} failed "
                f"{log.attempts} times: {log.error}"
            ),
            raised_at=now,
        ))
        if raised:
            logger.error(
                "notification_delivery_abandoned",
                log_id=log.id,
                attempts=log.attempts,
            )

    # ---------- read side ----------

    async def acknowledge(self, log_id: str, now: Optional[datetime] = None) -> NotificationLog:
        log = await self.repo.get_notification(log_id)
        updated = log.model_copy(update={
            "status": "acknowledged",
            "acknowledged_at": now or utcnow(),
        })
        await self.repo.save_notification(updated)
        logger.info("notification_acknowledged", log_id=log_id)
        return updated

    async def stats(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        logs = await self.repo.list_notifications()
        today = now.date()
        todays = [log for log in logs if log.sent_at.date() == today]
        delivered = sum(1 for log in logs if log.status in ("delivered", "acknowledged"))
        return {
            "total_notifications": len(logs),
            "sent_today": len(todays),
            "escalations_today": sum(1 for log in todays if log.event_type == "escalated"),
            "failed": sum(1 for log in logs if log.status == "failed"),
            "delivery_rate": round(delivered / len(logs) * 100) if logs else 0,
            "deferred": await self.deferred_count(),
            "alerts": len(await self.repo.list_alerts()),
        }
