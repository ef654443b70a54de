"""
Unit tests for quote_approvals/services/notification_service.py

Tests: recipient expansion, deduplication, rate limits and per-recipient deferral,
       business-hours deferral, retry of failed deliveries, alerts,
       stale events after the approval closes, lock cleanup, acknowledgment and stats.
"""

from datetime import datetime, timezone

import pytest

from factories import DIRECTORY, T0, RecordingGateway, hours, make_quote, make_rule, make_workflow
from quote_approvals.engine import build_engine
from quote_approvals.models.notification import NotificationChannel, NotificationEvent
from quote_approvals.services.directory import StaticDirectory
from quote_approvals.services.notification_service import DispatchLimits, rule_matches
from quote_approvals.services.store import InMemoryStore


def _engine(gateway, calendar, **limits):
    return build_engine(
        store=InMemoryStore(),
        directory=StaticDirectory(DIRECTORY),
        gateway=gateway,
        calendar=calendar,
        limits=DispatchLimits(**limits),
    )


async def _pending_approval(engine, rule=None, quote=None, now=T0):
    await engine.repo.add_workflow(make_workflow())
    if rule is not None:
        await engine.repo.save_rule(rule)
    quote = await engine.quotes.submit_quote(quote or make_quote(), now=now)
    return (await engine.repo.list_approvals(quote.id))[0]


@pytest.mark.asyncio
async def test_requested_event_reaches_assignee_by_default(engine, gateway):
    approval = await _pending_approval(engine, rule=make_rule())

    assert gateway.sent[0][0] == "email"
    assert gateway.sent[0][1] == approval.approver_id
    logs = await engine.repo.list_notifications(approval.id)
    assert [(log.event_type, log.status) for log in logs] == [("requested", "sent")]


@pytest.mark.asyncio
async def test_channels_expand_recipients_role_and_webhook(engine, gateway):
    rule = make_rule(channels=[
        NotificationChannel(type="email", recipients=["ops@example.com"], role_id="finance"),
        NotificationChannel(type="webhook", webhook="https://hooks.example.com/quotes"),
        NotificationChannel(type="slack", channel="#deal-desk"),
        NotificationChannel(type="sms", recipients=["+15550100"], enabled=False),
    ])
    await _pending_approval(engine, rule=rule)

    assert sorted((channel, recipient) for channel, recipient, _ in gateway.sent) == [
        ("email", "ops@example.com"),
        ("email", "u-finance"),
        ("slack", "#deal-desk"),
        ("webhook", "https://hooks.example.com/quotes"),
    ]


@pytest.mark.asyncio
async def test_same_event_is_deduplicated_within_interval(engine, gateway):
    rule = make_rule(min_interval_minutes=30)
    approval = await _pending_approval(engine, rule=rule)
    event = NotificationEvent(rule_id=rule.id, approval_id=approval.id, type="requested")

    assert await engine.dispatcher.dispatch(event, now=T0.replace(minute=10)) == []
    assert len(gateway.sent) == 1

    again = await engine.dispatcher.dispatch(event, now=T0.replace(minute=45))
    assert len(again) == 1
    assert len(gateway.sent) == 2


@pytest.mark.asyncio
async def test_hourly_limit_defers_and_flush_delivers_later(gateway, calendar):
    engine = _engine(gateway, calendar, per_hour=1)
    rule = make_rule()
    approval = await _pending_approval(engine, rule=rule)
    event = NotificationEvent(rule_id=rule.id, approval_id=approval.id, type="reminder")

    assert await engine.dispatcher.dispatch(event, now=T0.replace(minute=5)) == []
    assert await engine.dispatcher.deferred_count() == 1
    assert gateway.events() == ["requested"]

    assert await engine.dispatcher.flush_deferred(T0.replace(minute=30)) == 0
    assert await engine.dispatcher.flush_deferred(hours(1.5)) == 1
    assert await engine.dispatcher.deferred_count() == 0
    assert gateway.events() == ["requested", "reminder"]


@pytest.mark.asyncio
async def test_escalations_per_day_limit_defers(gateway, calendar):
    engine = _engine(gateway, calendar, escalations_per_day=1)
    rule = make_rule()
    await engine.repo.add_workflow(make_workflow())
    await engine.repo.save_rule(rule)
    first = await engine.quotes.submit_quote(make_quote(quote_number="Q-1"), now=T0)
    second = await engine.quotes.submit_quote(make_quote(quote_number="Q-2"), now=T0)

    report = await engine.scheduler.tick(hours(24))

    assert report.escalations == 2
    assert gateway.events().count("escalated") == 1
    assert await engine.dispatcher.deferred_count() == 1
    assert first.id != second.id


@pytest.mark.asyncio
async def test_business_hours_rule_defers_outside_window(engine, gateway):
    rule = make_rule(reminders={"business_hours_only": True})
    approval = await _pending_approval(engine, rule=rule)
    event = NotificationEvent(rule_id=rule.id, approval_id=approval.id, type="reminder")

    saturday = datetime(2026, 3, 7, 10, 0, tzinfo=timezone.utc)
    assert await engine.dispatcher.dispatch(event, now=saturday) == []
    deferred = await engine.repo.pending_deferred()
    assert [d.reason for d in deferred] == ["business_hours"]

    monday = datetime(2026, 3, 9, 9, 30, tzinfo=timezone.utc)
    assert await engine.dispatcher.flush_deferred(monday) == 1
    assert gateway.events()[-1] == "reminder"


@pytest.mark.asyncio
async def test_failed_delivery_is_retried_then_alerted(calendar):
    gateway = RecordingGateway(failing={"email"})
    engine = _engine(gateway, calendar, max_attempts=3)
    approval = await _pending_approval(engine, rule=make_rule())

    logs = await engine.repo.list_notifications(approval.id)
    assert [log.status for log in logs] == ["failed"]

    assert await engine.dispatcher.retry_failed(hours(1)) == 1
    assert await engine.dispatcher.retry_failed(hours(2)) == 1
    assert await engine.dispatcher.retry_failed(hours(3)) == 0

    log = (await engine.repo.list_notifications(approval.id))[0]
    assert log.attempts == 3
    alerts = await engine.repo.list_alerts()
    assert [(a.kind, a.subject_id) for a in alerts] == [("delivery_failure", log.id)]


@pytest.mark.asyncio
async def test_retry_recovers_when_channel_comes_back(calendar):
    gateway = RecordingGateway(failing={"email"})
    engine = _engine(gateway, calendar)
    approval = await _pending_approval(engine, rule=make_rule())

    gateway.failing.clear()
    await engine.dispatcher.retry_failed(hours(1))

    log = (await engine.repo.list_notifications(approval.id))[0]
    assert log.status == "sent"
    assert log.attempts == 2
    assert await engine.repo.list_alerts() == []


@pytest.mark.asyncio
async def test_inactive_rule_dispatches_nothing(engine, gateway):
    rule = make_rule(is_active=False)
    approval = await _pending_approval(engine, rule=rule)
    event = NotificationEvent(rule_id=rule.id, approval_id=approval.id, type="reminder")

    assert await engine.dispatcher.dispatch(event, now=hours(1)) == []
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_final_outcome_goes_to_quote_creator(engine, gateway):
    approval = await _pending_approval(engine, rule=make_rule(trigger_type="quote_approved"))

    await engine.approvals.respond(approval.id, "u-sales-mgr", "approve", now=hours(1))

    assert [(recipient, p["event_type"]) for _, recipient, p in gateway.sent] == [("u-rep", "approved")]


@pytest.mark.asyncio
async def test_acknowledge_and_stats(engine, gateway):
    approval = await _pending_approval(engine, rule=make_rule())
    log = (await engine.repo.list_notifications(approval.id))[0]

    acked = await engine.dispatcher.acknowledge(log.id, now=hours(1))
    assert acked.status == "acknowledged"
    assert acked.acknowledged_at == hours(1)

    stats = await engine.dispatcher.stats(now=hours(2))
    assert stats["total_notifications"] == 1
    assert stats["sent_today"] == 1
    assert stats["delivery_rate"] == 100
    assert stats["deferred"] == 0


def test_rule_filters_on_department_and_customer_type():
    rule = make_rule()
    rule.conditions.departments = ["finance"]
    quote = make_quote(department_id="sales")
    approval = type("A", (), {"level_id": "l-1"})()

    assert rule_matches(rule, quote, approval) is False
    rule.conditions.departments = ["sales"]
    rule.conditions.customer_types = ["enterprise"]
    assert rule_matches(rule, make_quote(customer_type="enterprise"), approval) is True


@pytest.mark.asyncio
async def test_reminder_queued_before_rejection_is_dropped(gateway, calendar):
    engine = _engine(gateway, calendar, per_hour=1)
    rule = make_rule()
    approval = await _pending_approval(engine, rule=rule)
    event = NotificationEvent(rule_id=rule.id, approval_id=approval.id, type="reminder")

    assert await engine.dispatcher.dispatch(event, now=T0.replace(minute=30)) == []
    assert await engine.dispatcher.deferred_count() == 1

    await engine.approvals.respond(
        approval.id, "u-sales-mgr", "reject", comments="Margin too thin", now=T0.replace(minute=40)
    )
    report = await engine.scheduler.tick(hours(3))

    assert report.deferred_flushed == 0
    assert await engine.dispatcher.deferred_count() == 0
    assert "reminder" not in gateway.events()


@pytest.mark.asyncio
async def test_failed_request_is_not_retried_after_approval_closes(calendar):
    gateway = RecordingGateway(failing={"email"})
    engine = _engine(gateway, calendar)
    approval = await _pending_approval(engine, rule=make_rule())

    await engine.approvals.respond(approval.id, "u-sales-mgr", "approve", now=hours(0.5))

    assert await engine.dispatcher.retry_failed(hours(1)) == 0
    log = (await engine.repo.list_notifications(approval.id))[0]
    assert log.status == "abandoned"
    assert log.attempts == 1
    assert len(gateway.sent) == 1


@pytest.mark.asyncio
async def test_delivery_locks_are_released(engine):
    rule = make_rule(channels=[NotificationChannel(type="email", recipients=["a@example.com", "b@example.com"])])
    await engine.repo.add_workflow(make_workflow())
    await engine.repo.save_rule(rule)
    for n in range(5):
        await engine.quotes.submit_quote(make_quote(quote_number=f"Q-{n}"), now=T0)

    assert len(await engine.repo.list_notifications()) == 10
    assert engine.dispatcher._locks == {}
    assert engine.dispatcher._lock_waiters == {}


@pytest.mark.asyncio
async def test_hourly_limit_is_spent_per_recipient(gateway, calendar):
    engine = _engine(gateway, calendar, per_hour=1)
    rule = make_rule(channels=[NotificationChannel(
        type="email", recipients=["a@example.com", "b@example.com", "c@example.com"],
    )])
    await _pending_approval(engine, rule=rule)

    assert [recipient for _, recipient, _ in gateway.sent] == ["a@example.com"]
    deferred = await engine.repo.pending_deferred()
    assert sorted(d.recipient for d in deferred) == ["b@example.com", "c@example.com"]

    assert await engine.dispatcher.flush_deferred(hours(1.5)) == 1
    assert await engine.dispatcher.deferred_count() == 1
    assert len(gateway.sent) == 2

    assert await engine.dispatcher.flush_deferred(hours(3)) == 1
    assert await engine.dispatcher.deferred_count() == 0
    assert sorted(recipient for _, recipient, _ in gateway.sent) == [
        "a@example.com", "b@example.com", "c@example.com",
    ]


@pytest.mark.asyncio
async def test_retries_spend_the_hourly_limit(calendar):
    gateway = RecordingGateway(failing={"email"})
    engine = _engine(gateway, calendar, per_hour=1)
    await _pending_approval(engine, rule=make_rule())

    assert await engine.dispatcher.retry_failed(T0.replace(minute=10)) == 0
    assert len(gateway.sent) == 1

    assert await engine.dispatcher.retry_failed(hours(1.5)) == 1
    assert len(gateway.sent) == 2


@pytest.mark.asyncio
async def test_single_attempt_failure_raises_alert(calendar):
    gateway = RecordingGateway(failing={"email"})
    engine = _engine(gateway, calendar, max_attempts=1)
    approval = await _pending_approval(engine, rule=make_rule())

    assert await engine.dispatcher.retry_failed(hours(1)) == 0
    assert await engine.dispatcher.retry_failed(hours(2)) == 0

    log = (await engine.repo.list_notifications(approval.id))[0]
    assert log.status == "failed"
    alerts = await engine.repo.list_alerts()
    assert [(a.kind, a.subject_id) for a in alerts] == [("delivery_failure", log.id)]
