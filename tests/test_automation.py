import datetime as dt

from sqlalchemy import select

from email_pipeline.app import build_pipeline
from email_pipeline.automation.engine import SCHEDULED_BATCH
from email_pipeline.automation import check_trigger_conditions
from email_pipeline.models import AutomationEvent, AutomationRule
from email_pipeline.storage.schema import automation_executions, email_automations, email_logs, email_queue

TRACKING_BASE = "https://track.example.com"


def _executions(engine):
    with engine.connect() as conn:
        return conn.execute(
            select(automation_executions).order_by(automation_executions.c.id)
        ).mappings().all()


def _queued(engine):
    with engine.connect() as conn:
        return conn.execute(select(email_queue)).mappings().all()


def _event(trigger: str = "welcome", **data) -> AutomationEvent:
    return AutomationEvent(
        email="ann@example.com", trigger_type=trigger, user_id="u1", user_name="Ann", data=data
    )


def _rule(trigger_type: str, **conditions) -> AutomationRule:
    return AutomationRule(1, "r", trigger_type, conditions, None)


def test_cart_conditions() -> None:
    rule = _rule("abandoned_cart", min_cart_value=20)
    assert not check_trigger_conditions(rule, {"cart_total": 5})
    assert check_trigger_conditions(rule, {"cart_total": "20"})
    assert check_trigger_conditions(_rule("abandoned_cart"), {})


def test_inactivity_conditions() -> None:
    now = dt.datetime(2024, 5, 1)
    rule = _rule("inactive_user", inactive_days=14)
    assert check_trigger_conditions(rule, {"last_active": "2024-04-01T00:00:00"}, now=now)
    assert not check_trigger_conditions(rule, {"last_active": "2024-04-25T00:00:00"}, now=now)
    # Default threshold is 30 days
    assert not check_trigger_conditions(_rule("inactive_user"), {"days_inactive": 20}, now=now)


def test_failed_condition_leaves_no_execution(pipeline, seed, engine) -> None:
    seed.rule("abandoned_cart", seed.template(), {"min_cart_value": 20})
    result = pipeline.automation.trigger_automation("abandoned_cart", _event("abandoned_cart", cart_total=5))
    assert result.triggered == 0
    assert _executions(engine) == []
    assert _queued(engine) == []


def test_immediate_execution_queues_tracked_email(pipeline, seed, engine) -> None:
    rule_id = seed.rule("order_shipped", seed.template(subject="Order {{order_number}} for {{user_name}}"))
    result = pipeline.automation.trigger_automation(
        "order_shipped", _event("order_shipped", order_number="A-100")
    )
    assert result.triggered == 1
    assert result.errors == []

    [execution] = _executions(engine)
    assert execution["status"] == "completed"
    assert execution["executed_at"] is not None

    [message] = _queued(engine)
    assert execution["email_queue_id"] == message["id"]
    assert message["subject"] == "Order A-100 for Ann"
    assert message["automation_id"] == rule_id
    tracking_id = message["tracking_id"]
    assert message["message_metadata"]["tracking_id"] == tracking_id
    assert f"{TRACKING_BASE}/track/open/{tracking_id}" in message["html_content"]
    assert f"{TRACKING_BASE}/track/click/{tracking_id}" in message["html_content"]
    assert "/unsubscribe?t=" in message["html_content"]

    with engine.connect() as conn:
        total = conn.execute(
            select(email_automations.c.total_sent).where(email_automations.c.id == rule_id)
        ).scalar_one()
    assert total == 1


def test_all_matching_rules_fire_in_priority_order(pipeline, seed, engine) -> None:
    template = seed.template()
    low = seed.rule(template_id=template, priority=1, name="low")
    high = seed.rule(template_id=template, priority=9, name="high")
    result = pipeline.automation.trigger_automation("welcome", _event())
    assert result.triggered == 2
    assert [e["automation_id"] for e in _executions(engine)] == [high, low]


def test_ineligible_recipient_is_recorded_as_skipped(pipeline, seed, engine) -> None:
    seed.rule(template_id=seed.template())
    seed.suppressed("ann@example.com")
    result = pipeline.automation.trigger_automation("welcome", _event())
    assert result.triggered == 0
    assert result.errors == ["rule: suppressed"]
    [execution] = _executions(engine)
    assert execution["status"] == "skipped"
    assert execution["skip_reason"] == "suppressed"


def test_send_limit_reached_on_repeat_trigger(pipeline, seed, engine) -> None:
    seed.rule(template_id=seed.template(), send_limit_per_user=1)
    assert pipeline.automation.trigger_automation("welcome", _event()).triggered == 1
    second = pipeline.automation.trigger_automation("welcome", _event())
    assert second.triggered == 0
    assert [e["status"] for e in _executions(engine)] == ["completed", "skipped"]
    assert len(_queued(engine)) == 1


def test_missing_template_fails_execution(pipeline, seed, engine) -> None:
    seed.rule(template_id=None)
    result = pipeline.automation.trigger_automation("welcome", _event())
    assert result.errors == ["rule: Template not found"]
    [execution] = _executions(engine)
    assert execution["status"] == "failed"
    assert execution["skip_reason"] == "Template not found"
    assert _queued(engine) == []


def test_strict_templates_fail_execution(settings, engine, sender, clock, seed) -> None:
    strict = settings.model_copy(update={"strict_template_variables": True})
    pipeline = build_pipeline(strict, sender=sender, clock=clock, engine=engine)
    seed.rule(template_id=seed.template(subject="Hi {{nickname}}"))
    result = pipeline.automation.trigger_automation("welcome", _event())
    assert "nickname" in result.errors[0]
    assert _executions(engine)[0]["status"] == "failed"


def test_delayed_rule_runs_from_sweep(pipeline, seed, engine, clock) -> None:
    seed.rule("abandoned_cart", seed.template(), {"delay_hours": 2})
    result = pipeline.automation.on_cart_abandoned(
        "u1", "Ann@Example.com", "Ann", {"total": 50, "url": "https://shop.example.com/cart"}
    )
    assert result.triggered == 1
    [pending] = _executions(engine)
    assert pending["status"] == "pending"
    assert pending["trigger_data"]["email"] == "ann@example.com"
    assert _queued(engine) == []

    clock.advance(hours=1)
    early = pipeline.automation.process_scheduled_automations()
    assert early.processed == 0 and early.executed == 0
    assert _executions(engine)[0]["status"] == "pending"

    clock.advance(hours=1)
    due = pipeline.automation.process_scheduled_automations()
    assert due.executed == 1
    [execution] = _executions(engine)
    assert execution["status"] == "completed"
    assert execution["id"] != pending["id"]
    [message] = _queued(engine)
    assert message["to_email"] == "ann@example.com"


def test_sweep_skips_inactive_rule(pipeline, seed, engine, clock) -> None:
    rule_id = seed.rule(template_id=seed.template(), conditions={"delay_hours": 1})
    pipeline.automation.on_user_signup("u1", "ann@example.com", "Ann")
    with engine.begin() as conn:
        conn.execute(
            email_automations.update().where(email_automations.c.id == rule_id).values(is_active=False)
        )
    clock.advance(hours=2)
    pipeline.automation.process_scheduled_automations()
    [execution] = _executions(engine)
    assert execution["status"] == "skipped"
    assert execution["skip_reason"] == "Automation inactive"


def test_convenience_triggers_build_payloads(pipeline, seed, engine) -> None:
    seed.rule("order_placed", seed.template(subject="#{{order_number}} total {{order_total}}"))
    pipeline.automation.on_order_placed("u1", "ann@example.com", "Ann", {"order_number": "A1", "total": 99.0})
    [message] = _queued(engine)
    assert message["subject"] == "#A1 total 99"


def test_sweep_reaches_due_rows_behind_long_delays(pipeline, seed, engine, clock) -> None:
    slow = seed.rule("welcome", seed.template(), {"delay_hours": 72}, name="slow")
    fast = seed.rule("order_shipped", seed.template(), {"delay_hours": 1}, name="fast")
    with engine.begin() as conn:
        conn.execute(
            automation_executions.insert(),
            [
                {
                    "automation_id": slow,
                    "status": "pending",
                    "trigger_data": {"email": f"slow{i}@example.com", "trigger_type": "welcome"},
                    "created_at": clock.now,
                }
                for i in range(SCHEDULED_BATCH + 1)
            ],
        )
    clock.advance(minutes=1)
    pipeline.automation.on_order_shipped(None, "fast@example.com", "Fast", {"order_number": "A-1"})

    clock.advance(hours=2)
    result = pipeline.automation.process_scheduled_automations()
    assert (result.processed, result.executed) == (1, 1)
    assert [m["to_email"] for m in _queued(engine)] == ["fast@example.com"]
    assert [m["automation_id"] for m in _queued(engine)] == [fast]


def test_datetime_event_data_is_stored_as_iso_text(pipeline, seed, engine, clock) -> None:
    seed.rule("inactive_user", seed.template(), {"inactive_days": 14}, name="now")
    seed.rule("inactive_user", seed.template(), {"inactive_days": 14, "delay_hours": 1}, name="later")
    last_active = clock.now - dt.timedelta(days=40)
    result = pipeline.automation.trigger_automation(
        "inactive_user", _event("inactive_user", last_active=last_active)
    )
    assert result.triggered == 2
    assert result.errors == []
    executions = _executions(engine)
    assert [e["status"] for e in executions] == ["completed", "pending"]
    assert all(e["trigger_data"]["last_active"] == last_active.isoformat() for e in executions)

    clock.advance(hours=1)
    assert pipeline.automation.process_scheduled_automations().executed == 1
    assert len(_queued(engine)) == 2


def test_anonymous_repeat_trigger_is_skipped_as_duplicate(pipeline, seed, engine, clock) -> None:
    rule_id = seed.rule(template_id=seed.template())
    event = AutomationEvent(email="guest@example.com", trigger_type="welcome")
    assert pipeline.automation.trigger_automation("welcome", event).triggered == 1

    second = pipeline.automation.trigger_automation("welcome", event)
    assert second.triggered == 0
    assert second.errors == ["rule: Duplicate email"]
    skipped = _executions(engine)[-1]
    assert (skipped["status"], skipped["skip_reason"]) == ("skipped", "Duplicate email")

    # Once the queue row is gone, a sent delivery log still blocks for a day.
    pipeline.worker.process_queue()
    with engine.begin() as conn:
        conn.execute(email_queue.delete())
    assert pipeline.automation.trigger_automation("welcome", event).triggered == 0
    clock.advance(hours=25)
    assert pipeline.automation.trigger_automation("welcome", event).triggered == 1

    with engine.connect() as conn:
        logged = conn.execute(
            select(email_logs.c.automation_id).where(email_logs.c.email_address == "guest@example.com")
        ).scalars().all()
    assert logged == [rule_id]
