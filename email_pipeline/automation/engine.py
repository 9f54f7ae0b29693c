"""Map business events to automation rules and queue the resulting email.

Every active rule for a trigger type is considered, highest priority
first; rules are independent, so one event can produce several sends.
Each attempt that passes the rule's conditions leaves exactly one row in
``automation_executions``:

* ``skipped`` with the eligibility reason, or ``Duplicate email`` when
  the address already has this rule's message queued, or sent within
  the last day,
* ``failed`` when the template is missing or the enqueue fails,
* ``completed`` with a link to the queued message,
* ``pending`` while a delayed rule waits for the scheduling sweep.  The
  sweep deletes that placeholder before executing, so a deferred send does
  not leave two permanent rows.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.engine import Engine

from email_pipeline.automation.conditions import check_trigger_conditions
from email_pipeline.eligibility import EligibilityGate
from email_pipeline.errors import TemplateVariableError
from email_pipeline.models import (
    AutomationEvent,
    AutomationRule,
    Eligibility,
    ExecutionStatus,
    TriggerType,
    ensure_transition,
    json_payload,
    utcnow,
)
from email_pipeline.queue.store import MessageQueue
from email_pipeline.storage.schema import automation_executions, email_automations
from email_pipeline.templating import TemplateStore, flatten_variables, render_template
from email_pipeline.tracking.html import generate_tracking_id, prepare_email_for_tracking

LOGGER = logging.getLogger(__name__)

INACTIVE_RULE = "Automation inactive"
TEMPLATE_NOT_FOUND = "Template not found"
DUPLICATE_EMAIL = "Duplicate email"
NO_RECIPIENT = "No recipient"
SCHEDULED_BATCH = 100


@dataclass
class TriggerResult:
    triggered: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    execution_id: Optional[int] = None
    queue_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class ScheduledRunResult:
    processed: int = 0
    executed: int = 0
    errors: List[str] = field(default_factory=list)


class AutomationEngine:
    def __init__(
        self,
        engine: Engine,
        queue: MessageQueue,
        gate: EligibilityGate,
        templates: TemplateStore,
        tracking_base_url: str,
        clock: Callable[[], dt.datetime] = utcnow,
        strict_templates: bool = False,
    ) -> None:
        self._engine = engine
        self._queue = queue
        self._gate = gate
        self._templates = templates
        self._tracking_base_url = tracking_base_url
        self._clock = clock
        self._strict = strict_templates

    # ----------------------------------------------------------- rules
    def active_rules(self, trigger_type: str) -> List[AutomationRule]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                select(email_automations)
                .where(
                    email_automations.c.trigger_type == trigger_type,
                    email_automations.c.is_active.is_(True),
                )
                .order_by(email_automations.c.priority.desc(), email_automations.c.id)
            ).mappings().all()
        return [AutomationRule.from_row(r) for r in rows]

    def _rule(self, rule_id: int) -> Optional[AutomationRule]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(email_automations).where(email_automations.c.id == rule_id)
            ).mappings().first()
        return AutomationRule.from_row(row) if row is not None else None

    # --------------------------------------------------------- trigger
    def trigger_automation(
        self, trigger_type: str, event: AutomationEvent
    ) -> TriggerResult:
        """Run or schedule every active rule for ``trigger_type``.

        Rules whose conditions do not match are skipped without an
        execution record.
        """
        result = TriggerResult()
        now = self._clock()
        for rule in self.active_rules(trigger_type):
            if not check_trigger_conditions(rule, event.data, now=now):
                LOGGER.debug("Rule %s conditions not met for %s", rule.id, event.email)
                continue
            if rule.delay_hours > 0:
                self._schedule(rule, event)
                result.triggered += 1
                continue
            outcome = self.execute_automation(rule, event)
            if outcome.success:
                result.triggered += 1
            elif outcome.error:
                result.errors.append(f"{rule.name}: {outcome.error}")
        return result

    def _schedule(self, rule: AutomationRule, event: AutomationEvent) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                automation_executions.insert().values(
                    automation_id=rule.id,
                    user_id=event.user_id,
                    trigger_data=event.snapshot(),
                    status=ExecutionStatus.PENDING.value,
                    created_at=self._clock(),
                )
            )
        LOGGER.info(
            "Scheduled rule %s for %s in %.1fh", rule.id, event.email, rule.delay_hours
        )

    # --------------------------------------------------------- execute
    def _finish(self, execution_id: int, target: ExecutionStatus, **values: Any) -> None:
        ensure_transition(ExecutionStatus.PROCESSING, target)
        with self._engine.begin() as conn:
            conn.execute(
                update(automation_executions)
                .where(
                    automation_executions.c.id == execution_id,
                    automation_executions.c.status == ExecutionStatus.PROCESSING.value,
                )
                .values(status=target.value, **values)
            )

    def execute_automation(
        self, rule: AutomationRule, event: AutomationEvent
    ) -> ExecutionResult:
        """Gate, render, track and enqueue one rule for one event."""
        decision = self._gate.check(event.email, event.user_id, rule)
        if decision.allowed and self._queue.has_duplicate(event.email, rule.id):
            decision = Eligibility(False, DUPLICATE_EMAIL)
        status = ExecutionStatus.PROCESSING if decision.allowed else ExecutionStatus.SKIPPED
        with self._engine.begin() as conn:
            execution_id = conn.execute(
                automation_executions.insert().values(
                    automation_id=rule.id,
                    user_id=event.user_id,
                    trigger_data=json_payload(event.data),
                    status=status.value,
                    skip_reason=decision.reason,
                    created_at=self._clock(),
                )
            ).inserted_primary_key[0]

        if not decision.allowed:
            LOGGER.info("Rule %s skipped for %s: %s", rule.id, event.email, decision.reason)
            return ExecutionResult(False, execution_id, error=decision.reason)

        template = self._templates.get(rule.template_id)
        if template is None:
            self._finish(execution_id, ExecutionStatus.FAILED, skip_reason=TEMPLATE_NOT_FOUND)
            return ExecutionResult(False, execution_id, error=TEMPLATE_NOT_FOUND)

        variables: Dict[str, str] = {
            "user_name": event.user_name or "Customer",
            "email": event.email,
            **flatten_variables(event.data),
        }
        try:
            subject = render_template(template.subject, variables, self._strict)
            html = render_template(template.html_content, variables, self._strict)
            text = render_template(template.text_content, variables, self._strict) or None
        except TemplateVariableError as exc:
            self._finish(execution_id, ExecutionStatus.FAILED, skip_reason=str(exc))
            return ExecutionResult(False, execution_id, error=str(exc))

        tracking_id = generate_tracking_id()
        html = prepare_email_for_tracking(
            html, tracking_id, event.email, self._tracking_base_url
        )
        queued = self._queue.enqueue(
            {
                "to_email": event.email,
                "to_name": event.user_name or "",
                "subject": subject,
                "html_content": html,
                "text_content": text,
                "automation_id": rule.id,
                "template_id": rule.template_id,
                "tracking_id": tracking_id,
                "metadata": {
                    "user_id": event.user_id,
                    "tracking_id": tracking_id,
                    "trigger_type": event.trigger_type,
                },
            }
        )
        if not queued.success:
            self._finish(execution_id, ExecutionStatus.FAILED, skip_reason=queued.error)
            return ExecutionResult(False, execution_id, error=queued.error)

        self._finish(
            execution_id,
            ExecutionStatus.COMPLETED,
            email_queue_id=queued.queue_id,
            executed_at=self._clock(),
        )
        with self._engine.begin() as conn:
            conn.execute(
                update(email_automations)
                .where(email_automations.c.id == rule.id)
                .values(total_sent=email_automations.c.total_sent + 1)
            )
        LOGGER.info("Rule %s queued message %s for %s", rule.id, queued.queue_id, event.email)
        return ExecutionResult(True, execution_id, queue_id=queued.queue_id)

    # ----------------------------------------------------------- sweep
    def _skip_pending(self, execution_id: int, reason: str) -> None:
        ensure_transition(ExecutionStatus.PENDING, ExecutionStatus.SKIPPED)
        with self._engine.begin() as conn:
            conn.execute(
                update(automation_executions)
                .where(
                    automation_executions.c.id == execution_id,
                    automation_executions.c.status == ExecutionStatus.PENDING.value,
                )
                .values(status=ExecutionStatus.SKIPPED.value, skip_reason=reason)
            )

    def _ready_filter(self, conn, now: dt.datetime):
        """Where clause selecting pending rows that are due or orphaned.

        Each rule gets its own ``created_at`` cutoff, so rows still
        waiting on a long delay never crowd due rows out of the batch.
        Rows whose rule is gone or inactive are selected so the sweep
        can skip them.
        """
        pending = automation_executions.c.status == ExecutionStatus.PENDING.value
        rule_ids = conn.execute(
            select(automation_executions.c.automation_id).where(pending).distinct()
        ).scalars().all()
        if not rule_ids:
            return None
        rules = {
            row["id"]: AutomationRule.from_row(row)
            for row in conn.execute(
                select(email_automations).where(email_automations.c.id.in_(rule_ids))
            ).mappings()
        }
        clauses = []
        for rule_id in rule_ids:
            rule = rules.get(rule_id)
            by_rule = automation_executions.c.automation_id == rule_id
            if rule is None or not rule.is_active:
                clauses.append(by_rule)
            else:
                cutoff = now - dt.timedelta(hours=rule.delay_hours)
                clauses.append(and_(by_rule, automation_executions.c.created_at <= cutoff))
        return and_(pending, or_(*clauses))

    def process_scheduled_automations(self) -> ScheduledRunResult:
        """Execute deferred rules whose delay has elapsed.

        ``processed`` counts the rows picked up this run: due rows plus
        rows of inactive or deleted rules.
        """
        result = ScheduledRunResult()
        now = self._clock()
        with self._engine.connect() as conn:
            ready = self._ready_filter(conn, now)
            if ready is None:
                return result
            pending = conn.execute(
                select(automation_executions)
                .where(ready)
                .order_by(automation_executions.c.created_at, automation_executions.c.id)
                .limit(SCHEDULED_BATCH)
            ).mappings().all()

        for execution in pending:
            result.processed += 1
            rule = self._rule(execution["automation_id"])
            if rule is None or not rule.is_active:
                self._skip_pending(execution["id"], INACTIVE_RULE)
                continue

            due_at = execution["created_at"] + dt.timedelta(hours=rule.delay_hours)
            if now < due_at:
                continue

            snapshot: Mapping[str, Any] = execution["trigger_data"] or {}
            if not snapshot.get("email"):
                self._skip_pending(execution["id"], NO_RECIPIENT)
                result.errors.append(f"Execution {execution['id']} has no recipient")
                continue
            event = AutomationEvent.from_snapshot(execution["user_id"], snapshot)

            with self._engine.begin() as conn:
                deleted = conn.execute(
                    delete(automation_executions).where(
                        automation_executions.c.id == execution["id"],
                        automation_executions.c.status == ExecutionStatus.PENDING.value,
                    )
                ).rowcount
            if not deleted:
                continue

            outcome = self.execute_automation(rule, event)
            if outcome.success:
                result.executed += 1
            elif outcome.error:
                result.errors.append(outcome.error)
        return result

    # ------------------------------------------------ convenience hooks
    def on_user_signup(
        self, user_id: Optional[str], email: str, user_name: Optional[str] = None
    ) -> TriggerResult:
        return self._fire(TriggerType.WELCOME, user_id, email, user_name, {})

    def on_cart_abandoned(
        self,
        user_id: Optional[str],
        email: str,
        user_name: Optional[str],
        cart: Mapping[str, Any],
    ) -> TriggerResult:
        return self._fire(
            TriggerType.ABANDONED_CART,
            user_id,
            email,
            user_name,
            {
                "cart_total": cart.get("total"),
                "cart_items": cart.get("items"),
                "cart_url": cart.get("url"),
            },
        )

    def on_order_placed(
        self,
        user_id: Optional[str],
        email: str,
        user_name: Optional[str],
        order: Mapping[str, Any],
    ) -> TriggerResult:
        return self._fire(
            TriggerType.ORDER_PLACED,
            user_id,
            email,
            user_name,
            {
                "order_number": order.get("order_number"),
                "order_total": order.get("total"),
                "items": order.get("items"),
            },
        )

    def on_order_shipped(
        self,
        user_id: Optional[str],
        email: str,
        user_name: Optional[str],
        order: Mapping[str, Any],
    ) -> TriggerResult:
        return self._fire(
            TriggerType.ORDER_SHIPPED,
            user_id,
            email,
            user_name,
            {
                "order_number": order.get("order_number"),
                "tracking_number": order.get("tracking_number"),
                "carrier": order.get("carrier"),
            },
        )

    def on_order_delivered(
        self,
        user_id: Optional[str],
        email: str,
        user_name: Optional[str],
        order: Mapping[str, Any],
    ) -> TriggerResult:
        return self._fire(
            TriggerType.ORDER_DELIVERED,
            user_id,
            email,
            user_name,
            {"order_number": order.get("order_number")},
        )

    def on_user_inactive(
        self,
        user_id: Optional[str],
        email: str,
        user_name: Optional[str],
        last_active: dt.datetime,
    ) -> TriggerResult:
        return self._fire(
            TriggerType.INACTIVE_USER,
            user_id,
            email,
            user_name,
            {"last_active": last_active.isoformat()},
        )

    def _fire(
        self,
        trigger: TriggerType,
        user_id: Optional[str],
        email: str,
        user_name: Optional[str],
        data: Dict[str, Any],
    ) -> TriggerResult:
        event = AutomationEvent(
            email=email.strip().lower(),
            trigger_type=trigger.value,
            user_id=user_id,
            user_name=user_name,
            data={k: v for k, v in data.items() if v is not None},
        )
        return self.trigger_automation(trigger.value, event)


__all__ = [
    "AutomationEngine",
    "ExecutionResult",
    "ScheduledRunResult",
    "TriggerResult",
]
