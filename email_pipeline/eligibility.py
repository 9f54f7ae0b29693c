"""Suppression lookups and the per-send eligibility gate.

:class:`SubscriberDirectory` wraps ``email_subscribers`` and
``email_suppression_list``.  :class:`EligibilityGate` answers "may this
address receive this automation right now?" and never writes anything;
callers decide how to record a rejection.

The gate checks, stopping at the first failure:

1. global suppression list,
2. subscriber status (anything but ``active`` rejects),
3. anonymous sends (no user id) are always allowed past this point,
4. lifetime send limit per user for the automation,
5. cooldown window since the last completed execution.
"""

from __future__ import annotations

import datetime as dt
from typing import Callable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine

from email_pipeline.models import (
    AutomationRule,
    Eligibility,
    ExecutionStatus,
    Recipient,
    utcnow,
)
from email_pipeline.storage.schema import (
    automation_executions,
    email_subscribers,
    email_suppression_list,
)

SUPPRESSED = "suppressed"
LIMIT_REACHED = "limit reached"
COOLDOWN = "cooldown"

HARD_BOUNCE_LIMIT = 3


class SubscriberDirectory:
    """Subscriber status and suppression bookkeeping."""

    def __init__(
        self, engine: Engine, clock: Callable[[], dt.datetime] = utcnow
    ) -> None:
        self._engine = engine
        self._clock = clock

    def is_suppressed(self, address: str) -> bool:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(email_suppression_list.c.email).where(
                    email_suppression_list.c.email == address.strip().lower()
                )
            ).first()
        return row is not None

    def suppressed_among(self, addresses: List[str]) -> set[str]:
        """Return the subset of ``addresses`` on the suppression list."""
        if not addresses:
            return set()
        with self._engine.connect() as conn:
            rows = conn.execute(
                select(email_suppression_list.c.email).where(
                    email_suppression_list.c.email.in_(addresses)
                )
            ).all()
        return {r[0] for r in rows}

    def subscriber_status(self, address: str) -> Optional[str]:
        with self._engine.connect() as conn:
            return conn.execute(
                select(email_subscribers.c.status).where(
                    email_subscribers.c.email == address.strip().lower()
                )
            ).scalar_one_or_none()

    def active_subscribers(self, tag: Optional[str] = None) -> List[Recipient]:
        """Active subscribers, optionally restricted to those carrying ``tag``."""
        with self._engine.connect() as conn:
            rows = conn.execute(
                select(email_subscribers)
                .where(email_subscribers.c.status == "active")
                .order_by(email_subscribers.c.id)
            ).mappings().all()
        recipients = []
        for row in rows:
            if tag is not None and tag not in (row["tags"] or []):
                continue
            recipients.append(
                Recipient(
                    email=row["email"],
                    first_name=row["first_name"] or "",
                    last_name=row["last_name"] or "",
                    user_id=row["user_id"],
                )
            )
        return recipients

    def suppress(self, address: str, reason: str, notes: Optional[str] = None) -> None:
        """Add ``address`` to the suppression list (upsert)."""
        address = address.strip().lower()
        with self._engine.begin() as conn:
            updated = conn.execute(
                update(email_suppression_list)
                .where(email_suppression_list.c.email == address)
                .values(reason=reason, notes=notes)
            ).rowcount
            if not updated:
                conn.execute(
                    email_suppression_list.insert().values(
                        email=address,
                        reason=reason,
                        notes=notes,
                        created_at=self._clock(),
                    )
                )

    def set_status(self, address: str, status: str) -> bool:
        """Update subscriber status; returns False if the address is unknown."""
        values: dict = {"status": status}
        if status == "unsubscribed":
            values["unsubscribed_at"] = self._clock()
        elif status == "complained":
            values["complaint_at"] = self._clock()
        with self._engine.begin() as conn:
            result = conn.execute(
                update(email_subscribers)
                .where(email_subscribers.c.email == address.strip().lower())
                .values(**values)
            )
        return result.rowcount > 0

    def record_bounce(self, address: str, hard: bool) -> bool:
        """Count a bounce; returns True when the address ends up suppressed."""
        address = address.strip().lower()
        with self._engine.begin() as conn:
            conn.execute(
                update(email_subscribers)
                .where(email_subscribers.c.email == address)
                .values(
                    bounce_count=email_subscribers.c.bounce_count + 1,
                    last_bounce_at=self._clock(),
                )
            )
            count = conn.execute(
                select(email_subscribers.c.bounce_count).where(
                    email_subscribers.c.email == address
                )
            ).scalar_one_or_none()
        should_suppress = hard or (count or 0) >= HARD_BOUNCE_LIMIT
        if should_suppress:
            self.set_status(address, "bounced")
            kind = "hard" if hard else "soft"
            self.suppress(address, "bounce", f"{kind} bounce, count: {count or 0}")
        return should_suppress


class EligibilityGate:
    """Pure decision function over suppression, status and send history."""

    def __init__(
        self,
        engine: Engine,
        directory: Optional[SubscriberDirectory] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._engine = engine
        self._directory = directory or SubscriberDirectory(engine, clock)
        self._clock = clock

    def check(
        self,
        address: str,
        user_id: Optional[str] = None,
        rule: Optional[AutomationRule] = None,
    ) -> Eligibility:
        if self._directory.is_suppressed(address):
            return Eligibility(False, SUPPRESSED)

        status = self._directory.subscriber_status(address)
        if status is not None and status != "active":
            return Eligibility(False, status)

        if not user_id or rule is None:
            return Eligibility(True)

        completed = (
            (automation_executions.c.automation_id == rule.id)
            & (automation_executions.c.user_id == user_id)
            & (automation_executions.c.status == ExecutionStatus.COMPLETED.value)
        )
        with self._engine.connect() as conn:
            total = conn.execute(
                select(func.count()).select_from(automation_executions).where(completed)
            ).scalar_one()
            if total >= rule.send_limit_per_user:
                return Eligibility(False, LIMIT_REACHED)

            if rule.cooldown_days > 0:
                since = self._clock() - dt.timedelta(days=rule.cooldown_days)
                recent = conn.execute(
                    select(automation_executions.c.id)
                    .where(completed, automation_executions.c.executed_at >= since)
                    .limit(1)
                ).first()
                if recent is not None:
                    return Eligibility(False, COOLDOWN)

        return Eligibility(True)


__all__ = [
    "COOLDOWN",
    "EligibilityGate",
    "LIMIT_REACHED",
    "SUPPRESSED",
    "SubscriberDirectory",
]
