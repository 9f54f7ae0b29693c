"""Periodic orchestrator.

An external scheduler (cron, systemd timer, a serverless trigger) calls
:meth:`CronOrchestrator.run` on a fixed interval, for example every
minute.  Each call is a complete unit of work.  The steps run one after
another in a fixed order, and a step that raises is reported as failed
without stopping the steps after it:

1. ``process_queue``
2. ``retry_failed_emails``
3. ``process_scheduled_automations``
4. ``check_ab_tests``
5. ``cleanup_old_data``
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from dataclasses import asdict, dataclass, field, is_dataclass
from typing import Any, Callable, Dict, List

from sqlalchemy import and_, delete, func, select
from sqlalchemy.engine import Engine

from email_pipeline.ab_testing import ABTestService
from email_pipeline.automation import AutomationEngine
from email_pipeline.models import CampaignStatus, utcnow
from email_pipeline.queue import MessageQueue, QueueWorker
from email_pipeline.storage.schema import (
    email_automations,
    email_campaigns,
    email_tracking_events,
    email_webhook_events,
)

LOGGER = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
CRITICAL = "critical"


@dataclass
class JobResult:
    job: str
    success: bool
    details: Dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0


@dataclass(frozen=True)
class RetentionPolicy:
    queue_days: int = 30
    tracking_days: int = 90
    webhook_days: int = 30


def health_status(recent_failures: int, failed_24h: int) -> str:
    if recent_failures > 50 or failed_24h > 100:
        return CRITICAL
    if recent_failures > 10 or failed_24h > 20:
        return DEGRADED
    return HEALTHY


class CronOrchestrator:
    def __init__(
        self,
        engine: Engine,
        queue: MessageQueue,
        worker: QueueWorker,
        automation: AutomationEngine,
        ab_tests: ABTestService,
        clock: Callable[[], dt.datetime] = utcnow,
        batch_size: int = 50,
        retention: RetentionPolicy = RetentionPolicy(),
    ) -> None:
        self._engine = engine
        self._queue = queue
        self._worker = worker
        self._automation = automation
        self._ab_tests = ab_tests
        self._clock = clock
        self._batch_size = batch_size
        self._retention = retention

    def run(self) -> List[JobResult]:
        steps = [
            ("process_queue", lambda: self._worker.process_queue(self._batch_size)),
            ("retry_failed_emails", self.retry_failed_emails),
            ("process_scheduled_automations", self._automation.process_scheduled_automations),
            ("check_ab_tests", self.check_ab_tests),
            ("cleanup_old_data", self.cleanup_old_data),
        ]
        results = [self._run_step(name, step) for name, step in steps]
        failed = [r.job for r in results if not r.success]
        if failed:
            LOGGER.warning("Cron run finished with failed steps: %s", ", ".join(failed))
        else:
            LOGGER.info("Cron run finished: %d steps ok", len(results))
        return results

    @staticmethod
    def _run_step(name: str, step: Callable[[], Any]) -> JobResult:
        started = time.perf_counter()
        try:
            outcome = step()
        except Exception as exc:
            LOGGER.exception("Cron step %s failed", name)
            return JobResult(name, False, {"error": str(exc)}, time.perf_counter() - started)
        if is_dataclass(outcome):
            details = asdict(outcome)
        else:
            details = dict(outcome or {})
        return JobResult(name, True, details, time.perf_counter() - started)

    def retry_failed_emails(self) -> Dict[str, int]:
        """Re-queue retryable failures and reclaim stale claims."""
        return {
            "retried": self._queue.retry_failed_emails(),
            "reclaimed": self._queue.reclaim_stale(),
        }

    def check_ab_tests(self) -> Dict[str, int]:
        """Evaluate every running test whose duration has elapsed.

        A test that raises is logged and counted; the rest still run.
        """
        evaluated = failed = 0
        for test_id in self._ab_tests.due_tests():
            try:
                self._ab_tests.evaluate_ab_test(test_id)
            except Exception:
                LOGGER.exception("Evaluating A/B test %s failed", test_id)
                failed += 1
                continue
            evaluated += 1
        return {"evaluated": evaluated, "failed": failed}

    def cleanup_old_data(self) -> Dict[str, int]:
        """Hard-delete rows past their retention window."""
        now = self._clock()
        queue_cleaned = self._queue.purge_terminal(
            now - dt.timedelta(days=self._retention.queue_days)
        )
        with self._engine.begin() as conn:
            events_cleaned = conn.execute(
                delete(email_tracking_events).where(
                    email_tracking_events.c.occurred_at
                    < now - dt.timedelta(days=self._retention.tracking_days)
                )
            ).rowcount
            webhooks_cleaned = conn.execute(
                delete(email_webhook_events).where(
                    and_(
                        email_webhook_events.c.processed.is_(True),
                        email_webhook_events.c.received_at
                        < now - dt.timedelta(days=self._retention.webhook_days),
                    )
                )
            ).rowcount
        return {
            "queue_cleaned": queue_cleaned,
            "events_cleaned": events_cleaned,
            "webhooks_cleaned": webhooks_cleaned,
        }

    def system_health(self) -> Dict[str, Any]:
        stats = self._queue.stats()
        recent = self._queue.recent_failures(self._clock() - dt.timedelta(hours=1))
        with self._engine.connect() as conn:
            automations_active = conn.execute(
                select(func.count())
                .select_from(email_automations)
                .where(email_automations.c.is_active.is_(True))
            ).scalar_one()
            campaigns_running = conn.execute(
                select(func.count())
                .select_from(email_campaigns)
                .where(email_campaigns.c.status == CampaignStatus.SENDING.value)
            ).scalar_one()
        return {
            "queue_stats": stats,
            "automations_active": automations_active,
            "campaigns_running": campaigns_running,
            "recent_errors": recent,
            "status": health_status(recent, stats.get("failed", 0)),
        }


__all__ = [
    "CRITICAL",
    "CronOrchestrator",
    "DEGRADED",
    "HEALTHY",
    "JobResult",
    "RetentionPolicy",
    "health_status",
]
