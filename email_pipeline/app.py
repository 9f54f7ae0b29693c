"""Composition root.

:func:`build_pipeline` wires every component against one engine and one
clock.  The CLI, the tracking server and the tests all go through it, so
there is a single place where settings turn into objects.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.engine import Engine

from email_pipeline.ab_testing import ABTestService
from email_pipeline.automation import AutomationEngine
from email_pipeline.campaigns import CampaignSender
from email_pipeline.config import Settings, load_settings
from email_pipeline.cron import CronOrchestrator, RetentionPolicy
from email_pipeline.eligibility import EligibilityGate, SubscriberDirectory
from email_pipeline.mailer import EmailSender, build_sender
from email_pipeline.models import utcnow
from email_pipeline.queue import MessageQueue, QueueWorker
from email_pipeline.storage import get_engine, init_db
from email_pipeline.templating import TemplateStore
from email_pipeline.tracking.events import TrackingRecorder
from email_pipeline.tracking.webhooks import WebhookProcessor


@dataclass
class Pipeline:
    settings: Settings
    engine: Engine
    directory: SubscriberDirectory
    gate: EligibilityGate
    templates: TemplateStore
    queue: MessageQueue
    worker: QueueWorker
    automation: AutomationEngine
    ab_tests: ABTestService
    campaigns: CampaignSender
    recorder: TrackingRecorder
    webhooks: WebhookProcessor
    cron: CronOrchestrator


def build_pipeline(
    settings: Optional[Settings] = None,
    sender: Optional[EmailSender] = None,
    clock: Callable[[], dt.datetime] = utcnow,
    engine: Optional[Engine] = None,
    create_schema: bool = True,
) -> Pipeline:
    settings = settings or load_settings()
    engine = engine or get_engine(settings.database_url)
    if create_schema:
        init_db(engine)

    directory = SubscriberDirectory(engine, clock)
    gate = EligibilityGate(engine, directory, clock)
    templates = TemplateStore(engine)
    queue = MessageQueue(engine, directory, clock, max_attempts=settings.queue_max_attempts)
    worker = QueueWorker(
        queue,
        sender or build_sender(settings),
        clock,
        max_workers=settings.queue_workers,
        default_from=settings.from_email,
        default_from_name=settings.from_name,
        default_reply_to=settings.reply_to,
    )
    automation = AutomationEngine(
        engine,
        queue,
        gate,
        templates,
        settings.tracking_base_url,
        clock,
        strict_templates=settings.strict_template_variables,
    )
    ab_tests = ABTestService(engine, clock)
    campaigns = CampaignSender(
        engine,
        queue,
        directory,
        ab_tests,
        settings.tracking_base_url,
        clock,
        chunk_size=settings.campaign_chunk_size,
        company_name=settings.company_name,
        strict_templates=settings.strict_template_variables,
    )
    recorder = TrackingRecorder(engine, directory, clock)
    webhooks = WebhookProcessor(
        engine, recorder, clock, timeout=settings.provider_timeout_seconds
    )
    cron = CronOrchestrator(
        engine,
        queue,
        worker,
        automation,
        ab_tests,
        clock,
        batch_size=settings.queue_batch_size,
        retention=RetentionPolicy(
            queue_days=settings.queue_retention_days,
            tracking_days=settings.tracking_retention_days,
            webhook_days=settings.webhook_retention_days,
        ),
    )
    return Pipeline(
        settings=settings,
        engine=engine,
        directory=directory,
        gate=gate,
        templates=templates,
        queue=queue,
        worker=worker,
        automation=automation,
        ab_tests=ab_tests,
        campaigns=campaigns,
        recorder=recorder,
        webhooks=webhooks,
        cron=cron,
    )


__all__ = ["Pipeline", "build_pipeline"]
