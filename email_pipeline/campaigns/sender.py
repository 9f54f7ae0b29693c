"""Campaign fan-out.

:meth:`CampaignSender.send_campaign` flips the campaign to ``sending``
with a conditional update before doing any work, so two concurrent calls
cannot both fan out.  Recipients are resolved, de-duplicated and
pre-filtered against the suppression list (bulk enqueue does not check
suppression), rendered per recipient with their own tracking id and A/B
variant, and inserted in fixed-size chunks.  A failing chunk is reported
but does not abort the rest.  A campaign with ``sent_at`` set is never
fanned out again, even while paused.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Engine

from email_pipeline.ab_testing import ABTestService, apply_variant, assign_variant
from email_pipeline.campaigns.audience import resolve_recipients
from email_pipeline.eligibility import SubscriberDirectory
from email_pipeline.errors import NotFoundError
from email_pipeline.models import (
    ABTestStatus,
    CampaignStatus,
    Recipient,
    can_transition,
    ensure_transition,
    utcnow,
)
from email_pipeline.queue.store import MessageQueue
from email_pipeline.storage.schema import email_campaigns
from email_pipeline.templating import render_template
from email_pipeline.tracking.html import (
    TrackingOptions,
    generate_tracking_id,
    prepare_email_for_tracking,
)

LOGGER = logging.getLogger(__name__)


@dataclass
class CampaignSendResult:
    success: bool = False
    queued: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CampaignPerformance:
    sent: int
    delivered: int
    opens: int
    clicks: int
    bounces: int
    unsubscribes: int
    open_rate: float
    click_rate: float
    bounce_rate: float


def _pct(numerator: int, denominator: int) -> float:
    return round(numerator / denominator * 100, 1) if denominator else 0.0


class CampaignSender:
    def __init__(
        self,
        engine: Engine,
        queue: MessageQueue,
        directory: SubscriberDirectory,
        ab_tests: ABTestService,
        tracking_base_url: str,
        clock: Callable[[], dt.datetime] = utcnow,
        chunk_size: int = 100,
        company_name: str = "",
        strict_templates: bool = False,
    ) -> None:
        self._engine = engine
        self._queue = queue
        self._directory = directory
        self._ab_tests = ab_tests
        self._tracking_base_url = tracking_base_url
        self._clock = clock
        self._chunk_size = chunk_size
        self._company_name = company_name
        self._strict = strict_templates

    def get(self, campaign_id: int) -> Mapping[str, Any]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(email_campaigns).where(email_campaigns.c.id == campaign_id)
            ).mappings().first()
        if row is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        return row

    def _set_status(
        self,
        campaign_id: int,
        current: CampaignStatus,
        target: CampaignStatus,
        **values: Any,
    ) -> bool:
        ensure_transition(current, target)
        with self._engine.begin() as conn:
            result = conn.execute(
                update(email_campaigns)
                .where(
                    email_campaigns.c.id == campaign_id,
                    email_campaigns.c.status == current.value,
                )
                .values(status=target.value, updated_at=self._clock(), **values)
            )
        return result.rowcount == 1

    # ------------------------------------------------------------ send
    def send_campaign(self, campaign_id: int) -> CampaignSendResult:
        result = CampaignSendResult()
        try:
            campaign = self.get(campaign_id)
        except NotFoundError as exc:
            result.errors.append(str(exc))
            return result

        status = CampaignStatus(campaign["status"])
        if status in (CampaignStatus.SENT, CampaignStatus.SENDING) or campaign["sent_at"]:
            # A paused campaign that already fanned out continues via resume.
            result.errors.append("Campaign already sent or sending")
            return result
        if not can_transition(status, CampaignStatus.SENDING):
            result.errors.append(f"Campaign cannot be sent from status {status.value}")
            return result
        if not self._set_status(campaign_id, status, CampaignStatus.SENDING):
            result.errors.append("Campaign already sent or sending")
            return result

        try:
            return self._fan_out(campaign, result)
        except Exception as exc:
            LOGGER.exception("Campaign %s send failed", campaign_id)
            result.success = False
            result.errors.append(str(exc))
            self._set_status(campaign_id, CampaignStatus.SENDING, CampaignStatus.DRAFT)
            return result

    def _fan_out(
        self, campaign: Mapping[str, Any], result: CampaignSendResult
    ) -> CampaignSendResult:
        campaign_id = campaign["id"]
        recipients = resolve_recipients(self._directory, campaign["target_audience"])
        suppressed = self._directory.suppressed_among([r.email for r in recipients])
        if suppressed:
            LOGGER.info(
                "Campaign %s: skipping %d suppressed recipients", campaign_id, len(suppressed)
            )
            recipients = [r for r in recipients if r.email not in suppressed]

        if not recipients:
            result.errors.append("No recipients found")
            self._set_status(campaign_id, CampaignStatus.SENDING, CampaignStatus.DRAFT)
            return result

        test = None
        if campaign["ab_test_id"]:
            candidate = self._ab_tests.get(campaign["ab_test_id"])
            if candidate["status"] == ABTestStatus.RUNNING.value:
                test = candidate

        now = self._clock()
        messages: List[Dict[str, Any]] = []
        variants: List[Optional[str]] = []
        for index, recipient in enumerate(recipients):
            variant = None
            content: Dict[str, Any] = {
                "subject": campaign["subject"],
                "html_content": campaign["html_content"],
                "from_name": campaign["from_name"],
                "delay_hours": 0.0,
            }
            if test is not None:
                variant = assign_variant(index, test["split_percentage"], len(recipients))
                content = apply_variant(test, variant, content)
            variants.append(variant)
            messages.append(self._build_message(campaign, recipient, content, variant, now))

        bulk = self._queue.enqueue_bulk(messages, chunk_size=self._chunk_size)
        result.queued = bulk.queued
        result.failed = bulk.failed
        result.errors.extend(bulk.errors)

        final = CampaignStatus.FAILED if bulk.queued == 0 else CampaignStatus.SENT
        self._set_status(
            campaign_id,
            CampaignStatus.SENDING,
            final,
            total_recipients=len(recipients),
            sent_count=bulk.queued,
            sent_at=now if bulk.queued else None,
        )
        if test is not None:
            queued_variants = [v for i, v in enumerate(variants) if bulk.was_queued(i)]
            self._ab_tests.record_sent(
                test["id"], queued_variants.count("A"), queued_variants.count("B")
            )
        result.success = bulk.queued > 0
        LOGGER.info(
            "Campaign %s fanned out: queued=%d failed=%d", campaign_id, bulk.queued, bulk.failed
        )
        return result

    def _build_message(
        self,
        campaign: Mapping[str, Any],
        recipient: Recipient,
        content: Mapping[str, Any],
        variant: Optional[str],
        now: dt.datetime,
    ) -> Dict[str, Any]:
        variables = {
            "user_name": recipient.display_name,
            "first_name": recipient.first_name,
            "last_name": recipient.last_name,
            "name": recipient.first_name or "Customer",
            "email": recipient.email,
            "company": self._company_name,
            "current_year": str(now.year),
        }
        subject = render_template(content["subject"], variables, self._strict)
        html = render_template(content["html_content"], variables, self._strict)
        text = render_template(campaign["text_content"], variables, self._strict) or None

        tracking_id = generate_tracking_id()
        html = prepare_email_for_tracking(
            html,
            tracking_id,
            recipient.email,
            self._tracking_base_url,
            TrackingOptions(
                track_opens=bool(campaign["track_opens"]),
                track_clicks=bool(campaign["track_clicks"]),
            ),
        )
        delay = content.get("delay_hours") or 0
        return {
            "to_email": recipient.email,
            "to_name": recipient.display_name if recipient.first_name else "",
            "subject": subject,
            "html_content": html,
            "text_content": text,
            "from_name": content.get("from_name"),
            "campaign_id": campaign["id"],
            "tracking_id": tracking_id,
            "scheduled_at": now + dt.timedelta(hours=delay) if delay else now,
            "metadata": {
                "user_id": recipient.user_id,
                "tracking_id": tracking_id,
                "ab_variant": variant,
                "first_name": recipient.first_name,
                "last_name": recipient.last_name,
                "user_name": recipient.display_name,
            },
        }

    # ---------------------------------------------------- pause/resume
    def pause_campaign(self, campaign_id: int) -> int:
        """Pause the campaign and cancel its pending messages.

        Messages already being delivered finish their current attempt.
        Returns the number of cancelled messages.
        """
        campaign = self.get(campaign_id)
        self._set_status(
            campaign_id, CampaignStatus(campaign["status"]), CampaignStatus.PAUSED
        )
        cancelled = self._queue.cancel_for_campaign(campaign_id)
        LOGGER.info("Campaign %s paused; %d messages cancelled", campaign_id, cancelled)
        return cancelled

    def resume_campaign(self, campaign_id: int) -> int:
        """Re-queue messages cancelled by :meth:`pause_campaign`.

        A campaign that had already been fanned out returns to ``sent``;
        one paused before sending returns to ``draft``.
        """
        campaign = self.get(campaign_id)
        target = CampaignStatus.SENT if campaign["sent_at"] else CampaignStatus.DRAFT
        self._set_status(campaign_id, CampaignStatus(campaign["status"]), target)
        resumed = self._queue.resume_for_campaign(campaign_id)
        LOGGER.info("Campaign %s resumed; %d messages re-queued", campaign_id, resumed)
        return resumed

    # -------------------------------------------------------- reports
    def campaign_performance(self, campaign_id: int) -> CampaignPerformance:
        campaign = self.get(campaign_id)
        sent = campaign["sent_count"] or 0
        bounces = campaign["bounce_count"] or 0
        opens = campaign["open_count"] or 0
        clicks = campaign["click_count"] or 0
        return CampaignPerformance(
            sent=sent,
            delivered=sent - bounces,
            opens=opens,
            clicks=clicks,
            bounces=bounces,
            unsubscribes=campaign["unsubscribe_count"] or 0,
            open_rate=_pct(opens, sent),
            click_rate=_pct(clicks, opens),
            bounce_rate=_pct(bounces, sent),
        )


__all__ = ["CampaignPerformance", "CampaignSendResult", "CampaignSender"]
