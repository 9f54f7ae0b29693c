"""Record inbound engagement events.

Events are keyed by the tracking id embedded in each sent message and
resolved through the delivery log written by the queue worker.  Rows in
``email_tracking_events`` are append-only.  Campaign and A/B counters are
bumped with ``col = col + 1`` updates so concurrent hits cannot lose
increments.  Only the first open per tracking id is recorded.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Callable, Mapping, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.engine import Engine

from email_pipeline.eligibility import SubscriberDirectory
from email_pipeline.models import TrackingEventType, utcnow
from email_pipeline.storage.schema import (
    email_ab_tests,
    email_campaigns,
    email_logs,
    email_tracking_events,
)

LOGGER = logging.getLogger(__name__)

_CAMPAIGN_COUNTERS = {
    TrackingEventType.OPENED: "open_count",
    TrackingEventType.CLICKED: "click_count",
    TrackingEventType.UNSUBSCRIBED: "unsubscribe_count",
    TrackingEventType.BOUNCED: "bounce_count",
}

_VARIANT_COUNTERS = {
    TrackingEventType.OPENED: "opens",
    TrackingEventType.CLICKED: "clicks",
}


def parse_user_agent(user_agent: Optional[str]) -> Tuple[str, str]:
    """Classify a user agent into ``(device_type, email_client)``."""
    ua = (user_agent or "").lower()

    device = "desktop"
    if any(k in ua for k in ("mobile", "android", "iphone", "ipad", "ipod")):
        device = "tablet" if ("ipad" in ua or "tablet" in ua) else "mobile"

    if "gmail" in ua:
        client = "gmail"
    elif "outlook" in ua or "microsoft" in ua:
        client = "outlook"
    elif "apple" in ua or "webkit" in ua:
        client = "apple_mail"
    elif "yahoo" in ua:
        client = "yahoo"
    elif "thunderbird" in ua:
        client = "thunderbird"
    else:
        client = "unknown"
    return device, client


class TrackingRecorder:
    def __init__(
        self,
        engine: Engine,
        directory: Optional[SubscriberDirectory] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._engine = engine
        self._directory = directory or SubscriberDirectory(engine, clock)
        self._clock = clock

    def _log_by(self, column, value: str) -> Optional[Mapping[str, Any]]:
        with self._engine.connect() as conn:
            return conn.execute(
                select(email_logs).where(column == value).limit(1)
            ).mappings().first()

    def log_for_tracking_id(self, tracking_id: str) -> Optional[Mapping[str, Any]]:
        return self._log_by(email_logs.c.tracking_id, tracking_id)

    def log_for_provider_message(self, message_id: str) -> Optional[Mapping[str, Any]]:
        return self._log_by(email_logs.c.provider_message_id, message_id)

    def record_event(
        self,
        tracking_id: str,
        event_type: TrackingEventType | str,
        link_url: Optional[str] = None,
        link_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> bool:
        """Append a tracking event and bump the matching counters.

        Returns False when the tracking id is unknown or the event is a
        repeat open.
        """
        event = TrackingEventType(event_type)
        log = self.log_for_tracking_id(tracking_id)
        if log is None:
            LOGGER.debug("Ignoring %s for unknown tracking id %s", event.value, tracking_id)
            return False

        device, client = parse_user_agent(user_agent) if user_agent else (None, None)
        with self._engine.begin() as conn:
            if event is TrackingEventType.OPENED:
                seen = conn.execute(
                    select(email_tracking_events.c.id)
                    .where(
                        email_tracking_events.c.tracking_id == tracking_id,
                        email_tracking_events.c.event_type == event.value,
                    )
                    .limit(1)
                ).first()
                if seen is not None:
                    return False

            conn.execute(
                email_tracking_events.insert().values(
                    email_log_id=log["id"],
                    tracking_id=tracking_id,
                    campaign_id=log["campaign_id"],
                    event_type=event.value,
                    link_url=link_url,
                    link_id=link_id,
                    user_agent=user_agent,
                    ip_address=ip_address,
                    device_type=device,
                    email_client=client,
                    occurred_at=self._clock(),
                )
            )

            counter = _CAMPAIGN_COUNTERS.get(event)
            if log["campaign_id"] and counter:
                column = email_campaigns.c[counter]
                conn.execute(
                    update(email_campaigns)
                    .where(email_campaigns.c.id == log["campaign_id"])
                    .values({counter: column + 1})
                )
                variant_counter = _VARIANT_COUNTERS.get(event)
                if log["ab_variant"] in ("A", "B") and variant_counter:
                    self._bump_variant(conn, log, variant_counter)
        return True

    @staticmethod
    def _bump_variant(conn, log: Mapping[str, Any], counter: str) -> None:
        test_id = conn.execute(
            select(email_campaigns.c.ab_test_id).where(
                email_campaigns.c.id == log["campaign_id"]
            )
        ).scalar_one_or_none()
        if test_id is None:
            return
        name = f"variant_{log['ab_variant'].lower()}_{counter}"
        conn.execute(
            update(email_ab_tests)
            .where(email_ab_tests.c.id == test_id)
            .values({name: email_ab_tests.c[name] + 1})
        )

    def unsubscribe(
        self,
        email: str,
        tracking_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Unsubscribe ``email`` and suppress it from all future sends."""
        address = email.strip().lower()
        self._directory.set_status(address, "unsubscribed")
        self._directory.suppress(address, "unsubscribe", reason)
        if tracking_id:
            self.record_event(tracking_id, TrackingEventType.UNSUBSCRIBED)
        LOGGER.info("Unsubscribed %s", address)

    def mark_delivered(self, message_id: str) -> bool:
        log = self.log_for_provider_message(message_id)
        if log is None:
            return False
        with self._engine.begin() as conn:
            conn.execute(
                update(email_logs)
                .where(email_logs.c.id == log["id"])
                .values(status="delivered")
            )
        if log["tracking_id"]:
            self.record_event(log["tracking_id"], TrackingEventType.DELIVERED)
        return True

    def record_bounce(self, email: str, message_id: Optional[str], hard: bool) -> bool:
        """Bounce bookkeeping; returns True when the address was suppressed."""
        suppressed = self._directory.record_bounce(email, hard)
        log = self.log_for_provider_message(message_id) if message_id else None
        if log is not None and log["tracking_id"]:
            self.record_event(log["tracking_id"], TrackingEventType.BOUNCED)
        return suppressed

    def record_complaint(self, email: str, message_id: Optional[str]) -> None:
        address = email.strip().lower()
        self._directory.set_status(address, "complained")
        self._directory.suppress(address, "complaint", "Spam complaint received")
        log = self.log_for_provider_message(message_id) if message_id else None
        if log is not None and log["tracking_id"]:
            self.record_event(log["tracking_id"], TrackingEventType.COMPLAINED)


__all__ = ["TrackingRecorder", "parse_user_agent"]
