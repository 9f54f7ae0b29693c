"""Provider webhook ingestion (Resend, SendGrid, Amazon SES).

Each provider payload is normalised into :class:`ProviderEvent` values.
Every event is stored raw in ``email_webhook_events``, dispatched to the
:class:`~email_pipeline.tracking.events.TrackingRecorder`, and then marked
processed.  Retention cleanup only deletes processed rows.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional
from urllib.parse import urlparse

import requests
from sqlalchemy import update
from sqlalchemy.engine import Engine

from email_pipeline.models import TrackingEventType, utcnow
from email_pipeline.storage.schema import email_webhook_events
from email_pipeline.tracking.events import TrackingRecorder

LOGGER = logging.getLogger(__name__)

PROVIDERS = ("resend", "sendgrid", "ses")

DELIVERED = "delivered"
OPENED = "opened"
CLICKED = "clicked"
BOUNCED = "bounced"
COMPLAINED = "complained"
UNSUBSCRIBED = "unsubscribed"


@dataclass(frozen=True)
class ProviderEvent:
    provider: str
    raw_type: Optional[str]
    kind: Optional[str]
    email: Optional[str]
    message_id: Optional[str]
    url: Optional[str] = None
    hard_bounce: bool = True
    payload: Optional[Mapping[str, Any]] = None


@dataclass
class WebhookResult:
    received: int = 0
    processed: int = 0
    confirmed: bool = False


_RESEND_KINDS = {
    "email.delivered": DELIVERED,
    "email.opened": OPENED,
    "email.clicked": CLICKED,
    "email.bounced": BOUNCED,
    "email.complained": COMPLAINED,
}

_SENDGRID_KINDS = {
    "delivered": DELIVERED,
    "open": OPENED,
    "click": CLICKED,
    "bounce": BOUNCED,
    "spamreport": COMPLAINED,
    "unsubscribe": UNSUBSCRIBED,
}

_SES_KINDS = {
    "Delivery": DELIVERED,
    "Open": OPENED,
    "Click": CLICKED,
}


def parse_resend(payload: Mapping[str, Any]) -> List[ProviderEvent]:
    data = payload.get("data") or {}
    to = data.get("to") or []
    email = data.get("email") or (to[0] if to else None)
    event_type = payload.get("type")
    bounce = data.get("bounce") or {}
    return [
        ProviderEvent(
            provider="resend",
            raw_type=event_type,
            kind=_RESEND_KINDS.get(event_type),
            email=email,
            message_id=data.get("email_id"),
            url=(data.get("click") or {}).get("link"),
            hard_bounce=str(bounce.get("type", "hard")).lower() not in ("soft", "transient"),
            payload=payload,
        )
    ]


def parse_sendgrid(payload: Any) -> List[ProviderEvent]:
    items = payload if isinstance(payload, list) else [payload]
    events = []
    for item in items:
        event_type = item.get("event")
        events.append(
            ProviderEvent(
                provider="sendgrid",
                raw_type=event_type,
                kind=_SENDGRID_KINDS.get(event_type),
                email=item.get("email"),
                message_id=item.get("sg_message_id"),
                url=item.get("url"),
                hard_bounce=item.get("type") != "blocked",
                payload=item,
            )
        )
    return events


def parse_ses(message: Mapping[str, Any]) -> List[ProviderEvent]:
    """Normalise an SES notification (already unwrapped from SNS)."""
    event_type = message.get("eventType") or message.get("notificationType")
    mail = message.get("mail") or {}
    destination = mail.get("destination") or []
    message_id = mail.get("messageId")

    if event_type == "Bounce":
        bounce = message.get("bounce") or {}
        hard = bounce.get("bounceType") == "Permanent"
        return [
            ProviderEvent("ses", event_type, BOUNCED, r.get("emailAddress"), message_id,
                          hard_bounce=hard, payload=message)
            for r in bounce.get("bouncedRecipients") or []
        ]
    if event_type == "Complaint":
        complaint = message.get("complaint") or {}
        return [
            ProviderEvent("ses", event_type, COMPLAINED, r.get("emailAddress"), message_id,
                          payload=message)
            for r in complaint.get("complainedRecipients") or []
        ]
    return [
        ProviderEvent(
            provider="ses",
            raw_type=event_type,
            kind=_SES_KINDS.get(event_type),
            email=destination[0] if destination else None,
            message_id=message_id,
            url=(message.get("click") or {}).get("link"),
            payload=message,
        )
    ]


def _is_sns_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme == "https" and (parsed.hostname or "").endswith(".amazonaws.com")


class WebhookProcessor:
    def __init__(
        self,
        engine: Engine,
        recorder: TrackingRecorder,
        clock: Callable[[], dt.datetime] = utcnow,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ) -> None:
        self._engine = engine
        self._recorder = recorder
        self._clock = clock
        self._session = session or requests.Session()
        self._timeout = timeout

    def handle(self, provider: str, payload: Any) -> WebhookResult:
        """Store, dispatch and mark processed every event in ``payload``.

        Raises ``ValueError`` for an unknown provider.
        """
        if provider == "resend":
            events = parse_resend(payload)
        elif provider == "sendgrid":
            events = parse_sendgrid(payload)
        elif provider == "ses":
            if payload.get("Type") == "SubscriptionConfirmation":
                return WebhookResult(confirmed=self._confirm_sns(payload))
            if payload.get("Type") == "Notification":
                payload = json.loads(payload.get("Message") or "{}")
            events = parse_ses(payload)
        else:
            raise ValueError(f"Unknown webhook provider: {provider}")

        result = WebhookResult()
        for event in events:
            result.received += 1
            row_id = self._store(event)
            self._dispatch(event)
            with self._engine.begin() as conn:
                conn.execute(
                    update(email_webhook_events)
                    .where(email_webhook_events.c.id == row_id)
                    .values(processed=True, processed_at=self._clock())
                )
            result.processed += 1
        return result

    def _store(self, event: ProviderEvent) -> int:
        with self._engine.begin() as conn:
            return conn.execute(
                email_webhook_events.insert().values(
                    provider=event.provider,
                    event_type=event.raw_type,
                    payload=dict(event.payload or {}),
                    email=(event.email or "").lower() or None,
                    message_id=event.message_id,
                    processed=False,
                    received_at=self._clock(),
                )
            ).inserted_primary_key[0]

    def _dispatch(self, event: ProviderEvent) -> None:
        recorder = self._recorder
        if event.kind is None:
            LOGGER.debug("Ignoring %s webhook event %s", event.provider, event.raw_type)
            return
        if event.kind == DELIVERED and event.message_id:
            recorder.mark_delivered(event.message_id)
        elif event.kind in (OPENED, CLICKED) and event.message_id:
            log = recorder.log_for_provider_message(event.message_id)
            if log is not None and log["tracking_id"]:
                recorder.record_event(
                    log["tracking_id"],
                    TrackingEventType.OPENED if event.kind == OPENED else TrackingEventType.CLICKED,
                    link_url=event.url,
                )
        elif event.kind == BOUNCED and event.email:
            recorder.record_bounce(event.email, event.message_id, event.hard_bounce)
        elif event.kind == COMPLAINED and event.email:
            recorder.record_complaint(event.email, event.message_id)
        elif event.kind == UNSUBSCRIBED and event.email:
            recorder.unsubscribe(event.email)

    def _confirm_sns(self, payload: Mapping[str, Any]) -> bool:
        url = payload.get("SubscribeURL") or ""
        if not _is_sns_url(url):
            LOGGER.warning("Refusing SNS confirmation for unexpected URL %r", url)
            return False
        try:
            response = self._session.get(url, timeout=self._timeout)
        except requests.RequestException as exc:
            LOGGER.warning("SNS subscription confirmation failed: %s", exc)
            return False
        return response.ok


__all__ = [
    "PROVIDERS",
    "ProviderEvent",
    "WebhookProcessor",
    "WebhookResult",
    "parse_resend",
    "parse_sendgrid",
    "parse_ses",
]
