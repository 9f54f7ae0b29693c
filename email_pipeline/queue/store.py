"""Durable outbound message queue.

The ``email_queue`` table is the single source of truth for message
state.  Status moves only along

    pending -> processing -> {sent | pending (retry) | failed}
    pending -> cancelled

plus two explicit recovery edges: the retry sweep (failed -> pending while
``attempts`` is below :data:`RETRY_CEILING`) and campaign resume
(cancelled -> pending for that campaign only).  Claiming a message is a
conditional update on ``status = 'pending'`` so two workers can never own
the same row.  A row left in processing by a worker that died after
claiming it is reclaimed once it goes stale.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from email_pipeline.eligibility import SubscriberDirectory
from email_pipeline.mailer import FailureKind
from email_pipeline.models import (
    MessageStatus,
    OutboundEmail,
    ensure_transition,
    utcnow,
)
from email_pipeline.storage.schema import email_logs, email_queue

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
# Failed rows below this attempt count are picked up again by the sweep.
RETRY_CEILING = 3

TERMINAL_STATUSES = (
    MessageStatus.SENT.value,
    MessageStatus.FAILED.value,
    MessageStatus.CANCELLED.value,
)
ACTIVE_STATUSES = (
    MessageStatus.PENDING.value,
    MessageStatus.PROCESSING.value,
    MessageStatus.SENT.value,
)
DUPLICATE_WINDOW = dt.timedelta(hours=24)
# A claimed row untouched for this long is assumed to be orphaned.
STALE_PROCESSING = dt.timedelta(minutes=15)

EmailLike = Union[OutboundEmail, Mapping[str, Any]]


@dataclass(frozen=True)
class EnqueueResult:
    success: bool
    queue_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class BulkEnqueueResult:
    queued: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    # Index ranges (into the submitted list) whose chunk insert failed.
    failed_ranges: List[range] = field(default_factory=list)

    def was_queued(self, index: int) -> bool:
        return not any(index in r for r in self.failed_ranges)


def backoff_delay(attempts: int) -> dt.timedelta:
    """Delay before the next try after ``attempts`` failed attempts."""
    return dt.timedelta(minutes=2 ** attempts)


class MessageQueue:
    """Insert, claim and transition rows of ``email_queue``."""

    def __init__(
        self,
        engine: Engine,
        directory: Optional[SubscriberDirectory] = None,
        clock: Callable[[], dt.datetime] = utcnow,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._engine = engine
        self._directory = directory or SubscriberDirectory(engine, clock)
        self._clock = clock
        self._max_attempts = max_attempts

    # ------------------------------------------------------------ enqueue
    def _row_values(self, email: OutboundEmail, now: dt.datetime) -> Dict[str, Any]:
        metadata = dict(email.metadata)
        to_name = email.to_name or metadata.get("user_name") or metadata.get("first_name") or ""
        return {
            "to_email": email.to_email,
            "to_name": to_name,
            "subject": email.subject,
            "html_content": email.html_content,
            "text_content": email.text_content,
            "from_email": email.from_email,
            "from_name": email.from_name,
            "reply_to": email.reply_to,
            "campaign_id": email.campaign_id,
            "automation_id": email.automation_id,
            "template_id": email.template_id,
            "subscriber_id": email.subscriber_id,
            "tracking_id": email.tracking_id or metadata.get("tracking_id"),
            "priority": email.priority,
            "status": MessageStatus.PENDING.value,
            "scheduled_at": email.scheduled_at or now,
            "attempts": 0,
            "max_attempts": email.max_attempts or self._max_attempts,
            "message_metadata": metadata,
            "created_at": now,
            "updated_at": now,
        }

    @staticmethod
    def _coerce(email: EmailLike) -> OutboundEmail:
        if isinstance(email, OutboundEmail):
            return email
        return OutboundEmail(**email)

    def enqueue(self, email: EmailLike, check_suppression: bool = True) -> EnqueueResult:
        """Insert one pending message.

        Fails (without raising) when the request does not validate or the
        recipient is on the suppression list.
        """
        try:
            message = self._coerce(email)
        except ValidationError as exc:
            return EnqueueResult(False, error=f"Invalid message: {exc.errors()[0]['msg']}")

        if check_suppression and self._directory.is_suppressed(message.to_email):
            return EnqueueResult(False, error="Email is suppressed")

        now = self._clock()
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    email_queue.insert().values(**self._row_values(message, now))
                )
                queue_id = result.inserted_primary_key[0]
        except SQLAlchemyError as exc:
            LOGGER.warning("Enqueue for %s failed: %s", message.to_email, exc)
            return EnqueueResult(False, error=str(exc))
        LOGGER.debug("Queued message %s for %s", queue_id, message.to_email)
        return EnqueueResult(True, queue_id=queue_id)

    def enqueue_bulk(
        self, emails: List[EmailLike], chunk_size: int = 100
    ) -> BulkEnqueueResult:
        """Insert many messages, one transaction per chunk.

        Suppression is not checked here; callers pre-filter recipients.
        A failing chunk is counted and reported but does not stop the
        remaining chunks.
        """
        results = BulkEnqueueResult()
        now = self._clock()
        for start in range(0, len(emails), chunk_size):
            batch = emails[start : start + chunk_size]
            try:
                rows = [self._row_values(self._coerce(e), now) for e in batch]
                with self._engine.begin() as conn:
                    conn.execute(email_queue.insert(), rows)
            except (ValidationError, SQLAlchemyError) as exc:
                LOGGER.warning(
                    "Bulk enqueue chunk %d-%d failed: %s", start, start + len(batch), exc
                )
                results.failed += len(batch)
                results.errors.append(str(exc))
                results.failed_ranges.append(range(start, start + len(batch)))
            else:
                results.queued += len(rows)
        return results

    def has_duplicate(
        self,
        to_email: str,
        automation_id: Optional[int],
        window: dt.timedelta = DUPLICATE_WINDOW,
    ) -> bool:
        """True if this automation already queued or recently sent to the address.

        Looks for a pending, processing or sent queue row first, then for
        a sent delivery log entry inside ``window``.
        """
        to_email = to_email.strip().lower()
        since = self._clock() - window
        with self._engine.connect() as conn:
            queued = conn.execute(
                select(email_queue.c.id)
                .where(
                    email_queue.c.to_email == to_email,
                    email_queue.c.automation_id == automation_id,
                    email_queue.c.status.in_(ACTIVE_STATUSES),
                )
                .limit(1)
            ).first()
            if queued is not None:
                return True
            logged = conn.execute(
                select(email_logs.c.id)
                .where(
                    email_logs.c.email_address == to_email,
                    email_logs.c.automation_id == automation_id,
                    email_logs.c.status != MessageStatus.FAILED.value,
                    email_logs.c.sent_at >= since,
                )
                .limit(1)
            ).first()
        return logged is not None

    # ------------------------------------------------------------- claims
    def get(self, message_id: int) -> Optional[Mapping[str, Any]]:
        with self._engine.connect() as conn:
            return conn.execute(
                select(email_queue).where(email_queue.c.id == message_id)
            ).mappings().first()

    def due_messages(self, limit: int, now: Optional[dt.datetime] = None) -> List[Mapping[str, Any]]:
        """Pending rows that are due, highest priority then oldest first."""
        now = now or self._clock()
        query = (
            select(email_queue)
            .where(
                email_queue.c.status == MessageStatus.PENDING.value,
                email_queue.c.scheduled_at <= now,
                or_(
                    email_queue.c.next_retry_at.is_(None),
                    email_queue.c.next_retry_at <= now,
                ),
            )
            .order_by(
                email_queue.c.priority.desc(),
                email_queue.c.scheduled_at.asc(),
                email_queue.c.id.asc(),
            )
            .limit(limit)
        )
        with self._engine.connect() as conn:
            return list(conn.execute(query).mappings().all())

    def claim(self, message_id: int, now: Optional[dt.datetime] = None) -> bool:
        """Atomically move a pending row to processing; False if already taken."""
        now = now or self._clock()
        with self._engine.begin() as conn:
            result = conn.execute(
                update(email_queue)
                .where(
                    email_queue.c.id == message_id,
                    email_queue.c.status == MessageStatus.PENDING.value,
                )
                .values(
                    status=MessageStatus.PROCESSING.value,
                    last_attempt_at=now,
                    updated_at=now,
                )
            )
        return result.rowcount == 1

    # --------------------------------------------------------- outcomes
    def _transition(self, conn, row: Mapping[str, Any], **values: Any) -> None:
        conn.execute(
            update(email_queue)
            .where(
                email_queue.c.id == row["id"],
                email_queue.c.status == MessageStatus.PROCESSING.value,
            )
            .values(**values)
        )

    def _write_log(
        self,
        conn,
        row: Mapping[str, Any],
        status: str,
        now: dt.datetime,
        provider_message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Upsert the single delivery log entry kept per queued message.

        A message that failed and later went out through the retry sweep
        keeps one entry, rewritten as sent.
        """
        metadata = row["message_metadata"] or {}
        if row["campaign_id"]:
            email_type = "campaign"
        elif row["automation_id"]:
            email_type = "automation"
        else:
            email_type = "transactional"
        values = {
            "status": status,
            "provider_message_id": provider_message_id,
            "error_message": error,
            "sent_at": now if status == MessageStatus.SENT.value else None,
        }
        updated = conn.execute(
            update(email_logs).where(email_logs.c.queue_id == row["id"]).values(**values)
        ).rowcount
        if updated:
            return
        conn.execute(
            email_logs.insert().values(
                queue_id=row["id"],
                user_id=metadata.get("user_id"),
                email_address=row["to_email"],
                subject=row["subject"],
                email_type=email_type,
                campaign_id=row["campaign_id"],
                automation_id=row["automation_id"],
                template_id=row["template_id"],
                tracking_id=row["tracking_id"],
                ab_variant=metadata.get("ab_variant"),
                created_at=now,
                **values,
            )
        )

    def mark_sent(
        self, row: Mapping[str, Any], provider_message_id: Optional[str]
    ) -> None:
        """Record a successful delivery and write the delivery log entry."""
        ensure_transition(MessageStatus.PROCESSING, MessageStatus.SENT)
        now = self._clock()
        with self._engine.begin() as conn:
            self._transition(
                conn,
                row,
                status=MessageStatus.SENT.value,
                sent_at=now,
                provider_message_id=provider_message_id,
                attempts=row["attempts"] + 1,
                next_retry_at=None,
                error_message=None,
                updated_at=now,
            )
            self._write_log(conn, row, MessageStatus.SENT.value, now, provider_message_id)

    def mark_attempt_failed(
        self,
        row: Mapping[str, Any],
        error: str,
        kind: FailureKind = FailureKind.TRANSIENT,
    ) -> MessageStatus:
        """Apply retry/backoff policy after a failed attempt.

        Transient failures go back to pending with ``next_retry_at`` pushed
        out exponentially until ``max_attempts`` is reached.  Permanent
        failures fail at once.  Configuration failures fail at once
        without counting as an attempt.  Reaching ``failed`` writes a
        failed delivery log entry.
        """
        now = self._clock()
        attempts = row["attempts"]
        if kind is not FailureKind.CONFIGURATION:
            attempts += 1

        if kind is FailureKind.TRANSIENT and attempts < row["max_attempts"]:
            target = MessageStatus.PENDING
            next_retry_at: Optional[dt.datetime] = now + backoff_delay(attempts)
        else:
            target = MessageStatus.FAILED
            next_retry_at = None
            if kind is FailureKind.TRANSIENT:
                # Exhausted; eligible for the sweep only under the ceiling.
                next_retry_at = now + backoff_delay(attempts)
        ensure_transition(MessageStatus.PROCESSING, target)

        with self._engine.begin() as conn:
            self._transition(
                conn,
                row,
                status=target.value,
                attempts=attempts,
                error_message=error,
                next_retry_at=next_retry_at,
                updated_at=now,
            )
            if target is MessageStatus.FAILED:
                self._write_log(conn, row, MessageStatus.FAILED.value, now, error=error)
        return target

    # ------------------------------------------------------ bulk updates
    def retry_failed_emails(self, now: Optional[dt.datetime] = None) -> int:
        """Flip failed rows still under the retry ceiling back to pending.

        Only rows that exhausted their transient retries carry a
        ``next_retry_at``; permanent and configuration failures are never
        picked up.  Each re-queued row is granted exactly one more attempt.
        """
        ensure_transition(MessageStatus.FAILED, MessageStatus.PENDING, recovery=True)
        now = now or self._clock()
        with self._engine.begin() as conn:
            result = conn.execute(
                update(email_queue)
                .where(
                    email_queue.c.status == MessageStatus.FAILED.value,
                    email_queue.c.attempts < RETRY_CEILING,
                    email_queue.c.next_retry_at <= now,
                )
                .values(
                    status=MessageStatus.PENDING.value,
                    max_attempts=email_queue.c.attempts + 1,
                    updated_at=now,
                )
            )
        return result.rowcount

    def reclaim_stale(self, now: Optional[dt.datetime] = None) -> int:
        """Return rows stuck in processing back to pending.

        A worker that claimed a row but could not record the outcome
        leaves it in ``processing``.  Rows whose last claim is older than
        :data:`STALE_PROCESSING` become due again without counting an
        attempt.
        """
        ensure_transition(MessageStatus.PROCESSING, MessageStatus.PENDING)
        now = now or self._clock()
        with self._engine.begin() as conn:
            result = conn.execute(
                update(email_queue)
                .where(
                    email_queue.c.status == MessageStatus.PROCESSING.value,
                    email_queue.c.last_attempt_at <= now - STALE_PROCESSING,
                )
                .values(
                    status=MessageStatus.PENDING.value,
                    next_retry_at=None,
                    error_message="Reclaimed after stale processing",
                    updated_at=now,
                )
            )
        if result.rowcount:
            LOGGER.warning("Reclaimed %d stale processing messages", result.rowcount)
        return result.rowcount

    def cancel_for_campaign(self, campaign_id: int) -> int:
        """Cancel every pending message of a campaign."""
        ensure_transition(MessageStatus.PENDING, MessageStatus.CANCELLED)
        with self._engine.begin() as conn:
            result = conn.execute(
                update(email_queue)
                .where(
                    email_queue.c.campaign_id == campaign_id,
                    email_queue.c.status == MessageStatus.PENDING.value,
                )
                .values(status=MessageStatus.CANCELLED.value, updated_at=self._clock())
            )
        return result.rowcount

    def resume_for_campaign(self, campaign_id: int) -> int:
        """Re-queue messages cancelled for this campaign only."""
        ensure_transition(MessageStatus.CANCELLED, MessageStatus.PENDING, recovery=True)
        with self._engine.begin() as conn:
            result = conn.execute(
                update(email_queue)
                .where(
                    email_queue.c.campaign_id == campaign_id,
                    email_queue.c.status == MessageStatus.CANCELLED.value,
                )
                .values(status=MessageStatus.PENDING.value, updated_at=self._clock())
            )
        return result.rowcount

    # ---------------------------------------------------------- reports
    def stats(self, window_hours: int = 24) -> Dict[str, int]:
        """Counts per status for rows created inside the window."""
        since = self._clock() - dt.timedelta(hours=window_hours)
        counts = {s.value: 0 for s in MessageStatus}
        with self._engine.connect() as conn:
            rows = conn.execute(
                select(email_queue.c.status, func.count())
                .where(email_queue.c.created_at >= since)
                .group_by(email_queue.c.status)
            ).all()
        for status, count in rows:
            counts[status] = count
        return counts

    def recent_failures(self, since: dt.datetime) -> int:
        with self._engine.connect() as conn:
            return conn.execute(
                select(func.count())
                .select_from(email_queue)
                .where(
                    email_queue.c.status == MessageStatus.FAILED.value,
                    email_queue.c.updated_at >= since,
                )
            ).scalar_one()

    def purge_terminal(self, before: dt.datetime) -> int:
        """Hard-delete sent/failed/cancelled rows created before ``before``."""
        with self._engine.begin() as conn:
            result = conn.execute(
                delete(email_queue).where(
                    and_(
                        email_queue.c.status.in_(TERMINAL_STATUSES),
                        email_queue.c.created_at < before,
                    )
                )
            )
        return result.rowcount

    def messages_for_campaign(
        self, campaign_id: int, statuses: Optional[Iterable[str]] = None
    ) -> List[Mapping[str, Any]]:
        query = select(email_queue).where(email_queue.c.campaign_id == campaign_id)
        if statuses is not None:
            query = query.where(email_queue.c.status.in_(list(statuses)))
        with self._engine.connect() as conn:
            return list(conn.execute(query.order_by(email_queue.c.id)).mappings().all())


__all__ = [
    "BulkEnqueueResult",
    "DEFAULT_MAX_ATTEMPTS",
    "EnqueueResult",
    "MessageQueue",
    "RETRY_CEILING",
    "STALE_PROCESSING",
    "backoff_delay",
]
