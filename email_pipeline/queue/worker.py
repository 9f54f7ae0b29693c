"""Deliver due messages through a provider adapter.

:class:`QueueWorker` selects due rows, claims each one with a conditional
update, hands it to the :class:`~email_pipeline.mailer.EmailSender` and
records the outcome.  A row another worker claimed first is counted as
skipped.  One message raising never stops the batch.
"""

from __future__ import annotations

import datetime as dt
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from email_pipeline.mailer import EmailSender, FailureKind, SendResult, format_address
from email_pipeline.models import MessageStatus, utcnow
from email_pipeline.queue.store import MessageQueue

LOGGER = logging.getLogger(__name__)

_SENT = "sent"
_FAILED = "failed"
_RETRY = "retry"
_SKIPPED = "skipped"


@dataclass
class QueueRunResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class QueueWorker:
    def __init__(
        self,
        queue: MessageQueue,
        sender: EmailSender,
        clock: Callable[[], dt.datetime] = utcnow,
        max_workers: int = 1,
        default_from: Optional[str] = None,
        default_from_name: Optional[str] = None,
        default_reply_to: Optional[str] = None,
    ) -> None:
        self._queue = queue
        self._sender = sender
        self._clock = clock
        self._max_workers = max(1, max_workers)
        self._default_from = default_from
        self._default_from_name = default_from_name
        self._default_reply_to = default_reply_to

    def process_queue(self, limit: int = 50) -> QueueRunResult:
        """Attempt delivery of up to ``limit`` due messages."""
        rows = self._queue.due_messages(limit, now=self._clock())
        result = QueueRunResult()
        if not rows:
            return result

        if self._max_workers > 1:
            with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
                outcomes = list(pool.map(self._process_one, rows))
        else:
            outcomes = [self._process_one(row) for row in rows]

        for outcome in outcomes:
            if outcome == _SKIPPED:
                result.skipped += 1
                continue
            result.processed += 1
            if outcome == _SENT:
                result.sent += 1
            elif outcome == _FAILED:
                result.failed += 1
        LOGGER.info(
            "Queue run: processed=%d sent=%d failed=%d skipped=%d",
            result.processed,
            result.sent,
            result.failed,
            result.skipped,
        )
        return result

    def _process_one(self, row: Mapping[str, Any]) -> str:
        if not self._queue.claim(row["id"], now=self._clock()):
            return _SKIPPED
        try:
            send_result = self._deliver(row)
        except Exception as exc:  # adapter bug; keep the batch going
            LOGGER.exception("Unexpected error sending message %s", row["id"])
            send_result = SendResult.failed(str(exc), FailureKind.TRANSIENT)

        try:
            if send_result.success:
                self._queue.mark_sent(row, send_result.provider_message_id)
                return _SENT
            status = self._queue.mark_attempt_failed(
                row,
                send_result.error or "Unknown provider error",
                send_result.failure_kind or FailureKind.TRANSIENT,
            )
        except Exception:
            LOGGER.exception("Could not record outcome for message %s", row["id"])
            return _FAILED

        if status is MessageStatus.FAILED:
            LOGGER.warning(
                "Message %s to %s failed: %s", row["id"], row["to_email"], send_result.error
            )
            return _FAILED
        LOGGER.info("Message %s scheduled for retry: %s", row["id"], send_result.error)
        return _RETRY

    def _deliver(self, row: Mapping[str, Any]) -> SendResult:
        from_email = row["from_email"] or self._default_from
        from_name = row["from_name"] or self._default_from_name
        headers = {}
        if row["tracking_id"]:
            headers["X-Tracking-Id"] = row["tracking_id"]
        return self._sender.send(
            to=format_address(row["to_email"], row["to_name"]),
            subject=row["subject"],
            html=row["html_content"],
            text=row["text_content"],
            from_addr=format_address(from_email, from_name) if from_email else None,
            reply_to=row["reply_to"] or self._default_reply_to,
            headers=headers or None,
        )


__all__ = ["QueueRunResult", "QueueWorker"]
