import datetime as dt

import pytest
from sqlalchemy import select

from email_pipeline.mailer import FailureKind, SendResult
from email_pipeline.models import MessageStatus
from email_pipeline.queue import MessageQueue, QueueWorker, backoff_delay
from email_pipeline.queue.store import STALE_PROCESSING
from email_pipeline.storage.schema import email_logs


def _msg(to: str = "a@example.com", **extra):
    return {"to_email": to, "subject": "Hello", "html_content": "<p>hi</p>", **extra}


@pytest.fixture
def queue(engine, clock) -> MessageQueue:
    return MessageQueue(engine, clock=clock)


@pytest.fixture
def worker(queue, sender, clock) -> QueueWorker:
    return QueueWorker(queue, sender, clock, default_from="shop@example.com")


def test_enqueue_defaults(queue, clock) -> None:
    result = queue.enqueue(_msg("Alice@Example.com"))
    assert result.success
    row = queue.get(result.queue_id)
    assert row["to_email"] == "alice@example.com"
    assert row["status"] == "pending"
    assert row["scheduled_at"] == clock.now
    assert row["attempts"] == 0
    assert row["max_attempts"] == 3


def test_enqueue_rejects_suppressed_and_invalid(queue, seed) -> None:
    seed.suppressed("blocked@example.com")
    suppressed = queue.enqueue(_msg("blocked@example.com"))
    assert not suppressed.success
    assert suppressed.error == "Email is suppressed"
    assert queue.enqueue(_msg("blocked@example.com"), check_suppression=False).success
    assert not queue.enqueue(_msg("nope")).success


def test_bulk_enqueue_isolates_failed_chunks(queue) -> None:
    emails = [_msg("a@example.com"), _msg("b@example.com"), _msg("c@example.com"), _msg("bad")]
    result = queue.enqueue_bulk(emails, chunk_size=2)
    assert result.queued == 2
    assert result.failed == 2
    assert len(result.errors) == 1
    assert result.was_queued(1)
    assert not result.was_queued(2)


def test_higher_priority_processed_first(queue, worker, sender) -> None:
    queue.enqueue(_msg("campaign@example.com", priority=0))
    queue.enqueue(_msg("welcome@example.com", priority=10))
    result = worker.process_queue(limit=1)
    assert result.processed == 1
    assert sender.calls[0]["to"] == "welcome@example.com"


def test_fifo_within_priority_band(queue, worker, sender, clock) -> None:
    queue.enqueue(_msg("later@example.com", scheduled_at=clock.now - dt.timedelta(minutes=1)))
    queue.enqueue(_msg("earlier@example.com", scheduled_at=clock.now - dt.timedelta(minutes=5)))
    worker.process_queue(limit=2)
    assert [c["to"] for c in sender.calls] == ["earlier@example.com", "later@example.com"]


def test_future_messages_not_due(queue, worker, sender, clock) -> None:
    queue.enqueue(_msg(scheduled_at=clock.now + dt.timedelta(hours=1)))
    assert worker.process_queue().processed == 0
    clock.advance(hours=1)
    assert worker.process_queue().sent == 1


def test_fail_twice_then_succeed(queue, worker, sender, clock) -> None:
    queue_id = queue.enqueue(_msg(tracking_id="t-1")).queue_id
    sender.fail_next(2)

    first = worker.process_queue()
    assert first.processed == 1 and first.sent == 0 and first.failed == 0
    row = queue.get(queue_id)
    assert row["status"] == "pending"
    assert row["attempts"] == 1
    assert row["next_retry_at"] == clock.now + backoff_delay(1)

    # Still backing off
    assert worker.process_queue().processed == 0

    clock.advance(minutes=2)
    worker.process_queue()
    row = queue.get(queue_id)
    assert row["attempts"] == 2
    assert row["next_retry_at"] == clock.now + dt.timedelta(minutes=4)

    clock.advance(minutes=4)
    assert worker.process_queue().sent == 1
    row = queue.get(queue_id)
    assert row["status"] == "sent"
    assert row["attempts"] == 3
    assert row["provider_message_id"] == "msg-3"
    assert row["sent_at"] == clock.now


def test_exhausted_transient_failures(queue, worker, sender, clock) -> None:
    queue_id = queue.enqueue(_msg()).queue_id
    sender.fail_next(3)
    for minutes in (0, 2, 4):
        clock.advance(minutes=minutes)
        worker.process_queue()
    row = queue.get(queue_id)
    assert row["status"] == "failed"
    assert row["attempts"] == row["max_attempts"] == 3
    assert row["error_message"] == "provider unavailable"

    clock.advance(days=1)
    assert queue.retry_failed_emails() == 0


def test_permanent_failure_is_not_retried(queue, worker, sender, clock) -> None:
    queue_id = queue.enqueue(_msg()).queue_id
    sender.fail_next(1, FailureKind.PERMANENT)
    assert worker.process_queue().failed == 1
    row = queue.get(queue_id)
    assert row["status"] == "failed"
    assert row["attempts"] == 1
    clock.advance(days=1)
    assert queue.retry_failed_emails() == 0


def test_configuration_failure_does_not_consume_attempt(queue, worker, sender) -> None:
    queue_id = queue.enqueue(_msg()).queue_id
    sender.fail_next(1, FailureKind.CONFIGURATION)
    worker.process_queue()
    row = queue.get(queue_id)
    assert row["status"] == "failed"
    assert row["attempts"] == 0


def test_retry_sweep_grants_one_more_attempt(queue, worker, sender, clock) -> None:
    queue_id = queue.enqueue(_msg(max_attempts=1)).queue_id
    sender.fail_next(1)
    worker.process_queue()
    assert queue.get(queue_id)["status"] == "failed"

    assert queue.retry_failed_emails() == 0
    clock.advance(minutes=2)
    assert queue.retry_failed_emails() == 1
    row = queue.get(queue_id)
    assert row["status"] == "pending"
    assert row["max_attempts"] == 2

    worker.process_queue()
    row = queue.get(queue_id)
    assert row["status"] == "sent"
    assert row["attempts"] == 2


def test_claim_is_atomic(queue) -> None:
    queue_id = queue.enqueue(_msg()).queue_id
    assert queue.claim(queue_id)
    assert not queue.claim(queue_id)
    assert queue.get(queue_id)["status"] == MessageStatus.PROCESSING.value


def test_claimed_elsewhere_is_skipped(queue, worker, sender) -> None:
    queue_id = queue.enqueue(_msg()).queue_id
    rows = queue.due_messages(10)
    queue.claim(queue_id)
    assert worker._process_one(rows[0]) == "skipped"
    assert sender.calls == []


def test_one_bad_message_does_not_stall_batch(queue, clock) -> None:
    class Flaky:
        calls = 0

        def send(self, to, **kwargs):
            Flaky.calls += 1
            if to.startswith("boom"):
                raise RuntimeError("adapter bug")
            return SendResult.ok("ok")

    queue.enqueue(_msg("boom@example.com", priority=5))
    queue.enqueue(_msg("fine@example.com"))
    result = QueueWorker(queue, Flaky(), clock).process_queue()
    assert result.processed == 2
    assert result.sent == 1
    assert Flaky.calls == 2


def test_delivery_log_written_on_success(queue, worker, engine) -> None:
    queue.enqueue(
        _msg(
            campaign_id=7,
            tracking_id="track-7",
            metadata={"user_id": "u7", "ab_variant": "B"},
        )
    )
    worker.process_queue()
    with engine.connect() as conn:
        log = conn.execute(select(email_logs)).mappings().one()
    assert log["email_type"] == "campaign"
    assert log["tracking_id"] == "track-7"
    assert log["ab_variant"] == "B"
    assert log["user_id"] == "u7"
    assert log["provider_message_id"] == "msg-1"


def test_worker_passes_sender_identity_and_tracking_header(queue, worker, sender) -> None:
    queue.enqueue(_msg(to_name="Alice", tracking_id="abc", from_name="Shop"))
    worker.process_queue()
    call = sender.calls[0]
    assert call["to"] == "Alice <a@example.com>"
    assert call["from_addr"] == "Shop <shop@example.com>"
    assert call["headers"] == {"X-Tracking-Id": "abc"}


def test_thread_pool_sends_each_message_once(queue, sender, clock) -> None:
    for i in range(6):
        queue.enqueue(_msg(f"user{i}@example.com"))
    result = QueueWorker(queue, sender, clock, max_workers=3).process_queue()
    assert result.sent == 6
    assert sorted(c["to"] for c in sender.calls) == sorted(f"user{i}@example.com" for i in range(6))


def test_cancel_and_resume_only_touch_campaign(queue) -> None:
    a1 = queue.enqueue(_msg(campaign_id=1)).queue_id
    a2 = queue.enqueue(_msg("b@example.com", campaign_id=1)).queue_id
    other = queue.enqueue(_msg("c@example.com", campaign_id=2)).queue_id

    assert queue.cancel_for_campaign(2) == 1
    assert queue.cancel_for_campaign(1) == 2
    assert queue.resume_for_campaign(1) == 2
    assert queue.get(a1)["status"] == "pending"
    assert queue.get(a2)["status"] == "pending"
    assert queue.get(other)["status"] == "cancelled"


def test_stats_and_purge(queue, worker, clock) -> None:
    queue.enqueue(_msg())
    queue.enqueue(_msg("b@example.com", scheduled_at=clock.now + dt.timedelta(days=1)))
    worker.process_queue()
    stats = queue.stats()
    assert stats["sent"] == 1
    assert stats["pending"] == 1

    clock.advance(days=31)
    cutoff = clock.now - dt.timedelta(days=30)
    assert queue.purge_terminal(cutoff) == 1
    assert queue.purge_terminal(cutoff) == 0


def _logs(engine):
    with engine.connect() as conn:
        return conn.execute(select(email_logs).order_by(email_logs.c.id)).mappings().all()


def test_terminal_failure_writes_failed_log(queue, worker, sender, engine) -> None:
    queue_id = queue.enqueue(_msg(tracking_id="t-fail", automation_id=4)).queue_id
    sender.fail_next(1, FailureKind.PERMANENT)
    worker.process_queue()
    [log] = _logs(engine)
    assert log["queue_id"] == queue_id
    assert log["status"] == "failed"
    assert log["email_type"] == "automation"
    assert log["error_message"] == "provider unavailable"
    assert log["sent_at"] is None


def test_transient_retry_does_not_log_until_terminal(queue, worker, sender, engine) -> None:
    queue.enqueue(_msg())
    sender.fail_next(1)
    worker.process_queue()
    assert _logs(engine) == []


def test_swept_retry_rewrites_failed_log_as_sent(queue, worker, sender, clock, engine) -> None:
    queue.enqueue(_msg(tracking_id="t-retry", max_attempts=1))
    sender.fail_next(1)
    worker.process_queue()
    assert [entry["status"] for entry in _logs(engine)] == ["failed"]

    clock.advance(minutes=2)
    queue.retry_failed_emails()
    worker.process_queue()
    [log] = _logs(engine)
    assert log["status"] == "sent"
    assert log["sent_at"] == clock.now
    assert log["error_message"] is None
    assert log["provider_message_id"] == "msg-2"


def test_stale_processing_rows_are_reclaimed(queue, worker, sender, clock) -> None:
    queue_id = queue.enqueue(_msg()).queue_id
    assert queue.claim(queue_id)

    clock.advance(seconds=STALE_PROCESSING.total_seconds() - 60)
    assert queue.reclaim_stale() == 0
    clock.advance(minutes=1)
    assert queue.reclaim_stale() == 1

    row = queue.get(queue_id)
    assert row["status"] == "pending"
    assert row["attempts"] == 0
    assert worker.process_queue().sent == 1
    assert len(sender.calls) == 1
