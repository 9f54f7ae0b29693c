"""SQLAlchemy Core table definitions.

Tables:
  - email_queue(outbound messages and their retry bookkeeping)
  - email_logs(one row per delivery attempt outcome; tracking lookups)
  - email_templates(subject/html/text with ``{{placeholders}}``)
  - email_automations(rules) / automation_executions(audit + cooldowns)
  - email_campaigns / email_ab_tests
  - email_tracking_events(append-only opens, clicks, unsubscribes ...)
  - email_subscribers / email_suppression_list
  - email_webhook_events(raw provider callbacks)

Every datetime column holds naive UTC.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

from email_pipeline.models import utcnow

metadata = MetaData()

email_templates = Table(
    "email_templates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("template_type", String(50), nullable=True),
    Column("subject", Text, nullable=False),
    Column("html_content", Text, nullable=False),
    Column("text_content", Text, nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
)

email_queue = Table(
    "email_queue",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("to_email", String(320), nullable=False),
    Column("to_name", String(255), nullable=False, default=""),
    Column("subject", Text, nullable=False),
    Column("html_content", Text, nullable=False),
    Column("text_content", Text, nullable=True),
    Column("from_email", String(320), nullable=True),
    Column("from_name", String(255), nullable=True),
    Column("reply_to", String(320), nullable=True),
    Column("campaign_id", Integer, nullable=True),
    Column("automation_id", Integer, nullable=True),
    Column("template_id", Integer, nullable=True),
    Column("subscriber_id", Integer, nullable=True),
    Column("tracking_id", String(64), nullable=True),
    Column("priority", Integer, nullable=False, default=0),
    Column("status", String(20), nullable=False, default="pending"),
    Column("scheduled_at", DateTime, nullable=False, default=utcnow),
    Column("attempts", Integer, nullable=False, default=0),
    Column("max_attempts", Integer, nullable=False, default=3),
    Column("next_retry_at", DateTime, nullable=True),
    Column("last_attempt_at", DateTime, nullable=True),
    Column("sent_at", DateTime, nullable=True),
    Column("provider_message_id", String(255), nullable=True),
    Column("error_message", Text, nullable=True),
    Column("message_metadata", JSON, nullable=False, default=dict),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Column("updated_at", DateTime, nullable=False, default=utcnow, onupdate=utcnow),
    Index("idx_email_queue_due", "status", "priority", "scheduled_at"),
    Index("idx_email_queue_campaign_status", "campaign_id", "status"),
    Index("idx_email_queue_tracking", "tracking_id"),
)

email_logs = Table(
    "email_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("queue_id", Integer, nullable=True),
    Column("user_id", String(64), nullable=True),
    Column("email_address", String(320), nullable=False),
    Column("subject", Text, nullable=True),
    Column("email_type", String(30), nullable=False),
    Column("status", String(20), nullable=False),
    Column("campaign_id", Integer, nullable=True),
    Column("automation_id", Integer, nullable=True),
    Column("template_id", Integer, nullable=True),
    Column("tracking_id", String(64), nullable=True, unique=True),
    Column("ab_variant", String(1), nullable=True),
    Column("provider_message_id", String(255), nullable=True),
    Column("error_message", Text, nullable=True),
    Column("sent_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Index("idx_email_logs_provider_message", "provider_message_id"),
)

email_automations = Table(
    "email_automations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("trigger_type", String(50), nullable=False),
    Column("trigger_conditions", JSON, nullable=False, default=dict),
    Column("template_id", Integer, ForeignKey("email_templates.id"), nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("priority", Integer, nullable=False, default=0),
    Column("send_limit_per_user", Integer, nullable=False, default=1),
    Column("cooldown_days", Integer, nullable=False, default=0),
    Column("total_sent", Integer, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Index("idx_email_automations_trigger", "trigger_type", "is_active"),
)

automation_executions = Table(
    "automation_executions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("automation_id", Integer, ForeignKey("email_automations.id"), nullable=False),
    Column("user_id", String(64), nullable=True),
    Column("trigger_data", JSON, nullable=True),
    Column("status", String(20), nullable=False),
    Column("skip_reason", Text, nullable=True),
    Column("email_queue_id", Integer, nullable=True),
    Column("executed_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Index("idx_executions_rule_user", "automation_id", "user_id", "status"),
)

email_campaigns = Table(
    "email_campaigns",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("subject", Text, nullable=False),
    Column("html_content", Text, nullable=False),
    Column("text_content", Text, nullable=True),
    Column("from_name", String(255), nullable=True),
    Column("target_audience", JSON, nullable=False, default=dict),
    Column("status", String(20), nullable=False, default="draft"),
    Column("track_opens", Boolean, nullable=False, default=True),
    Column("track_clicks", Boolean, nullable=False, default=True),
    Column("ab_test_id", Integer, nullable=True),
    Column("total_recipients", Integer, nullable=False, default=0),
    Column("sent_count", Integer, nullable=False, default=0),
    Column("open_count", Integer, nullable=False, default=0),
    Column("click_count", Integer, nullable=False, default=0),
    Column("bounce_count", Integer, nullable=False, default=0),
    Column("unsubscribe_count", Integer, nullable=False, default=0),
    Column("sent_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Column("updated_at", DateTime, nullable=False, default=utcnow, onupdate=utcnow),
)

email_ab_tests = Table(
    "email_ab_tests",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("campaign_id", Integer, ForeignKey("email_campaigns.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("test_type", String(20), nullable=False),
    Column("variant_a", JSON, nullable=False, default=dict),
    Column("variant_b", JSON, nullable=False, default=dict),
    Column("split_percentage", Integer, nullable=False, default=50),
    Column("winner_criteria", String(20), nullable=False, default="open_rate"),
    Column("test_duration_hours", Float, nullable=False, default=4),
    Column("status", String(20), nullable=False, default="draft"),
    Column("winner", String(1), nullable=True),
    Column("variant_a_sent", Integer, nullable=False, default=0),
    Column("variant_a_opens", Integer, nullable=False, default=0),
    Column("variant_a_clicks", Integer, nullable=False, default=0),
    Column("variant_b_sent", Integer, nullable=False, default=0),
    Column("variant_b_opens", Integer, nullable=False, default=0),
    Column("variant_b_clicks", Integer, nullable=False, default=0),
    Column("started_at", DateTime, nullable=True),
    Column("completed_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
)

email_tracking_events = Table(
    "email_tracking_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email_log_id", Integer, nullable=True),
    Column("tracking_id", String(64), nullable=False),
    Column("campaign_id", Integer, nullable=True),
    Column("event_type", String(20), nullable=False),
    Column("link_url", Text, nullable=True),
    Column("link_id", String(20), nullable=True),
    Column("user_agent", Text, nullable=True),
    Column("ip_address", String(64), nullable=True),
    Column("device_type", String(20), nullable=True),
    Column("email_client", String(30), nullable=True),
    Column("occurred_at", DateTime, nullable=False, default=utcnow),
    Index("idx_tracking_events_tracking", "tracking_id", "event_type"),
    Index("idx_tracking_events_campaign", "campaign_id"),
)

email_subscribers = Table(
    "email_subscribers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("first_name", String(100), nullable=True),
    Column("last_name", String(100), nullable=True),
    Column("user_id", String(64), nullable=True),
    Column("status", String(20), nullable=False, default="active"),
    Column("tags", JSON, nullable=False, default=list),
    Column("bounce_count", Integer, nullable=False, default=0),
    Column("last_bounce_at", DateTime, nullable=True),
    Column("unsubscribed_at", DateTime, nullable=True),
    Column("complaint_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
)

email_suppression_list = Table(
    "email_suppression_list",
    metadata,
    Column("email", String(320), primary_key=True),
    Column("reason", String(30), nullable=False),
    Column("notes", Text, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
)

email_webhook_events = Table(
    "email_webhook_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider", String(20), nullable=False),
    Column("event_type", String(50), nullable=True),
    Column("payload", JSON, nullable=True),
    Column("email", String(320), nullable=True),
    Column("message_id", String(255), nullable=True),
    Column("processed", Boolean, nullable=False, default=False),
    Column("processed_at", DateTime, nullable=True),
    Column("received_at", DateTime, nullable=False, default=utcnow),
)

__all__ = [
    "automation_executions",
    "email_ab_tests",
    "email_automations",
    "email_campaigns",
    "email_logs",
    "email_queue",
    "email_subscribers",
    "email_suppression_list",
    "email_templates",
    "email_tracking_events",
    "email_webhook_events",
    "metadata",
]
