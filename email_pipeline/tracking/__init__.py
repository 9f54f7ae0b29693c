"""Engagement tracking: outbound HTML rewriting and inbound events.

The HTTP endpoints live in :mod:`email_pipeline.tracking.server` and are
not imported here so the rest of the pipeline does not depend on FastAPI.
"""

from email_pipeline.tracking.events import TrackingRecorder, parse_user_agent
from email_pipeline.tracking.html import (
    TrackingOptions,
    generate_tracking_id,
    prepare_email_for_tracking,
)
from email_pipeline.tracking.webhooks import WebhookProcessor

__all__ = [
    "TrackingOptions",
    "TrackingRecorder",
    "WebhookProcessor",
    "generate_tracking_id",
    "parse_user_agent",
    "prepare_email_for_tracking",
]
