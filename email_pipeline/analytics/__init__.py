"""Reporting over delivery logs and tracking events."""

from email_pipeline.analytics.metrics import campaign_analytics, compute_campaign_metrics

__all__ = ["campaign_analytics", "compute_campaign_metrics"]
