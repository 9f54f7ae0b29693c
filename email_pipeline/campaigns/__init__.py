"""Marketing campaign fan-out."""

from email_pipeline.campaigns.audience import resolve_recipients
from email_pipeline.campaigns.sender import (
    CampaignPerformance,
    CampaignSender,
    CampaignSendResult,
)

__all__ = [
    "CampaignPerformance",
    "CampaignSendResult",
    "CampaignSender",
    "resolve_recipients",
]
