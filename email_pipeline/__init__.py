"""Top-level package for the mailpipe email delivery pipeline.

This package implements the outbound side of an e-commerce email system:
a durable message queue with retry/backoff, a rule-based automation
engine, campaign fan-out with A/B testing, open/click tracking and a
periodic orchestrator that ties them together.  Individual subpackages
handle one concern each so that callers can wire only what they need.

The ``__all__`` variable enumerates the primary public modules for
convenience when using ``from email_pipeline import ...``.
"""

from __future__ import annotations

__all__ = [
    "ab_testing",
    "analytics",
    "app",
    "automation",
    "campaigns",
    "config",
    "cron",
    "eligibility",
    "mailer",
    "models",
    "queue",
    "storage",
    "templating",
    "tracking",
]

# SemVer version of the package
__version__: str = "0.1.0"
