"""Runtime configuration for the pipeline.

All settings come from environment variables; there is no config file.
:func:`load_settings` reads them once and validates the result with
pydantic so that a typo in a numeric variable fails at start-up instead of
half-way through a cron run.

Environment variables used:

* ``DATABASE_URL`` – SQLAlchemy URL; defaults to a SQLite file under
  ``email_pipeline/data``.
* ``TRACKING_BASE_URL`` – public origin serving ``/track`` and
  ``/unsubscribe``.
* ``EMAIL_PROVIDER`` – ``smtp`` (default) or ``http``.
* ``EMAIL_FROM`` / ``EMAIL_FROM_NAME`` / ``EMAIL_REPLY_TO`` – default
  sender identity.
* ``QUEUE_BATCH_SIZE``, ``QUEUE_MAX_ATTEMPTS``, ``QUEUE_WORKERS``,
  ``PROVIDER_TIMEOUT_SECONDS``, ``CAMPAIGN_CHUNK_SIZE`` – queue tuning.
* ``QUEUE_RETENTION_DAYS``, ``TRACKING_RETENTION_DAYS``,
  ``WEBHOOK_RETENTION_DAYS`` – cleanup windows.
* ``STRICT_TEMPLATE_VARIABLES`` – when truthy an unresolved
  ``{{placeholder}}`` fails the send instead of passing through.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from email_pipeline.errors import ConfigurationError

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = BASE_DIR / "data"
DEFAULT_DATABASE_URL = f"sqlite:///{DATA_DIR / 'pipeline.db'}"


class Settings(BaseModel):
    """Validated pipeline settings."""

    database_url: str = DEFAULT_DATABASE_URL
    tracking_base_url: str = "http://localhost:8000"
    email_provider: Literal["smtp", "http"] = "smtp"
    from_email: str = "noreply@localhost"
    from_name: str = "Mailpipe"
    reply_to: Optional[str] = None
    company_name: str = "Mailpipe"

    queue_batch_size: int = Field(default=50, ge=1)
    queue_max_attempts: int = Field(default=3, ge=1)
    queue_workers: int = Field(default=1, ge=1)
    provider_timeout_seconds: float = Field(default=10.0, gt=0)
    campaign_chunk_size: int = Field(default=100, ge=1)

    queue_retention_days: int = Field(default=30, ge=1)
    tracking_retention_days: int = Field(default=90, ge=1)
    webhook_retention_days: int = Field(default=30, ge=1)

    strict_template_variables: bool = False


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes"}


def load_settings() -> Settings:
    """Build :class:`Settings` from the environment."""
    raw = {
        "database_url": os.environ.get("DATABASE_URL") or DEFAULT_DATABASE_URL,
        "tracking_base_url": os.environ.get(
            "TRACKING_BASE_URL", "http://localhost:8000"
        ).rstrip("/"),
        "email_provider": os.environ.get("EMAIL_PROVIDER", "smtp").lower(),
        "from_email": os.environ.get("EMAIL_FROM", "noreply@localhost"),
        "from_name": os.environ.get("EMAIL_FROM_NAME", "Mailpipe"),
        "reply_to": os.environ.get("EMAIL_REPLY_TO") or None,
        "company_name": os.environ.get("COMPANY_NAME", "Mailpipe"),
        "queue_batch_size": os.environ.get("QUEUE_BATCH_SIZE", "50"),
        "queue_max_attempts": os.environ.get("QUEUE_MAX_ATTEMPTS", "3"),
        "queue_workers": os.environ.get("QUEUE_WORKERS", "1"),
        "provider_timeout_seconds": os.environ.get(
            "PROVIDER_TIMEOUT_SECONDS", "10"
        ),
        "campaign_chunk_size": os.environ.get("CAMPAIGN_CHUNK_SIZE", "100"),
        "queue_retention_days": os.environ.get("QUEUE_RETENTION_DAYS", "30"),
        "tracking_retention_days": os.environ.get(
            "TRACKING_RETENTION_DAYS", "90"
        ),
        "webhook_retention_days": os.environ.get(
            "WEBHOOK_RETENTION_DAYS", "30"
        ),
        "strict_template_variables": _env_bool("STRICT_TEMPLATE_VARIABLES"),
    }
    try:
        return Settings(**raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {exc}") from exc


__all__ = ["DATA_DIR", "Settings", "load_settings"]
