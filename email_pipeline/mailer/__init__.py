"""Provider adapters for delivering a single email.

This subpackage defines a common ``send`` interface along with two concrete
implementations: one speaking SMTP to a relay and another posting JSON to
an HTTP email API.  The queue worker selects an implementation through
:func:`build_sender` and never sees transport details.

Implementations do not raise for delivery problems.  They return a
:class:`SendResult` whose :class:`FailureKind` tells the worker whether a
retry can help.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from email_pipeline.config import Settings


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CONFIGURATION = "configuration"


@dataclass(frozen=True)
class SendResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None

    @classmethod
    def ok(cls, provider_message_id: Optional[str]) -> "SendResult":
        return cls(True, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, error: str, kind: FailureKind) -> "SendResult":
        return cls(False, error=error, failure_kind=kind)


class EmailSender(ABC):
    """Abstract base class for email providers.

    The arguments mirror a single outbound message: recipient, sender
    identity, subject and the HTML body with an optional plain-text
    alternative.  ``headers`` lets the worker pass the tracking id through
    to providers that can echo it back in webhooks.
    """

    @abstractmethod
    def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
        from_addr: Optional[str] = None,
        reply_to: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> SendResult:
        """Deliver one message and report the outcome.

        Args:
            to: The target email address.
            subject: The email subject line.
            html: The HTML content of the message.
            text: Optional plain-text version.
            from_addr: ``"Name <address>"`` or bare address.
            reply_to: Optional reply-to address.
            headers: Extra headers such as ``X-Tracking-Id``.

        Returns:
            A :class:`SendResult`; implementations must not raise for
            network or provider errors.
        """
        raise NotImplementedError


def format_address(address: str, name: Optional[str] = None) -> str:
    return f"{name} <{address}>" if name else address


def build_sender(settings: "Settings") -> EmailSender:
    """Return the provider selected by ``EMAIL_PROVIDER``."""
    if settings.email_provider == "http":
        from email_pipeline.mailer.http_sender import HTTPAPISender

        return HTTPAPISender(timeout=settings.provider_timeout_seconds)

    from email_pipeline.mailer.smtp_sender import SMTPSender

    return SMTPSender(timeout=settings.provider_timeout_seconds)


__all__ = ["EmailSender", "FailureKind", "SendResult", "build_sender", "format_address"]
