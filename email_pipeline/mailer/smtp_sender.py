"""SMTP relay provider.

This module provides :class:`SMTPSender`, a concrete implementation of
:class:`~email_pipeline.mailer.EmailSender` that uses Python's ``smtplib``
to hand messages to a relay.

Environment variables used:

* ``SMTP_HOST``/``SMTP_SERVER`` – hostname of the SMTP server.
* ``SMTP_PORT``/``SMTP_SERVER_PORT`` – port number; defaults to 587.
* ``SMTP_USERNAME``/``SMTP_USER`` – username for authentication.
* ``SMTP_PASSWORD``/``SMTP_APP_PWD`` – password for authentication.
* ``SMTP_USE_SSL`` – when truthy, connects via SMTP over SSL (port 465).
  Otherwise STARTTLS is attempted on the configured port.

If no host is provided but a username is configured, the domain part of
the username is used to infer the SMTP host (``user@gmail.com`` →
``smtp.gmail.com``).  With neither, the relay is assumed on ``localhost``.
"""

from __future__ import annotations

import logging
import os
import smtplib
import socket
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional

from email_pipeline.mailer import EmailSender, FailureKind, SendResult

LOGGER = logging.getLogger(__name__)

_PROVIDER_HOSTS = {
    "gmail.com": "smtp.gmail.com",
    "outlook.com": "smtp-mail.outlook.com",
    "hotmail.com": "smtp-mail.outlook.com",
    "live.com": "smtp-mail.outlook.com",
    "yahoo.com": "smtp.mail.yahoo.com",
}


class SMTPSender(EmailSender):
    """SMTP implementation of the ``EmailSender`` interface."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_ssl: Optional[bool] = None,
        timeout: float = 10.0,
        default_from: Optional[str] = None,
    ) -> None:
        self._host = (
            host or os.environ.get("SMTP_HOST") or os.environ.get("SMTP_SERVER") or ""
        )
        self._port = int(
            port
            or os.environ.get("SMTP_PORT")
            or os.environ.get("SMTP_SERVER_PORT")
            or "0"
        )
        self._username = (
            username or os.environ.get("SMTP_USERNAME") or os.environ.get("SMTP_USER")
        )
        self._password = (
            password
            or os.environ.get("SMTP_PASSWORD")
            or os.environ.get("SMTP_APP_PWD")
        )
        if use_ssl is None:
            use_ssl = os.environ.get("SMTP_USE_SSL", "false").lower() in {
                "1",
                "true",
                "yes",
            }
        self._use_ssl = use_ssl
        self._timeout = timeout
        self._default_from = default_from or os.environ.get("EMAIL_FROM") or self._username

        if not self._host:
            domain = None
            if self._username and "@" in self._username:
                domain = self._username.split("@", 1)[1].lower()
            if domain:
                self._host = _PROVIDER_HOSTS.get(domain, f"smtp.{domain}")
            else:
                self._host = "localhost"
        if self._port == 0:
            self._port = 465 if self._use_ssl else 587

    def _connect(self) -> smtplib.SMTP:
        if self._use_ssl:
            return smtplib.SMTP_SSL(self._host, self._port, timeout=self._timeout)
        return smtplib.SMTP(self._host, self._port, timeout=self._timeout)

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
        """Send via SMTP and return the generated ``Message-ID``."""
        sender = from_addr or self._default_from
        if not sender:
            return SendResult.failed(
                "No sender address configured (EMAIL_FROM/SMTP_USERNAME)",
                FailureKind.CONFIGURATION,
            )

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = to
        msg_id = make_msgid(domain=self._host)
        msg["Message-ID"] = msg_id
        if reply_to:
            msg["Reply-To"] = reply_to
        for key, value in (headers or {}).items():
            msg[key] = value
        if text:
            msg.set_content(text)
            msg.add_alternative(html, subtype="html")
        else:
            msg.set_content(html, subtype="html")

        try:
            with self._connect() as smtp:
                smtp.ehlo()
                if not self._use_ssl and smtp.has_extn("starttls"):
                    smtp.starttls()
                    smtp.ehlo()
                if self._username and self._password:
                    smtp.login(self._username, self._password)
                smtp.send_message(msg)
        except smtplib.SMTPAuthenticationError as exc:
            return SendResult.failed(
                f"SMTP authentication failed: {exc}", FailureKind.CONFIGURATION
            )
        except smtplib.SMTPRecipientsRefused as exc:
            return SendResult.failed(
                f"Recipient refused: {exc.recipients}", FailureKind.PERMANENT
            )
        except smtplib.SMTPResponseException as exc:
            kind = FailureKind.PERMANENT if 500 <= exc.smtp_code < 600 else FailureKind.TRANSIENT
            return SendResult.failed(
                f"SMTP {exc.smtp_code}: {exc.smtp_error!r}", kind
            )
        except (smtplib.SMTPException, socket.timeout, OSError) as exc:
            LOGGER.warning("SMTP send to %s via %s:%s failed: %s", to, self._host, self._port, exc)
            return SendResult.failed(
                f"Failed to connect or send via SMTP server at "
                f"{self._host}:{self._port}: {exc}",
                FailureKind.TRANSIENT,
            )
        return SendResult.ok(msg_id)


__all__ = ["SMTPSender"]
