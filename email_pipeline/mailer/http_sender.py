"""HTTP email API provider.

This module defines :class:`HTTPAPISender`, which posts a JSON message to
a transactional email API (the payload shape follows Resend's
``POST /emails``; most providers accept the same fields).  The provider's
message id from the response body is returned so webhooks can later be
correlated with the delivery log.

Environment variables used:

* ``EMAIL_API_KEY`` – bearer token for the API
* ``EMAIL_API_URL`` – optional endpoint; defaults to Resend's
* ``EMAIL_FROM`` – default sender when the message carries none
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import requests

from email_pipeline.mailer import EmailSender, FailureKind, SendResult

LOGGER = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.resend.com/emails"


class HTTPAPISender(EmailSender):
    """JSON-over-HTTP implementation of the ``EmailSender`` interface."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: float = 10.0,
        default_from: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._api_key = api_key or os.environ.get("EMAIL_API_KEY")
        self._api_url = api_url or os.environ.get("EMAIL_API_URL", DEFAULT_API_URL)
        self._timeout = timeout
        self._default_from = default_from or os.environ.get("EMAIL_FROM")
        self._session = session or requests.Session()

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
        """Send an email via the HTTP API.

        Timeouts, connection errors, 429 and 5xx responses are transient;
        any other 4xx is permanent except 401/403, which point at bad
        credentials.
        """
        if not self._api_key:
            return SendResult.failed(
                "EMAIL_API_KEY is not configured", FailureKind.CONFIGURATION
            )
        sender = from_addr or self._default_from
        if not sender:
            return SendResult.failed(
                "No sender address configured (EMAIL_FROM)", FailureKind.CONFIGURATION
            )

        payload: dict = {
            "from": sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text
        if reply_to:
            payload["reply_to"] = reply_to
        if headers:
            payload["headers"] = dict(headers)

        try:
            response = self._session.post(
                self._api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            return SendResult.failed(f"Provider unreachable: {exc}", FailureKind.TRANSIENT)
        except requests.RequestException as exc:
            return SendResult.failed(f"Provider request failed: {exc}", FailureKind.TRANSIENT)

        if response.ok:
            try:
                body = response.json()
            except ValueError:
                body = {}
            return SendResult.ok(body.get("id") or body.get("messageId"))

        detail = _error_detail(response)
        status = response.status_code
        if status in (401, 403):
            kind = FailureKind.CONFIGURATION
        elif status == 429 or status >= 500:
            kind = FailureKind.TRANSIENT
        else:
            kind = FailureKind.PERMANENT
        LOGGER.warning("Provider rejected message to %s: %s %s", to, status, detail)
        return SendResult.failed(f"HTTP {status}: {detail}", kind)


def _error_detail(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


__all__ = ["HTTPAPISender"]
