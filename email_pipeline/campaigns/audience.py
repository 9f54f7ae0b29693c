"""Resolve a campaign's ``target_audience`` to recipients.

Accepted descriptors:

* ``"all"`` or ``{"type": "all"}`` – every active subscriber,
* ``{"type": "specific", "emails": [...]}`` – an explicit list, used as is
  without consulting the subscriber table,
* ``{"type": "segment", "tag": "pharmacy"}`` – active subscribers carrying
  the tag; a bare string or any other ``type`` value is taken as the tag.
"""

from __future__ import annotations

from typing import Any, List

from email_pipeline.eligibility import SubscriberDirectory
from email_pipeline.models import Recipient


def resolve_recipients(directory: SubscriberDirectory, target_audience: Any) -> List[Recipient]:
    """Return recipients in a stable order with duplicate addresses removed."""
    if isinstance(target_audience, str):
        audience = {"type": target_audience}
    else:
        audience = dict(target_audience or {})
    kind = audience.get("type") or "all"

    if kind == "specific":
        recipients = [
            Recipient(email=str(e).strip().lower())
            for e in audience.get("emails") or []
            if str(e).strip()
        ]
    elif kind == "all":
        recipients = directory.active_subscribers()
    else:
        tag = audience.get("tag") if kind == "segment" else kind
        recipients = directory.active_subscribers(tag=tag)

    seen = set()
    unique = []
    for recipient in recipients:
        if recipient.email in seen:
            continue
        seen.add(recipient.email)
        unique.append(recipient)
    return unique


__all__ = ["resolve_recipients"]
