"""Inject open and click tracking into outgoing HTML.

Links are rewritten first, then the unsubscribe footer is added, then the
open pixel, so the footer's own links are never wrapped and the pixel
always ends up as the last element before ``</body>``.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from urllib.parse import quote, urlencode

_HREF = re.compile(r"""href=(["'])(.*?)\1""", re.IGNORECASE)
_BODY_CLOSE = re.compile(r"</body>", re.IGNORECASE)


@dataclass(frozen=True)
class TrackingOptions:
    track_opens: bool = True
    track_clicks: bool = True
    add_unsubscribe: bool = True


def generate_tracking_id() -> str:
    return uuid.uuid4().hex


def _should_wrap(url: str) -> bool:
    lowered = url.strip().lower()
    if not lowered or lowered.startswith(("mailto:", "tel:", "#")):
        return False
    return "unsubscribe" not in lowered


def wrap_links_for_tracking(html: str, tracking_id: str, base_url: str) -> str:
    """Route every trackable ``href`` through ``/track/click``.

    Links are numbered from 1 in document order; skipped links do not
    consume a number.
    """
    counter = 0

    def _replace(match: re.Match[str]) -> str:
        nonlocal counter
        quote_char, url = match.group(1), match.group(2)
        if not _should_wrap(url):
            return match.group(0)
        counter += 1
        query = urlencode({"url": url, "lid": counter})
        return f"href={quote_char}{base_url}/track/click/{tracking_id}?{query}{quote_char}"

    return _HREF.sub(_replace, html)


def _insert_before_body_close(html: str, fragment: str) -> str:
    matches = list(_BODY_CLOSE.finditer(html))
    if not matches:
        return html + fragment
    pos = matches[-1].start()
    return html[:pos] + fragment + html[pos:]


def add_unsubscribe_footer(
    html: str, tracking_id: str, email: str, base_url: str
) -> str:
    unsubscribe_url = f"{base_url}/unsubscribe?t={tracking_id}&e={quote(email)}"
    preferences_url = f"{base_url}/preferences?e={quote(email)}"
    footer = (
        '<div style="text-align:center;padding:20px;font-size:12px;color:#666;">'
        "<p>You are receiving this email because you subscribed to our mailing list.</p>"
        f'<p><a href="{unsubscribe_url}" style="color:#666;">Unsubscribe</a>'
        " | "
        f'<a href="{preferences_url}" style="color:#666;">Update preferences</a></p>'
        "</div>"
    )
    return _insert_before_body_close(html, footer)


def tracking_pixel(tracking_id: str, base_url: str) -> str:
    return (
        f'<img src="{base_url}/track/open/{tracking_id}" width="1" height="1" '
        'style="display:none;" alt="" />'
    )


def prepare_email_for_tracking(
    html: str,
    tracking_id: str,
    email: str,
    base_url: str,
    options: TrackingOptions = TrackingOptions(),
) -> str:
    """Apply click wrapping, the unsubscribe footer and the open pixel."""
    base_url = base_url.rstrip("/")
    if options.track_clicks:
        html = wrap_links_for_tracking(html, tracking_id, base_url)
    if options.add_unsubscribe:
        html = add_unsubscribe_footer(html, tracking_id, email, base_url)
    if options.track_opens:
        html = _insert_before_body_close(html, tracking_pixel(tracking_id, base_url))
    return html


__all__ = [
    "TrackingOptions",
    "add_unsubscribe_footer",
    "generate_tracking_id",
    "prepare_email_for_tracking",
    "tracking_pixel",
    "wrap_links_for_tracking",
]
