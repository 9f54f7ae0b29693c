"""HTTP endpoints for engagement tracking.

This module exposes a FastAPI application built around a
:class:`~email_pipeline.app.Pipeline`:

* ``GET /track/open/{tracking_id}`` – 1×1 GIF, records an open
* ``GET /track/click/{tracking_id}?url=&lid=`` – records a click, redirects
* ``GET /unsubscribe?t=&e=`` and ``POST /unsubscribe`` – unsubscribe
* ``POST /webhooks/{provider}`` – Resend, SendGrid and SES callbacks
* ``GET /health`` – orchestrator health summary

Run it with ``python -m email_pipeline serve``.
"""

from __future__ import annotations

import base64
import html
import logging
from typing import TYPE_CHECKING, Optional
from urllib.parse import urlparse

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse
from pydantic import BaseModel, EmailStr
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from email_pipeline.models import TrackingEventType
from email_pipeline.tracking.webhooks import PROVIDERS

if TYPE_CHECKING:
    from email_pipeline.app import Pipeline

LOGGER = logging.getLogger(__name__)

_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

_NO_CACHE = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

# Image proxies that prefetch on delivery rather than on a real open.
_PREFETCH_AGENTS = ("GoogleImageProxy",)


class UnsubscribeRequest(BaseModel):
    email: EmailStr
    tracking_id: Optional[str] = None
    reason: Optional[str] = None


def _should_count_open(request: Request) -> bool:
    ua = request.headers.get("User-Agent", "")
    return not any(agent in ua for agent in _PREFETCH_AGENTS)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _confirmation_page(company: str) -> str:
    name = html.escape(company)
    return (
        "<!DOCTYPE html><html><head><title>Unsubscribed</title>"
        '<meta name="viewport" content="width=device-width, initial-scale=1"></head>'
        '<body style="font-family:Arial,sans-serif;max-width:500px;margin:50px auto;">'
        "<h1>You have been unsubscribed</h1>"
        f"<p>You will no longer receive marketing emails from {name}.</p>"
        "</body></html>"
    )


def create_app(pipeline: "Pipeline") -> FastAPI:
    app = FastAPI(title="Mailpipe Tracking API")
    recorder = pipeline.recorder

    @app.get("/track/open/{tracking_id}", response_class=Response, summary="Tracking pixel")
    def track_open(tracking_id: str, request: Request) -> Response:
        if _should_count_open(request):
            try:
                recorder.record_event(
                    tracking_id,
                    TrackingEventType.OPENED,
                    user_agent=request.headers.get("User-Agent"),
                    ip_address=_client_ip(request),
                )
            except SQLAlchemyError:
                LOGGER.exception("Open tracking failed for %s", tracking_id)
        return Response(content=_PIXEL, media_type="image/gif", headers=_NO_CACHE)

    @app.head("/track/open/{tracking_id}", include_in_schema=False)
    def track_open_head(tracking_id: str) -> Response:
        return Response(status_code=200, headers={**_NO_CACHE, "Content-Type": "image/gif"})

    @app.get("/track/click/{tracking_id}", summary="Record click and redirect")
    def track_click(
        tracking_id: str,
        request: Request,
        url: Optional[str] = None,
        lid: Optional[str] = None,
    ) -> Response:
        if not url:
            return PlainTextResponse("Missing URL", status_code=400)
        if urlparse(url).scheme not in ("http", "https"):
            return PlainTextResponse("Invalid URL", status_code=400)
        try:
            recorder.record_event(
                tracking_id,
                TrackingEventType.CLICKED,
                link_url=url,
                link_id=lid,
                user_agent=request.headers.get("User-Agent"),
                ip_address=_client_ip(request),
            )
        except SQLAlchemyError:
            LOGGER.exception("Click tracking failed for %s", tracking_id)
        return RedirectResponse(url, status_code=302)

    @app.get("/unsubscribe", response_class=HTMLResponse)
    def unsubscribe_link(t: Optional[str] = None, e: Optional[str] = None) -> HTMLResponse:
        if not e:
            raise HTTPException(status_code=400, detail="Email is required")
        recorder.unsubscribe(e, tracking_id=t)
        return HTMLResponse(_confirmation_page(pipeline.settings.company_name))

    @app.post("/unsubscribe")
    def unsubscribe(body: UnsubscribeRequest) -> dict:
        recorder.unsubscribe(body.email, tracking_id=body.tracking_id, reason=body.reason)
        return {"unsubscribed": True}

    @app.post("/webhooks/{provider}")
    async def webhook(provider: str, request: Request) -> dict:
        if provider not in PROVIDERS:
            raise HTTPException(status_code=404, detail="Unknown provider")
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        result = await run_in_threadpool(pipeline.webhooks.handle, provider, payload)
        if result.confirmed:
            return {"confirmed": True}
        return {"received": True, "events": result.received}

    @app.get("/health")
    def health() -> dict:
        return pipeline.cron.system_health()

    return app


__all__ = ["UnsubscribeRequest", "create_app"]
