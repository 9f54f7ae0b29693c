"""Campaign engagement metrics computed with pandas.

:func:`compute_campaign_metrics` works on plain DataFrames so it can be
tested without a database: ``sends`` holds one row per delivery log entry
(``campaign_id``, ``tracking_id``) and ``events`` one row per tracking
event (``campaign_id``, ``tracking_id``, ``event_type``).  Events are only
counted when they match a send, and every tracking id counts at most once
per event type, so rates are clipped to ``[0, 1]``.

:func:`campaign_analytics` loads those frames for one campaign and adds
the link, device and hour-of-day breakdowns.
"""

from __future__ import annotations

from typing import Any, Dict, List

import pandas as pd
from sqlalchemy import select
from sqlalchemy.engine import Engine

from email_pipeline.errors import NotFoundError
from email_pipeline.models import MessageStatus
from email_pipeline.storage.schema import email_campaigns, email_logs, email_tracking_events

_COUNT_COLUMNS = {
    "opened": "N_opens",
    "clicked": "N_clicks",
    "unsubscribed": "N_unsubscribes",
    "bounced": "N_bounces",
}

_METRIC_COLUMNS = [
    "N_sends",
    "N_opens",
    "N_clicks",
    "N_unsubscribes",
    "N_bounces",
    "open_rate",
    "ctr",
    "ctor",
    "unsubscribe_rate",
    "bounce_rate",
]


def _safe_div(numerator: pd.Series, denominator: pd.Series) -> pd.Series:
    return (
        numerator.where(denominator > 0, 0) / denominator.where(denominator > 0, 1)
    ).clip(0, 1)


def compute_campaign_metrics(sends: pd.DataFrame, events: pd.DataFrame) -> pd.DataFrame:
    """Per-campaign counts and rates indexed by ``campaign_id``."""
    if sends.empty:
        return pd.DataFrame(columns=_METRIC_COLUMNS).astype(
            {c: (int if c.startswith("N_") else float) for c in _METRIC_COLUMNS}
        )

    send_counts = sends.groupby("campaign_id")["tracking_id"].nunique().rename("N_sends")

    # Only count events that correspond to a send
    events = events.merge(
        sends[["campaign_id", "tracking_id"]], on=["campaign_id", "tracking_id"], how="inner"
    )
    events = events.drop_duplicates(subset=["campaign_id", "event_type", "tracking_id"])
    if events.empty:
        event_counts = pd.DataFrame(index=send_counts.index)
    else:
        event_counts = (
            events.groupby(["campaign_id", "event_type"])["tracking_id"]
            .nunique()
            .unstack(fill_value=0)
            .rename(columns=_COUNT_COLUMNS)
        )

    metrics = pd.concat([send_counts, event_counts], axis=1)
    for col in _COUNT_COLUMNS.values():
        if col not in metrics:
            metrics[col] = 0
    metrics = metrics[["N_sends", *_COUNT_COLUMNS.values()]].fillna(0).astype(int)

    metrics["open_rate"] = _safe_div(metrics["N_opens"], metrics["N_sends"])
    metrics["ctr"] = _safe_div(metrics["N_clicks"], metrics["N_sends"])
    metrics["ctor"] = _safe_div(metrics["N_clicks"], metrics["N_opens"])
    metrics["unsubscribe_rate"] = _safe_div(metrics["N_unsubscribes"], metrics["N_sends"])
    metrics["bounce_rate"] = _safe_div(metrics["N_bounces"], metrics["N_sends"])
    return metrics


def top_links(events: pd.DataFrame, limit: int = 10) -> List[Dict[str, Any]]:
    clicks = events[(events["event_type"] == "clicked") & events["link_url"].notna()]
    if clicks.empty:
        return []
    counts = clicks.groupby("link_url").size().sort_values(ascending=False, kind="stable")
    return [{"url": url, "clicks": int(n)} for url, n in counts.head(limit).items()]


def device_breakdown(events: pd.DataFrame) -> List[Dict[str, Any]]:
    devices = events["device_type"].dropna()
    if devices.empty:
        return []
    counts = devices.value_counts()
    return [{"device": device, "count": int(n)} for device, n in counts.items()]


def hourly_opens(events: pd.DataFrame) -> List[Dict[str, int]]:
    """Opens per UTC hour of day, always 24 entries."""
    opens = events[events["event_type"] == "opened"]
    hours = pd.to_datetime(opens["occurred_at"], errors="coerce").dt.hour.dropna()
    counts = hours.astype(int).value_counts().reindex(range(24), fill_value=0)
    return [{"hour": hour, "count": int(n)} for hour, n in counts.items()]


def load_campaign_frames(engine: Engine, campaign_id: int) -> tuple[pd.DataFrame, pd.DataFrame]:
    with engine.connect() as conn:
        sends = pd.read_sql(
            select(email_logs.c.campaign_id, email_logs.c.tracking_id, email_logs.c.sent_at)
            .where(
                email_logs.c.campaign_id == campaign_id,
                email_logs.c.status != MessageStatus.FAILED.value,
            ),
            conn,
        )
        events = pd.read_sql(
            select(
                email_tracking_events.c.campaign_id,
                email_tracking_events.c.tracking_id,
                email_tracking_events.c.event_type,
                email_tracking_events.c.link_url,
                email_tracking_events.c.device_type,
                email_tracking_events.c.email_client,
                email_tracking_events.c.occurred_at,
            ).where(email_tracking_events.c.campaign_id == campaign_id),
            conn,
        )
    return sends, events


def campaign_analytics(engine: Engine, campaign_id: int) -> Dict[str, Any]:
    """Headline counters plus link, device and hourly breakdowns."""
    with engine.connect() as conn:
        campaign = conn.execute(
            select(email_campaigns).where(email_campaigns.c.id == campaign_id)
        ).mappings().first()
    if campaign is None:
        raise NotFoundError(f"Campaign {campaign_id} not found")

    sends, events = load_campaign_frames(engine, campaign_id)
    total_sent = campaign["sent_count"] or 0
    opened = campaign["open_count"] or 0
    clicked = campaign["click_count"] or 0
    bounced = campaign["bounce_count"] or 0
    return {
        "total_sent": total_sent,
        "delivered": total_sent - bounced,
        "opened": opened,
        "clicked": clicked,
        "bounced": bounced,
        "unsubscribed": campaign["unsubscribe_count"] or 0,
        "open_rate": opened / total_sent * 100 if total_sent else 0.0,
        "click_rate": clicked / total_sent * 100 if total_sent else 0.0,
        "click_to_open_rate": clicked / opened * 100 if opened else 0.0,
        "metrics": compute_campaign_metrics(sends, events),
        "top_links": top_links(events),
        "device_breakdown": device_breakdown(events),
        "hourly_opens": hourly_opens(events),
    }


__all__ = [
    "campaign_analytics",
    "compute_campaign_metrics",
    "device_breakdown",
    "hourly_opens",
    "load_campaign_frames",
    "top_links",
]
