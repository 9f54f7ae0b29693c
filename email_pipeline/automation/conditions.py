"""Per-trigger predicates deciding whether a rule fires for an event."""

from __future__ import annotations

import datetime as dt
from typing import Any, Mapping, Optional

from email_pipeline.models import AutomationRule, TriggerType, utcnow

DEFAULT_INACTIVE_DAYS = 30


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _days_inactive(data: Mapping[str, Any], now: dt.datetime) -> Optional[float]:
    if data.get("days_inactive") is not None:
        return _as_float(data["days_inactive"])
    last_active = data.get("last_active")
    if isinstance(last_active, str):
        try:
            last_active = dt.datetime.fromisoformat(last_active)
        except ValueError:
            return None
    if isinstance(last_active, dt.datetime):
        if last_active.tzinfo is not None:
            last_active = last_active.astimezone(dt.timezone.utc).replace(tzinfo=None)
        return (now - last_active).total_seconds() / 86400
    return None


def check_trigger_conditions(
    rule: AutomationRule,
    data: Mapping[str, Any],
    now: Optional[dt.datetime] = None,
) -> bool:
    """Return True when ``data`` satisfies the rule's trigger conditions.

    Trigger types without a predicate always match.
    """
    conditions = rule.trigger_conditions
    if rule.trigger_type == TriggerType.ABANDONED_CART.value:
        minimum = _as_float(conditions.get("min_cart_value"))
        if minimum is None:
            return True
        total = _as_float(data.get("cart_total"))
        return total is not None and total >= minimum

    if rule.trigger_type == TriggerType.INACTIVE_USER.value:
        threshold = _as_float(conditions.get("inactive_days"))
        if threshold is None:
            threshold = DEFAULT_INACTIVE_DAYS
        inactive = _days_inactive(data, now or utcnow())
        return inactive is not None and inactive >= threshold

    return True


__all__ = ["DEFAULT_INACTIVE_DAYS", "check_trigger_conditions"]
