"""Domain types and status state machines.

Statuses are stored as plain strings in the database but every mutation
goes through :func:`ensure_transition`, which checks the move against the
tables below and raises :class:`~email_pipeline.errors.InvalidTransition`
otherwise.  Two recovery edges on queued messages (``failed -> pending``
for the retry sweep and ``cancelled -> pending`` for campaign resume) are
only legal when the caller asks for them explicitly.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, EmailStr, Field, TypeAdapter, field_validator

from email_pipeline.errors import InvalidTransition

Variant = Literal["A", "B"]

_JSON_PAYLOAD = TypeAdapter(Dict[str, Any])


def json_payload(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy of ``data`` safe for a JSON column (datetimes become ISO strings)."""
    return _JSON_PAYLOAD.dump_python(dict(data), mode="json")


def utcnow() -> dt.datetime:
    """Naive UTC timestamp; the store keeps every datetime in this form."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


class MessageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SENDING = "sending"
    SENT = "sent"
    PAUSED = "paused"
    FAILED = "failed"


class ABTestStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    COMPLETED = "completed"


class TriggerType(str, Enum):
    WELCOME = "welcome"
    ABANDONED_CART = "abandoned_cart"
    ORDER_PLACED = "order_placed"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    INACTIVE_USER = "inactive_user"


class TrackingEventType(str, Enum):
    OPENED = "opened"
    CLICKED = "clicked"
    UNSUBSCRIBED = "unsubscribed"
    DELIVERED = "delivered"
    BOUNCED = "bounced"
    COMPLAINED = "complained"


_MESSAGE_EDGES: Dict[MessageStatus, FrozenSet[MessageStatus]] = {
    MessageStatus.PENDING: frozenset(
        {MessageStatus.PROCESSING, MessageStatus.CANCELLED}
    ),
    MessageStatus.PROCESSING: frozenset(
        {MessageStatus.SENT, MessageStatus.PENDING, MessageStatus.FAILED}
    ),
    MessageStatus.SENT: frozenset(),
    MessageStatus.FAILED: frozenset(),
    MessageStatus.CANCELLED: frozenset(),
}

_MESSAGE_RECOVERY_EDGES: FrozenSet[Tuple[MessageStatus, MessageStatus]] = frozenset(
    {
        (MessageStatus.FAILED, MessageStatus.PENDING),
        (MessageStatus.CANCELLED, MessageStatus.PENDING),
    }
)

_EXECUTION_EDGES: Dict[ExecutionStatus, FrozenSet[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.SKIPPED}),
    ExecutionStatus.PROCESSING: frozenset(
        {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED}
    ),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.SKIPPED: frozenset(),
}

_CAMPAIGN_EDGES: Dict[CampaignStatus, FrozenSet[CampaignStatus]] = {
    CampaignStatus.DRAFT: frozenset({CampaignStatus.SENDING, CampaignStatus.PAUSED}),
    CampaignStatus.SENDING: frozenset(
        {
            CampaignStatus.SENT,
            CampaignStatus.FAILED,
            CampaignStatus.DRAFT,
            CampaignStatus.PAUSED,
        }
    ),
    CampaignStatus.SENT: frozenset({CampaignStatus.PAUSED}),
    CampaignStatus.PAUSED: frozenset(
        {CampaignStatus.SENT, CampaignStatus.DRAFT, CampaignStatus.SENDING}
    ),
    CampaignStatus.FAILED: frozenset({CampaignStatus.DRAFT}),
}

_AB_TEST_EDGES: Dict[ABTestStatus, FrozenSet[ABTestStatus]] = {
    ABTestStatus.DRAFT: frozenset({ABTestStatus.RUNNING}),
    ABTestStatus.RUNNING: frozenset({ABTestStatus.COMPLETED}),
    ABTestStatus.COMPLETED: frozenset(),
}

_TABLES: Dict[type, Mapping[Any, FrozenSet[Any]]] = {
    MessageStatus: _MESSAGE_EDGES,
    ExecutionStatus: _EXECUTION_EDGES,
    CampaignStatus: _CAMPAIGN_EDGES,
    ABTestStatus: _AB_TEST_EDGES,
}


def can_transition(current: Enum, target: Enum, *, recovery: bool = False) -> bool:
    """Return True if ``current -> target`` is a legal status change."""
    table = _TABLES[type(current)]
    if target in table[current]:
        return True
    if recovery and isinstance(current, MessageStatus):
        return (current, target) in _MESSAGE_RECOVERY_EDGES
    return False


def ensure_transition(
    current: str | Enum, target: Enum, *, recovery: bool = False
) -> None:
    """Raise :class:`InvalidTransition` unless ``current -> target`` is legal."""
    enum_type = type(target)
    current_status = enum_type(current)
    if not can_transition(current_status, target, recovery=recovery):
        raise InvalidTransition(
            enum_type.__name__, current_status.value, target.value
        )


class OutboundEmail(BaseModel):
    """A logical "send this email" request accepted by the queue."""

    to_email: EmailStr
    subject: str = Field(min_length=1)
    html_content: str
    text_content: Optional[str] = None
    to_name: str = ""
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    reply_to: Optional[str] = None
    campaign_id: Optional[int] = None
    automation_id: Optional[int] = None
    template_id: Optional[int] = None
    subscriber_id: Optional[int] = None
    tracking_id: Optional[str] = None
    priority: int = 0
    scheduled_at: Optional[dt.datetime] = None
    max_attempts: Optional[int] = Field(default=None, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("to_email")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.strip().lower()


@dataclass
class AutomationRule:
    id: int
    name: str
    trigger_type: str
    trigger_conditions: Dict[str, Any]
    template_id: Optional[int]
    is_active: bool = True
    priority: int = 0
    send_limit_per_user: int = 1
    cooldown_days: int = 0
    total_sent: int = 0

    @property
    def delay_hours(self) -> float:
        return float(self.trigger_conditions.get("delay_hours") or 0)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AutomationRule":
        return cls(
            id=row["id"],
            name=row["name"],
            trigger_type=row["trigger_type"],
            trigger_conditions=dict(row["trigger_conditions"] or {}),
            template_id=row["template_id"],
            is_active=bool(row["is_active"]),
            priority=row["priority"] or 0,
            send_limit_per_user=row["send_limit_per_user"],
            cooldown_days=row["cooldown_days"] or 0,
            total_sent=row["total_sent"] or 0,
        )


@dataclass
class AutomationEvent:
    """A business event handed to the automation engine."""

    email: str
    trigger_type: str
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def snapshot(self) -> Dict[str, Any]:
        """Serialisable copy stored on a deferred execution."""
        return {
            **json_payload(self.data),
            "email": self.email,
            "user_name": self.user_name,
            "trigger_type": self.trigger_type,
        }

    @classmethod
    def from_snapshot(
        cls, user_id: Optional[str], snapshot: Mapping[str, Any]
    ) -> "AutomationEvent":
        data = {
            k: v
            for k, v in snapshot.items()
            if k not in {"email", "user_name", "trigger_type"}
        }
        return cls(
            email=snapshot["email"],
            trigger_type=snapshot.get("trigger_type", ""),
            user_id=user_id,
            user_name=snapshot.get("user_name"),
            data=data,
        )


@dataclass(frozen=True)
class Eligibility:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True)
class Recipient:
    email: str
    first_name: str = ""
    last_name: str = ""
    user_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or "Customer"


__all__ = [
    "ABTestStatus",
    "AutomationEvent",
    "AutomationRule",
    "CampaignStatus",
    "Eligibility",
    "ExecutionStatus",
    "MessageStatus",
    "OutboundEmail",
    "Recipient",
    "TrackingEventType",
    "TriggerType",
    "Variant",
    "can_transition",
    "ensure_transition",
    "json_payload",
    "utcnow",
]
