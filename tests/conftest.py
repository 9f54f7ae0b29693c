import datetime as dt
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import insert

from email_pipeline.app import Pipeline, build_pipeline
from email_pipeline.config import Settings
from email_pipeline.mailer import EmailSender, FailureKind, SendResult
from email_pipeline.storage import dispose_engines, get_engine, init_db
from email_pipeline.storage.schema import (
    automation_executions,
    email_automations,
    email_campaigns,
    email_subscribers,
    email_suppression_list,
    email_templates,
)

START = dt.datetime(2024, 5, 1, 12, 0, 0)
TRACKING_BASE = "https://track.example.com"


class Clock:
    """Mutable clock injected wherever components read the time."""

    def __init__(self, now: dt.datetime = START) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += dt.timedelta(**kwargs)


class FakeSender(EmailSender):
    """Returns scripted results in order, then succeeds."""

    def __init__(self) -> None:
        self.script: List[SendResult] = []
        self.calls: List[Dict[str, Any]] = []

    def fail_next(self, times: int = 1, kind: FailureKind = FailureKind.TRANSIENT) -> None:
        for _ in range(times):
            self.script.append(SendResult.failed("provider unavailable", kind))

    def send(self, to, subject, html, text=None, from_addr=None, reply_to=None, headers=None):
        self.calls.append(
            {
                "to": to,
                "subject": subject,
                "html": html,
                "text": text,
                "from_addr": from_addr,
                "reply_to": reply_to,
                "headers": headers,
            }
        )
        if self.script:
            return self.script.pop(0)
        return SendResult.ok(f"msg-{len(self.calls)}")


class Seeder:
    def __init__(self, engine, clock: Clock) -> None:
        self.engine = engine
        self.clock = clock

    def _insert(self, table, **values: Any) -> int:
        with self.engine.begin() as conn:
            return conn.execute(insert(table).values(**values)).inserted_primary_key[0]

    def template(
        self,
        subject: str = "Hello {{user_name}}",
        html: str = '<html><body><p>Hi {{user_name}}</p><a href="https://shop.example.com">Shop</a></body></html>',
        text: Optional[str] = None,
        is_active: bool = True,
    ) -> int:
        return self._insert(
            email_templates,
            name="t",
            subject=subject,
            html_content=html,
            text_content=text,
            is_active=is_active,
        )

    def rule(
        self,
        trigger_type: str = "welcome",
        template_id: Optional[int] = None,
        conditions: Optional[Dict[str, Any]] = None,
        send_limit_per_user: int = 1,
        cooldown_days: int = 0,
        priority: int = 0,
        is_active: bool = True,
        name: str = "rule",
    ) -> int:
        return self._insert(
            email_automations,
            name=name,
            trigger_type=trigger_type,
            trigger_conditions=conditions or {},
            template_id=template_id,
            is_active=is_active,
            priority=priority,
            send_limit_per_user=send_limit_per_user,
            cooldown_days=cooldown_days,
        )

    def completed_execution(self, rule_id: int, user_id: str, executed_at: dt.datetime) -> int:
        return self._insert(
            automation_executions,
            automation_id=rule_id,
            user_id=user_id,
            status="completed",
            executed_at=executed_at,
            created_at=executed_at,
        )

    def subscriber(
        self,
        email: str,
        first_name: str = "",
        status: str = "active",
        tags: Optional[List[str]] = None,
        user_id: Optional[str] = None,
    ) -> int:
        return self._insert(
            email_subscribers,
            email=email,
            first_name=first_name,
            status=status,
            tags=tags or [],
            user_id=user_id,
        )

    def suppressed(self, email: str, reason: str = "manual") -> None:
        self._insert(email_suppression_list, email=email, reason=reason)

    def campaign(
        self,
        audience: Any = "all",
        subject: str = "News for {{user_name}}",
        html: str = '<html><body><a href="https://shop.example.com/sale">Sale</a></body></html>',
        status: str = "draft",
        **extra: Any,
    ) -> int:
        return self._insert(
            email_campaigns,
            name="campaign",
            subject=subject,
            html_content=html,
            target_audience=audience if isinstance(audience, dict) else {"type": audience},
            status=status,
            **extra,
        )


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'pipeline.db'}",
        tracking_base_url=TRACKING_BASE,
        from_email="shop@example.com",
        from_name="Shop",
        company_name="Example Shop",
    )


@pytest.fixture
def engine(settings):
    eng = get_engine(settings.database_url)
    init_db(eng)
    yield eng
    dispose_engines()


@pytest.fixture
def pipeline(settings, engine, sender, clock) -> Pipeline:
    return build_pipeline(settings, sender=sender, clock=clock, engine=engine)


@pytest.fixture
def seed(engine, clock) -> Seeder:
    return Seeder(engine, clock)
