"""A/B testing for campaigns.

Recipients are assigned to a variant by their position in the recipient
list rather than by a hash or a random draw: recipient ``i`` receives A
when ``i % 100 < split_percentage``, with the trailing partial block split
in proportion.  For a fixed list the assignment is therefore reproducible,
and a list of N recipients gets floor(N * split / 100) A recipients give
or take one.

A test moves ``draft -> running -> completed``.  Per-variant ``sent``
counters are bumped by campaign fan-out, ``opens``/``clicks`` by tracking
ingestion, and :meth:`ABTestService.evaluate_ab_test` picks the winner once
the test duration has elapsed.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Engine

from email_pipeline.errors import NotFoundError
from email_pipeline.models import ABTestStatus, Variant, ensure_transition, utcnow
from email_pipeline.storage.schema import email_ab_tests, email_campaigns

LOGGER = logging.getLogger(__name__)

TEST_TYPES = ("subject", "content", "from_name", "send_time")
WINNER_CRITERIA = ("open_rate", "click_rate", "conversion")


def assign_variant(index: int, split_percentage: int, total: Optional[int] = None) -> Variant:
    """Return the variant for the recipient at ``index`` of ``total``.

    Full blocks of 100 recipients use ``index % 100 < split_percentage``.
    The trailing partial block of ``r`` recipients gives A to its first
    ``r * split_percentage // 100`` members, so a short list is not sent
    entirely to A.
    """
    position = index % 100
    if total is not None and index >= total - total % 100:
        return "A" if position < (total % 100) * split_percentage // 100 else "B"
    return "A" if position < split_percentage else "B"


def apply_variant(
    test: Mapping[str, Any], variant: Variant, content: Mapping[str, Any]
) -> Dict[str, Any]:
    """Overlay the variant payload on a campaign's base content.

    ``content`` carries ``subject``, ``html_content`` and ``from_name``; the
    result adds ``delay_hours`` (0 unless the test varies send time).
    Fields the variant does not define keep the campaign's value.
    """
    payload = test["variant_a"] if variant == "A" else test["variant_b"]
    payload = payload or {}
    result = dict(content)
    result["delay_hours"] = 0.0
    test_type = test["test_type"]
    if test_type == "subject" and payload.get("subject"):
        result["subject"] = payload["subject"]
    elif test_type == "content" and payload.get("content"):
        result["html_content"] = payload["content"]
    elif test_type == "from_name" and payload.get("from_name"):
        result["from_name"] = payload["from_name"]
    elif test_type == "send_time":
        result["delay_hours"] = float(payload.get("delay_hours") or 0)
    return result


@dataclass(frozen=True)
class ABTestOutcome:
    winner: Variant
    variant_a_rate: float
    variant_b_rate: float


def _rates(test: Mapping[str, Any]) -> tuple[float, float]:
    criteria = test["winner_criteria"]
    if criteria == "open_rate":
        numerators = (test["variant_a_opens"], test["variant_b_opens"])
        denominators = (test["variant_a_sent"], test["variant_b_sent"])
    elif criteria == "click_rate":
        numerators = (test["variant_a_clicks"], test["variant_b_clicks"])
        denominators = (test["variant_a_opens"], test["variant_b_opens"])
    else:
        LOGGER.warning(
            "A/B test %s: no data tracked for criteria %r", test["id"], criteria
        )
        return 0.0, 0.0
    a_rate, b_rate = (n / d if d else 0.0 for n, d in zip(numerators, denominators))
    return a_rate, b_rate


class ABTestService:
    def __init__(
        self, engine: Engine, clock: Callable[[], dt.datetime] = utcnow
    ) -> None:
        self._engine = engine
        self._clock = clock

    def get(self, test_id: int) -> Mapping[str, Any]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(email_ab_tests).where(email_ab_tests.c.id == test_id)
            ).mappings().first()
        if row is None:
            raise NotFoundError(f"A/B test {test_id} not found")
        return row

    def create_ab_test(
        self,
        campaign_id: int,
        name: str,
        test_type: str,
        variant_a: Mapping[str, Any],
        variant_b: Mapping[str, Any],
        split_percentage: int = 50,
        winner_criteria: str = "open_rate",
        test_duration_hours: float = 4,
    ) -> int:
        """Create a draft test and link it to its campaign."""
        if test_type not in TEST_TYPES:
            raise ValueError(f"Unknown test type: {test_type}")
        if winner_criteria not in WINNER_CRITERIA:
            raise ValueError(f"Unknown winner criteria: {winner_criteria}")
        if not 0 <= split_percentage <= 100:
            raise ValueError("split_percentage must be between 0 and 100")

        with self._engine.begin() as conn:
            exists = conn.execute(
                select(email_campaigns.c.id).where(email_campaigns.c.id == campaign_id)
            ).first()
            if exists is None:
                raise NotFoundError(f"Campaign {campaign_id} not found")
            test_id = conn.execute(
                email_ab_tests.insert().values(
                    campaign_id=campaign_id,
                    name=name,
                    test_type=test_type,
                    variant_a=dict(variant_a),
                    variant_b=dict(variant_b),
                    split_percentage=split_percentage,
                    winner_criteria=winner_criteria,
                    test_duration_hours=test_duration_hours,
                    status=ABTestStatus.DRAFT.value,
                    created_at=self._clock(),
                )
            ).inserted_primary_key[0]
            conn.execute(
                update(email_campaigns)
                .where(email_campaigns.c.id == campaign_id)
                .values(ab_test_id=test_id)
            )
        return test_id

    def start_ab_test(self, test_id: int) -> None:
        test = self.get(test_id)
        ensure_transition(test["status"], ABTestStatus.RUNNING)
        with self._engine.begin() as conn:
            conn.execute(
                update(email_ab_tests)
                .where(email_ab_tests.c.id == test_id)
                .values(status=ABTestStatus.RUNNING.value, started_at=self._clock())
            )

    def record_sent(self, test_id: int, sent_a: int, sent_b: int) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                update(email_ab_tests)
                .where(email_ab_tests.c.id == test_id)
                .values(
                    variant_a_sent=email_ab_tests.c.variant_a_sent + sent_a,
                    variant_b_sent=email_ab_tests.c.variant_b_sent + sent_b,
                )
            )

    def evaluate_ab_test(self, test_id: int) -> ABTestOutcome:
        """Pick the variant with the higher rate; ties go to A."""
        test = self.get(test_id)
        ensure_transition(test["status"], ABTestStatus.COMPLETED)
        a_rate, b_rate = _rates(test)
        winner: Variant = "A" if a_rate >= b_rate else "B"
        with self._engine.begin() as conn:
            conn.execute(
                update(email_ab_tests)
                .where(
                    email_ab_tests.c.id == test_id,
                    email_ab_tests.c.status == ABTestStatus.RUNNING.value,
                )
                .values(
                    winner=winner,
                    status=ABTestStatus.COMPLETED.value,
                    completed_at=self._clock(),
                )
            )
        LOGGER.info(
            "A/B test %s completed: winner=%s (A=%.3f, B=%.3f)",
            test_id,
            winner,
            a_rate,
            b_rate,
        )
        return ABTestOutcome(winner, a_rate, b_rate)

    def due_tests(self) -> List[int]:
        """Running tests whose duration has elapsed."""
        now = self._clock()
        with self._engine.connect() as conn:
            rows = conn.execute(
                select(
                    email_ab_tests.c.id,
                    email_ab_tests.c.started_at,
                    email_ab_tests.c.test_duration_hours,
                ).where(email_ab_tests.c.status == ABTestStatus.RUNNING.value)
            ).all()
        return [
            test_id
            for test_id, started_at, hours in rows
            if started_at is not None
            and started_at + dt.timedelta(hours=hours or 0) <= now
        ]


__all__ = [
    "ABTestOutcome",
    "ABTestService",
    "apply_variant",
    "assign_variant",
]
