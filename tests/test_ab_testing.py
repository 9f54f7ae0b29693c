import pytest

from email_pipeline.ab_testing import apply_variant, assign_variant
from email_pipeline.errors import InvalidTransition, NotFoundError
from email_pipeline.storage.schema import email_ab_tests


@pytest.mark.parametrize(
    "total, split, expected_a",
    [(100, 50, 50), (100, 30, 30), (10, 30, 3), (250, 20, 50), (7, 50, 3), (5, 0, 0), (5, 100, 5)],
)
def test_split_counts(total, split, expected_a) -> None:
    variants = [assign_variant(i, split, total) for i in range(total)]
    assert variants.count("A") == expected_a


def test_assignment_is_reproducible() -> None:
    first = [assign_variant(i, 40, 230) for i in range(230)]
    assert first == [assign_variant(i, 40, 230) for i in range(230)]
    assert first[:40] == ["A"] * 40
    assert first[40] == "B"


def test_apply_variant_keeps_unset_fields() -> None:
    base = {"subject": "Base", "html_content": "<p>base</p>", "from_name": "Shop"}
    test = {"test_type": "content", "variant_a": {}, "variant_b": {"content": "<p>b</p>"}}
    assert apply_variant(test, "A", base)["html_content"] == "<p>base</p>"
    b = apply_variant(test, "B", base)
    assert b["html_content"] == "<p>b</p>"
    assert b["subject"] == "Base"
    assert b["delay_hours"] == 0.0


def _running_test(pipeline, seed, **options) -> int:
    test_id = pipeline.ab_tests.create_ab_test(
        seed.campaign(), "t", "subject", {"subject": "A"}, {"subject": "B"}, **options
    )
    pipeline.ab_tests.start_ab_test(test_id)
    return test_id


def _counters(engine, test_id, **values) -> None:
    with engine.begin() as conn:
        conn.execute(email_ab_tests.update().where(email_ab_tests.c.id == test_id).values(**values))


def test_create_links_campaign_and_validates(pipeline, seed) -> None:
    campaign_id = seed.campaign()
    test_id = pipeline.ab_tests.create_ab_test(campaign_id, "t", "subject", {}, {})
    assert pipeline.campaigns.get(campaign_id)["ab_test_id"] == test_id
    assert pipeline.ab_tests.get(test_id)["status"] == "draft"

    with pytest.raises(ValueError):
        pipeline.ab_tests.create_ab_test(campaign_id, "t", "colour", {}, {})
    with pytest.raises(ValueError):
        pipeline.ab_tests.create_ab_test(campaign_id, "t", "subject", {}, {}, split_percentage=120)
    with pytest.raises(NotFoundError):
        pipeline.ab_tests.create_ab_test(999, "t", "subject", {}, {})


def test_open_rate_winner(pipeline, seed, engine) -> None:
    test_id = _running_test(pipeline, seed)
    _counters(engine, test_id, variant_a_sent=100, variant_a_opens=30, variant_b_sent=100, variant_b_opens=45)
    outcome = pipeline.ab_tests.evaluate_ab_test(test_id)
    assert outcome.winner == "B"
    assert outcome.variant_a_rate == pytest.approx(0.30)
    assert outcome.variant_b_rate == pytest.approx(0.45)

    test = pipeline.ab_tests.get(test_id)
    assert test["status"] == "completed"
    assert test["winner"] == "B"
    assert test["completed_at"] is not None


def test_click_rate_uses_opens_as_denominator(pipeline, seed, engine) -> None:
    test_id = _running_test(pipeline, seed, winner_criteria="click_rate")
    _counters(
        engine,
        test_id,
        variant_a_opens=10,
        variant_a_clicks=5,
        variant_b_opens=40,
        variant_b_clicks=10,
    )
    assert pipeline.ab_tests.evaluate_ab_test(test_id).winner == "A"


def test_ties_and_empty_tests_go_to_a(pipeline, seed, engine) -> None:
    empty = _running_test(pipeline, seed)
    assert pipeline.ab_tests.evaluate_ab_test(empty).winner == "A"

    tied = _running_test(pipeline, seed)
    _counters(engine, tied, variant_a_sent=10, variant_a_opens=5, variant_b_sent=20, variant_b_opens=10)
    assert pipeline.ab_tests.evaluate_ab_test(tied).winner == "A"

    conversion = _running_test(pipeline, seed, winner_criteria="conversion")
    _counters(engine, conversion, variant_b_sent=10, variant_b_opens=10)
    assert pipeline.ab_tests.evaluate_ab_test(conversion).winner == "A"


def test_completed_test_cannot_be_reevaluated(pipeline, seed) -> None:
    test_id = _running_test(pipeline, seed)
    pipeline.ab_tests.evaluate_ab_test(test_id)
    with pytest.raises(InvalidTransition):
        pipeline.ab_tests.evaluate_ab_test(test_id)
    with pytest.raises(InvalidTransition):
        pipeline.ab_tests.start_ab_test(test_id)


def test_due_tests_after_duration(pipeline, seed, clock) -> None:
    short = _running_test(pipeline, seed, test_duration_hours=2)
    long = _running_test(pipeline, seed, test_duration_hours=24)
    pipeline.ab_tests.create_ab_test(seed.campaign(), "draft", "subject", {}, {})

    assert pipeline.ab_tests.due_tests() == []
    clock.advance(hours=2)
    assert pipeline.ab_tests.due_tests() == [short]
    clock.advance(days=1)
    assert sorted(pipeline.ab_tests.due_tests()) == [short, long]
