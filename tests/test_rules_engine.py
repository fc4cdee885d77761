"""Tests for condition evaluation."""

from datetime import datetime, timedelta, timezone

import pytest

from sequencer.services.event_store import ingest_event
from sequencer.services.rules_engine import (
    EvalContext,
    compare_values,
    evaluate_condition,
    window_from_condition,
)
from sequencer.services.scoring_engine import apply_score_event

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def ctx(**fields):
    return EvalContext(tenant_id="t1", entity_id="lead-1", fields=fields, now=NOW)


class TestCompareValues:
    def test_equality(self):
        assert compare_values("saas", "eq", "saas")
        assert compare_values("saas", "neq", "retail")

    def test_ordering(self):
        assert compare_values(10, "gt", 5)
        assert compare_values(5, "gte", 5)
        assert compare_values(4, "lt", 5)
        assert compare_values(5, "lte", 5)

    def test_ordering_with_missing_value_is_false(self):
        assert not compare_values(None, "gt", 5)
        assert not compare_values(None, "lte", 5)

    def test_ordering_across_types_is_false(self):
        assert not compare_values("ten", "gt", 5)

    def test_contains(self):
        assert compare_values("Head of Growth", "contains", "Growth")
        assert compare_values("Engineer", "not_contains", "Growth")

    def test_unknown_operator(self):
        assert not compare_values(1, "between", 1)


class TestWindow:
    def test_window_ms(self):
        assert window_from_condition({"window_ms": 86_400_000}) == timedelta(days=1)

    def test_window_days(self):
        assert window_from_condition({"window_days": 7}) == timedelta(days=7)

    def test_window_hours(self):
        assert window_from_condition({"window_hours": 2}) == timedelta(hours=2)


@pytest.mark.asyncio
async def test_always_true(db):
    assert await evaluate_condition(db, {"type": "always_true"}, ctx())


@pytest.mark.asyncio
async def test_field_compare(db):
    cond = {"type": "field_compare", "field": "industry", "operator": "eq", "value": "saas"}
    assert await evaluate_condition(db, cond, ctx(industry="saas"))
    assert not await evaluate_condition(db, cond, ctx(industry="retail"))
    assert not await evaluate_condition(db, cond, ctx())


@pytest.mark.asyncio
async def test_and_or(db):
    yes = {"type": "always_true"}
    no = {"type": "field_compare", "field": "x", "operator": "eq", "value": 1}
    assert await evaluate_condition(db, {"type": "and", "conditions": [yes, yes]}, ctx())
    assert not await evaluate_condition(db, {"type": "and", "conditions": [yes, no]}, ctx())
    assert await evaluate_condition(db, {"type": "or", "conditions": [no, yes]}, ctx())
    assert not await evaluate_condition(db, {"type": "or", "conditions": [no, no]}, ctx())
    # Empty and holds, empty or does not
    assert await evaluate_condition(db, {"type": "and", "conditions": []}, ctx())
    assert not await evaluate_condition(db, {"type": "or", "conditions": []}, ctx())


@pytest.mark.asyncio
async def test_event_window(db):
    await ingest_event(
        db, "t1", "email_opened", "lead-1", occurred_at=NOW - timedelta(hours=3), dispatch=False
    )
    await ingest_event(
        db, "t1", "email_opened", "lead-1", occurred_at=NOW - timedelta(days=3), dispatch=False
    )

    one_day = {"type": "event_window", "event_type": "email_opened", "window_ms": 86_400_000}
    assert await evaluate_condition(db, one_day, ctx())

    twice_in_a_day = dict(one_day, min_count=2)
    assert not await evaluate_condition(db, twice_in_a_day, ctx())

    twice_in_a_week = {"type": "event_window", "event_type": "email_opened", "window_days": 7, "min_count": 2}
    assert await evaluate_condition(db, twice_in_a_week, ctx())

    replied = {"type": "event_window", "event_type": "email_replied", "window_days": 7}
    assert not await evaluate_condition(db, replied, ctx())


@pytest.mark.asyncio
async def test_score_threshold(db):
    cond = {"type": "score_threshold", "operator": "gte", "value": 60}
    assert not await evaluate_condition(db, cond, ctx())
    await apply_score_event(db, "t1", "lead-1", "score_adjustment", {"delta": 80}, now=NOW)
    assert await evaluate_condition(db, cond, ctx())


@pytest.mark.asyncio
async def test_unknown_and_malformed_conditions_are_false(db):
    assert not await evaluate_condition(db, {"type": "lunar_phase"}, ctx())
    assert not await evaluate_condition(db, None, ctx())
    assert not await evaluate_condition(db, "always_true", ctx())
