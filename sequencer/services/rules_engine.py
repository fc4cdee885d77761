"""Rules engine — evaluates condition trees against a lead's history, fields and score.

Condition vocabulary (stored as JSON, validated before storage):
    {"type": "always_true"}
    {"type": "and", "conditions": [...]}
    {"type": "or", "conditions": [...]}
    {"type": "event_window", "event_type": "email_replied", "window_ms": 86400000, "min_count": 1}
    {"type": "field_compare", "field": "industry", "operator": "eq", "value": "saas"}
    {"type": "score_threshold", "operator": "gte", "value": 60}

Evaluation is read-only. A condition the engine does not understand evaluates
to False with a warning, so one bad branch cannot halt a batch.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from sequencer.services.event_store import get_events_in_window
from sequencer.services.scoring_engine import get_lead_score

logger = logging.getLogger(__name__)

CONDITION_TYPES = ("always_true", "and", "or", "event_window", "field_compare", "score_threshold")
OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "contains", "not_contains")


@dataclass
class EvalContext:
    tenant_id: str
    entity_id: str
    fields: dict = field(default_factory=dict)
    now: Optional[datetime] = None


def window_from_condition(condition: dict) -> timedelta:
    """window_ms is canonical; window_days / window_hours are accepted for hand-written graphs."""
    if condition.get("window_ms") is not None:
        return timedelta(milliseconds=float(condition["window_ms"]))
    if condition.get("window_days") is not None:
        return timedelta(days=float(condition["window_days"]))
    if condition.get("window_hours") is not None:
        return timedelta(hours=float(condition["window_hours"]))
    return timedelta(0)


def compare_values(actual: Any, operator: str, expected: Any) -> bool:
    if operator == "eq":
        return actual == expected
    elif operator == "neq":
        return actual != expected
    elif operator == "contains":
        return str(expected) in str(actual)
    elif operator == "not_contains":
        return str(expected) not in str(actual)
    elif operator in ("gt", "gte", "lt", "lte"):
        if actual is None or expected is None:
            return False
        try:
            if operator == "gt":
                return actual > expected
            elif operator == "gte":
                return actual >= expected
            elif operator == "lt":
                return actual < expected
            return actual <= expected
        except TypeError:
            return False
    else:
        logger.warning(f"Unknown operator: {operator}")
        return False


async def evaluate_condition(db: AsyncSession, condition: Optional[dict], ctx: EvalContext) -> bool:
    """Return True if the condition holds for the lead in ``ctx``."""
    if not isinstance(condition, dict):
        logger.warning(f"Malformed condition: {condition!r}")
        return False

    ctype = condition.get("type")

    if ctype == "always_true":
        return True

    elif ctype == "and":
        for sub in condition.get("conditions") or []:
            if not await evaluate_condition(db, sub, ctx):
                return False
        return True

    elif ctype == "or":
        for sub in condition.get("conditions") or []:
            if await evaluate_condition(db, sub, ctx):
                return True
        return False

    elif ctype == "event_window":
        events = await get_events_in_window(
            db,
            ctx.tenant_id,
            ctx.entity_id,
            condition.get("event_type", ""),
            window_from_condition(condition),
            now=ctx.now,
        )
        min_count = condition.get("min_count")
        return len(events) >= (1 if min_count is None else min_count)

    elif ctype == "field_compare":
        actual = ctx.fields.get(condition.get("field", ""))
        return compare_values(actual, condition.get("operator", "eq"), condition.get("value"))

    elif ctype == "score_threshold":
        score = await get_lead_score(db, ctx.tenant_id, ctx.entity_id, now=ctx.now)
        return compare_values(score, condition.get("operator", "gte"), condition.get("value"))

    logger.warning(f"Unknown condition type: {ctype}")
    return False
