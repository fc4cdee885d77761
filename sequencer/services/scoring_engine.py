"""Lead scoring engine — weighted engagement events with time decay.

Scoring rules:
  email_opened            +5  (+10 for a repeat open of the same email)
  email_clicked           +20
  page_visit (pricing)    +30 (other page visits are unscored)
  form_submitted          +60
  email_replied           +75
  email_unsubscribed      -50
  score_adjustment        payload["delta"] verbatim

Decay: the stored score loses 10% for every 30 days without activity,
compounded continuously and applied on read.

Tiers: 0-20 cold, 21-60 warm, 61-120 hot, 121+ sales_ready.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from sequencer.config import get_settings
from sequencer.models import as_utc, utcnow
from sequencer.models.lead_score import LeadScore, ScoreEvent

logger = logging.getLogger(__name__)

SCORING_RULES = {
    "email_opened": 5,
    "email_clicked": 20,
    "form_submitted": 60,
    "email_replied": 75,
    "email_unsubscribed": -50,
}

PAGE_VISIT_POINTS = 0
PRICING_PAGE_POINTS = 30
REPEAT_OPEN_POINTS = 10

# Upper bound (inclusive) of each tier; anything above the last is sales_ready
TIER_CEILINGS = [
    (20, "cold"),
    (60, "warm"),
    (120, "hot"),
]
TIERS = ("cold", "warm", "hot", "sales_ready")


@dataclass
class ScoreChange:
    score: int
    tier: str
    delta: float
    previous: int


def score_tier(score: float) -> str:
    """Single source of truth for tiers, used for display and for branching."""
    for ceiling, tier in TIER_CEILINGS:
        if score <= ceiling:
            return tier
    return "sales_ready"


def _is_pricing_visit(payload: dict) -> bool:
    return payload.get("page") == "pricing" or bool(payload.get("is_pricing_page"))


def resolve_score_delta(event_type: str, payload: Optional[dict] = None) -> float:
    payload = payload or {}

    if event_type == "score_adjustment":
        delta = payload.get("delta")
        if isinstance(delta, bool) or not isinstance(delta, (int, float)):
            return 0
        return delta

    if event_type == "page_visit":
        return PRICING_PAGE_POINTS if _is_pricing_visit(payload) else PAGE_VISIT_POINTS

    if event_type == "email_opened" and payload.get("is_repeat_open"):
        return REPEAT_OPEN_POINTS

    return SCORING_RULES.get(event_type, 0)


def decayed_score(
    raw: float,
    last_activity_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> int:
    """raw * (1 - rate) ** (days_inactive / period), floored at 0 and rounded half-up."""
    settings = get_settings()
    now = as_utc(now) or utcnow()
    last_activity_at = as_utc(last_activity_at) or now

    days_inactive = max(0.0, (now - last_activity_at).total_seconds() / 86400)
    factor = (1 - settings.score_decay_rate) ** (days_inactive / settings.score_decay_period_days)
    value = (raw or 0) * factor
    return max(0, math.floor(value + 0.5))


async def _get_score_row(db: AsyncSession, tenant_id: str, entity_id: str) -> Optional[LeadScore]:
    result = await db.execute(
        select(LeadScore)
        .where(LeadScore.tenant_id == tenant_id, LeadScore.entity_id == entity_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_lead_score(
    db: AsyncSession,
    tenant_id: str,
    entity_id: str,
    now: Optional[datetime] = None,
) -> int:
    """Current decayed score. A lead with no row scores 0; so does unreachable storage."""
    try:
        row = await _get_score_row(db, tenant_id, entity_id)
    except OperationalError as e:
        logger.error(f"Score lookup failed for {entity_id}: {e}")
        await db.rollback()
        return 0
    if row is None:
        return 0
    return decayed_score(row.score, row.last_activity_at, now)


async def apply_score_event(
    db: AsyncSession,
    tenant_id: str,
    entity_id: str,
    event_type: str,
    payload: Optional[dict] = None,
    now: Optional[datetime] = None,
    source_event_id: Optional[str] = None,
) -> Optional[ScoreChange]:
    """Apply an event's weight to the lead's score. Zero-weight events are a no-op.

    The read-modify-write is guarded by the row's version counter; a concurrent
    writer makes the commit fail and the update is retried against fresh state.
    """
    delta = resolve_score_delta(event_type, payload)
    if delta == 0:
        return None

    settings = get_settings()
    now = as_utc(now) or utcnow()

    for attempt in range(1, settings.score_update_retries + 1):
        row = await _get_score_row(db, tenant_id, entity_id)
        current = decayed_score(row.score, row.last_activity_at, now) if row else 0
        new_score = max(0, current + delta)
        tier = score_tier(new_score)

        if row is None:
            row = LeadScore(tenant_id=tenant_id, entity_id=entity_id, created_at=now)
            db.add(row)
        row.score = new_score
        row.tier = tier
        row.last_activity_at = now
        row.updated_at = now

        db.add(ScoreEvent(
            tenant_id=tenant_id,
            entity_id=entity_id,
            event_type=event_type,
            delta=delta,
            score_before=current,
            score_after=new_score,
            source_event_id=source_event_id,
            created_at=now,
        ))
        try:
            await db.commit()
        except (StaleDataError, IntegrityError) as e:
            await db.rollback()
            logger.warning(f"Concurrent score update for {entity_id} (attempt {attempt}): {e}")
            continue

        sign = "+" if delta > 0 else ""
        logger.info(f"{entity_id}: {current} -> {new_score} ({sign}{delta}) tier={tier}")
        return ScoreChange(score=int(round(new_score)), tier=tier, delta=delta, previous=current)

    logger.error(f"Giving up on score update for {entity_id} after {settings.score_update_retries} attempts")
    return None


async def get_score_leaderboard(
    db: AsyncSession,
    tenant_id: str,
    tier: Optional[str] = None,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> list[dict]:
    """Decayed scores, highest first. Tiers are recomputed, never read from the row."""
    result = await db.execute(select(LeadScore).where(LeadScore.tenant_id == tenant_id))
    entries = []
    for row in result.scalars().all():
        score = decayed_score(row.score, row.last_activity_at, now)
        row_tier = score_tier(score)
        if tier and row_tier != tier:
            continue
        entries.append({
            "entity_id": row.entity_id,
            "score": score,
            "tier": row_tier,
            "raw_score": row.score,
            "last_activity_at": as_utc(row.last_activity_at).isoformat() if row.last_activity_at else None,
        })
    entries.sort(key=lambda e: e["score"], reverse=True)
    return entries[:limit]


SCORE_BUCKETS = ((0, 24), (25, 49), (50, 74), (75, None))


async def get_tier_distribution(db: AsyncSession, tenant_id: str, now: Optional[datetime] = None) -> dict:
    result = await db.execute(select(LeadScore).where(LeadScore.tenant_id == tenant_id))
    scores = [decayed_score(r.score, r.last_activity_at, now) for r in result.scalars().all()]

    stats = {"total": len(scores), "avg_score": 0}
    for tier in TIERS:
        stats[tier] = 0
    distribution = [
        {"range": f"{low}-{high}" if high is not None else f"{low}+", "count": 0}
        for low, high in SCORE_BUCKETS
    ]
    for score in scores:
        stats[score_tier(score)] += 1
        for bucket, (low, high) in zip(distribution, SCORE_BUCKETS):
            if score >= low and (high is None or score <= high):
                bucket["count"] += 1
                break
    if scores:
        stats["avg_score"] = round(sum(scores) / len(scores))
    stats["distribution"] = distribution
    return stats


async def get_score_history(
    db: AsyncSession,
    tenant_id: str,
    entity_id: str,
    limit: int = 50,
) -> list[ScoreEvent]:
    result = await db.execute(
        select(ScoreEvent)
        .where(ScoreEvent.tenant_id == tenant_id, ScoreEvent.entity_id == entity_id)
        .order_by(ScoreEvent.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
