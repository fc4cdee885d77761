"""Lead Scoring & Suppression API — decayed scores, leaderboards, and the suppression ledger."""

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from sequencer.api.deps import get_tenant_id
from sequencer.database import get_db
from sequencer.models import as_utc, new_uuid
from sequencer.services.event_store import ingest_event
from sequencer.services.scoring_engine import (
    get_lead_score,
    get_score_history,
    get_score_leaderboard,
    get_tier_distribution,
    score_tier,
)
from sequencer.services.suppression import (
    check_suppression,
    list_suppression,
    suppress_email,
    suppression_stats,
    unsuppress_email,
)

router = APIRouter(tags=["scoring"])

LedgerReason = Literal["hard_bounce", "spam_complaint", "unsubscribed", "manual"]


# ── Schemas ─────────────────────────────────────────────
class LeadScoreOut(BaseModel):
    entity_id: str
    score: int
    tier: str


class ScoreAdjustRequest(BaseModel):
    entity_id: str = Field(min_length=1)
    delta: float
    reason: str = ""


class ScoreEventOut(BaseModel):
    id: str
    entity_id: str
    event_type: str
    delta: float
    score_before: float
    score_after: float
    source_event_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_model(cls, row):
        return cls(
            id=row.id,
            entity_id=row.entity_id,
            event_type=row.event_type,
            delta=row.delta,
            score_before=row.score_before or 0.0,
            score_after=row.score_after or 0.0,
            source_event_id=row.source_event_id,
            created_at=as_utc(row.created_at),
        )


class SuppressionCreate(BaseModel):
    email: EmailStr
    reason: LedgerReason
    expires_at: Optional[datetime] = None
    source: str = ""
    notes: str = ""


class SuppressionOut(BaseModel):
    id: str
    email: str
    reason: str
    source: str
    notes: str
    expires_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_model(cls, entry):
        return cls(
            id=entry.id,
            email=entry.email,
            reason=entry.reason,
            source=entry.source or "",
            notes=entry.notes or "",
            expires_at=as_utc(entry.expires_at),
            created_at=as_utc(entry.created_at),
        )


class BulkSuppressionRequest(BaseModel):
    emails: list[EmailStr] = Field(min_length=1)
    reason: LedgerReason
    source: str = ""


# ── Scores ─────────────────────────────────────────────
@router.get("/scores")
async def leaderboard(
    tier: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await get_score_leaderboard(db, tenant_id, tier=tier, limit=limit)


@router.get("/scores/stats")
async def score_stats(tenant_id: str = Depends(get_tenant_id), db: AsyncSession = Depends(get_db)):
    return await get_tier_distribution(db, tenant_id)


@router.post("/scores/adjust", status_code=201)
async def adjust_score(
    body: ScoreAdjustRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Manual adjustment. Goes through ingestion so it is logged and scored like any event."""
    result = await ingest_event(
        db,
        tenant_id=tenant_id,
        event_type="score_adjustment",
        entity_id=body.entity_id,
        source="manual",
        payload={"delta": body.delta, "reason": body.reason},
        dedupe_key=f"score_adjustment:{body.entity_id}:{new_uuid()}",
    )
    score = await get_lead_score(db, tenant_id, body.entity_id)
    return {
        "entity_id": body.entity_id,
        "event_id": result.event.id if result.event else None,
        "score": score,
        "tier": score_tier(score),
    }


@router.get("/scores/{entity_id}", response_model=LeadScoreOut)
async def get_score(entity_id: str, tenant_id: str = Depends(get_tenant_id), db: AsyncSession = Depends(get_db)):
    score = await get_lead_score(db, tenant_id, entity_id)
    return LeadScoreOut(entity_id=entity_id, score=score, tier=score_tier(score))


@router.get("/scores/{entity_id}/history", response_model=list[ScoreEventOut])
async def score_history(
    entity_id: str,
    limit: int = Query(50, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    rows = await get_score_history(db, tenant_id, entity_id, limit=limit)
    return [ScoreEventOut.from_model(r) for r in rows]


# ── Suppression List ───────────────────────────────────
@router.post("/suppression", response_model=SuppressionOut, status_code=201)
async def add_suppression(
    body: SuppressionCreate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    entry = await suppress_email(
        db, tenant_id, body.email, body.reason, expires_at=body.expires_at, source=body.source, notes=body.notes
    )
    return SuppressionOut.from_model(entry)


@router.post("/suppression/bulk", status_code=201)
async def bulk_suppress(
    body: BulkSuppressionRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    count = 0
    for email in body.emails:
        await suppress_email(db, tenant_id, email, body.reason, source=body.source)
        count += 1
    return {"suppressed": count}


@router.get("/suppression", response_model=list[SuppressionOut])
async def list_suppressions(
    reason: Optional[str] = None,
    q: Optional[str] = None,
    skip: int = 0,
    limit: int = Query(100, le=500),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    entries = await list_suppression(db, tenant_id, reason=reason, q=q, skip=skip, limit=limit)
    return [SuppressionOut.from_model(e) for e in entries]


@router.get("/suppression/check")
async def check_suppressed(
    email: str,
    include_throttles: bool = True,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    check = await check_suppression(db, tenant_id, email, include_throttles=include_throttles)
    return {"email": email, "suppressed": check.suppressed, "reason": check.reason, "expires_at": check.expires_at}


@router.get("/suppression/stats")
async def get_suppression_stats(tenant_id: str = Depends(get_tenant_id), db: AsyncSession = Depends(get_db)):
    return await suppression_stats(db, tenant_id)


@router.delete("/suppression/{email}", status_code=204)
async def remove_suppression(email: str, tenant_id: str = Depends(get_tenant_id), db: AsyncSession = Depends(get_db)):
    removed = await unsuppress_email(db, tenant_id, email)
    if not removed:
        raise HTTPException(404, "Email not found in suppression list")
