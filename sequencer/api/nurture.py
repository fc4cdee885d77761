"""Nurture track API."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from sequencer.api.deps import get_tenant_id
from sequencer.database import get_db
from sequencer.schemas import NurtureEnrolRequest, NurtureOut, ReEntryRequest
from sequencer.services.errors import WorkflowNotFoundError
from sequencer.services.nurture_engine import (
    archive_inactive_nurture_leads,
    check_re_entry_triggers,
    list_nurture,
    try_enrol_in_nurture,
)

router = APIRouter(prefix="/nurture", tags=["nurture"])


@router.get("/", response_model=list[NurtureOut])
async def get_nurture(
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    rows = await list_nurture(db, tenant_id, status=status, limit=limit)
    return [NurtureOut.from_model(r) for r in rows]


@router.post("/enrol")
async def enrol(
    body: NurtureEnrolRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        enrolled = await try_enrol_in_nurture(
            db,
            tenant_id,
            body.entity_id,
            body.nurture_workflow_id,
            has_deal=body.has_deal,
            explicit_negative=body.explicit_negative,
            email=body.email,
            primary_workflow_id=body.primary_workflow_id,
        )
    except WorkflowNotFoundError as e:
        raise HTTPException(404, str(e))
    return {"entity_id": body.entity_id, "enrolled": enrolled}


@router.post("/re-entry")
async def re_entry(
    body: ReEntryRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        triggered = await check_re_entry_triggers(
            db, tenant_id, body.entity_id, body.primary_workflow_id, trigger_event=body.trigger_event
        )
    except WorkflowNotFoundError as e:
        raise HTTPException(404, str(e))
    return {"entity_id": body.entity_id, "re_entered": triggered}


@router.post("/archive")
async def archive(db: AsyncSession = Depends(get_db)):
    """Run the inactivity archive now (normally the daily beat task)."""
    archived = await archive_inactive_nurture_leads(db)
    return {"archived": archived}
