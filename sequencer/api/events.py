"""Event ingestion API."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from sequencer.api.deps import get_tenant_id
from sequencer.database import get_db
from sequencer.schemas import EventIn, EventListOut, EventOut, IngestOut
from sequencer.services.event_store import EVENT_TYPES, ingest_event, list_events

router = APIRouter(prefix="/events", tags=["events"])


@router.post("/", response_model=IngestOut, status_code=201)
async def create_event(
    body: EventIn,
    response: Response,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Ingest one event. Redeliveries with a known dedupe key answer 200 with duplicate=true."""
    if body.event_type not in EVENT_TYPES:
        raise HTTPException(422, f"Unknown event type: {body.event_type}")

    result = await ingest_event(
        db,
        tenant_id=tenant_id,
        event_type=body.event_type,
        entity_id=body.entity_id,
        entity_type=body.entity_type,
        source=body.source,
        occurred_at=body.occurred_at,
        payload=body.payload,
        dedupe_key=body.dedupe_key,
    )
    if result.duplicate:
        response.status_code = 200
        return IngestOut(duplicate=True)

    await db.refresh(result.event)
    return IngestOut(duplicate=False, event=EventOut.from_model(result.event))


@router.get("/", response_model=EventListOut)
async def get_events(
    q: Optional[str] = None,
    source: Optional[str] = None,
    processed: Optional[bool] = None,
    event_type: Optional[str] = Query(None, description="Comma-separated event types"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    event_types = [t.strip() for t in event_type.split(",") if t.strip()] if event_type else None
    rows, total = await list_events(
        db,
        tenant_id,
        q=q,
        source=source,
        processed=processed,
        event_types=event_types,
        limit=limit,
        offset=offset,
    )
    return EventListOut(events=[EventOut.from_model(e) for e in rows], total=total)
