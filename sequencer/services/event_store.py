"""Event ingestion — idempotent, append-only store of canonical interaction events.

Every producer (mail-tracking webhooks, web pixels, CRM hooks, manual actions)
goes through `ingest_event`. A dedupe key collapses redeliveries: the second
ingestion of the same key is discarded without writing a row or firing any
downstream work. A fresh event is handed to the workflow engine's
`handle_event`; that hand-off is not transactional with the insert, and the
scheduler's periodic sweep covers a crash between the two.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from sequencer.models import Event, as_utc, dump_json, utcnow

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    # Email
    "email_sent",
    "email_delivered",
    "email_opened",
    "email_clicked",
    "email_replied",
    "email_bounced",
    "email_unsubscribed",
    # Web
    "page_visit",
    "time_on_page",
    "form_started",
    "form_submitted",
    # CRM
    "field_update",
    "tag_added",
    "owner_changed",
    # Meeting
    "meeting_booked",
    # Manual
    "score_adjustment",
    "manual_tag",
)

ENTITY_TYPES = ("lead", "contact", "deal")


@dataclass
class IngestResult:
    event: Optional[Event]
    duplicate: bool = False


def derive_dedupe_key(event_type: str, entity_id: str, occurred_at: datetime) -> str:
    """Fallback key for producers without a natural idempotency id.

    Two distinct real events of the same type for the same entity sharing a
    timestamp will collapse into one; producers that can retry should pass an
    explicit key (e.g. the mail provider's webhook id).
    """
    return f"{event_type}:{entity_id}:{as_utc(occurred_at).isoformat()}"


async def find_by_dedupe_key(db: AsyncSession, tenant_id: str, dedupe_key: str) -> Optional[Event]:
    result = await db.execute(
        select(Event).where(Event.tenant_id == tenant_id, Event.dedupe_key == dedupe_key).limit(1)
    )
    return result.scalar_one_or_none()


async def ingest_event(
    db: AsyncSession,
    tenant_id: str,
    event_type: str,
    entity_id: str,
    entity_type: str = "lead",
    source: str = "",
    occurred_at: Optional[datetime] = None,
    payload: Optional[dict] = None,
    dedupe_key: Optional[str] = None,
    dispatch: bool = True,
) -> IngestResult:
    """Persist an event unless its dedupe key was already seen in the tenant.

    With ``dispatch=False`` the caller is the event's only consumer (the engine
    recording its own ``email_sent``), so the row is stored as processed and
    nothing is woken up.
    """
    now = utcnow()
    occurred_at = as_utc(occurred_at) or now
    dedupe_key = dedupe_key or derive_dedupe_key(event_type, entity_id, occurred_at)

    if await find_by_dedupe_key(db, tenant_id, dedupe_key):
        logger.info(f"Duplicate event discarded: {dedupe_key}")
        return IngestResult(event=None, duplicate=True)

    event = Event(
        tenant_id=tenant_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        source=source,
        occurred_at=occurred_at,
        received_at=now,
        payload=dump_json(payload or {}),
        dedupe_key=dedupe_key,
        processed=not dispatch,
    )
    db.add(event)
    try:
        await db.commit()
    except IntegrityError:
        # Lost an insert race on (tenant_id, dedupe_key)
        await db.rollback()
        logger.info(f"Duplicate event discarded after concurrent insert: {dedupe_key}")
        return IngestResult(event=None, duplicate=True)

    logger.info(f"Ingested {event_type} for {entity_type}:{entity_id} ({event.id})")

    if dispatch:
        from sequencer.services.workflow_engine import handle_event

        await handle_event(db, event)

    return IngestResult(event=event)


async def get_events_in_window(
    db: AsyncSession,
    tenant_id: str,
    entity_id: str,
    event_type: str,
    window: timedelta,
    now: Optional[datetime] = None,
) -> list[Event]:
    """Events of one type for one entity whose occurred_at lies in the trailing window.

    Returns an empty list when storage is unreachable so a windowed branch
    condition fails closed instead of firing on fabricated data.
    """
    now = as_utc(now) or utcnow()
    since = now - window
    try:
        result = await db.execute(
            select(Event)
            .where(
                Event.tenant_id == tenant_id,
                Event.entity_id == entity_id,
                Event.event_type == event_type,
                Event.occurred_at >= since,
                Event.occurred_at <= now,
            )
            .order_by(Event.occurred_at)
        )
    except OperationalError as e:
        logger.error(f"Event window query failed for {entity_id}: {e}")
        await db.rollback()
        return []
    return list(result.scalars().all())


async def claim_event(db: AsyncSession, event_id: str) -> bool:
    """Flip processed false -> true. Only one caller ever wins the claim."""
    result = await db.execute(
        update(Event)
        .where(Event.id == event_id, Event.processed.is_(False))
        .values(processed=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def list_events(
    db: AsyncSession,
    tenant_id: str,
    q: Optional[str] = None,
    source: Optional[str] = None,
    processed: Optional[bool] = None,
    event_types: Optional[list[str]] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Event], int]:
    conditions = [Event.tenant_id == tenant_id]
    if source:
        conditions.append(Event.source == source)
    if processed is not None:
        conditions.append(Event.processed.is_(processed))
    if event_types:
        conditions.append(Event.event_type.in_(event_types))
    if q:
        pattern = f"%{q}%"
        conditions.append(or_(Event.entity_id.ilike(pattern), Event.event_type.ilike(pattern)))

    rows = await db.execute(
        select(Event).where(*conditions).order_by(Event.occurred_at.desc()).offset(offset).limit(limit)
    )
    total = (await db.execute(select(func.count(Event.id)).where(*conditions))).scalar() or 0
    return list(rows.scalars().all()), total
