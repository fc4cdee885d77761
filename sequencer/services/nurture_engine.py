"""Nurture router — long-tail track for leads that finished a primary sequence without converting.

Entry gates: address not suppressed, no open deal, no explicit negative
reply, not already in nurture. Cadence is randomised between 30 and 45 days
so sends do not cluster on one weekday. Re-entry into the primary workflow
fires on a click, a site revisit, a manual tag, or the score reaching 60.
After 12 months without activity a nurture row is archived.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sequencer.config import get_settings
from sequencer.models import Enrollment, as_utc, utcnow
from sequencer.models.nurture import NurtureEnrollment
from sequencer.services.errors import WorkflowNotFoundError
from sequencer.services.scoring_engine import get_lead_score, score_tier
from sequencer.services.suppression import check_suppression

logger = logging.getLogger(__name__)

RE_ENTRY_TRIGGERS = ("email_clicked", "page_visit", "manual_tag")
RE_ENTRY_SCORE = 60

ENGAGEMENT_EVENTS = (
    "email_opened",
    "email_clicked",
    "email_replied",
    "page_visit",
    "time_on_page",
    "form_started",
    "form_submitted",
    "meeting_booked",
    "manual_tag",
)


def next_cadence(now: datetime) -> datetime:
    settings = get_settings()
    days = random.uniform(settings.nurture_cadence_min_days, settings.nurture_cadence_max_days)
    return now + timedelta(days=days)


async def _active_nurture(db: AsyncSession, tenant_id: str, entity_id: str) -> Optional[NurtureEnrollment]:
    result = await db.execute(
        select(NurtureEnrollment).where(
            NurtureEnrollment.tenant_id == tenant_id,
            NurtureEnrollment.entity_id == entity_id,
            NurtureEnrollment.status == "active",
        ).limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def try_enrol_in_nurture(
    db: AsyncSession,
    tenant_id: str,
    entity_id: str,
    nurture_workflow_id: str,
    has_deal: bool = False,
    explicit_negative: bool = False,
    email: Optional[str] = None,
    primary_workflow_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Put a lead on the nurture track if every entry gate passes. Returns True if enrolled."""
    from sequencer.services.workflow_engine import enroll_lead, get_workflow_row

    now = as_utc(now) or utcnow()
    address = email or entity_id

    check = await check_suppression(db, tenant_id, address, include_throttles=False, now=now)
    if check.suppressed:
        logger.info(f"{entity_id} is suppressed ({check.reason}), skipping nurture enrolment")
        return False
    if has_deal:
        logger.info(f"{entity_id} has an open deal, skipping nurture")
        return False
    if explicit_negative:
        logger.info(f"{entity_id} replied negatively, skipping nurture")
        return False
    if await _active_nurture(db, tenant_id, entity_id):
        logger.info(f"{entity_id} already in nurture")
        return False
    if await get_workflow_row(db, tenant_id, nurture_workflow_id) is None:
        raise WorkflowNotFoundError(nurture_workflow_id)

    row = NurtureEnrollment(
        tenant_id=tenant_id,
        entity_id=entity_id,
        email=email,
        nurture_workflow_id=nurture_workflow_id,
        primary_workflow_id=primary_workflow_id,
        status="active",
        next_send_at=next_cadence(now),
        content_index=0,
        enrolled_at=now,
        last_activity_at=now,
    )
    next_send_at = row.next_send_at
    db.add(row)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info(f"{entity_id} entered nurture concurrently")
        return False

    initial_fields = {"email": email} if email else None
    await enroll_lead(
        db, tenant_id, nurture_workflow_id, entity_id, initial_fields=initial_fields, advance=False, now=now
    )

    logger.info(f"Enrolled {entity_id} in nurture, next send {next_send_at.isoformat()}")
    return True


async def check_re_entry_triggers(
    db: AsyncSession,
    tenant_id: str,
    entity_id: str,
    primary_workflow_id: str,
    trigger_event: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Re-enrol the lead in its primary workflow when a re-entry trigger fires.

    The lead's active nurture row, if any, is stamped ``re_entered_at`` so later
    engagement in the same stint does not restart the primary sequence.
    """
    from sequencer.services.workflow_engine import enroll_lead

    now = as_utc(now) or utcnow()
    score = await get_lead_score(db, tenant_id, entity_id, now=now)
    score_triggered = score >= RE_ENTRY_SCORE and score_tier(score) != "cold"
    event_triggered = trigger_event in RE_ENTRY_TRIGGERS

    if not (score_triggered or event_triggered):
        return False

    logger.info(f"Re-entry triggered for {entity_id} (score={score}, event={trigger_event})")
    row = await _active_nurture(db, tenant_id, entity_id)
    initial_fields = {"email": row.email} if row is not None and row.email else None
    await enroll_lead(db, tenant_id, primary_workflow_id, entity_id, initial_fields=initial_fields, now=now)

    # Re-read: advancing the new enrollment commits and may roll the session back
    row = await _active_nurture(db, tenant_id, entity_id)
    if row is not None:
        row.re_entered_at = now
        if get_settings().nurture_exclusive_with_primary:
            await _exit_nurture(db, row, now)
        else:
            await db.commit()
    return True


async def _exit_nurture(db: AsyncSession, row: NurtureEnrollment, now: datetime) -> None:
    tenant_id = row.tenant_id
    entity_id = row.entity_id
    nurture_workflow_id = row.nurture_workflow_id
    row.status = "exited"
    await db.execute(
        update(Enrollment)
        .where(
            Enrollment.tenant_id == tenant_id,
            Enrollment.entity_id == entity_id,
            Enrollment.workflow_id == nurture_workflow_id,
            Enrollment.status.in_(("active", "paused")),
        )
        .values(status="stopped", outcome="re_entered_primary", last_transition_at=now, next_check_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info(f"{entity_id} left nurture for its primary workflow")


async def record_nurture_activity(
    db: AsyncSession,
    tenant_id: str,
    entity_id: str,
    event_type: str,
    now: Optional[datetime] = None,
) -> bool:
    """Stamp engagement on an active nurture row and run the re-entry check.

    Re-entry fires at most once per nurture stint. Returns True when it fired.
    """
    if event_type not in ENGAGEMENT_EVENTS:
        return False
    row = await _active_nurture(db, tenant_id, entity_id)
    if row is None:
        return False

    now = as_utc(now) or utcnow()
    primary_workflow_id = row.primary_workflow_id
    already_re_entered = row.re_entered_at is not None
    row.last_activity_at = now
    await db.commit()

    if not primary_workflow_id or already_re_entered:
        return False
    return await check_re_entry_triggers(
        db, tenant_id, entity_id, primary_workflow_id, trigger_event=event_type, now=now
    )


async def archive_inactive_nurture_leads(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Archive active nurture rows idle past the archive window. Called daily."""
    now = as_utc(now) or utcnow()
    cutoff = now - timedelta(days=get_settings().nurture_archive_after_days)

    result = await db.execute(select(NurtureEnrollment).where(NurtureEnrollment.status == "active"))
    archived = 0
    for row in result.scalars().all():
        last_activity = as_utc(row.last_activity_at) or as_utc(row.enrolled_at)
        if last_activity and last_activity < cutoff:
            row.status = "archived"
            archived += 1
            logger.info(f"Archived inactive nurture lead {row.entity_id}")
    await db.commit()

    if archived:
        logger.info(f"Archived {archived} inactive nurture leads")
    return archived


async def advance_nurture_cadence(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Rotate content for every active row whose send date has come."""
    now = as_utc(now) or utcnow()
    result = await db.execute(
        select(NurtureEnrollment).where(
            NurtureEnrollment.status == "active",
            NurtureEnrollment.next_send_at <= now,
        )
    )
    rotated = 0
    for row in result.scalars().all():
        row.content_index = (row.content_index or 0) + 1
        row.next_send_at = next_cadence(now)
        rotated += 1
    await db.commit()

    if rotated:
        logger.info(f"Advanced nurture cadence for {rotated} leads")
    return rotated


async def list_nurture(
    db: AsyncSession,
    tenant_id: str,
    status: Optional[str] = None,
    limit: int = 100,
) -> list[NurtureEnrollment]:
    stmt = select(NurtureEnrollment).where(NurtureEnrollment.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(NurtureEnrollment.status == status)
    stmt = stmt.order_by(NurtureEnrollment.enrolled_at.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
