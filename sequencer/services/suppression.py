"""Suppression ledger — every send decision passes through `check_suppression`.

Rules:
  - Hard bounce, spam complaint, unsubscribe, manual: ledger entries, optionally
    expiring (e.g. "suppress for 180 days").
  - Frequency cap: max N sends per address per rolling window.
  - Domain throttle: max N sends per recipient domain per rolling window.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sequencer.config import get_settings
from sequencer.models import Event, as_utc, load_json, utcnow
from sequencer.models.lead_score import SuppressionEntry

logger = logging.getLogger(__name__)

SUPPRESSION_REASONS = (
    "hard_bounce",
    "spam_complaint",
    "unsubscribed",
    "manual",
    "frequency_cap",
    "domain_throttle",
)


@dataclass
class SuppressionCheck:
    suppressed: bool
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def email_domain(email: str) -> str:
    _, _, domain = normalize_email(email).partition("@")
    return domain


async def _get_entry(db: AsyncSession, tenant_id: str, email: str) -> Optional[SuppressionEntry]:
    result = await db.execute(
        select(SuppressionEntry).where(
            SuppressionEntry.tenant_id == tenant_id,
            SuppressionEntry.email == normalize_email(email),
        )
    )
    return result.scalar_one_or_none()


async def _recent_sends(db: AsyncSession, tenant_id: str, since: datetime) -> list[tuple[datetime, dict]]:
    result = await db.execute(
        select(Event.occurred_at, Event.payload).where(
            Event.tenant_id == tenant_id,
            Event.event_type == "email_sent",
            Event.occurred_at >= since,
        )
    )
    return [(as_utc(occurred_at), load_json(raw, {}) or {}) for occurred_at, raw in result.all()]


async def check_suppression(
    db: AsyncSession,
    tenant_id: str,
    email: str,
    include_throttles: bool = True,
    now: Optional[datetime] = None,
) -> SuppressionCheck:
    """Is this address blocked for the tenant? Throttles only apply to sends."""
    settings = get_settings()
    now = as_utc(now) or utcnow()
    address = normalize_email(email)

    entry = await _get_entry(db, tenant_id, address)
    if entry:
        expires_at = as_utc(entry.expires_at)
        if expires_at is None or expires_at > now:
            return SuppressionCheck(suppressed=True, reason=entry.reason, expires_at=expires_at)
        await db.delete(entry)
        await db.commit()
        logger.info(f"Suppression for {address} expired, removed")

    if not include_throttles:
        return SuppressionCheck(suppressed=False)

    cap_since = now - timedelta(days=settings.frequency_cap_window_days)
    domain_since = now - timedelta(minutes=settings.domain_throttle_window_minutes)
    sends = await _recent_sends(db, tenant_id, min(cap_since, domain_since))

    to_contact = [
        p for at, p in sends
        if at >= cap_since and normalize_email(str(p.get("to", ""))) == address
    ]
    if len(to_contact) >= settings.frequency_cap_max:
        return SuppressionCheck(suppressed=True, reason="frequency_cap")

    domain = email_domain(address)
    if domain:
        to_domain = [
            p for at, p in sends
            if at >= domain_since and email_domain(str(p.get("to", ""))) == domain
        ]
        if len(to_domain) >= settings.domain_throttle_max:
            return SuppressionCheck(suppressed=True, reason="domain_throttle")

    return SuppressionCheck(suppressed=False)


async def suppress_email(
    db: AsyncSession,
    tenant_id: str,
    email: str,
    reason: str,
    expires_at: Optional[datetime] = None,
    source: str = "",
    notes: str = "",
) -> SuppressionEntry:
    """Add or refresh a ledger entry for the address."""
    existing = await _get_entry(db, tenant_id, email)
    if existing:
        existing.reason = reason
        existing.expires_at = expires_at
        existing.source = source or existing.source
        existing.notes = notes or existing.notes
        existing.updated_at = utcnow()
        await db.commit()
        entry = existing
    else:
        entry = SuppressionEntry(
            tenant_id=tenant_id,
            email=normalize_email(email),
            reason=reason,
            expires_at=expires_at,
            source=source,
            notes=notes,
        )
        db.add(entry)
        await db.commit()

    until = f" until {expires_at.isoformat()}" if expires_at else " permanently"
    logger.info(f"Suppressed {entry.email} ({reason}){until}")
    return entry


async def unsuppress_email(db: AsyncSession, tenant_id: str, email: str) -> bool:
    """Remove an address from the ledger (e.g. after re-opt-in)."""
    result = await db.execute(
        delete(SuppressionEntry).where(
            SuppressionEntry.tenant_id == tenant_id,
            SuppressionEntry.email == normalize_email(email),
        )
    )
    await db.commit()
    if result.rowcount:
        logger.info(f"Removed suppression for {normalize_email(email)}")
    return result.rowcount > 0


async def list_suppression(
    db: AsyncSession,
    tenant_id: str,
    reason: Optional[str] = None,
    q: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> list[SuppressionEntry]:
    stmt = select(SuppressionEntry).where(SuppressionEntry.tenant_id == tenant_id)
    if reason:
        stmt = stmt.where(SuppressionEntry.reason == reason)
    if q:
        stmt = stmt.where(SuppressionEntry.email.ilike(f"%{q}%"))
    stmt = stmt.order_by(SuppressionEntry.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def suppression_stats(db: AsyncSession, tenant_id: str) -> dict:
    result = await db.execute(
        select(SuppressionEntry.reason, func.count(SuppressionEntry.id))
        .where(SuppressionEntry.tenant_id == tenant_id)
        .group_by(SuppressionEntry.reason)
    )
    by_reason = {reason: count for reason, count in result.all()}
    return {"total": sum(by_reason.values()), "by_reason": by_reason}
