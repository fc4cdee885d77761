"""Tests for the suppression ledger and send throttles."""

from datetime import datetime, timedelta, timezone

import pytest

from sequencer.config import get_settings
from sequencer.services.event_store import ingest_event
from sequencer.services.suppression import (
    check_suppression,
    email_domain,
    list_suppression,
    normalize_email,
    suppress_email,
    suppression_stats,
    unsuppress_email,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def record_send(db, to, at, entity_id="lead-1"):
    await ingest_event(
        db, "t1", "email_sent", entity_id, occurred_at=at, payload={"to": to},
        dedupe_key=f"send:{to}:{at.isoformat()}", dispatch=False,
    )


class TestAddressHelpers:
    def test_normalize(self):
        assert normalize_email("  Jane@Example.COM ") == "jane@example.com"

    def test_domain(self):
        assert email_domain("jane@Example.com") == "example.com"
        assert email_domain("not-an-address") == ""


@pytest.mark.asyncio
async def test_unknown_address_not_suppressed(db):
    check = await check_suppression(db, "t1", "fresh@example.com", now=NOW)
    assert not check.suppressed
    assert check.reason is None


@pytest.mark.asyncio
async def test_ledger_entry_blocks(db):
    await suppress_email(db, "t1", "Bounce@Example.com", "hard_bounce", source="event:1")
    check = await check_suppression(db, "t1", "bounce@example.com", now=NOW)
    assert check.suppressed
    assert check.reason == "hard_bounce"


@pytest.mark.asyncio
async def test_ledger_is_tenant_scoped(db):
    await suppress_email(db, "t1", "a@example.com", "manual")
    assert not (await check_suppression(db, "t2", "a@example.com", now=NOW)).suppressed


@pytest.mark.asyncio
async def test_expiring_entry(db):
    await suppress_email(db, "t1", "pause@example.com", "manual", expires_at=NOW + timedelta(days=180))

    during = await check_suppression(db, "t1", "pause@example.com", now=NOW + timedelta(days=10))
    assert during.suppressed
    assert during.expires_at == NOW + timedelta(days=180)

    after = await check_suppression(db, "t1", "pause@example.com", now=NOW + timedelta(days=181))
    assert not after.suppressed
    assert await list_suppression(db, "t1") == []


@pytest.mark.asyncio
async def test_upsert_refreshes_reason(db):
    await suppress_email(db, "t1", "a@example.com", "manual")
    await suppress_email(db, "t1", "a@example.com", "unsubscribed")
    entries = await list_suppression(db, "t1")
    assert len(entries) == 1
    assert entries[0].reason == "unsubscribed"


@pytest.mark.asyncio
async def test_unsuppress(db):
    await suppress_email(db, "t1", "a@example.com", "manual")
    assert await unsuppress_email(db, "t1", "A@example.com") is True
    assert await unsuppress_email(db, "t1", "a@example.com") is False
    assert not (await check_suppression(db, "t1", "a@example.com", now=NOW)).suppressed


@pytest.mark.asyncio
async def test_frequency_cap(db):
    cap = get_settings().frequency_cap_max
    for i in range(cap):
        await record_send(db, "busy@example.com", NOW - timedelta(days=1, minutes=i))

    check = await check_suppression(db, "t1", "busy@example.com", now=NOW)
    assert check.suppressed
    assert check.reason == "frequency_cap"

    # Ledger-only checks ignore throttles
    assert not (await check_suppression(db, "t1", "busy@example.com", include_throttles=False, now=NOW)).suppressed

    # Outside the rolling window the cap no longer applies
    later = NOW + timedelta(days=get_settings().frequency_cap_window_days)
    assert not (await check_suppression(db, "t1", "busy@example.com", now=later)).suppressed


@pytest.mark.asyncio
async def test_domain_throttle(db, monkeypatch):
    monkeypatch.setattr(get_settings(), "domain_throttle_max", 3)
    for i in range(3):
        await record_send(db, f"user{i}@bigcorp.com", NOW - timedelta(minutes=5 + i))

    check = await check_suppression(db, "t1", "someone.else@bigcorp.com", now=NOW)
    assert check.suppressed
    assert check.reason == "domain_throttle"
    assert not (await check_suppression(db, "t1", "someone@smallco.com", now=NOW)).suppressed


@pytest.mark.asyncio
async def test_stats(db):
    await suppress_email(db, "t1", "a@example.com", "hard_bounce")
    await suppress_email(db, "t1", "b@example.com", "hard_bounce")
    await suppress_email(db, "t1", "c@example.com", "unsubscribed")
    stats = await suppression_stats(db, "t1")
    assert stats["total"] == 3
    assert stats["by_reason"] == {"hard_bounce": 2, "unsubscribed": 1}
