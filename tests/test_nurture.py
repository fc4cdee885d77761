"""Tests for the nurture router: entry gates, cadence, re-entry, archival."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from sequencer.config import get_settings
from sequencer.models import Enrollment, as_utc, utcnow
from sequencer.models.nurture import NurtureEnrollment
from sequencer.services.errors import WorkflowNotFoundError
from sequencer.services.event_store import ingest_event
from sequencer.services.nurture_engine import (
    advance_nurture_cadence,
    archive_inactive_nurture_leads,
    check_re_entry_triggers,
    list_nurture,
    next_cadence,
    record_nurture_activity,
    try_enrol_in_nurture,
)
from sequencer.services.scoring_engine import apply_score_event
from sequencer.services.suppression import suppress_email

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)

DRIP = {
    "entry_node_id": "hold",
    "nodes": [{"node_id": "hold", "type": "wait", "config": {"duration_days": 30}}],
}


async def nurture_rows(db):
    return (await db.execute(select(func.count(NurtureEnrollment.id)))).scalar()


class TestCadence:
    def test_next_send_between_30_and_45_days(self):
        for _ in range(200):
            gap = next_cadence(NOW) - NOW
            assert timedelta(days=30) <= gap <= timedelta(days=45)


@pytest.mark.asyncio
async def test_enrol_creates_row_and_queued_enrollment(db, make_workflow):
    await make_workflow("drip", DRIP)
    enrolled = await try_enrol_in_nurture(db, "t1", "lead-1", "drip", email="lead@example.com", now=NOW)
    assert enrolled is True

    rows = await list_nurture(db, "t1")
    assert len(rows) == 1
    gap = as_utc(rows[0].next_send_at) - NOW
    assert timedelta(days=30) < gap < timedelta(days=45)
    assert rows[0].content_index == 0

    enrollments = (await db.execute(select(Enrollment))).scalars().all()
    assert len(enrollments) == 1
    assert enrollments[0].workflow_id == "drip"
    assert enrollments[0].current_node_id == "hold"
    assert enrollments[0].step_count == 0


@pytest.mark.asyncio
async def test_refuses_suppressed_address(db, make_workflow):
    await make_workflow("drip", DRIP)
    await suppress_email(db, "t1", "lead@example.com", "unsubscribed")
    assert await try_enrol_in_nurture(db, "t1", "lead-1", "drip", email="lead@example.com", now=NOW) is False
    assert await nurture_rows(db) == 0


@pytest.mark.asyncio
async def test_entity_id_used_as_address_when_no_email(db, make_workflow):
    await make_workflow("drip", DRIP)
    await suppress_email(db, "t1", "lead@example.com", "hard_bounce")
    assert await try_enrol_in_nurture(db, "t1", "lead@example.com", "drip", now=NOW) is False
    assert await nurture_rows(db) == 0


@pytest.mark.asyncio
async def test_refuses_open_deal(db, make_workflow):
    await make_workflow("drip", DRIP)
    assert await try_enrol_in_nurture(db, "t1", "lead-1", "drip", has_deal=True, now=NOW) is False
    assert await nurture_rows(db) == 0


@pytest.mark.asyncio
async def test_refuses_explicit_negative(db, make_workflow):
    await make_workflow("drip", DRIP)
    assert await try_enrol_in_nurture(db, "t1", "lead-1", "drip", explicit_negative=True, now=NOW) is False
    assert await nurture_rows(db) == 0


@pytest.mark.asyncio
async def test_refuses_second_active_row(db, make_workflow):
    await make_workflow("drip", DRIP)
    assert await try_enrol_in_nurture(db, "t1", "lead-1", "drip", now=NOW) is True
    assert await try_enrol_in_nurture(db, "t1", "lead-1", "drip", now=NOW) is False
    assert await nurture_rows(db) == 1


@pytest.mark.asyncio
async def test_unknown_nurture_workflow(db):
    with pytest.raises(WorkflowNotFoundError):
        await try_enrol_in_nurture(db, "t1", "lead-1", "missing", now=NOW)
    assert await nurture_rows(db) == 0


@pytest.mark.asyncio
async def test_re_entry_on_trigger_event(db, make_workflow):
    await make_workflow("primary", DRIP)
    assert await check_re_entry_triggers(db, "t1", "lead-1", "primary", trigger_event="email_clicked") is True
    enrollment = (await db.execute(select(Enrollment))).scalar_one()
    assert enrollment.workflow_id == "primary"


@pytest.mark.asyncio
async def test_re_entry_on_score(db, make_workflow):
    await make_workflow("primary", DRIP)
    await apply_score_event(db, "t1", "lead-1", "score_adjustment", {"delta": 65})
    assert await check_re_entry_triggers(db, "t1", "lead-1", "primary") is True


@pytest.mark.asyncio
async def test_no_re_entry_without_trigger(db, make_workflow):
    await make_workflow("primary", DRIP)
    await apply_score_event(db, "t1", "lead-1", "score_adjustment", {"delta": 30})
    assert await check_re_entry_triggers(db, "t1", "lead-1", "primary", trigger_event="email_opened") is False
    assert (await db.execute(select(func.count(Enrollment.id)))).scalar() == 0


@pytest.mark.asyncio
async def test_tracks_coexist_by_default(db, make_workflow):
    await make_workflow("drip", DRIP)
    await make_workflow("primary", DRIP)
    await try_enrol_in_nurture(db, "t1", "lead-1", "drip", primary_workflow_id="primary")

    await check_re_entry_triggers(db, "t1", "lead-1", "primary", trigger_event="page_visit")

    rows = await list_nurture(db, "t1")
    assert rows[0].status == "active"
    statuses = {e.workflow_id: e.status for e in (await db.execute(select(Enrollment))).scalars()}
    assert statuses == {"drip": "active", "primary": "active"}


@pytest.mark.asyncio
async def test_exclusive_policy_exits_nurture(db, make_workflow, monkeypatch):
    monkeypatch.setattr(get_settings(), "nurture_exclusive_with_primary", True)
    await make_workflow("drip", DRIP)
    await make_workflow("primary", DRIP)
    await try_enrol_in_nurture(db, "t1", "lead-1", "drip", primary_workflow_id="primary")

    await check_re_entry_triggers(db, "t1", "lead-1", "primary", trigger_event="manual_tag")

    rows = await list_nurture(db, "t1", status="exited")
    assert len(rows) == 1
    result = await db.execute(select(Enrollment).execution_options(populate_existing=True))
    by_workflow = {e.workflow_id: e for e in result.scalars()}
    assert by_workflow["drip"].status == "stopped"
    assert by_workflow["drip"].outcome == "re_entered_primary"
    assert by_workflow["primary"].status == "active"


@pytest.mark.asyncio
async def test_activity_event_triggers_re_entry(db, make_workflow):
    await make_workflow("drip", DRIP)
    await make_workflow("primary", DRIP)
    yesterday = utcnow() - timedelta(days=1)
    await try_enrol_in_nurture(db, "t1", "lead-1", "drip", primary_workflow_id="primary", now=yesterday)

    await ingest_event(db, "t1", "email_clicked", "lead-1")

    rows = await list_nurture(db, "t1")
    assert as_utc(rows[0].last_activity_at) > yesterday
    workflows = {e.workflow_id for e in (await db.execute(select(Enrollment))).scalars()}
    assert workflows == {"drip", "primary"}


@pytest.mark.asyncio
async def test_non_engagement_events_ignored(db, make_workflow):
    await make_workflow("drip", DRIP)
    await try_enrol_in_nurture(db, "t1", "lead-1", "drip", now=NOW)
    assert await record_nurture_activity(db, "t1", "lead-1", "owner_changed") is False
    rows = await list_nurture(db, "t1")
    assert as_utc(rows[0].last_activity_at) == NOW


@pytest.mark.asyncio
async def test_archive_only_idle_rows(db):
    def row(entity_id, last_activity_at, enrolled_at=NOW - timedelta(days=500), status="active"):
        return NurtureEnrollment(
            tenant_id="t1",
            entity_id=entity_id,
            nurture_workflow_id="drip",
            status=status,
            enrolled_at=enrolled_at,
            last_activity_at=last_activity_at,
        )

    db.add_all([
        row("idle", NOW - timedelta(days=400)),
        row("recent", NOW - timedelta(days=100)),
        row("never-active-old", None, enrolled_at=NOW - timedelta(days=361)),
        row("never-active-new", None, enrolled_at=NOW - timedelta(days=10)),
        row("already-exited", NOW - timedelta(days=400), status="exited"),
    ])
    await db.commit()

    assert await archive_inactive_nurture_leads(db, now=NOW) == 2

    statuses = {r.entity_id: r.status for r in await list_nurture(db, "t1")}
    assert statuses == {
        "idle": "archived",
        "recent": "active",
        "never-active-old": "archived",
        "never-active-new": "active",
        "already-exited": "exited",
    }


@pytest.mark.asyncio
async def test_cadence_rotates_due_rows(db):
    db.add_all([
        NurtureEnrollment(tenant_id="t1", entity_id="due", nurture_workflow_id="drip",
                          next_send_at=NOW - timedelta(hours=1), content_index=2),
        NurtureEnrollment(tenant_id="t1", entity_id="later", nurture_workflow_id="drip",
                          next_send_at=NOW + timedelta(days=3), content_index=0),
    ])
    await db.commit()

    assert await advance_nurture_cadence(db, now=NOW) == 1

    rows = {r.entity_id: r for r in await list_nurture(db, "t1")}
    assert rows["due"].content_index == 3
    assert timedelta(days=30) <= as_utc(rows["due"].next_send_at) - NOW <= timedelta(days=45)
    assert rows["later"].content_index == 0


FINISH = {
    "entry_node_id": "done",
    "nodes": [{"node_id": "done", "type": "stop", "config": {"reason": "done"}}],
}

WELCOME_BACK = {
    "entry_node_id": "hello",
    "nodes": [{"node_id": "hello", "type": "send", "config": {"template_id": "welcome-back"}}],
}


@pytest.mark.asyncio
async def test_re_entry_fires_once_per_stint(db, make_workflow):
    await make_workflow("drip", DRIP)
    await make_workflow("primary", FINISH)
    await try_enrol_in_nurture(db, "t1", "lead-1", "drip", primary_workflow_id="primary")
    await apply_score_event(db, "t1", "lead-1", "score_adjustment", {"delta": 120})

    for i in range(3):
        await ingest_event(db, "t1", "email_opened", "lead-1", dedupe_key=f"open-{i}")

    primary = (await db.execute(
        select(func.count(Enrollment.id)).where(Enrollment.workflow_id == "primary")
    )).scalar()
    assert primary == 1
    rows = await list_nurture(db, "t1")
    assert rows[0].status == "active"
    assert rows[0].re_entered_at is not None


@pytest.mark.asyncio
async def test_re_entered_lead_still_records_activity(db, make_workflow):
    await make_workflow("drip", DRIP)
    await make_workflow("primary", FINISH)
    await try_enrol_in_nurture(db, "t1", "lead-1", "drip", primary_workflow_id="primary", now=NOW)
    assert await record_nurture_activity(db, "t1", "lead-1", "email_clicked", now=NOW) is True

    later = NOW + timedelta(days=5)
    assert await record_nurture_activity(db, "t1", "lead-1", "email_clicked", now=later) is False
    rows = await list_nurture(db, "t1")
    assert as_utc(rows[0].last_activity_at) == later


@pytest.mark.asyncio
async def test_gates_run_before_workflow_lookup(db):
    await suppress_email(db, "t1", "lead@example.com", "unsubscribed")
    assert await try_enrol_in_nurture(db, "t1", "lead-1", "missing", email="lead@example.com", now=NOW) is False
    assert await try_enrol_in_nurture(db, "t1", "lead-2", "missing", has_deal=True, now=NOW) is False
    assert await nurture_rows(db) == 0


@pytest.mark.asyncio
async def test_re_entry_carries_nurture_email(db, make_workflow):
    await make_workflow("drip", DRIP)
    await make_workflow("primary", WELCOME_BACK)
    await try_enrol_in_nurture(
        db, "t1", "lead-1", "drip", email="lead@example.com", primary_workflow_id="primary", now=NOW
    )

    assert await check_re_entry_triggers(db, "t1", "lead-1", "primary", trigger_event="manual_tag", now=NOW)

    result = await db.execute(
        select(Enrollment)
        .where(Enrollment.workflow_id == "primary")
        .execution_options(populate_existing=True)
    )
    enrollment = result.scalar_one()
    assert enrollment.status == "completed"
    assert enrollment.snapshot["pending_send"]["to"] == "lead@example.com"
