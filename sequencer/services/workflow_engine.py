"""Workflow engine — state machine that advances leads through workflow graphs.

Each lead holds an enrollment recording its current node and a free-form
state snapshot. Node types:

    wait     pause for a duration, optionally ending early when an `until` condition holds
    send     record a send intent for the mail collaborator (suppression checked first)
    branch   evaluate a condition and follow "yes" / "no"
    update   merge fields into the snapshot, optionally adjust the score
    notify   hand an internal alert to the notifier
    enrol    enroll the lead into another workflow, carrying the snapshot
    stop     terminate with an outcome reason

Advancement is triggered by events (`handle_event`) and by the scheduler
(`process_due_enrollments`); both go through `advance_enrollment`, which holds
a per-enrollment lease so the two triggers never interleave on one enrollment.

Statuses: active -> completed | stopped (absorbing); active <-> paused is
driven from outside the engine.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sequencer.config import get_settings
from sequencer.models import (
    Enrollment,
    EnrollmentLog,
    Event,
    WorkflowDefinition,
    as_utc,
    dump_json,
    load_json,
    new_uuid,
    utcnow,
)
from sequencer.services.errors import (
    EngineError,
    EnrollmentNotFoundError,
    InvalidTransitionError,
    LeaseLostError,
    WorkflowNotFoundError,
)
from sequencer.services.event_store import claim_event, ingest_event
from sequencer.services.notifier import dispatch_alert
from sequencer.services.rules_engine import EvalContext, evaluate_condition
from sequencer.services.scoring_engine import apply_score_event
from sequencer.services.suppression import check_suppression, suppress_email

logger = logging.getLogger(__name__)

NODE_TYPES = ("wait", "send", "branch", "update", "notify", "enrol", "stop")
ENROLLMENT_STATUSES = ("active", "paused", "completed", "stopped")
TERMINAL_STATUSES = ("completed", "stopped")

DEFAULT_WAIT_DAYS = 1


# ── Graph ───────────────────────────────────────────────
@dataclass
class WorkflowNode:
    node_id: str
    type: str
    config: dict = field(default_factory=dict)
    edges: dict = field(default_factory=dict)
    label: str = ""


@dataclass
class WorkflowGraph:
    workflow_id: str
    version: int
    entry_node_id: str
    nodes: dict

    @classmethod
    def from_definition(cls, workflow_id: str, version: int, definition: dict) -> "WorkflowGraph":
        nodes = {}
        for raw in definition.get("nodes") or []:
            if not isinstance(raw, dict) or not raw.get("node_id"):
                logger.warning(f"Workflow {workflow_id} v{version}: skipping malformed node {raw!r}")
                continue
            nodes[raw["node_id"]] = WorkflowNode(
                node_id=raw["node_id"],
                type=raw.get("type", ""),
                config=raw.get("config") or {},
                edges=raw.get("edges") or {},
                label=raw.get("label", ""),
            )
        return cls(
            workflow_id=workflow_id,
            version=version,
            entry_node_id=definition.get("entry_node_id", ""),
            nodes=nodes,
        )


@dataclass
class AdvanceResult:
    enrollment_id: str
    status: Optional[str] = None
    outcome: Optional[str] = None
    current_node_id: Optional[str] = None
    hops: int = 0
    skipped: bool = False


@dataclass
class _Step:
    """What executing one node decided."""

    next_node_id: Optional[str] = None
    edge: Optional[str] = None
    halt_until: Optional[datetime] = None
    stop_reason: Optional[str] = None
    result: dict = field(default_factory=dict)


def _follow(node: WorkflowNode, *handles: str) -> tuple[Optional[str], Optional[str]]:
    """First edge handle present on the node, and its target."""
    for handle in handles:
        target = node.edges.get(handle)
        if target:
            return handle, target
    return None, None


def wait_duration(config: dict) -> timedelta:
    days = config.get("duration_days")
    hours = config.get("duration_hours")
    minutes = config.get("duration_minutes")
    if days is None and hours is None and minutes is None:
        days = DEFAULT_WAIT_DAYS
    return timedelta(days=days or 0, hours=hours or 0, minutes=minutes or 0)


def resolve_recipient(snapshot: dict) -> Optional[str]:
    return snapshot.get("email") or snapshot.get("primaryEmail") or snapshot.get("primary_email")


# ── Definitions ─────────────────────────────────────────
async def get_workflow_row(
    db: AsyncSession,
    tenant_id: str,
    workflow_id: str,
    version: Optional[int] = None,
) -> Optional[WorkflowDefinition]:
    """A specific version, or the latest one when ``version`` is None."""
    stmt = select(WorkflowDefinition).where(
        WorkflowDefinition.tenant_id == tenant_id,
        WorkflowDefinition.workflow_id == workflow_id,
    )
    if version is not None:
        stmt = stmt.where(WorkflowDefinition.version == version)
    stmt = stmt.order_by(WorkflowDefinition.version.desc()).limit(1)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def load_workflow(
    db: AsyncSession,
    tenant_id: str,
    workflow_id: str,
    version: Optional[int] = None,
) -> Optional[WorkflowGraph]:
    row = await get_workflow_row(db, tenant_id, workflow_id, version)
    if row is None:
        return None
    return WorkflowGraph.from_definition(row.workflow_id, row.version, load_json(row.definition, {}) or {})


# ── Enrollment ──────────────────────────────────────────
async def _find_active_enrollment(
    db: AsyncSession, tenant_id: str, workflow_id: str, entity_id: str
) -> Optional[Enrollment]:
    result = await db.execute(
        select(Enrollment).where(
            Enrollment.tenant_id == tenant_id,
            Enrollment.workflow_id == workflow_id,
            Enrollment.entity_id == entity_id,
            Enrollment.status == "active",
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def enroll_lead(
    db: AsyncSession,
    tenant_id: str,
    workflow_id: str,
    entity_id: str,
    initial_fields: Optional[dict] = None,
    advance: bool = True,
    now: Optional[datetime] = None,
) -> str:
    """Enroll a lead at the workflow's entry node and return the enrollment id.

    Idempotent: while an active enrollment exists for (tenant, workflow, entity)
    its id is returned and nothing is written. With ``advance`` the new
    enrollment is advanced immediately; otherwise the next sweep picks it up.
    """
    now = as_utc(now) or utcnow()

    existing = await _find_active_enrollment(db, tenant_id, workflow_id, entity_id)
    if existing:
        return existing.id

    row = await get_workflow_row(db, tenant_id, workflow_id)
    if row is None:
        raise WorkflowNotFoundError(workflow_id)
    graph = WorkflowGraph.from_definition(row.workflow_id, row.version, load_json(row.definition, {}) or {})

    enrollment = Enrollment(
        id=new_uuid(),
        workflow_id=workflow_id,
        workflow_version=row.version,
        tenant_id=tenant_id,
        entity_id=entity_id,
        current_node_id=graph.entry_node_id,
        status="active",
        state_snapshot=dump_json(initial_fields or {}),
        entered_at=now,
        last_transition_at=now,
        next_check_at=now,
    )
    enrollment_id = enrollment.id
    db.add(enrollment)
    try:
        await db.commit()
    except IntegrityError:
        # Another caller enrolled the same lead concurrently
        await db.rollback()
        existing = await _find_active_enrollment(db, tenant_id, workflow_id, entity_id)
        if existing:
            return existing.id
        raise

    logger.info(f"Enrolled {entity_id} in workflow {workflow_id} v{row.version} (enrollment: {enrollment_id})")

    if advance:
        try:
            await advance_enrollment(db, enrollment_id, now=now)
        except Exception as e:
            logger.error(f"Initial advancement of enrollment {enrollment_id} failed: {e}")
    return enrollment_id


# ── Lease ───────────────────────────────────────────────
async def _acquire_lease(db: AsyncSession, enrollment_id: str, token: str) -> bool:
    wall_clock = utcnow()
    result = await db.execute(
        update(Enrollment)
        .where(
            Enrollment.id == enrollment_id,
            Enrollment.status == "active",
            or_(Enrollment.lease_expires_at.is_(None), Enrollment.lease_expires_at <= wall_clock),
        )
        .values(
            lease_token=token,
            lease_expires_at=wall_clock + timedelta(seconds=get_settings().advancement_lease_seconds),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _release_lease(db: AsyncSession, enrollment_id: str, token: str) -> None:
    await db.execute(
        update(Enrollment)
        .where(Enrollment.id == enrollment_id, Enrollment.lease_token == token)
        .values(lease_token=None, lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def _persist(
    db: AsyncSession,
    enrollment_id: str,
    token: str,
    log: Optional[EnrollmentLog] = None,
    **values,
) -> None:
    """Write enrollment columns, fenced by the lease token and the active status.

    A pause or stop committed from outside while this pass runs makes the
    write miss, so an external transition is never overwritten.
    """
    result = await db.execute(
        update(Enrollment)
        .where(
            Enrollment.id == enrollment_id,
            Enrollment.lease_token == token,
            Enrollment.status == "active",
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise LeaseLostError(f"Enrollment {enrollment_id} was taken over or left the active state")
    if log is not None:
        db.add(log)
    await db.commit()


# ── Advancement ─────────────────────────────────────────
async def advance_enrollment(
    db: AsyncSession,
    enrollment_id: str,
    now: Optional[datetime] = None,
) -> AdvanceResult:
    """Run the enrollment forward until it waits, stops, completes or hits the hop cap.

    Returns a skipped result when the enrollment is not active or another
    caller currently holds its lease.
    """
    now = as_utc(now) or utcnow()
    token = new_uuid()

    if not await _acquire_lease(db, enrollment_id, token):
        logger.debug(f"Enrollment {enrollment_id} not active or busy; skipping")
        return AdvanceResult(enrollment_id=enrollment_id, skipped=True)

    try:
        return await _advance(db, enrollment_id, token, now)
    except LeaseLostError as e:
        logger.warning(str(e))
        return AdvanceResult(enrollment_id=enrollment_id, skipped=True)
    except Exception:
        await db.rollback()
        raise
    finally:
        await _release_lease(db, enrollment_id, token)


async def _advance(db: AsyncSession, enrollment_id: str, token: str, now: datetime) -> AdvanceResult:
    settings = get_settings()
    enrollment = await db.get(Enrollment, enrollment_id, populate_existing=True)

    tenant_id = enrollment.tenant_id
    entity_id = enrollment.entity_id
    workflow_id = enrollment.workflow_id
    current_node_id = enrollment.current_node_id
    snapshot = enrollment.snapshot
    wait_until = as_utc(enrollment.wait_until)
    step_count = enrollment.step_count or 0

    result = AdvanceResult(enrollment_id=enrollment_id, status="active", current_node_id=current_node_id)

    graph = await load_workflow(db, tenant_id, workflow_id, enrollment.workflow_version)
    if graph is None:
        logger.error(f"Workflow {workflow_id} v{enrollment.workflow_version} not found for enrollment {enrollment_id}")
        return result

    while result.hops < settings.max_hops_per_pass:
        node = graph.nodes.get(current_node_id)
        if node is None:
            logger.error(f"Node {current_node_id} not found in workflow {workflow_id}")
            return result

        ctx = EvalContext(tenant_id=tenant_id, entity_id=entity_id, fields=snapshot, now=now)
        step = await _execute_node(db, node, ctx, enrollment_id, step_count, wait_until, now)
        result.hops += 1

        log = EnrollmentLog(
            enrollment_id=enrollment_id,
            tenant_id=tenant_id,
            node_id=node.node_id,
            node_type=node.type,
            edge=step.edge,
            result=dump_json(step.result),
            created_at=utcnow(),
        )

        if step.stop_reason is not None:
            await _persist(
                db, enrollment_id, token, log,
                status="stopped",
                outcome=step.stop_reason,
                state_snapshot=dump_json(snapshot),
                last_transition_at=now,
                next_check_at=None,
                wait_until=None,
            )
            logger.info(f"Enrollment {enrollment_id} stopped: {step.stop_reason}")
            result.status, result.outcome = "stopped", step.stop_reason
            return result

        if step.halt_until is not None:
            await _persist(
                db, enrollment_id, token, log,
                state_snapshot=dump_json(snapshot),
                wait_until=step.halt_until,
                next_check_at=step.halt_until,
            )
            logger.info(f"Enrollment {enrollment_id} waiting until {step.halt_until.isoformat()}")
            return result

        if step.next_node_id is None:
            # Running off the last node is the normal way a workflow finishes
            await _persist(
                db, enrollment_id, token, log,
                status="completed",
                outcome="completed",
                state_snapshot=dump_json(snapshot),
                last_transition_at=now,
                next_check_at=None,
                wait_until=None,
            )
            logger.info(f"Enrollment {enrollment_id} completed")
            result.status, result.outcome = "completed", "completed"
            return result

        current_node_id = step.next_node_id
        step_count += 1
        wait_until = None
        await _persist(
            db, enrollment_id, token, log,
            current_node_id=current_node_id,
            state_snapshot=dump_json(snapshot),
            step_count=step_count,
            wait_until=None,
            last_transition_at=now,
        )
        result.current_node_id = current_node_id

    # Hop cap: leave the enrollment due so the next trigger resumes from here
    await _persist(db, enrollment_id, token, next_check_at=now)
    logger.warning(
        f"Enrollment {enrollment_id} hit the {settings.max_hops_per_pass}-hop cap at node {current_node_id}"
    )
    return result


async def _execute_node(
    db: AsyncSession,
    node: WorkflowNode,
    ctx: EvalContext,
    enrollment_id: str,
    step_count: int,
    wait_until: Optional[datetime],
    now: datetime,
) -> _Step:
    cfg = node.config
    snapshot = ctx.fields

    if node.type == "stop":
        return _Step(stop_reason=cfg.get("reason") or "stopped", result={"reason": cfg.get("reason")})

    elif node.type == "wait":
        until = cfg.get("until")
        if wait_until is None:
            wait_until = now + wait_duration(cfg)
        elif now >= wait_until:
            edge, target = _follow(node, "default")
            return _Step(next_node_id=target, edge=edge, result={"elapsed": True})
        if until is not None and await evaluate_condition(db, until, ctx):
            edge, target = _follow(node, "met", "default")
            return _Step(next_node_id=target, edge=edge, result={"condition_met": True})
        return _Step(halt_until=wait_until, result={"wait_until": wait_until.isoformat()})

    elif node.type == "send":
        email = resolve_recipient(snapshot)
        if not email:
            logger.warning(f"No email for entity {ctx.entity_id}, skipping send at node {node.node_id}")
            edge, target = _follow(node, "default")
            return _Step(next_node_id=target, edge=edge, result={"sent": False, "reason": "no_address"})

        suppression = await check_suppression(db, ctx.tenant_id, email, now=now)
        if suppression.suppressed:
            logger.info(f"Send suppressed for {email}: {suppression.reason}")
            edge, target = _follow(node, "suppressed", "default")
            return _Step(
                next_node_id=target,
                edge=edge,
                result={"sent": False, "suppressed": True, "reason": suppression.reason},
            )

        intent = {
            "template_id": cfg.get("template_id"),
            "subject": cfg.get("subject"),
            "body": cfg.get("body"),
            "to": email,
        }
        snapshot["pending_send"] = intent
        # Keyed by position so a pass replayed after a crash cannot send twice
        await ingest_event(
            db,
            tenant_id=ctx.tenant_id,
            event_type="email_sent",
            entity_id=ctx.entity_id,
            source="workflow_engine",
            occurred_at=now,
            payload={**intent, "enrollment_id": enrollment_id, "node_id": node.node_id},
            dedupe_key=f"email_sent:{enrollment_id}:{step_count}:{node.node_id}",
            dispatch=False,
        )
        edge, target = _follow(node, "default")
        return _Step(next_node_id=target, edge=edge, result={"sent": True, "to": email})

    elif node.type == "branch":
        condition = cfg.get("condition")
        if not condition:
            edge, target = _follow(node, "default")
            return _Step(next_node_id=target, edge=edge, result={"condition": None})
        passed = await evaluate_condition(db, condition, ctx)
        edge, target = _follow(node, "yes" if passed else "no")
        return _Step(next_node_id=target, edge=edge, result={"passed": passed})

    elif node.type == "update":
        fields = cfg.get("fields")
        if isinstance(fields, dict):
            snapshot.update(fields)
        score_delta = cfg.get("score_delta")
        if score_delta:
            ingested = await ingest_event(
                db,
                tenant_id=ctx.tenant_id,
                event_type="score_adjustment",
                entity_id=ctx.entity_id,
                source="workflow_engine",
                occurred_at=now,
                payload={"delta": score_delta, "enrollment_id": enrollment_id, "node_id": node.node_id},
                dedupe_key=f"score_adjustment:{enrollment_id}:{step_count}:{node.node_id}",
                dispatch=False,
            )
            if not ingested.duplicate:
                await apply_score_event(
                    db,
                    ctx.tenant_id,
                    ctx.entity_id,
                    "score_adjustment",
                    {"delta": score_delta},
                    now=now,
                    source_event_id=ingested.event.id,
                )
        edge, target = _follow(node, "default")
        return _Step(
            next_node_id=target,
            edge=edge,
            result={"fields": sorted((fields or {}).keys()), "score_delta": score_delta},
        )

    elif node.type == "notify":
        delivered = await dispatch_alert(
            ctx.tenant_id,
            ctx.entity_id,
            cfg.get("message", ""),
            enrollment_id=enrollment_id,
            channel=cfg.get("channel", "internal"),
        )
        edge, target = _follow(node, "default")
        return _Step(next_node_id=target, edge=edge, result={"delivered": delivered})

    elif node.type == "enrol":
        target_workflow = cfg.get("target_workflow_id")
        child_id = None
        if target_workflow:
            try:
                child_id = await enroll_lead(
                    db,
                    ctx.tenant_id,
                    target_workflow,
                    ctx.entity_id,
                    initial_fields=dict(snapshot),
                    advance=False,
                    now=now,
                )
            except WorkflowNotFoundError as e:
                logger.error(f"Enrol node {node.node_id}: {e}")
        edge, target = _follow(node, "default")
        return _Step(next_node_id=target, edge=edge, result={"enrollment_id": child_id})

    logger.warning(f"Unknown node type: {node.type} (node {node.node_id})")
    edge, target = _follow(node, "default")
    return _Step(next_node_id=target, edge=edge, result={"unknown_type": node.type})


# ── Entry points ────────────────────────────────────────
async def process_due_enrollments(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """Scheduler entry point: advance every active enrollment whose check time has come.

    Each enrollment is isolated; one failure is counted and the batch goes on.
    """
    now = as_utc(now) or utcnow()
    result = await db.execute(
        select(Enrollment.id)
        .where(
            Enrollment.status == "active",
            or_(Enrollment.next_check_at.is_(None), Enrollment.next_check_at <= now),
        )
        .order_by(Enrollment.next_check_at)
    )
    due = list(result.scalars().all())

    processed = errors = skipped = 0
    for enrollment_id in due:
        try:
            outcome = await advance_enrollment(db, enrollment_id, now=now)
        except Exception as e:
            logger.error(f"Error processing enrollment {enrollment_id}: {e}")
            errors += 1
            continue
        if outcome.skipped:
            skipped += 1
        else:
            processed += 1

    if processed or errors:
        logger.info(f"Processed {processed} enrollments, {errors} errors, {skipped} skipped")
    return {"processed": processed, "errors": errors, "skipped": skipped}


async def handle_event(db: AsyncSession, event: Event, now: Optional[datetime] = None) -> dict:
    """React to an ingested event: score it, auto-suppress, and wake the lead's enrollments.

    The event is claimed first, so calling this twice for one event applies
    its effects once.
    """
    from sequencer.services.nurture_engine import record_nurture_activity

    now = as_utc(now) or utcnow()
    event_id = event.id
    tenant_id = event.tenant_id
    entity_id = event.entity_id
    event_type = event.event_type
    payload = event.payload_dict

    summary = {"handled": False, "score": None, "suppressed": None, "advanced": 0, "errors": 0}
    if not await claim_event(db, event_id):
        logger.info(f"Event {event_id} already handled")
        return summary
    summary["handled"] = True

    change = await apply_score_event(
        db, tenant_id, entity_id, event_type, payload, now=now, source_event_id=event_id
    )
    if change:
        summary["score"] = change.score

    if event_type == "email_bounced" and payload.get("bounce_type") == "hard":
        email = payload.get("to")
        if email:
            await suppress_email(db, tenant_id, email, "hard_bounce", source=f"event:{event_id}")
            summary["suppressed"] = email
    if event_type == "email_unsubscribed":
        email = payload.get("to") or payload.get("email")
        if email:
            await suppress_email(db, tenant_id, email, "unsubscribed", source=f"event:{event_id}")
            summary["suppressed"] = email

    try:
        await record_nurture_activity(db, tenant_id, entity_id, event_type, now=now)
    except EngineError as e:
        logger.error(f"Nurture re-entry for {entity_id} failed: {e}")

    result = await db.execute(
        select(Enrollment.id).where(
            Enrollment.tenant_id == tenant_id,
            Enrollment.entity_id == entity_id,
            Enrollment.status == "active",
        )
    )
    for enrollment_id in list(result.scalars().all()):
        try:
            outcome = await advance_enrollment(db, enrollment_id, now=now)
        except Exception as e:
            logger.error(f"Error handling event for enrollment {enrollment_id}: {e}")
            summary["errors"] += 1
            continue
        if not outcome.skipped:
            summary["advanced"] += 1
    return summary


# ── External controls ───────────────────────────────────
async def get_enrollment(db: AsyncSession, tenant_id: str, enrollment_id: str) -> Enrollment:
    result = await db.execute(
        select(Enrollment)
        .where(Enrollment.id == enrollment_id, Enrollment.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    enrollment = result.scalar_one_or_none()
    if enrollment is None:
        raise EnrollmentNotFoundError(enrollment_id)
    return enrollment


async def pause_enrollment(db: AsyncSession, tenant_id: str, enrollment_id: str) -> Enrollment:
    enrollment = await get_enrollment(db, tenant_id, enrollment_id)
    if enrollment.status != "active":
        raise InvalidTransitionError(f"Cannot pause a {enrollment.status} enrollment")
    enrollment.status = "paused"
    enrollment.last_transition_at = utcnow()
    await db.commit()
    logger.info(f"Enrollment {enrollment_id} paused")
    return enrollment


async def resume_enrollment(db: AsyncSession, tenant_id: str, enrollment_id: str) -> Enrollment:
    enrollment = await get_enrollment(db, tenant_id, enrollment_id)
    if enrollment.status != "paused":
        raise InvalidTransitionError(f"Cannot resume a {enrollment.status} enrollment")
    other = await _find_active_enrollment(db, tenant_id, enrollment.workflow_id, enrollment.entity_id)
    if other is not None:
        raise InvalidTransitionError(f"Lead already has active enrollment {other.id} in this workflow")
    now = utcnow()
    enrollment.status = "active"
    enrollment.last_transition_at = now
    # A pending wait keeps its deadline; otherwise pick it up on the next sweep
    enrollment.next_check_at = as_utc(enrollment.wait_until) or now
    await db.commit()
    logger.info(f"Enrollment {enrollment_id} resumed")
    return enrollment


async def stop_enrollment(
    db: AsyncSession,
    tenant_id: str,
    enrollment_id: str,
    outcome: str = "manual_stop",
) -> Enrollment:
    enrollment = await get_enrollment(db, tenant_id, enrollment_id)
    if enrollment.status in TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Enrollment is already {enrollment.status}")
    enrollment.status = "stopped"
    enrollment.outcome = outcome
    enrollment.last_transition_at = utcnow()
    enrollment.next_check_at = None
    await db.commit()
    logger.info(f"Enrollment {enrollment_id} stopped: {outcome}")
    return enrollment


async def list_enrollments(
    db: AsyncSession,
    tenant_id: str,
    status: Optional[str] = None,
    entity_id: Optional[str] = None,
    workflow_id: Optional[str] = None,
    limit: int = 200,
) -> list[Enrollment]:
    stmt = select(Enrollment).where(Enrollment.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(Enrollment.status == status)
    if entity_id:
        stmt = stmt.where(Enrollment.entity_id == entity_id)
    if workflow_id:
        stmt = stmt.where(Enrollment.workflow_id == workflow_id)
    stmt = stmt.order_by(Enrollment.last_transition_at.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
