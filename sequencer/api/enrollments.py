"""Enrollment API — enroll leads, inspect and control running enrollments."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sequencer.api.deps import get_tenant_id
from sequencer.database import get_db
from sequencer.models import EnrollmentLog, load_json
from sequencer.schemas import EnrollmentOut, EnrollRequest
from sequencer.services.errors import EnrollmentNotFoundError, InvalidTransitionError, WorkflowNotFoundError
from sequencer.services.workflow_engine import (
    enroll_lead,
    get_enrollment,
    list_enrollments,
    pause_enrollment,
    process_due_enrollments,
    resume_enrollment,
    stop_enrollment,
)

router = APIRouter(prefix="/enrollments", tags=["enrollments"])


@router.get("/", response_model=list[EnrollmentOut])
async def get_enrollments(
    status: Optional[str] = None,
    entity_id: Optional[str] = None,
    workflow_id: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    if status == "all":
        status = None
    rows = await list_enrollments(
        db, tenant_id, status=status, entity_id=entity_id, workflow_id=workflow_id, limit=limit
    )
    return [EnrollmentOut.from_model(e) for e in rows]


@router.post("/", response_model=EnrollmentOut, status_code=201)
async def create_enrollment(
    body: EnrollRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        enrollment_id = await enroll_lead(
            db,
            tenant_id,
            body.workflow_id,
            body.entity_id,
            initial_fields=body.initial_fields,
            advance=body.advance,
        )
    except WorkflowNotFoundError as e:
        raise HTTPException(404, str(e))
    enrollment = await get_enrollment(db, tenant_id, enrollment_id)
    return EnrollmentOut.from_model(enrollment)


@router.post("/process-due")
async def run_due_enrollments(db: AsyncSession = Depends(get_db)):
    """Run one scheduler sweep now."""
    return await process_due_enrollments(db)


@router.get("/{enrollment_id}", response_model=EnrollmentOut)
async def get_enrollment_detail(
    enrollment_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        enrollment = await get_enrollment(db, tenant_id, enrollment_id)
    except EnrollmentNotFoundError:
        raise HTTPException(404, "Enrollment not found")
    return EnrollmentOut.from_model(enrollment)


@router.get("/{enrollment_id}/logs")
async def get_enrollment_logs(
    enrollment_id: str,
    limit: int = Query(100, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Node-by-node execution trail."""
    result = await db.execute(
        select(EnrollmentLog)
        .where(EnrollmentLog.enrollment_id == enrollment_id, EnrollmentLog.tenant_id == tenant_id)
        .order_by(EnrollmentLog.created_at, EnrollmentLog.id)
        .limit(limit)
    )
    return [
        {
            "node_id": log.node_id,
            "node_type": log.node_type,
            "edge": log.edge,
            "result": load_json(log.result, {}),
            "created_at": log.created_at,
        }
        for log in result.scalars().all()
    ]


async def _control(action, db: AsyncSession, tenant_id: str, enrollment_id: str) -> EnrollmentOut:
    try:
        enrollment = await action(db, tenant_id, enrollment_id)
    except EnrollmentNotFoundError:
        raise HTTPException(404, "Enrollment not found")
    except InvalidTransitionError as e:
        raise HTTPException(409, str(e))
    return EnrollmentOut.from_model(enrollment)


@router.post("/{enrollment_id}/pause", response_model=EnrollmentOut)
async def pause(enrollment_id: str, tenant_id: str = Depends(get_tenant_id), db: AsyncSession = Depends(get_db)):
    return await _control(pause_enrollment, db, tenant_id, enrollment_id)


@router.post("/{enrollment_id}/resume", response_model=EnrollmentOut)
async def resume(enrollment_id: str, tenant_id: str = Depends(get_tenant_id), db: AsyncSession = Depends(get_db)):
    return await _control(resume_enrollment, db, tenant_id, enrollment_id)


@router.post("/{enrollment_id}/stop", response_model=EnrollmentOut)
async def stop(enrollment_id: str, tenant_id: str = Depends(get_tenant_id), db: AsyncSession = Depends(get_db)):
    return await _control(stop_enrollment, db, tenant_id, enrollment_id)
