"""Workflow definition CRUD API.

A definition change never edits a stored graph: it inserts the next version,
and running enrollments stay pinned to the version they started on.
"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sequencer.api.deps import get_tenant_id
from sequencer.database import get_db
from sequencer.models import Enrollment, WorkflowDefinition, load_json, new_uuid
from sequencer.schemas import WorkflowCreate, WorkflowOut, WorkflowStatusUpdate, WorkflowUpdate
from sequencer.services.workflow_engine import get_workflow_row

router = APIRouter(prefix="/workflows", tags=["workflows"])


async def _active_counts(db: AsyncSession, tenant_id: str) -> dict[str, int]:
    result = await db.execute(
        select(Enrollment.workflow_id, func.count(Enrollment.id))
        .where(Enrollment.tenant_id == tenant_id, Enrollment.status == "active")
        .group_by(Enrollment.workflow_id)
    )
    return {workflow_id: count for workflow_id, count in result.all()}


async def _get_or_404(
    db: AsyncSession, tenant_id: str, workflow_id: str, version: Optional[int] = None
) -> WorkflowDefinition:
    workflow = await get_workflow_row(db, tenant_id, workflow_id, version)
    if not workflow:
        raise HTTPException(404, "Workflow not found")
    return workflow


@router.get("/", response_model=list[WorkflowOut])
async def list_workflows(
    status: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Latest version of every workflow in the tenant."""
    result = await db.execute(
        select(WorkflowDefinition)
        .where(WorkflowDefinition.tenant_id == tenant_id)
        .order_by(WorkflowDefinition.workflow_id, WorkflowDefinition.version.desc())
    )
    latest = {}
    for row in result.scalars().all():
        latest.setdefault(row.workflow_id, row)
    workflows = [w for w in latest.values() if not status or w.status == status]
    workflows.sort(key=lambda w: w.created_at, reverse=True)

    counts = await _active_counts(db, tenant_id)
    return [WorkflowOut.from_model(w, counts.get(w.workflow_id, 0)) for w in workflows[skip:skip + limit]]


@router.post("/", response_model=WorkflowOut, status_code=201)
async def create_workflow(
    data: WorkflowCreate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    workflow_id = data.workflow_id or new_uuid()
    if await get_workflow_row(db, tenant_id, workflow_id):
        raise HTTPException(409, "Workflow already exists")

    workflow = WorkflowDefinition(
        workflow_id=workflow_id,
        tenant_id=tenant_id,
        name=data.name,
        version=1,
        status=data.status,
        definition=json.dumps(data.definition.model_dump()),
    )
    db.add(workflow)
    await db.commit()
    await db.refresh(workflow)
    return WorkflowOut.from_model(workflow)


@router.get("/{workflow_id}", response_model=WorkflowOut)
async def get_workflow(
    workflow_id: str,
    version: Optional[int] = Query(None, ge=1),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    workflow = await _get_or_404(db, tenant_id, workflow_id, version)
    counts = await _active_counts(db, tenant_id)
    return WorkflowOut.from_model(workflow, counts.get(workflow_id, 0))


@router.get("/{workflow_id}/versions", response_model=list[WorkflowOut])
async def list_workflow_versions(
    workflow_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(WorkflowDefinition)
        .where(WorkflowDefinition.tenant_id == tenant_id, WorkflowDefinition.workflow_id == workflow_id)
        .order_by(WorkflowDefinition.version.desc())
    )
    versions = result.scalars().all()
    if not versions:
        raise HTTPException(404, "Workflow not found")
    return [WorkflowOut.from_model(w) for w in versions]


@router.patch("/{workflow_id}", response_model=WorkflowOut)
async def update_workflow(
    workflow_id: str,
    data: WorkflowUpdate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    current = await _get_or_404(db, tenant_id, workflow_id)
    updates = data.model_dump(exclude_unset=True)
    definition = updates.pop("definition", None)

    if definition is not None and definition != load_json(current.definition, {}):
        workflow = WorkflowDefinition(
            workflow_id=workflow_id,
            tenant_id=tenant_id,
            name=updates.get("name") or current.name,
            version=current.version + 1,
            status=updates.get("status") or current.status,
            definition=json.dumps(definition),
        )
        db.add(workflow)
    else:
        workflow = current
        for key, val in updates.items():
            if val is not None:
                setattr(workflow, key, val)
    await db.commit()
    await db.refresh(workflow)

    counts = await _active_counts(db, tenant_id)
    return WorkflowOut.from_model(workflow, counts.get(workflow_id, 0))


@router.patch("/{workflow_id}/status", response_model=WorkflowOut)
async def set_workflow_status(
    workflow_id: str,
    data: WorkflowStatusUpdate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    workflow = await _get_or_404(db, tenant_id, workflow_id)
    workflow.status = data.status
    await db.commit()
    await db.refresh(workflow)
    return WorkflowOut.from_model(workflow)


@router.delete("/{workflow_id}", status_code=204)
async def delete_workflow(
    workflow_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    await _get_or_404(db, tenant_id, workflow_id)
    live = await db.execute(
        select(func.count(Enrollment.id)).where(
            Enrollment.tenant_id == tenant_id,
            Enrollment.workflow_id == workflow_id,
            Enrollment.status.in_(("active", "paused")),
        )
    )
    if live.scalar():
        raise HTTPException(409, "Workflow has live enrollments")
    await db.execute(
        delete(WorkflowDefinition).where(
            WorkflowDefinition.tenant_id == tenant_id,
            WorkflowDefinition.workflow_id == workflow_id,
        )
    )
    await db.commit()
