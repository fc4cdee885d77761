"""SQLAlchemy models — portable across SQLite and PostgreSQL."""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)

from sequencer.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def load_json(raw: Any, default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default


def dump_json(value: Any) -> str:
    return json.dumps(value, default=str)


ACTIVE_ONLY = text("status = 'active'")


# ── Event ───────────────────────────────────────────────
class Event(Base):
    """Canonical interaction event. Append-only; only `processed` ever changes."""

    __tablename__ = "crm_events"
    __table_args__ = (
        UniqueConstraint("tenant_id", "dedupe_key", name="uq_crm_events_tenant_dedupe"),
        Index("ix_crm_events_entity_type_time", "tenant_id", "entity_id", "event_type", "occurred_at"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    tenant_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    entity_type = Column(String(20), nullable=False, default="lead")  # lead|contact|deal
    entity_id = Column(String(320), nullable=False)
    source = Column(String(100), default="")
    occurred_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    payload = Column(Text, default="{}")  # JSON stored as text for portability
    dedupe_key = Column(String(500), nullable=False)
    processed = Column(Boolean, default=False)

    @property
    def payload_dict(self) -> dict:
        return load_json(self.payload, {}) or {}


# ── Workflow Definition ─────────────────────────────────
class WorkflowDefinition(Base):
    """One immutable version of a workflow graph."""

    __tablename__ = "workflow_definitions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "workflow_id", "version", name="uq_workflow_version"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    workflow_id = Column(String(64), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    name = Column(String(300), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    status = Column(String(20), default="draft")  # draft|active|paused|archived
    definition = Column(Text, default="{}")  # JSON: {entry_node_id, nodes: [...]}
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ── Enrollment ──────────────────────────────────────────
class Enrollment(Base):
    """A lead's live position inside one workflow version."""

    __tablename__ = "workflow_enrollments"
    __table_args__ = (
        Index(
            "uq_active_enrollment",
            "tenant_id",
            "workflow_id",
            "entity_id",
            unique=True,
            postgresql_where=ACTIVE_ONLY,
            sqlite_where=ACTIVE_ONLY,
        ),
        Index("ix_enrollments_due", "status", "next_check_at"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    workflow_id = Column(String(64), nullable=False)
    workflow_version = Column(Integer, nullable=False, default=1)
    tenant_id = Column(String(64), nullable=False, index=True)
    entity_id = Column(String(320), nullable=False, index=True)
    current_node_id = Column(String(100), nullable=False)
    status = Column(String(20), default="active")  # active|paused|completed|stopped
    outcome = Column(String(200), nullable=True)
    state_snapshot = Column(Text, default="{}")
    entered_at = Column(DateTime(timezone=True), default=utcnow)
    last_transition_at = Column(DateTime(timezone=True), default=utcnow)
    next_check_at = Column(DateTime(timezone=True), nullable=True)
    # Engine bookkeeping
    wait_until = Column(DateTime(timezone=True), nullable=True)
    step_count = Column(Integer, default=0)
    lease_token = Column(String(36), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def enrollment_id(self) -> str:
        return self.id

    @property
    def snapshot(self) -> dict:
        return load_json(self.state_snapshot, {}) or {}


# ── Enrollment Log ──────────────────────────────────────
class EnrollmentLog(Base):
    """One row per node executed by the advancement routine."""

    __tablename__ = "enrollment_logs"

    id = Column(String(36), primary_key=True, default=new_uuid)
    enrollment_id = Column(String(36), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False)
    node_id = Column(String(100), nullable=False)
    node_type = Column(String(20), default="")
    edge = Column(String(50), nullable=True)
    result = Column(Text, default="{}")
    created_at = Column(DateTime(timezone=True), default=utcnow)


from sequencer.models import lead_score, nurture  # noqa: E402,F401
