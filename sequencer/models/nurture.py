"""Nurture track model."""

from sqlalchemy import Column, DateTime, Index, Integer, String

from sequencer.database import Base
from sequencer.models import ACTIVE_ONLY, new_uuid, utcnow


class NurtureEnrollment(Base):
    """A lead's position in the slow-cadence nurture track."""

    __tablename__ = "nurture_enrollments"
    __table_args__ = (
        Index(
            "uq_active_nurture",
            "tenant_id",
            "entity_id",
            unique=True,
            postgresql_where=ACTIVE_ONLY,
            sqlite_where=ACTIVE_ONLY,
        ),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    tenant_id = Column(String(64), nullable=False, index=True)
    entity_id = Column(String(320), nullable=False)
    email = Column(String(320), nullable=True)
    nurture_workflow_id = Column(String(64), nullable=False)
    primary_workflow_id = Column(String(64), nullable=True)
    status = Column(String(20), default="active")  # active|exited|archived
    next_send_at = Column(DateTime(timezone=True), nullable=True)
    content_index = Column(Integer, default=0)
    enrolled_at = Column(DateTime(timezone=True), default=utcnow)
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    # Set when this stint sent the lead back to its primary workflow
    re_entered_at = Column(DateTime(timezone=True), nullable=True)
