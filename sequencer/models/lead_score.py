"""Lead scoring and suppression models."""

from sqlalchemy import Column, DateTime, Float, Integer, String, Text, UniqueConstraint

from sequencer.database import Base
from sequencer.models import new_uuid, utcnow


class LeadScore(Base):
    """Raw (undecayed) score per lead. Decay is applied on read."""

    __tablename__ = "lead_scores"
    __table_args__ = (
        UniqueConstraint("tenant_id", "entity_id", name="uq_lead_scores_tenant_entity"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    tenant_id = Column(String(64), nullable=False, index=True)
    entity_id = Column(String(320), nullable=False)
    score = Column(Float, default=0.0)
    tier = Column(String(20), default="cold")  # cold|warm|hot|sales_ready
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}


class ScoreEvent(Base):
    """Audit trail of every non-zero score change."""

    __tablename__ = "score_events"

    id = Column(String(36), primary_key=True, default=new_uuid)
    tenant_id = Column(String(64), nullable=False)
    entity_id = Column(String(320), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    delta = Column(Float, nullable=False)
    score_before = Column(Float, default=0.0)
    score_after = Column(Float, default=0.0)
    source_event_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class SuppressionEntry(Base):
    """Tenant-scoped suppression ledger — addresses that must not be contacted."""

    __tablename__ = "suppression_list"
    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_suppression_tenant_email"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    tenant_id = Column(String(64), nullable=False, index=True)
    email = Column(String(320), nullable=False)
    reason = Column(String(50), nullable=False)  # hard_bounce|spam_complaint|unsubscribed|manual
    source = Column(String(100), default="")
    notes = Column(Text, default="")
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
