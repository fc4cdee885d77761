"""Pydantic schemas for API request/response and workflow graph validation."""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from sequencer.models import as_utc, load_json


# ── Conditions ───────────────────────────────────────────
Operator = Literal["eq", "neq", "gt", "gte", "lt", "lte", "contains", "not_contains"]


class AlwaysTrue(BaseModel):
    type: Literal["always_true"]


class AndCondition(BaseModel):
    type: Literal["and"]
    conditions: list["Condition"] = Field(default_factory=list)


class OrCondition(BaseModel):
    type: Literal["or"]
    conditions: list["Condition"] = Field(default_factory=list)


class EventWindow(BaseModel):
    type: Literal["event_window"]
    event_type: str
    window_ms: Optional[float] = Field(default=None, ge=0)
    window_days: Optional[float] = Field(default=None, ge=0)
    window_hours: Optional[float] = Field(default=None, ge=0)
    min_count: int = Field(default=1, ge=0)

    @model_validator(mode="after")
    def _has_window(self):
        if self.window_ms is None and self.window_days is None and self.window_hours is None:
            raise ValueError("event_window needs window_ms, window_days or window_hours")
        return self


class FieldCompare(BaseModel):
    type: Literal["field_compare"]
    field: str
    operator: Operator = "eq"
    value: Union[str, int, float, bool, None] = None


class ScoreThreshold(BaseModel):
    type: Literal["score_threshold"]
    operator: Operator = "gte"
    value: float


Condition = Annotated[
    Union[AlwaysTrue, AndCondition, OrCondition, EventWindow, FieldCompare, ScoreThreshold],
    Field(discriminator="type"),
]
AndCondition.model_rebuild()
OrCondition.model_rebuild()

condition_adapter = TypeAdapter(Condition)


def _check_condition(node_id: str, raw) -> None:
    try:
        condition_adapter.validate_python(raw)
    except ValidationError as e:
        raise ValueError(f"node {node_id}: invalid condition ({e.error_count()} errors)") from e


# ── Workflow graph ───────────────────────────────────────
NodeType = Literal["wait", "send", "branch", "update", "notify", "enrol", "stop"]


class WorkflowNodeSchema(BaseModel):
    node_id: str = Field(min_length=1)
    type: NodeType
    label: str = ""
    config: dict = Field(default_factory=dict)
    edges: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_config(self):
        cfg = self.config
        if self.type == "branch" and cfg.get("condition") is not None:
            _check_condition(self.node_id, cfg["condition"])
        if self.type == "wait":
            for key in ("duration_days", "duration_hours", "duration_minutes"):
                value = cfg.get(key)
                if value is not None and (not isinstance(value, (int, float)) or value < 0):
                    raise ValueError(f"wait node {self.node_id}: {key} must be a non-negative number")
            if cfg.get("until") is not None:
                _check_condition(self.node_id, cfg["until"])
        if self.type == "update":
            if cfg.get("fields") is not None and not isinstance(cfg["fields"], dict):
                raise ValueError(f"update node {self.node_id}: fields must be an object")
            delta = cfg.get("score_delta")
            if delta is not None and (isinstance(delta, bool) or not isinstance(delta, (int, float))):
                raise ValueError(f"update node {self.node_id}: score_delta must be a number")
        if self.type == "enrol" and not cfg.get("target_workflow_id"):
            raise ValueError(f"enrol node {self.node_id}: target_workflow_id is required")
        return self


class WorkflowGraphSchema(BaseModel):
    """A workflow graph as stored. Rejected here rather than failing during traversal."""

    entry_node_id: str
    nodes: list[WorkflowNodeSchema] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_graph(self):
        ids = [n.node_id for n in self.nodes]
        if len(ids) != len(set(ids)):
            raise ValueError("node ids must be unique")
        known = set(ids)
        if self.entry_node_id not in known:
            raise ValueError(f"entry node {self.entry_node_id} is not defined")
        for node in self.nodes:
            for handle, target in node.edges.items():
                if target not in known:
                    raise ValueError(f"node {node.node_id} edge '{handle}' points to unknown node {target}")
        return self


# ── Events ───────────────────────────────────────────────
class EventIn(BaseModel):
    event_type: str
    entity_type: Literal["lead", "contact", "deal"] = "lead"
    entity_id: str = Field(min_length=1)
    source: str = ""
    occurred_at: Optional[datetime] = None
    payload: dict = Field(default_factory=dict)
    dedupe_key: Optional[str] = None


class EventOut(BaseModel):
    event_id: str
    tenant_id: str
    event_type: str
    entity_type: str
    entity_id: str
    source: str
    occurred_at: datetime
    received_at: datetime
    payload: dict
    dedupe_key: str
    processed: bool

    @classmethod
    def from_model(cls, event):
        return cls(
            event_id=event.id,
            tenant_id=event.tenant_id,
            event_type=event.event_type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            source=event.source or "",
            occurred_at=as_utc(event.occurred_at),
            received_at=as_utc(event.received_at),
            payload=load_json(event.payload, {}) or {},
            dedupe_key=event.dedupe_key,
            processed=bool(event.processed),
        )


class IngestOut(BaseModel):
    duplicate: bool
    event: Optional[EventOut] = None


class EventListOut(BaseModel):
    events: list[EventOut]
    total: int


# ── Workflows ────────────────────────────────────────────
class WorkflowCreate(BaseModel):
    workflow_id: Optional[str] = None
    name: str = Field(min_length=1)
    status: Literal["draft", "active", "paused", "archived"] = "draft"
    definition: WorkflowGraphSchema


class WorkflowUpdate(BaseModel):
    name: Optional[str] = None
    status: Optional[Literal["draft", "active", "paused", "archived"]] = None
    definition: Optional[WorkflowGraphSchema] = None


class WorkflowStatusUpdate(BaseModel):
    status: Literal["draft", "active", "paused", "archived"]


class WorkflowOut(BaseModel):
    id: str
    workflow_id: str
    tenant_id: str
    name: str
    version: int
    status: str
    definition: dict
    enrollment_count: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, wf, enrollment_count: int = 0):
        return cls(
            id=wf.id,
            workflow_id=wf.workflow_id,
            tenant_id=wf.tenant_id,
            name=wf.name,
            version=wf.version,
            status=wf.status or "draft",
            definition=load_json(wf.definition, {}) or {},
            enrollment_count=enrollment_count,
            created_at=as_utc(wf.created_at),
            updated_at=as_utc(wf.updated_at),
        )


# ── Enrollments ──────────────────────────────────────────
class EnrollRequest(BaseModel):
    workflow_id: str
    entity_id: str = Field(min_length=1)
    initial_fields: dict = Field(default_factory=dict)
    advance: bool = True


class EnrollmentOut(BaseModel):
    enrollment_id: str
    workflow_id: str
    workflow_version: int
    tenant_id: str
    entity_id: str
    current_node_id: str
    status: str
    outcome: Optional[str] = None
    state_snapshot: dict
    entered_at: datetime
    last_transition_at: Optional[datetime] = None
    next_check_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, enrollment):
        return cls(
            enrollment_id=enrollment.id,
            workflow_id=enrollment.workflow_id,
            workflow_version=enrollment.workflow_version,
            tenant_id=enrollment.tenant_id,
            entity_id=enrollment.entity_id,
            current_node_id=enrollment.current_node_id,
            status=enrollment.status,
            outcome=enrollment.outcome,
            state_snapshot=load_json(enrollment.state_snapshot, {}) or {},
            entered_at=as_utc(enrollment.entered_at),
            last_transition_at=as_utc(enrollment.last_transition_at),
            next_check_at=as_utc(enrollment.next_check_at),
        )


# ── Nurture ──────────────────────────────────────────────
class NurtureEnrolRequest(BaseModel):
    entity_id: str = Field(min_length=1)
    nurture_workflow_id: str
    email: Optional[str] = None
    primary_workflow_id: Optional[str] = None
    has_deal: bool = False
    explicit_negative: bool = False


class ReEntryRequest(BaseModel):
    entity_id: str = Field(min_length=1)
    primary_workflow_id: str
    trigger_event: Optional[str] = None


class NurtureOut(BaseModel):
    id: str
    tenant_id: str
    entity_id: str
    nurture_workflow_id: str
    primary_workflow_id: Optional[str] = None
    status: str
    next_send_at: Optional[datetime] = None
    content_index: int
    enrolled_at: datetime
    last_activity_at: Optional[datetime] = None
    re_entered_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row):
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            entity_id=row.entity_id,
            nurture_workflow_id=row.nurture_workflow_id,
            primary_workflow_id=row.primary_workflow_id,
            status=row.status,
            next_send_at=as_utc(row.next_send_at),
            content_index=row.content_index or 0,
            enrolled_at=as_utc(row.enrolled_at),
            last_activity_at=as_utc(row.last_activity_at),
            re_entered_at=as_utc(row.re_entered_at),
        )
