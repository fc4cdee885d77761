"""Tests for workflow graph and condition validation."""

import pytest
from pydantic import ValidationError

from sequencer.schemas import EventIn, WorkflowGraphSchema, condition_adapter


def graph(*nodes, entry="a"):
    return {"entry_node_id": entry, "nodes": list(nodes)}


class TestConditions:
    def test_nested_tree(self):
        cond = condition_adapter.validate_python({
            "type": "and",
            "conditions": [
                {"type": "score_threshold", "operator": "gte", "value": 60},
                {"type": "or", "conditions": [
                    {"type": "event_window", "event_type": "email_clicked", "window_days": 7},
                    {"type": "field_compare", "field": "industry", "value": "saas"},
                ]},
            ],
        })
        assert cond.type == "and"
        assert cond.conditions[1].conditions[1].operator == "eq"

    def test_event_window_needs_a_window(self):
        with pytest.raises(ValidationError):
            condition_adapter.validate_python({"type": "event_window", "event_type": "email_opened"})

    def test_min_count_defaults_to_one(self):
        cond = condition_adapter.validate_python(
            {"type": "event_window", "event_type": "email_opened", "window_ms": 1000}
        )
        assert cond.min_count == 1

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            condition_adapter.validate_python({"type": "moon_phase"})

    def test_unknown_operator(self):
        with pytest.raises(ValidationError):
            condition_adapter.validate_python({"type": "score_threshold", "operator": "approx", "value": 1})


class TestWorkflowGraph:
    def test_valid_graph(self):
        parsed = WorkflowGraphSchema.model_validate(graph(
            {"node_id": "a", "type": "send", "config": {"template_id": "x"}, "edges": {"default": "b"}},
            {"node_id": "b", "type": "wait", "config": {"duration_hours": 12,
                                                        "until": {"type": "always_true"}}},
        ))
        assert [n.node_id for n in parsed.nodes] == ["a", "b"]

    def test_empty_graph(self):
        with pytest.raises(ValidationError):
            WorkflowGraphSchema.model_validate(graph())

    def test_dangling_edge(self):
        with pytest.raises(ValidationError, match="unknown node"):
            WorkflowGraphSchema.model_validate(graph({"node_id": "a", "type": "stop", "edges": {"default": "z"}}))

    def test_missing_entry(self):
        with pytest.raises(ValidationError, match="entry node"):
            WorkflowGraphSchema.model_validate(graph({"node_id": "a", "type": "stop"}, entry="b"))

    def test_update_score_delta_must_be_numeric(self):
        with pytest.raises(ValidationError):
            WorkflowGraphSchema.model_validate(graph({"node_id": "a", "type": "update", "config": {"score_delta": "5"}}))

    def test_branch_without_condition_allowed(self):
        WorkflowGraphSchema.model_validate(graph({"node_id": "a", "type": "branch"}))


class TestEventIn:
    def test_defaults(self):
        event = EventIn(event_type="page_visit", entity_id="lead-1")
        assert event.entity_type == "lead"
        assert event.payload == {}
        assert event.dedupe_key is None

    def test_entity_type_restricted(self):
        with pytest.raises(ValidationError):
            EventIn(event_type="page_visit", entity_id="lead-1", entity_type="account")
