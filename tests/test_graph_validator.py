"""Tests for structural validation of workflow definitions."""

import pytest

from taskflow.core.exceptions import GraphValidationError
from taskflow.core.graph_validator import GraphValidator, decision_branches, find_back_edges

from conftest import build_workflow, linear_workflow


@pytest.fixture
def validator():
    return GraphValidator()


def codes(result):
    return {violation.code for violation in result.violations}


class TestGraphValidator:
    """Test cases for GraphValidator."""

    def test_valid_linear_workflow(self, validator):
        result = validator.validate(linear_workflow())
        assert result.is_valid
        assert result.violations == []

    def test_missing_start_node(self, validator):
        definition = build_workflow(
            "No start",
            nodes=[{"id": "A", "kind": "task", "task_id": "t1"}, {"id": "end", "kind": "end"}],
            edges=[("e1", "A", "end")]
        )
        result = validator.validate(definition)
        assert not result.is_valid
        assert "missing_start" in codes(result)

    def test_multiple_start_nodes(self, validator):
        definition = build_workflow(
            "Two starts",
            nodes=[{"id": "s1", "kind": "start"}, {"id": "s2", "kind": "start"}, {"id": "end", "kind": "end"}],
            edges=[("e1", "s1", "end"), ("e2", "s2", "end")]
        )
        assert "multiple_start" in codes(validator.validate(definition))

    def test_dangling_edge(self, validator):
        definition = build_workflow(
            "Dangling",
            nodes=[{"id": "start", "kind": "start"}, {"id": "end", "kind": "end"}],
            edges=[("e1", "start", "end"), ("e2", "start", "ghost")]
        )
        result = validator.validate(definition)
        assert "dangling_edge" in codes(result)
        assert any("ghost" in message for message in result.errors)

    def test_end_node_with_outgoing_edge(self, validator):
        definition = build_workflow(
            "End continues",
            nodes=[{"id": "start", "kind": "start"}, {"id": "end", "kind": "end"}, {"id": "A", "kind": "task", "task_id": "t1"}],
            edges=[("e1", "start", "end"), ("e2", "end", "A")]
        )
        assert "end_has_outgoing" in codes(validator.validate(definition))

    def test_decision_needs_two_branches(self, validator):
        definition = build_workflow(
            "Lonely decision",
            nodes=[{"id": "start", "kind": "start"}, {"id": "D", "kind": "decision"}, {"id": "end", "kind": "end"}],
            edges=[("e1", "start", "D"), {"id": "e2", "source": "D", "target": "end", "condition": "x > 1"}]
        )
        assert "decision_branches" in codes(validator.validate(definition))

    def test_untagged_branch_must_be_last(self, validator):
        definition = build_workflow(
            "Else first",
            nodes=[
                {"id": "start", "kind": "start"},
                {"id": "D", "kind": "decision"},
                {"id": "hi", "kind": "end"},
                {"id": "lo", "kind": "end"},
            ],
            edges=[
                ("e1", "start", "D"),
                {"id": "e_else", "source": "D", "target": "lo"},
                {"id": "e_hi", "source": "D", "target": "hi", "condition": "x > 5"},
            ]
        )
        assert "else_not_last" in codes(validator.validate(definition))

    def test_duplicate_decision_conditions(self, validator):
        definition = build_workflow(
            "Duplicate conditions",
            nodes=[
                {"id": "start", "kind": "start"},
                {"id": "D", "kind": "decision"},
                {"id": "a", "kind": "end"},
                {"id": "b", "kind": "end"},
            ],
            edges=[
                ("e1", "start", "D"),
                {"id": "e_a", "source": "D", "target": "a", "condition": "x > 5"},
                {"id": "e_b", "source": "D", "target": "b", "condition": "x  >  5"},
            ]
        )
        assert "duplicate_condition" in codes(validator.validate(definition))

    def test_unreachable_node(self, validator):
        definition = linear_workflow()
        definition.nodes.append(definition.nodes[1].model_copy(update={"id": "orphan"}))
        result = validator.validate(definition)
        assert "unreachable_node" in codes(result)
        assert any(v.node_id == "orphan" for v in result.violations)

    def test_invalid_condition_syntax(self, validator):
        definition = build_workflow(
            "Bad condition",
            nodes=[
                {"id": "start", "kind": "start"},
                {"id": "D", "kind": "decision"},
                {"id": "a", "kind": "end"},
                {"id": "b", "kind": "end"},
            ],
            edges=[
                ("e1", "start", "D"),
                {"id": "e_a", "source": "D", "target": "a", "condition": "x >"},
                {"id": "e_b", "source": "D", "target": "b"},
            ]
        )
        assert "invalid_condition" in codes(validator.validate(definition))

    def test_node_data_requirements(self, validator):
        definition = build_workflow(
            "Incomplete nodes",
            nodes=[
                {"id": "start", "kind": "start"},
                {"id": "T", "kind": "task"},
                {"id": "W", "kind": "wait"},
                {"id": "S", "kind": "subprocess"},
                {"id": "end", "kind": "end"},
            ],
            edges=[("e1", "start", "T"), ("e2", "T", "W"), ("e3", "W", "S"), ("e4", "S", "end")]
        )
        found = codes(validator.validate(definition))
        assert {"missing_task_reference", "invalid_wait_duration", "missing_subprocess_reference"} <= found

    def test_reports_every_violation(self, validator):
        definition = build_workflow(
            "Many problems",
            nodes=[{"id": "A", "kind": "task"}, {"id": "end", "kind": "end"}],
            edges=[("e1", "A", "end"), ("e2", "end", "A")]
        )
        found = codes(validator.validate(definition))
        assert {"missing_start", "missing_task_reference", "end_has_outgoing"} <= found

    def test_cycle_is_a_warning(self, validator):
        definition = build_workflow(
            "Loop",
            nodes=[
                {"id": "start", "kind": "start"},
                {"id": "A", "kind": "task", "task_id": "t1"},
                {"id": "D", "kind": "decision"},
                {"id": "end", "kind": "end"},
            ],
            edges=[
                ("e1", "start", "A"),
                ("e2", "A", "D"),
                {"id": "again", "source": "D", "target": "A", "condition": "retry"},
                {"id": "done", "source": "D", "target": "end"},
            ]
        )
        result = validator.validate(definition)
        assert result.is_valid
        assert any("cycles" in warning for warning in result.warnings)

    def test_validate_or_raise(self, validator):
        definition = build_workflow("Empty", nodes=[], edges=[])
        with pytest.raises(GraphValidationError) as exc_info:
            validator.validate_or_raise(definition)
        assert "no start node" in exc_info.value.message


class TestGraphHelpers:
    """Test cases for graph traversal helpers."""

    def test_back_edges_follow_declared_order(self):
        definition = build_workflow(
            "Approval",
            nodes=[
                {"id": "start", "kind": "start"},
                {"id": "review", "kind": "task", "task_id": "review"},
                {"id": "D", "kind": "decision"},
                {"id": "revise", "kind": "task", "task_id": "revise"},
                {"id": "end", "kind": "end"},
            ],
            edges=[
                ("e1", "start", "review"),
                ("e2", "review", "D"),
                {"id": "approved", "source": "D", "target": "end", "condition": "approved"},
                {"id": "rejected", "source": "D", "target": "revise"},
                ("back", "revise", "review"),
            ]
        )
        assert find_back_edges(definition, "start") == {"back"}

    def test_decision_branches_prefer_explicit_list(self):
        definition = build_workflow(
            "Branches",
            nodes=[
                {"id": "start", "kind": "start"},
                {"id": "D", "kind": "decision", "branches": [
                    {"condition": "x > 5", "edge_id": "e_hi"},
                    {"condition": None, "edge_id": "e_lo"},
                ]},
                {"id": "hi", "kind": "end"},
                {"id": "lo", "kind": "end"},
            ],
            edges=[("e1", "start", "D"), ("e_lo", "D", "lo"), ("e_hi", "D", "hi")]
        )
        node = definition.get_node("D")
        assert decision_branches(definition, node) == [("x > 5", "e_hi"), (None, "e_lo")]
