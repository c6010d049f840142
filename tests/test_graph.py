"""Tests for workflow schema checks and graph-shape validation."""

from __future__ import annotations

import pytest

from nodeflow.models import Edge, Node, WorkflowDefinition
from nodeflow.service.errors import (
    CycleDetectedError,
    GraphValidationError,
    StartNodeError,
)
from nodeflow.service.executors import default_registry
from nodeflow.service.graph import (
    check_workflow_schema,
    detect_cycles,
    find_end_nodes,
    find_start_nodes,
    find_unreachable_nodes,
    load_workflow,
    topological_sort,
    validate_workflow,
)


def _definition(nodes, edges) -> WorkflowDefinition:
    return WorkflowDefinition(
        id="wf",
        nodes=[Node(id=i, type=t) for i, t in nodes],
        edges=[Edge(*e) for e in edges],
    )


LINEAR = _definition(
    [("s", "start"), ("d", "decision"), ("e", "end")],
    [("s", "d"), ("d", "e", "true")],
)


class TestSchema:
    def test_valid_definition_loads(self):
        workflow = load_workflow(
            {
                "id": "wf",
                "name": {"en": "Demo", "de": "Demo"},
                "nodes": [
                    {"id": "s", "type": "start", "execution": {"errorHandler": "fail"}},
                    {"id": "e", "type": "end"},
                ],
                "edges": [{"source": "s", "target": "e"}],
            }
        )
        assert [n.id for n in workflow.nodes] == ["s", "e"]
        assert workflow.edges == [Edge("s", "e")]

    def test_boolean_and_numeric_branch_labels_are_normalized(self):
        workflow = load_workflow(
            {
                "nodes": [
                    {"id": "d", "type": "decision"},
                    {"id": "y", "type": "end"},
                    {"id": "n", "type": "end"},
                    {"id": "one", "type": "end"},
                ],
                "edges": [
                    {"source": "d", "target": "y", "branch": True},
                    {"source": "d", "target": "n", "branch": False},
                    {"source": "d", "target": "one", "branch": 1},
                ],
            }
        )
        assert [e.branch for e in workflow.edges] == ["true", "false", "1"]

    def test_schema_errors_are_collected(self):
        with pytest.raises(GraphValidationError) as exc_info:
            check_workflow_schema(
                {
                    "nodes": [{"id": "s"}, {"type": "end"}],
                    "edges": [{"source": "s"}],
                }
            )
        errors = exc_info.value.detail["errors"]
        assert len(errors) == 3
        assert exc_info.value.error_code == "graph_invalid"

    def test_empty_nodes_rejected(self):
        with pytest.raises(GraphValidationError):
            load_workflow({"id": "wf", "nodes": []})

    def test_non_mapping_rejected(self):
        with pytest.raises(GraphValidationError):
            load_workflow(["not", "a", "workflow"])

    def test_invalid_error_handler_rejected(self):
        with pytest.raises(GraphValidationError):
            load_workflow(
                {"nodes": [{"id": "s", "type": "start", "execution": {"errorHandler": "retry"}}]}
            )


class TestGraphAnalysis:
    def test_detect_cycles(self):
        workflow = _definition(
            [("a", "start"), ("b", "x"), ("c", "x")],
            [("a", "b"), ("b", "c"), ("c", "b")],
        )
        assert detect_cycles(workflow.nodes, workflow.edges) == (True, ["b", "c"])
        assert detect_cycles(LINEAR.nodes, LINEAR.edges) == (False, [])
        assert detect_cycles([], []) == (False, [])

    def test_topological_sort(self):
        workflow = _definition(
            [("s", "start"), ("a", "x"), ("b", "x"), ("j", "end")],
            [("s", "a"), ("s", "b"), ("a", "j"), ("b", "j")],
        )
        order = topological_sort(workflow.nodes, workflow.edges)
        assert order[0] == "s"
        assert order[-1] == "j"
        assert set(order) == {"s", "a", "b", "j"}

    def test_topological_sort_raises_on_cycle(self):
        workflow = _definition([("a", "x"), ("b", "x")], [("a", "b"), ("b", "a")])
        with pytest.raises(CycleDetectedError) as exc_info:
            topological_sort(workflow.nodes, workflow.edges)
        assert exc_info.value.detail["cycle_nodes"] == ["a", "b"]

    def test_start_and_end_nodes(self):
        assert find_start_nodes(LINEAR) == ["s"]
        assert find_end_nodes(LINEAR) == ["e"]

    def test_unreachable_nodes(self):
        workflow = _definition(
            [("s", "start"), ("e", "end"), ("orphan", "end")],
            [("s", "e")],
        )
        assert find_unreachable_nodes(workflow, "s") == ["orphan"]


class TestValidateWorkflow:
    def test_valid_graph_report(self):
        report = validate_workflow(LINEAR, default_registry())
        assert report.start_node_id == "s"
        assert report.end_node_ids == ["e"]
        assert report.execution_order == ["s", "d", "e"]
        assert report.unreachable_nodes == []

    def test_no_start_node(self):
        workflow = _definition([("a", "end")], [])
        with pytest.raises(StartNodeError):
            validate_workflow(workflow)

    def test_multiple_start_nodes(self):
        workflow = _definition([("a", "start"), ("b", "start"), ("e", "end")], [("a", "e"), ("b", "e")])
        with pytest.raises(StartNodeError) as exc_info:
            validate_workflow(workflow)
        assert exc_info.value.detail["start_nodes"] == ["a", "b"]

    def test_start_node_with_incoming_edge(self):
        workflow = _definition([("s", "start"), ("e", "end")], [("s", "e"), ("e", "s")])
        with pytest.raises(StartNodeError):
            validate_workflow(workflow)

    def test_cycle_rejected(self):
        workflow = _definition(
            [("s", "start"), ("a", "decision"), ("b", "decision")],
            [("s", "a"), ("a", "b"), ("b", "a")],
        )
        with pytest.raises(CycleDetectedError):
            validate_workflow(workflow)

    def test_duplicate_ids(self):
        workflow = _definition([("s", "start"), ("s", "end")], [])
        with pytest.raises(GraphValidationError) as exc_info:
            validate_workflow(workflow)
        assert exc_info.value.detail["duplicate_ids"] == ["s"]

    def test_dangling_edge(self):
        workflow = _definition([("s", "start")], [("s", "ghost")])
        with pytest.raises(GraphValidationError) as exc_info:
            validate_workflow(workflow)
        assert exc_info.value.detail["dangling_edges"] == [{"source": "s", "target": "ghost"}]

    def test_unknown_node_type(self):
        workflow = _definition([("s", "start"), ("t", "teleport")], [("s", "t")])
        with pytest.raises(GraphValidationError) as exc_info:
            validate_workflow(workflow, default_registry())
        assert exc_info.value.detail["unknown_types"] == ["teleport"]

    def test_unreachable_nodes_reported_or_rejected(self):
        workflow = _definition(
            [("s", "start"), ("e", "end"), ("orphan", "end")],
            [("s", "e")],
        )
        assert validate_workflow(workflow).unreachable_nodes == ["orphan"]
        with pytest.raises(GraphValidationError):
            validate_workflow(workflow, reject_unreachable=True)
